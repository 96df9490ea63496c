"""
Notification queueing for order and dispute events.

Notifications are fire-and-forget: rows are queued for an external delivery
worker inside a savepoint, and any failure is logged and swallowed so the
calling operation is never blocked.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import NotificationQueue, NotificationStatus, Profile

logger = logging.getLogger(__name__)


class NotificationService:
    """Queues user-facing notifications"""

    def __init__(self, session: Session):
        self.session = session

    def send_notification(
        self,
        user_id: Optional[str],
        notification_type: str,
        title: str,
        message: str,
        link: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if not user_id:
            logger.warning(f"⚠️ NOTIFICATION_SKIPPED: no recipient for {notification_type}")
            return False

        try:
            with self.session.begin_nested():
                self.session.add(
                    NotificationQueue(
                        user_id=user_id,
                        notification_type=notification_type,
                        title=title,
                        message=message,
                        link=link,
                        payload=metadata or {},
                        status=NotificationStatus.PENDING.value,
                    )
                )
            logger.info(f"📨 NOTIFICATION_QUEUED: {notification_type} → user {user_id}")
            return True
        except SQLAlchemyError as e:
            logger.error(f"❌ NOTIFICATION_FAILED: {notification_type} → user {user_id}: {e}")
            return False

    def notify_admins(
        self,
        notification_type: str,
        title: str,
        message: str,
        link: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Queue the same notification for every admin; returns how many were queued"""
        try:
            admin_ids: List[str] = list(
                self.session.scalars(select(Profile.id).where(Profile.is_admin.is_(True)))
            )
        except SQLAlchemyError as e:
            logger.error(f"❌ ADMIN_NOTIFICATION_FAILED: could not load admins: {e}")
            return 0

        if not admin_ids:
            logger.warning(f"⚠️ ADMIN_NOTIFICATION_SKIPPED: no admins for {notification_type}")
            return 0

        return sum(
            1 for admin_id in admin_ids
            if self.send_notification(admin_id, notification_type, title, message, link, metadata)
        )

"""
Dispute Auto-Resolution Monitor
Polls open disputes through the auto-resolution heuristics and flags the
ones that qualify for admin attention. Advisory only: it never resolves a
dispute or moves money.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import DisputeEvent, DisputeEventType
from services.dispute_service import AutoResolutionCheck, DisputeService
from services.notification_service import NotificationService
from services.order_history import OrderHistoryService

logger = logging.getLogger(__name__)


class AutoResolutionScanResult:
    """Result object for one auto-resolution scan"""

    def __init__(self):
        self.candidates_found = 0
        self.disputes_flagged = 0
        self.already_flagged = 0
        self.admin_alerts_sent = 0
        self.execution_time_ms = 0
        self.flagged: List[Dict[str, Any]] = []
        self.errors: List[str] = []

    def add_flagged(self, check: AutoResolutionCheck):
        self.disputes_flagged += 1
        self.flagged.append({
            "dispute_id": check.dispute_id,
            "reason": check.reason,
            "buyer_refund_percent": check.buyer_refund_percent,
        })

    def add_error(self, error: str):
        self.errors.append(error)
        logger.error(f"AUTO_RESOLUTION_MONITOR_ERROR: {error}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidates_found": self.candidates_found,
            "disputes_flagged": self.disputes_flagged,
            "already_flagged": self.already_flagged,
            "admin_alerts_sent": self.admin_alerts_sent,
            "execution_time_ms": self.execution_time_ms,
            "flagged": self.flagged,
            "errors": self.errors,
        }


def _already_flagged(session: Session, dispute_id: str) -> bool:
    return session.scalar(
        select(DisputeEvent.id).where(
            DisputeEvent.dispute_id == dispute_id,
            DisputeEvent.event_type == DisputeEventType.AUTO_RESOLUTION_FLAGGED.value,
        ).limit(1)
    ) is not None


def scan_disputes(session: Session, now: Optional[datetime] = None) -> AutoResolutionScanResult:
    """Flag every qualifying dispute once and alert admins about it"""
    started = time.monotonic()
    result = AutoResolutionScanResult()

    notifications = NotificationService(session)
    history = OrderHistoryService(session)
    disputes = DisputeService(session, notifications=notifications, history=history)

    candidates = disputes.find_auto_resolution_candidates(now=now)
    if not candidates.success:
        result.add_error(candidates.error)
        result.execution_time_ms = int((time.monotonic() - started) * 1000)
        return result

    result.candidates_found = len(candidates.data)
    for check in candidates.data:
        if _already_flagged(session, check.dispute_id):
            result.already_flagged += 1
            continue

        logged = history.log_dispute_event(
            check.dispute_id,
            DisputeEventType.AUTO_RESOLUTION_FLAGGED,
            check.resolution,
            actor_id=None,
            metadata={"reason": check.reason, "buyer_refund_percent": check.buyer_refund_percent},
        )
        if not logged:
            result.add_error(f"Could not flag dispute {check.dispute_id}")
            continue

        result.add_flagged(check)
        result.admin_alerts_sent += notifications.notify_admins(
            "dispute_auto_resolution",
            "Dispute Ready for Auto-Resolution",
            f"Dispute {check.dispute_id} qualifies for auto-resolution "
            f"({check.reason}, buyer refund {check.buyer_refund_percent}%). {check.resolution}",
            link=Config.dispute_link(check.dispute_id),
            metadata={"dispute_id": check.dispute_id, "reason": check.reason},
        )

    result.execution_time_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"🔍 AUTO_RESOLUTION_SCAN: candidates={result.candidates_found} "
        f"flagged={result.disputes_flagged} skipped={result.already_flagged} "
        f"errors={len(result.errors)} in {result.execution_time_ms}ms"
    )
    return result


def run_dispute_auto_resolution_scan() -> Dict[str, Any]:
    """Scheduler entry point: one scan in its own managed session"""
    from database import managed_session

    with managed_session() as session:
        return scan_disputes(session).to_dict()

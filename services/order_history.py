"""
Order & Dispute Audit Log
=========================

Append-only event log for orders and disputes. Writes are best-effort and
isolated in a savepoint so an audit failure never blocks the operation that
triggered it. When the order event store is missing, history is rebuilt from
entity timestamps and returned as a separate, clearly flagged timeline view.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import (
    Dispute, DisputeEvent, DisputeEventType, Order, OrderEvent, OrderEventType,
    OrderMilestone, Profile,
)
from utils.service_results import DATABASE_ERROR_MESSAGE, ErrorCode, ServiceResult, fail, ok

logger = logging.getLogger(__name__)

ORDER_EVENTS_TABLE = OrderEvent.__tablename__

EVENT_TYPE_LABELS: Dict[OrderEventType, str] = {
    OrderEventType.CREATED: "Order Created",
    OrderEventType.ACCEPTED: "Order Accepted",
    OrderEventType.DECLINED: "Order Declined",
    OrderEventType.STARTED: "Work Started",
    OrderEventType.MILESTONE_SUBMITTED: "Milestone Submitted",
    OrderEventType.MILESTONE_APPROVED: "Milestone Approved",
    OrderEventType.MILESTONE_REJECTED: "Milestone Rejected",
    OrderEventType.DISPUTED: "Dispute Opened",
    OrderEventType.DISPUTE_RESOLVED: "Dispute Resolved",
    OrderEventType.COMPLETED: "Order Completed",
    OrderEventType.CANCELLED: "Order Cancelled",
    OrderEventType.PAYMENT_RECEIVED: "Payment Received",
    OrderEventType.PAYMENT_RELEASED: "Payment Released",
    OrderEventType.REFUNDED: "Refund Issued",
}


def get_event_type_label(event_type: Union[OrderEventType, str]) -> str:
    try:
        return EVENT_TYPE_LABELS[OrderEventType(getattr(event_type, "value", event_type))]
    except ValueError:
        return str(event_type).replace("_", " ").title()


@dataclass
class TimelineEntry:
    """One row of an order's history, authoritative or reconstructed"""

    id: str
    order_id: str
    event_type: str
    created_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    actor_id: str = ""
    actor_name: Optional[str] = None
    reconstructed: bool = False

    @property
    def label(self) -> str:
        return get_event_type_label(self.event_type)


class OrderHistoryService:
    """Writes and reads the order/dispute audit trail"""

    def __init__(self, session: Session):
        self.session = session
        self._order_events_available: Optional[bool] = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def order_events_available(self) -> bool:
        """Whether the dedicated order event store exists (checked once per service)"""
        if self._order_events_available is None:
            try:
                self._order_events_available = inspect(self.session.connection()).has_table(
                    ORDER_EVENTS_TABLE
                )
            except SQLAlchemyError as e:
                logger.warning(f"⚠️ AUDIT_STORE_CHECK_FAILED: {e}")
                self._order_events_available = False
        return self._order_events_available

    def log_order_event(
        self,
        order_id: str,
        event_type: Union[OrderEventType, str],
        details: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> bool:
        event_value = getattr(event_type, "value", event_type)
        if not self.order_events_available():
            logger.debug(f"AUDIT_SKIPPED: order event store missing, {event_value} for order {order_id}")
            return False

        try:
            with self.session.begin_nested():
                self.session.add(
                    OrderEvent(
                        order_id=order_id,
                        event_type=event_value,
                        details=_json_safe(details or {}),
                        actor_id=actor_id,
                    )
                )
            logger.info(f"📝 ORDER_EVENT: {event_value} order={order_id} actor={actor_id}")
            return True
        except SQLAlchemyError as e:
            logger.error(f"❌ ORDER_EVENT_FAILED: {event_value} order={order_id}: {e}")
            return False

    def log_dispute_event(
        self,
        dispute_id: str,
        event_type: Union[DisputeEventType, str],
        description: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        event_value = getattr(event_type, "value", event_type)
        try:
            with self.session.begin_nested():
                actor_name = None
                if actor_id:
                    actor_name = self.session.scalar(
                        select(Profile.full_name).where(Profile.id == actor_id)
                    )
                self.session.add(
                    DisputeEvent(
                        dispute_id=dispute_id,
                        event_type=event_value,
                        description=description,
                        actor_id=actor_id,
                        actor_name=actor_name,
                        event_metadata=_json_safe(metadata or {}),
                    )
                )
            logger.info(f"📝 DISPUTE_EVENT: {event_value} dispute={dispute_id} actor={actor_id}")
            return True
        except SQLAlchemyError as e:
            logger.error(f"❌ DISPUTE_EVENT_FAILED: {event_value} dispute={dispute_id}: {e}")
            return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_order_history(self, order_id: str) -> ServiceResult:
        """Authoritative event log, or the reconstructed timeline when the store is absent"""
        if not self.order_events_available():
            logger.info(f"ℹ️ ORDER_HISTORY_FALLBACK: rebuilding timeline for order {order_id}")
            return self.build_order_timeline(order_id)

        try:
            events = self.session.scalars(
                select(OrderEvent)
                .where(OrderEvent.order_id == order_id)
                .order_by(OrderEvent.created_at, OrderEvent.id)
            ).all()
        except SQLAlchemyError as e:
            logger.error(f"❌ ORDER_HISTORY_FAILED: order {order_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        return ok([
            TimelineEntry(
                id=event.id,
                order_id=event.order_id,
                event_type=event.event_type,
                created_at=event.created_at,
                details=dict(event.details or {}),
                actor_id=event.actor_id or "",
            )
            for event in events
        ])

    def get_order_history_with_actors(self, order_id: str) -> ServiceResult:
        result = self.get_order_history(order_id)
        if not result.success:
            return result

        entries: List[TimelineEntry] = result.data
        actor_ids = {entry.actor_id for entry in entries if entry.actor_id}
        if actor_ids:
            try:
                names = dict(
                    self.session.execute(
                        select(Profile.id, Profile.full_name).where(Profile.id.in_(actor_ids))
                    ).all()
                )
            except SQLAlchemyError as e:
                logger.warning(f"⚠️ ACTOR_LOOKUP_FAILED: order {order_id}: {e}")
                names = {}
            for entry in entries:
                entry.actor_name = names.get(entry.actor_id)
        return result

    def build_order_timeline(self, order_id: str) -> ServiceResult:
        """
        Best-effort history from entity timestamps.

        Only the creation entry can be attributed (to the buyer); everything
        else carries an empty actor id.
        """
        try:
            order = self.session.get(Order, order_id)
            if not order:
                return fail(ErrorCode.NOT_FOUND, "Order not found")

            milestones = self.session.scalars(
                select(OrderMilestone).where(OrderMilestone.order_id == order_id)
            ).all()
            disputes = self.session.scalars(
                select(Dispute).where(Dispute.order_id == order_id)
            ).all()
        except SQLAlchemyError as e:
            logger.error(f"❌ TIMELINE_BUILD_FAILED: order {order_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        entries: List[TimelineEntry] = [
            TimelineEntry(
                id=f"{order.id}-created",
                order_id=order.id,
                event_type=OrderEventType.CREATED.value,
                created_at=order.created_at,
                details={"total_amount": str(order.total_amount), "order_type": order.order_type},
                actor_id=order.buyer_id,
                reconstructed=True,
            )
        ]

        for milestone in milestones:
            if milestone.submitted_at:
                entries.append(_reconstructed(
                    f"{milestone.id}-submitted", order.id, OrderEventType.MILESTONE_SUBMITTED,
                    milestone.submitted_at, {"milestone_id": milestone.id, "title": milestone.title},
                ))
            if milestone.approved_at:
                entries.append(_reconstructed(
                    f"{milestone.id}-approved", order.id, OrderEventType.MILESTONE_APPROVED,
                    milestone.approved_at,
                    {"milestone_id": milestone.id, "title": milestone.title,
                     "amount": str(milestone.amount)},
                ))

        for dispute in disputes:
            entries.append(_reconstructed(
                f"{dispute.id}-opened", order.id, OrderEventType.DISPUTED,
                dispute.created_at, {"dispute_id": dispute.id, "reason": dispute.reason},
            ))
            if dispute.resolved_at:
                entries.append(_reconstructed(
                    f"{dispute.id}-resolved", order.id, OrderEventType.DISPUTE_RESOLVED,
                    dispute.resolved_at, {"dispute_id": dispute.id, "resolution": dispute.resolution},
                ))

        if order.completed_at:
            entries.append(_reconstructed(
                f"{order.id}-completed", order.id, OrderEventType.COMPLETED, order.completed_at, {},
            ))

        entries.sort(key=lambda entry: entry.created_at)
        return ok(entries)


def _reconstructed(entry_id: str, order_id: str, event_type: OrderEventType,
                   timestamp: datetime, details: Dict[str, Any]) -> TimelineEntry:
    return TimelineEntry(
        id=entry_id,
        order_id=order_id,
        event_type=event_type.value,
        created_at=timestamp,
        details=details,
        reconstructed=True,
    )


def _json_safe(value: Any) -> Any:
    """Decimals, enums and datetimes become strings so JSON columns accept them"""
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(getattr(value, "value", value))

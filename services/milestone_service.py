"""
Milestone Service
Staged payment releases: the seller submits a milestone, the buyer approves
it and the milestone's amount (less the platform fee) is transferred to the
seller. A failed transfer puts the milestone back to submitted.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from models import (
    MilestoneStatus, Order, OrderEventType, OrderMilestone, OrderRole, OrderStatus,
)
from services.dispute_service import CreateDisputeParams, DisputeService
from services.escrow_service import EscrowService
from services.notification_service import NotificationService
from services.order_history import OrderHistoryService
from services.order_parties import counterparty_user_id, get_seller_user_id, resolve_order_role
from utils.entity_state_machines import MilestoneStateMachine
from utils.fee_calculator import FeeCalculator
from utils.helpers import utc_now
from utils.service_results import (
    DATABASE_ERROR_MESSAGE, ErrorCode, ServiceResult, fail, not_found, ok,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

MILESTONE_EDITABLE_ORDER_STATUSES = frozenset({OrderStatus.PENDING.value, OrderStatus.ACCEPTED.value})


@dataclass
class MilestoneInput:
    title: str
    amount: Decimal
    description: Optional[str] = None
    due_date: Optional[date] = None

    def __post_init__(self):
        self.title = (self.title or "").strip()
        if not self.title:
            raise ValueError("Milestone title is required")
        self.amount = FeeCalculator.quantize(self.amount)
        if self.amount <= ZERO:
            raise ValueError(f"Milestone '{self.title}' amount must be greater than 0")

    def to_model(self, order_id: str) -> OrderMilestone:
        return OrderMilestone(
            order_id=order_id,
            title=self.title,
            description=self.description,
            amount=self.amount,
            due_date=self.due_date,
            status=MilestoneStatus.PENDING.value,
        )


def milestone_total_error(milestones: Sequence[MilestoneInput], order_total: Decimal) -> Optional[str]:
    """Error message when milestone amounts do not add up to the order total"""
    if not milestones:
        return "At least one milestone is required"
    total = sum((m.amount for m in milestones), ZERO)
    expected = FeeCalculator.quantize(order_total)
    if total != expected:
        return f"Milestone amounts ({total}) must equal order total ({expected})"
    return None


class MilestoneApprovalResult(NamedTuple):
    """Result of approving a milestone and paying the seller"""

    success: bool
    milestone_id: str
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    transfer_id: Optional[str] = None
    seller_amount: Decimal = ZERO
    platform_fee: Decimal = ZERO


class MilestoneSummary(NamedTuple):
    total: int
    pending: int
    submitted: int
    approved: int
    paid: int
    rejected: int
    total_amount: Decimal
    paid_amount: Decimal
    percent_complete: int


class MilestoneService:
    """Milestone lifecycle operations for one request's session"""

    def __init__(
        self,
        session: Session,
        escrow_service: Optional[EscrowService] = None,
        notifications: Optional[NotificationService] = None,
        history: Optional[OrderHistoryService] = None,
        dispute_service: Optional[DisputeService] = None,
    ):
        self.session = session
        self.escrow_service = escrow_service
        self.notifications = notifications or NotificationService(session)
        self.history = history or OrderHistoryService(session)
        self.dispute_service = dispute_service or DisputeService(
            session, escrow_service, self.notifications, self.history
        )

    def create_milestones(
        self, order_id: str, milestones: List[MilestoneInput], actor_id: str
    ) -> ServiceResult:
        """Split an order into milestones whose amounts sum exactly to its total"""
        try:
            milestones = [m if isinstance(m, MilestoneInput) else MilestoneInput(**m) for m in milestones or []]
        except (TypeError, ValueError) as e:
            return fail(ErrorCode.VALIDATION, str(e))
        if not milestones:
            return fail(ErrorCode.VALIDATION, "At least one milestone is required")

        try:
            order = self.session.get(Order, order_id)
            if not order:
                return not_found("Order")
            if resolve_order_role(self.session, order, actor_id) is None:
                return fail(ErrorCode.UNAUTHORIZED, "Not authorized to manage milestones for this order")
            if order.status not in MILESTONE_EDITABLE_ORDER_STATUSES:
                return fail(
                    ErrorCode.INVALID_TRANSITION,
                    f"Cannot add milestones to an order with status '{order.status}'",
                )

            existing = self.session.scalar(
                select(OrderMilestone.id).where(OrderMilestone.order_id == order_id).limit(1)
            )
            if existing:
                return fail(
                    ErrorCode.VALIDATION,
                    "Milestones already exist for this order. Update existing milestones instead.",
                )

            mismatch = milestone_total_error(milestones, order.total_amount)
            if mismatch:
                logger.warning(f"❌ MILESTONE_TOTAL_MISMATCH: order {order_id}: {mismatch}")
                return fail(ErrorCode.VALIDATION, mismatch)

            created = [m.to_model(order.id) for m in milestones]
            self.session.add_all(created)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ MILESTONE_CREATE_FAILED: order {order_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        logger.info(f"✅ MILESTONES_CREATED: order {order_id} count={len(created)}")
        return ok(created)

    def get_milestones(self, order_id: str) -> ServiceResult:
        try:
            milestones = self.session.scalars(
                select(OrderMilestone)
                .where(OrderMilestone.order_id == order_id)
                .order_by(OrderMilestone.created_at, OrderMilestone.id)
            ).all()
            return ok(list(milestones))
        except SQLAlchemyError as e:
            logger.error(f"❌ MILESTONE_FETCH_FAILED: order {order_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

    def get_milestone_summary(self, order_id: str) -> ServiceResult:
        result = self.get_milestones(order_id)
        if not result.success:
            return result

        milestones: List[OrderMilestone] = result.data
        counts: Dict[str, int] = {status.value: 0 for status in MilestoneStatus}
        for milestone in milestones:
            counts[milestone.status] = counts.get(milestone.status, 0) + 1

        total = len(milestones)
        paid = counts[MilestoneStatus.PAID.value]
        return ok(MilestoneSummary(
            total=total,
            pending=counts[MilestoneStatus.PENDING.value],
            submitted=counts[MilestoneStatus.SUBMITTED.value],
            approved=counts[MilestoneStatus.APPROVED.value],
            paid=paid,
            rejected=counts[MilestoneStatus.REJECTED.value],
            total_amount=sum((m.amount for m in milestones), ZERO),
            paid_amount=sum((m.amount for m in milestones if m.status == MilestoneStatus.PAID.value), ZERO),
            percent_complete=round(paid * 100 / total) if total else 0,
        ))

    def submit_milestone(self, milestone_id: str, actor_id: str, notes: Optional[str] = None) -> ServiceResult:
        try:
            milestone = self.session.get(OrderMilestone, milestone_id)
            if not milestone:
                return not_found("Milestone")
            order = milestone.order
            if resolve_order_role(self.session, order, actor_id) is not OrderRole.SELLER:
                return fail(ErrorCode.UNAUTHORIZED, "Only the seller can submit milestones")
            if milestone.status != MilestoneStatus.PENDING.value:
                return fail(
                    ErrorCode.INVALID_TRANSITION,
                    f"Cannot submit milestone with status '{milestone.status}'",
                )

            milestone.status = MilestoneStatus.SUBMITTED.value
            milestone.submitted_at = utc_now()
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ MILESTONE_SUBMIT_FAILED: {milestone_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        self.history.log_order_event(
            order.id,
            OrderEventType.MILESTONE_SUBMITTED,
            {"milestone_id": milestone.id, "title": milestone.title, "notes": notes},
            actor_id=actor_id,
        )
        self.notifications.send_notification(
            order.buyer_id,
            "milestone_submitted",
            "Milestone Submitted",
            f'Milestone "{milestone.title}" has been submitted for your review.',
            link=Config.order_link(order.id),
            metadata={"order_id": order.id, "milestone_id": milestone.id},
        )
        return self._commit(milestone, f"milestone {milestone.id} submitted")

    def approve_milestone(self, milestone_id: str, actor_id: str) -> MilestoneApprovalResult:
        """
        Approve a submitted milestone and release its amount to the seller.

        If the release fails the milestone goes back to submitted with
        approved_at cleared, and the error is returned.
        """
        if not self.escrow_service:
            return _approval_error(milestone_id, ErrorCode.EXTERNAL_FAILURE, "Payment service unavailable")

        try:
            milestone = self.session.get(OrderMilestone, milestone_id)
            if not milestone:
                return _approval_error(milestone_id, ErrorCode.NOT_FOUND, "Milestone not found")
            order = milestone.order
            if resolve_order_role(self.session, order, actor_id) is not OrderRole.BUYER:
                return _approval_error(milestone_id, ErrorCode.UNAUTHORIZED, "Only the buyer can approve milestones")
            if milestone.status != MilestoneStatus.SUBMITTED.value:
                return _approval_error(
                    milestone_id, ErrorCode.INVALID_TRANSITION,
                    f"Cannot approve milestone with status '{milestone.status}'. "
                    "Milestone must be submitted first.",
                )

            milestone.status = MilestoneStatus.APPROVED.value
            milestone.approved_at = utc_now()
            self.session.commit()

            release = self.escrow_service.release_escrow(order, milestone.amount, milestone_id=milestone.id)
            if not release.success:
                self._revert_approval(milestone, release.error)
                return _approval_error(milestone_id, ErrorCode.EXTERNAL_FAILURE, release.error)

            is_valid, message = MilestoneStateMachine.validate_transition(
                milestone.status, MilestoneStatus.PAID, milestone.id
            )
            if is_valid:
                milestone.status = MilestoneStatus.PAID.value
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ MILESTONE_APPROVE_FAILED: {milestone_id}: {e}")
            return _approval_error(milestone_id, ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        self.history.log_order_event(
            order.id,
            OrderEventType.MILESTONE_APPROVED,
            {"milestone_id": milestone.id, "title": milestone.title, "amount": str(milestone.amount)},
            actor_id=actor_id,
        )
        self.history.log_order_event(
            order.id,
            OrderEventType.PAYMENT_RELEASED,
            {"milestone_id": milestone.id, "transfer_id": release.reference,
             "seller_amount": str(release.net_amount), "platform_fee": str(release.platform_fee)},
            actor_id=actor_id,
        )
        self.notifications.send_notification(
            get_seller_user_id(self.session, order),
            "milestone_approved",
            "Milestone Approved",
            f'Milestone "{milestone.title}" was approved. {release.net_amount} {order.currency} '
            "is on its way to you.",
            link=Config.order_link(order.id),
            metadata={"order_id": order.id, "milestone_id": milestone.id, "transfer_id": release.reference},
        )

        commit = self._commit(milestone, f"milestone {milestone.id} approved and paid")
        if not commit.success:
            logger.critical(
                f"🚨 MILESTONE_PAID_NOT_RECORDED: {milestone.id} transfer={release.reference}"
            )
            return _approval_error(milestone_id, ErrorCode.DATABASE, commit.error)

        return MilestoneApprovalResult(
            success=True,
            milestone_id=milestone.id,
            transfer_id=release.reference,
            seller_amount=release.net_amount,
            platform_fee=release.platform_fee,
        )

    def dispute_milestone(self, milestone_id: str, actor_id: str, reason: str) -> ServiceResult:
        """Reject a milestone by opening a dispute on its order"""
        if not reason or not reason.strip():
            return fail(ErrorCode.VALIDATION, "Dispute reason is required")

        try:
            milestone = self.session.get(OrderMilestone, milestone_id)
            if not milestone:
                return not_found("Milestone")
            order = milestone.order
            role = resolve_order_role(self.session, order, actor_id)
            if role not in (OrderRole.BUYER, OrderRole.SELLER):
                return fail(ErrorCode.UNAUTHORIZED, "Not authorized to dispute this milestone")
            if milestone.status == MilestoneStatus.PAID.value:
                return fail(ErrorCode.INVALID_TRANSITION, "Cannot dispute a milestone that has already been paid")
            if not MilestoneStateMachine.can_transition(milestone.status, MilestoneStatus.REJECTED):
                return fail(
                    ErrorCode.INVALID_TRANSITION,
                    f"Cannot dispute milestone with status '{milestone.status}'",
                )
        except SQLAlchemyError as e:
            logger.error(f"❌ MILESTONE_DISPUTE_FAILED: {milestone_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        dispute_result = self.dispute_service.create_dispute(
            actor_id,
            CreateDisputeParams(
                order_id=order.id,
                reason=f"Milestone dispute: {milestone.title}\n\n{reason.strip()}",
            ),
        )
        if not dispute_result.success:
            return dispute_result

        try:
            milestone.status = MilestoneStatus.REJECTED.value
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ MILESTONE_REJECT_FAILED: {milestone_id} dispute={dispute_result.data.id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        self.history.log_order_event(
            order.id,
            OrderEventType.MILESTONE_REJECTED,
            {"milestone_id": milestone.id, "title": milestone.title, "dispute_id": dispute_result.data.id},
            actor_id=actor_id,
        )
        self.notifications.send_notification(
            counterparty_user_id(self.session, order, actor_id),
            "milestone_disputed",
            "Milestone Disputed",
            f'Milestone "{milestone.title}" has been disputed: {reason.strip()}',
            link=Config.dispute_link(dispute_result.data.id),
            metadata={"order_id": order.id, "milestone_id": milestone.id,
                      "dispute_id": dispute_result.data.id},
        )
        commit = self._commit(milestone, f"milestone {milestone.id} rejected")
        return commit if not commit.success else ok(dispute_result.data)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _revert_approval(self, milestone: OrderMilestone, error: Optional[str]):
        milestone.status = MilestoneStatus.SUBMITTED.value
        milestone.approved_at = None
        self.session.commit()
        logger.warning(f"↩️ MILESTONE_APPROVAL_REVERTED: {milestone.id} release failed: {error}")

    def _commit(self, milestone: OrderMilestone, description: str) -> ServiceResult:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ MILESTONE_COMMIT_FAILED: {description}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)
        logger.info(f"✅ MILESTONE_UPDATED: {description}")
        return ok(milestone)


def _approval_error(milestone_id: str, error_code: ErrorCode, error: str) -> MilestoneApprovalResult:
    return MilestoneApprovalResult(
        success=False, milestone_id=milestone_id, error=error, error_code=error_code
    )

"""
Dispute Service
===============

Dispute lifecycle for orders: raising, review pipeline, evidence, admin
assignment and financial resolution.

Resolution runs as a saga. The refund executes first and aborts the whole
resolution if it fails. The release follows; a failed release is recorded
on its step row, logged and escalated to admins, but the completed refund
stays in place. Every step row is committed before and after its provider
call so operators can see exactly how far a resolution got.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Tuple, Union

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Dispute, DisputeEvent, DisputeEventType, DisputeResolutionStep, DisputeStatus,
    EscrowStatus, Order, OrderEventType, OrderRole, OrderStatus, ResolutionStepStatus,
)
from services.escrow_service import EscrowService
from services.notification_service import NotificationService
from services.order_history import OrderHistoryService
from services.order_parties import (
    counterparty_user_id, get_provider_profile_ids, get_seller_user_id, is_admin,
    resolve_order_role,
)
from utils.entity_state_machines import DisputeStateMachine
from utils.fee_calculator import FeeCalculator
from utils.helpers import truncate_text, utc_now
from utils.order_state_machine import OrderStateMachine
from utils.service_results import (
    DATABASE_ERROR_MESSAGE, ErrorCode, ServiceResult, fail, not_found, ok,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

DISPUTABLE_ORDER_STATUSES = frozenset({
    OrderStatus.ACCEPTED.value,
    OrderStatus.IN_PROGRESS.value,
    OrderStatus.COMPLETED.value,
})


@dataclass
class CreateDisputeParams:
    order_id: str
    reason: str
    evidence_urls: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.reason = (self.reason or "").strip()
        if not self.reason:
            raise ValueError("Dispute reason is required")
        self.evidence_urls = [url.strip() for url in self.evidence_urls if url and url.strip()]


@dataclass
class ResolveDisputeParams:
    """
    Financial outcome of a dispute.

    Either an explicit refund amount or buyer/seller percentages of the
    order total. Percentages must lie in [0, 100] and together cannot
    exceed 100.
    """

    resolution: str
    resolution_amount: Optional[Decimal] = None
    buyer_refund_percent: Optional[Decimal] = None
    seller_payment_percent: Optional[Decimal] = None

    def __post_init__(self):
        self.resolution = (self.resolution or "").strip()
        if not self.resolution:
            raise ValueError("Resolution description is required")

        if (
            self.resolution_amount is None
            and self.buyer_refund_percent is None
            and self.seller_payment_percent is None
        ):
            raise ValueError("Resolution must specify a refund amount or a buyer/seller split")

        if self.resolution_amount is not None:
            self.resolution_amount = FeeCalculator.quantize(self.resolution_amount)
            if self.resolution_amount < ZERO:
                raise ValueError("Resolution amount cannot be negative")

        for name in ("buyer_refund_percent", "seller_payment_percent"):
            value = getattr(self, name)
            if value is None:
                continue
            percent = FeeCalculator.to_decimal(value)
            if percent < ZERO or percent > HUNDRED:
                raise ValueError(f"{name.replace('_', ' ').capitalize()} must be between 0 and 100")
            setattr(self, name, percent)

        if (
            self.buyer_refund_percent is not None
            and self.seller_payment_percent is not None
            and self.buyer_refund_percent + self.seller_payment_percent > HUNDRED
        ):
            raise ValueError("Buyer refund and seller payment percentages cannot exceed 100 combined")


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution operation"""

    success: bool
    dispute_id: str
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    buyer_refund_amount: Decimal = ZERO
    seller_payment_amount: Decimal = ZERO
    refund_id: Optional[str] = None
    transfer_id: Optional[str] = None
    order_status: Optional[str] = None
    escrow_status: Optional[str] = None
    requires_manual_review: bool = False


class AutoResolutionCheck(NamedTuple):
    """Advisory outcome of the auto-resolution heuristics"""

    dispute_id: str
    should_auto_resolve: bool
    buyer_refund_percent: Optional[int] = None
    reason: Optional[str] = None
    resolution: Optional[str] = None


class DisputeDetails(NamedTuple):
    dispute: Dispute
    order: Order
    events: List[DisputeEvent]


class DisputeListResult(NamedTuple):
    disputes: List[Dispute]
    total: int
    error: Optional[str] = None


class DisputeStats(NamedTuple):
    total: int
    open: int
    resolved: int
    average_resolution_days: int
    by_status: Dict[str, int]


def derive_resolution_outcome(
    params: ResolveDisputeParams, order_total: Decimal, refund_amount: Decimal
) -> Tuple[OrderStatus, EscrowStatus]:
    """
    Order and escrow status after a resolution.

    Full refund cancels the order. No refund (or full seller payment)
    completes it with funds released. A split completes it with escrow
    marked refunded, since the buyer received money back.
    """
    if params.buyer_refund_percent == HUNDRED or (refund_amount > ZERO and refund_amount >= order_total):
        return OrderStatus.CANCELLED, EscrowStatus.REFUNDED
    if params.seller_payment_percent == HUNDRED or refund_amount == ZERO:
        return OrderStatus.COMPLETED, EscrowStatus.RELEASED
    return OrderStatus.COMPLETED, EscrowStatus.REFUNDED


class DisputeService:
    """Dispute operations for one request's session"""

    def __init__(
        self,
        session: Session,
        escrow_service: Optional[EscrowService] = None,
        notifications: Optional[NotificationService] = None,
        history: Optional[OrderHistoryService] = None,
    ):
        self.session = session
        self.escrow_service = escrow_service
        self.notifications = notifications or NotificationService(session)
        self.history = history or OrderHistoryService(session)

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create_dispute(self, user_id: str, params: CreateDisputeParams) -> ServiceResult:
        try:
            order = self.session.get(Order, params.order_id)
            if not order:
                return not_found("Order")

            role = resolve_order_role(self.session, order, user_id)
            if role is None or role is OrderRole.ADMIN:
                return fail(ErrorCode.UNAUTHORIZED, "Only order participants can raise disputes")

            if self._active_dispute(order.id):
                return fail(ErrorCode.VALIDATION, "An active dispute already exists for this order")

            if order.status not in DISPUTABLE_ORDER_STATUSES:
                return fail(ErrorCode.INVALID_TRANSITION, f"Cannot dispute orders with status: {order.status}")

            dispute = Dispute(
                order_id=order.id,
                raised_by=user_id,
                reason=params.reason,
                evidence_urls=list(params.evidence_urls),
                status=DisputeStatus.OPEN.value,
            )
            self.session.add(dispute)

            from_status = order.status
            if OrderStateMachine.can_transition(order.status, OrderStatus.DISPUTED):
                order.status = OrderStatus.DISPUTED.value
            else:
                logger.info(
                    f"ℹ️ DISPUTE_ORDER_STATUS_KEPT: order {order.id} stays {order.status} while disputed"
                )
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ DISPUTE_CREATE_FAILED: order {params.order_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        self.history.log_dispute_event(
            dispute.id,
            DisputeEventType.DISPUTE_CREATED,
            f"Dispute raised: {truncate_text(params.reason, 200)}",
            actor_id=user_id,
            metadata={"reason": params.reason, "evidence_count": len(params.evidence_urls)},
        )
        self.history.log_order_event(
            order.id,
            OrderEventType.DISPUTED,
            {"dispute_id": dispute.id, "from_status": from_status, "to_status": order.status},
            actor_id=user_id,
        )
        self.notifications.send_notification(
            counterparty_user_id(self.session, order, user_id),
            "dispute_opened",
            "Dispute Opened",
            f"A dispute has been raised on order {order.order_number}. Please respond with your side.",
            link=Config.dispute_link(dispute.id),
            metadata={"order_id": order.id, "dispute_id": dispute.id},
        )

        result = self._commit(f"dispute {dispute.id} opened on order {order.id}")
        return result if not result.success else ok(dispute)

    def get_dispute(self, dispute_id: str, user_id: Optional[str] = None) -> ServiceResult:
        try:
            dispute = self.session.get(Dispute, dispute_id)
            if not dispute:
                return not_found("Dispute")
            order = dispute.order
            if user_id is not None and resolve_order_role(self.session, order, user_id) is None:
                return fail(ErrorCode.UNAUTHORIZED, "Not authorized to view this dispute")
            events = self.session.scalars(
                select(DisputeEvent)
                .where(DisputeEvent.dispute_id == dispute_id)
                .order_by(DisputeEvent.created_at, DisputeEvent.id)
            ).all()
            return ok(DisputeDetails(dispute=dispute, order=order, events=list(events)))
        except SQLAlchemyError as e:
            logger.error(f"❌ DISPUTE_FETCH_FAILED: {dispute_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

    def get_user_disputes(
        self,
        user_id: str,
        status: Optional[Union[DisputeStatus, str]] = None,
        limit: int = Config.ORDER_LIST_DEFAULT_LIMIT,
        offset: int = 0,
    ) -> DisputeListResult:
        """Disputes on orders where the user is buyer or seller, newest first"""
        status_value = None
        if status is not None:
            coerced = DisputeStateMachine.coerce(status)
            if coerced is None:
                return DisputeListResult(disputes=[], total=0, error=f"Invalid status filter: {status}")
            status_value = coerced.value

        try:
            provider_ids = get_provider_profile_ids(self.session, user_id)
            party_filter = Order.buyer_id == user_id
            if provider_ids:
                party_filter = or_(party_filter, Order.seller_id.in_(provider_ids))

            stmt = select(Dispute).join(Order, Dispute.order_id == Order.id).where(party_filter)
            if status_value:
                stmt = stmt.where(Dispute.status == status_value)

            total = self.session.scalar(select(func.count()).select_from(stmt.subquery()))
            disputes = self.session.scalars(
                stmt.order_by(Dispute.created_at.desc(), Dispute.id).offset(offset).limit(limit)
            ).all()
            return DisputeListResult(disputes=list(disputes), total=total or 0)
        except SQLAlchemyError as e:
            logger.error(f"❌ DISPUTE_LIST_FAILED: user {user_id}: {e}")
            return DisputeListResult(disputes=[], total=0, error=DATABASE_ERROR_MESSAGE)

    def get_dispute_stats(self) -> ServiceResult:
        try:
            disputes = self.session.scalars(select(Dispute)).all()
        except SQLAlchemyError as e:
            logger.error(f"❌ DISPUTE_STATS_FAILED: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        by_status = {status.value: 0 for status in DisputeStatus}
        resolution_days = []
        for dispute in disputes:
            by_status[dispute.status] = by_status.get(dispute.status, 0) + 1
            if dispute.status == DisputeStatus.RESOLVED.value and dispute.resolved_at:
                resolution_days.append((dispute.resolved_at - dispute.created_at).days)

        open_count = sum(by_status[s.value] for s in DisputeStateMachine.OPEN_STATES)
        average = (
            int((Decimal(sum(resolution_days)) / len(resolution_days)).to_integral_value())
            if resolution_days else 0
        )
        return ok(DisputeStats(
            total=len(disputes),
            open=open_count,
            resolved=by_status[DisputeStatus.RESOLVED.value],
            average_resolution_days=average,
            by_status=by_status,
        ))

    # ------------------------------------------------------------------
    # Review pipeline
    # ------------------------------------------------------------------

    def update_dispute_status(
        self,
        dispute_id: str,
        new_status: Union[DisputeStatus, str],
        actor_id: str,
        notes: Optional[str] = None,
    ) -> ServiceResult:
        target = DisputeStateMachine.coerce(new_status)
        if target is None:
            return fail(ErrorCode.VALIDATION, f"Invalid dispute status: {new_status}")
        if target is DisputeStatus.RESOLVED:
            return fail(ErrorCode.VALIDATION, "Disputes are resolved through resolve_dispute with a financial outcome")

        try:
            dispute = self.session.get(Dispute, dispute_id)
            if not dispute:
                return not_found("Dispute")

            role = resolve_order_role(self.session, dispute.order, actor_id)
            if role is None:
                return fail(ErrorCode.UNAUTHORIZED, "Not authorized to update this dispute")
            if role is not OrderRole.ADMIN and not (
                target is DisputeStatus.CANCELLED and dispute.raised_by == actor_id
            ):
                return fail(ErrorCode.UNAUTHORIZED, "Only administrators can move a dispute through review")

            is_valid, message = DisputeStateMachine.validate_transition(dispute.status, target, dispute.id)
            if not is_valid:
                return fail(ErrorCode.INVALID_TRANSITION, message)

            from_status = dispute.status
            dispute.status = target.value

            # A withdrawn dispute hands a disputed order back to the seller
            order = dispute.order
            order_reopened = (
                target is DisputeStatus.CANCELLED
                and order.status == OrderStatus.DISPUTED.value
                and self._active_dispute(order.id) is None
            )
            if order_reopened:
                order.status = OrderStatus.IN_PROGRESS.value
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ DISPUTE_STATUS_UPDATE_FAILED: {dispute_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        if order_reopened:
            self.history.log_order_event(
                order.id,
                OrderEventType.STARTED,
                {"from_status": OrderStatus.DISPUTED.value, "to_status": order.status,
                 "reason": "Dispute withdrawn", "dispute_id": dispute.id},
                actor_id=actor_id,
            )

        self.history.log_dispute_event(
            dispute.id,
            DisputeEventType.STATUS_CHANGED,
            notes or f"Status changed from {from_status} to {target.value}",
            actor_id=actor_id,
            metadata={"from_status": from_status, "to_status": target.value},
        )
        result = self._commit(f"dispute {dispute.id} {from_status} → {target.value}")
        return result if not result.success else ok(dispute)

    def assign_dispute(self, dispute_id: str, admin_id: str, assigned_by: str) -> ServiceResult:
        try:
            dispute = self.session.get(Dispute, dispute_id)
            if not dispute:
                return not_found("Dispute")
            if not is_admin(self.session, admin_id):
                return fail(ErrorCode.NOT_FOUND, "Admin user not found")
            if not is_admin(self.session, assigned_by):
                return fail(ErrorCode.UNAUTHORIZED, "Only administrators can assign disputes")
            if DisputeStateMachine.is_terminal_state(dispute.status):
                return fail(ErrorCode.INVALID_TRANSITION, f"Cannot assign a {dispute.status} dispute")

            from_status = dispute.status
            dispute.assigned_to = admin_id
            if dispute.status == DisputeStatus.OPEN.value:
                dispute.status = DisputeStatus.UNDER_REVIEW.value
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ DISPUTE_ASSIGN_FAILED: {dispute_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        self.history.log_dispute_event(
            dispute.id,
            DisputeEventType.ASSIGNED,
            "Dispute assigned for review",
            actor_id=assigned_by,
            metadata={"assigned_to": admin_id, "from_status": from_status, "to_status": dispute.status},
        )
        self.notifications.send_notification(
            admin_id,
            "dispute_assigned",
            "Dispute Assigned",
            "A dispute has been assigned to you for review.",
            link=Config.dispute_link(dispute.id),
            metadata={"dispute_id": dispute.id},
        )
        result = self._commit(f"dispute {dispute.id} assigned to {admin_id}")
        return result if not result.success else ok(dispute)

    def add_dispute_evidence(
        self,
        dispute_id: str,
        user_id: str,
        evidence_urls: List[str],
        description: Optional[str] = None,
    ) -> ServiceResult:
        urls = [url.strip() for url in evidence_urls or [] if url and url.strip()]
        if not urls:
            return fail(ErrorCode.VALIDATION, "At least one evidence URL is required")

        try:
            dispute = self.session.get(Dispute, dispute_id)
            if not dispute:
                return not_found("Dispute")
            role = resolve_order_role(self.session, dispute.order, user_id)
            if role is None or role is OrderRole.ADMIN:
                return fail(ErrorCode.UNAUTHORIZED, "Not authorized to add evidence")
            if DisputeStateMachine.coerce(dispute.status) not in DisputeStateMachine.EVIDENCE_STATES:
                return fail(ErrorCode.INVALID_TRANSITION, "Cannot add evidence in current status")

            dispute.evidence_urls = list(dispute.evidence_urls or []) + urls
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ DISPUTE_EVIDENCE_FAILED: {dispute_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        self.history.log_dispute_event(
            dispute.id,
            DisputeEventType.EVIDENCE_ADDED,
            description or f"{len(urls)} evidence item(s) added",
            actor_id=user_id,
            metadata={"evidence_urls": urls, "evidence_count": len(dispute.evidence_urls)},
        )
        result = self._commit(f"evidence added to dispute {dispute.id}")
        return result if not result.success else ok(dispute)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_dispute(
        self, dispute_id: str, resolver_id: str, params: ResolveDisputeParams
    ) -> ResolutionResult:
        """
        Execute a dispute's financial outcome, then close it.

        Refund first; a failed refund aborts with no dispute or order change.
        Release second, bounded by the remaining escrow balance; a failed
        release leaves the refund in place and flags the result for manual
        review.
        """
        try:
            dispute = self.session.get(Dispute, dispute_id)
            if not dispute:
                return _resolution_error(dispute_id, ErrorCode.NOT_FOUND, "Dispute not found")
            if not is_admin(self.session, resolver_id):
                return _resolution_error(dispute_id, ErrorCode.UNAUTHORIZED, "Only administrators can resolve disputes")
            if DisputeStateMachine.coerce(dispute.status) not in DisputeStateMachine.RESOLVABLE_STATES:
                return _resolution_error(
                    dispute_id, ErrorCode.INVALID_TRANSITION,
                    f"Cannot resolve dispute in {dispute.status} status",
                )

            order = dispute.order
            try:
                split = FeeCalculator.calculate_resolution_split(
                    order.total_amount,
                    resolution_amount=params.resolution_amount,
                    buyer_refund_percent=params.buyer_refund_percent,
                    seller_payment_percent=params.seller_payment_percent,
                )
            except ValueError as e:
                return _resolution_error(dispute_id, ErrorCode.VALIDATION, str(e))

            refund_amount = split.buyer_refund_amount
            seller_amount = split.seller_payment_amount

            if refund_amount > ZERO:
                if order.escrow_status == EscrowStatus.RELEASED.value:
                    logger.warning(
                        f"🚨 RESOLUTION_BLOCKED: dispute {dispute.id} refund {refund_amount} "
                        f"requested but order {order.id} escrow already released"
                    )
                    return _resolution_error(
                        dispute_id, ErrorCode.VALIDATION,
                        "Cannot refund - funds have already been released to the seller. "
                        "Manual intervention required.",
                    )
                if not order.stripe_payment_intent_id:
                    return _resolution_error(
                        dispute_id, ErrorCode.VALIDATION,
                        "Cannot refund - no payment intent found for this order.",
                    )

            target_status, target_escrow = derive_resolution_outcome(
                params, order.total_amount, refund_amount
            )
            status_path = OrderStateMachine.find_transition_path(order.status, target_status)
            if status_path is None:
                logger.warning(
                    f"⚠️ RESOLUTION_BLOCKED: dispute {dispute.id} order {order.id} cannot move "
                    f"{order.status} → {target_status.value}"
                )
                return _resolution_error(
                    dispute_id, ErrorCode.INVALID_TRANSITION,
                    f"Cannot resolve dispute - order in {order.status} status cannot become "
                    f"{target_status.value}. Manual intervention required.",
                )

            needs_payments = refund_amount > ZERO or (
                seller_amount > ZERO and order.escrow_status != EscrowStatus.RELEASED.value
            )
            if needs_payments and not self.escrow_service:
                return _resolution_error(dispute_id, ErrorCode.EXTERNAL_FAILURE, "Payment service unavailable")

            if refund_amount > ZERO:
                available = self.escrow_service.get_escrow_balance(order.id).balance
                if refund_amount > available:
                    logger.warning(
                        f"🚨 RESOLUTION_BLOCKED: dispute {dispute.id} refund {refund_amount} "
                        f"exceeds escrow balance {available} on order {order.id}"
                    )
                    return _resolution_error(
                        dispute_id, ErrorCode.VALIDATION,
                        f"Cannot refund {refund_amount} - only {available} remains in escrow. "
                        "Manual intervention required.",
                    )

            refund_id = None
            if refund_amount > ZERO:
                step = self._start_step(dispute, "refund", refund_amount)
                refund = self.escrow_service.process_refund(
                    order, refund_amount, reason=f"Dispute resolution {dispute.id}"
                )
                if not refund.success:
                    self._finish_step(step, ResolutionStepStatus.FAILED, error=refund.error)
                    logger.error(f"❌ RESOLUTION_REFUND_FAILED: dispute {dispute.id}: {refund.error}")
                    return _resolution_error(
                        dispute_id, ErrorCode.EXTERNAL_FAILURE, f"Failed to process refund: {refund.error}"
                    )
                refund_id = refund.reference
                self._finish_step(step, ResolutionStepStatus.COMPLETED, reference=refund_id)

            transfer_id = None
            release_error = None
            if seller_amount > ZERO and order.escrow_status != EscrowStatus.RELEASED.value:
                available = self.escrow_service.get_escrow_balance(order.id).balance
                release_amount = min(seller_amount, available)
                if release_amount > ZERO:
                    step = self._start_step(dispute, "release", release_amount)
                    release = self.escrow_service.release_escrow(order, release_amount)
                    if release.success:
                        transfer_id = release.reference
                        self._finish_step(step, ResolutionStepStatus.COMPLETED, reference=transfer_id)
                    else:
                        release_error = release.error
                        self._finish_step(step, ResolutionStepStatus.FAILED, error=release_error)
                else:
                    step = self._start_step(dispute, "release", seller_amount)
                    self._finish_step(step, ResolutionStepStatus.SKIPPED, error="No escrow balance available")
                    logger.warning(
                        f"⚠️ RESOLUTION_RELEASE_SKIPPED: dispute {dispute.id} seller amount "
                        f"{seller_amount} but escrow balance is {available}"
                    )

            from_order_status = order.status
            dispute.status = DisputeStatus.RESOLVED.value
            dispute.resolution = params.resolution
            dispute.resolution_amount = refund_amount if refund_amount > ZERO else None
            dispute.resolved_at = utc_now()

            # Status and escrow settle together
            order.status = target_status.value
            order.escrow_status = target_escrow.value
            if target_status is OrderStatus.COMPLETED and not order.completed_at:
                order.completed_at = utc_now()
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.critical(f"🚨 DISPUTE_RESOLUTION_DB_FAILURE: dispute {dispute_id}: {e}")
            return _resolution_error(dispute_id, ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        payment_details = {"refund_id": refund_id, "transfer_id": transfer_id}
        if release_error:
            self._escalate_release_failure(dispute, order, seller_amount, release_error, resolver_id)

        self.history.log_dispute_event(
            dispute.id,
            DisputeEventType.RESOLVED,
            f"Dispute resolved: {truncate_text(params.resolution, 200)}",
            actor_id=resolver_id,
            metadata={
                "buyer_refund_amount": str(refund_amount),
                "seller_payment_amount": str(seller_amount),
                "buyer_refund_percent": params.buyer_refund_percent,
                "seller_payment_percent": params.seller_payment_percent,
                **payment_details,
            },
        )
        self.history.log_order_event(
            order.id,
            OrderEventType.DISPUTE_RESOLVED,
            {"dispute_id": dispute.id, "from_status": from_order_status, "to_status": order.status,
             "escrow_status": order.escrow_status, "via": [s.value for s in status_path[:-1]]},
            actor_id=resolver_id,
        )
        if refund_id:
            self.history.log_order_event(
                order.id, OrderEventType.REFUNDED,
                {"amount": str(refund_amount), "refund_id": refund_id}, actor_id=resolver_id,
            )
        if transfer_id:
            self.history.log_order_event(
                order.id, OrderEventType.PAYMENT_RELEASED, {"transfer_id": transfer_id},
                actor_id=resolver_id,
            )

        for user_id in (order.buyer_id, get_seller_user_id(self.session, order)):
            self.notifications.send_notification(
                user_id,
                "dispute_resolved",
                "Dispute Resolved",
                f"The dispute on order {order.order_number} has been resolved: "
                f"{truncate_text(params.resolution, 200)}",
                link=Config.dispute_link(dispute.id),
                metadata={"dispute_id": dispute.id, "order_id": order.id, **payment_details},
            )

        commit = self._commit(f"dispute {dispute.id} resolved")
        if not commit.success:
            return _resolution_error(dispute_id, ErrorCode.DATABASE, commit.error)

        logger.info(
            f"✅ DISPUTE_RESOLVED: {dispute.id} refund={refund_amount} seller={seller_amount} "
            f"order={order.status}/{order.escrow_status}"
        )
        return ResolutionResult(
            success=True,
            dispute_id=dispute.id,
            buyer_refund_amount=refund_amount,
            seller_payment_amount=seller_amount,
            refund_id=refund_id,
            transfer_id=transfer_id,
            order_status=order.status,
            escrow_status=order.escrow_status,
            requires_manual_review=release_error is not None,
        )

    # ------------------------------------------------------------------
    # Auto-resolution heuristics (advisory, read-only)
    # ------------------------------------------------------------------

    def check_auto_resolution(self, dispute_id: str, now: Optional[datetime] = None) -> ServiceResult:
        """
        Suggest an automatic outcome for a stalled dispute.

        Seller silence past the response window favours the buyer; a dispute
        with neither evidence nor a substantive reason favours the seller.
        Nothing is changed; a scheduler or admin decides what to do with it.
        """
        try:
            dispute = self.session.get(Dispute, dispute_id)
            if not dispute:
                return not_found("Dispute")
            return ok(self._evaluate_auto_resolution(dispute, now or utc_now()))
        except SQLAlchemyError as e:
            logger.error(f"❌ AUTO_RESOLUTION_CHECK_FAILED: {dispute_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

    def find_auto_resolution_candidates(self, now: Optional[datetime] = None) -> ServiceResult:
        """Checks for every non-terminal dispute that qualifies for auto-resolution"""
        now = now or utc_now()
        active = [s.value for s in DisputeStatus if not DisputeStateMachine.is_terminal_state(s)]
        try:
            disputes = self.session.scalars(
                select(Dispute).where(Dispute.status.in_(active)).order_by(Dispute.created_at)
            ).all()
            checks = [self._evaluate_auto_resolution(d, now) for d in disputes]
        except SQLAlchemyError as e:
            logger.error(f"❌ AUTO_RESOLUTION_SCAN_FAILED: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)
        return ok([check for check in checks if check.should_auto_resolve])

    def _evaluate_auto_resolution(self, dispute: Dispute, now: datetime) -> AutoResolutionCheck:
        if DisputeStateMachine.is_terminal_state(dispute.status):
            return AutoResolutionCheck(dispute_id=dispute.id, should_auto_resolve=False)

        days_open = (now - dispute.created_at).days
        seller_user_id = get_seller_user_id(self.session, dispute.order)
        if seller_user_id and days_open >= Config.DISPUTE_SELLER_RESPONSE_DAYS:
            seller_events = self.session.scalar(
                select(func.count(DisputeEvent.id)).where(
                    DisputeEvent.dispute_id == dispute.id,
                    DisputeEvent.actor_id == seller_user_id,
                )
            )
            if not seller_events:
                return AutoResolutionCheck(
                    dispute_id=dispute.id,
                    should_auto_resolve=True,
                    buyer_refund_percent=100,
                    reason="seller_no_response",
                    resolution=(
                        "Auto-resolved: Seller did not respond within "
                        f"{Config.DISPUTE_SELLER_RESPONSE_DAYS} days"
                    ),
                )

        evidence_count = len(dispute.evidence_urls or [])
        if (
            evidence_count < Config.DISPUTE_MIN_EVIDENCE_ITEMS
            and len(dispute.reason or "") < Config.DISPUTE_MIN_REASON_LENGTH
        ):
            return AutoResolutionCheck(
                dispute_id=dispute.id,
                should_auto_resolve=True,
                buyer_refund_percent=0,
                reason="insufficient_evidence",
                resolution="Auto-resolved: Insufficient evidence and description provided",
            )

        return AutoResolutionCheck(dispute_id=dispute.id, should_auto_resolve=False)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _active_dispute(self, order_id: str) -> Optional[Dispute]:
        disputes = self.session.scalars(select(Dispute).where(Dispute.order_id == order_id)).all()
        return next((d for d in disputes if DisputeStateMachine.is_active(d.status)), None)

    def _start_step(self, dispute: Dispute, step_name: str, amount: Decimal) -> DisputeResolutionStep:
        step = DisputeResolutionStep(
            dispute_id=dispute.id,
            step_name=step_name,
            status=ResolutionStepStatus.PENDING.value,
            amount=amount,
        )
        self.session.add(step)
        self.session.commit()
        logger.info(f"🔄 RESOLUTION_STEP_STARTED: dispute {dispute.id} {step_name} amount={amount}")
        return step

    def _finish_step(self, step: DisputeResolutionStep, status: ResolutionStepStatus,
                     reference: Optional[str] = None, error: Optional[str] = None):
        step.status = status.value
        step.provider_reference = reference
        step.error_message = error
        step.completed_at = utc_now()
        self.session.commit()
        log = logger.info if status is ResolutionStepStatus.COMPLETED else logger.warning
        log(f"RESOLUTION_STEP_{status.value.upper()}: dispute {step.dispute_id} {step.step_name}"
            + (f" error={error}" if error else ""))

    def _escalate_release_failure(self, dispute: Dispute, order: Order, seller_amount: Decimal,
                                  error: str, resolver_id: str):
        logger.critical(
            f"🚨 RESOLUTION_PARTIAL: dispute {dispute.id} refund done but release of "
            f"{seller_amount} failed: {error}"
        )
        self.history.log_dispute_event(
            dispute.id,
            DisputeEventType.RELEASE_FAILED,
            f"Release of {seller_amount} {order.currency} to seller failed: {error}",
            actor_id=resolver_id,
            metadata={"seller_payment_amount": str(seller_amount), "error": error},
        )
        self.notifications.notify_admins(
            "dispute_release_failed",
            "Manual Intervention Required",
            f"Dispute {dispute.id} on order {order.order_number} was resolved but the "
            f"seller release of {seller_amount} {order.currency} failed: {error}",
            link=Config.dispute_link(dispute.id),
            metadata={"dispute_id": dispute.id, "order_id": order.id},
        )

    def _commit(self, description: str) -> ServiceResult:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ DISPUTE_COMMIT_FAILED: {description}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)
        logger.info(f"✅ DISPUTE_UPDATED: {description}")
        return ok()


def _resolution_error(dispute_id: str, error_code: ErrorCode, error: str) -> ResolutionResult:
    return ResolutionResult(success=False, dispute_id=dispute_id, error=error, error_code=error_code)

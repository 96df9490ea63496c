"""
Order Service
=============

Creates orders and moves them through their lifecycle. Every mutation reads
the order, validates the move against the order status machine, writes,
appends to the audit log and notifies the other party.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, List, NamedTuple, Optional, Sequence, Union

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Dispute, EscrowStatus, Order, OrderEventType, OrderMilestone, OrderRole, OrderStatus,
    OrderType, Profile, ProviderProfile,
)
from services.escrow_service import EscrowService
from services.milestone_service import MilestoneInput, milestone_total_error
from services.notification_service import NotificationService
from services.order_history import OrderHistoryService
from services.order_parties import (
    counterparty_user_id, get_provider_profile_ids, get_seller_user_id, resolve_order_role,
)
from utils.entity_state_machines import DisputeStateMachine
from utils.fee_calculator import FeeCalculator
from utils.helpers import generate_order_number, utc_now
from utils.order_state_machine import OrderStateMachine, coerce_status
from utils.service_results import (
    DATABASE_ERROR_MESSAGE, ErrorCode, ServiceResult, fail, not_found, ok,
)

logger = logging.getLogger(__name__)

# Audit event recorded for each target status
STATUS_EVENT_TYPES = {
    OrderStatus.ACCEPTED: OrderEventType.ACCEPTED,
    OrderStatus.IN_PROGRESS: OrderEventType.STARTED,
    OrderStatus.COMPLETED: OrderEventType.COMPLETED,
    OrderStatus.DISPUTED: OrderEventType.DISPUTED,
    OrderStatus.CANCELLED: OrderEventType.CANCELLED,
}

# Produces invoices for a completed order and returns per-document error strings
InvoiceGenerator = Callable[[Order], Sequence[str]]


@dataclass
class CreateOrderParams:
    """Buyer input for a new order"""

    seller_id: str
    total_amount: Decimal
    order_type: Union[OrderType, str] = OrderType.SERVICE
    currency: Optional[str] = None
    listing_id: Optional[str] = None
    milestones: List[MilestoneInput] = field(default_factory=list)

    def __post_init__(self):
        if not self.seller_id:
            raise ValueError("Seller is required")

        self.total_amount = FeeCalculator.quantize(self.total_amount)
        if self.total_amount <= 0:
            raise ValueError("Order total must be greater than 0")

        try:
            self.order_type = OrderType(getattr(self.order_type, "value", self.order_type))
        except ValueError:
            raise ValueError(f"Invalid order type: {self.order_type}")

        self.currency = (self.currency or Config.DEFAULT_CURRENCY).upper()
        if self.currency not in Config.SUPPORTED_CURRENCIES:
            raise ValueError(f"Unsupported currency: {self.currency}")

        self.milestones = [
            m if isinstance(m, MilestoneInput) else MilestoneInput(**m) for m in self.milestones
        ]
        if self.milestones:
            mismatch = milestone_total_error(self.milestones, self.total_amount)
            if mismatch:
                raise ValueError(mismatch)


@dataclass
class OrderFilters:
    """Listing filters for get_orders"""

    role: Optional[Union[OrderRole, str]] = None
    status: Optional[Union[OrderStatus, str, Sequence[Union[OrderStatus, str]]]] = None
    search: Optional[str] = None
    limit: int = Config.ORDER_LIST_DEFAULT_LIMIT
    offset: int = 0

    def __post_init__(self):
        if self.role is not None:
            role_value = getattr(self.role, "value", self.role)
            if role_value not in (OrderRole.BUYER.value, OrderRole.SELLER.value):
                raise ValueError(f"Invalid role filter: {role_value}")
            self.role = OrderRole(role_value)
        if self.limit <= 0:
            raise ValueError("Limit must be positive")
        if self.offset < 0:
            raise ValueError("Offset cannot be negative")

    def statuses(self) -> List[str]:
        if self.status is None:
            return []
        raw = [self.status] if isinstance(self.status, (str, OrderStatus)) else list(self.status)
        statuses = []
        for value in raw:
            status = coerce_status(value)
            if status is None:
                raise ValueError(f"Invalid status filter: {value}")
            statuses.append(status.value)
        return statuses


class OrderDetails(NamedTuple):
    """An order with the records shown alongside it"""

    order: Order
    milestones: List[OrderMilestone]
    active_dispute: Optional[Dispute]
    buyer: Optional[Profile]
    seller: Optional[ProviderProfile]


class CompletionDetails(NamedTuple):
    order: Order
    invoice_errors: List[str]
    transfer_id: Optional[str] = None


class OrderListResult(NamedTuple):
    """Page of orders plus the total number matching the filters"""

    orders: List[Order]
    count: int
    error: Optional[str] = None


class OrderService:
    """Order lifecycle operations for one request's session"""

    def __init__(
        self,
        session: Session,
        escrow_service: Optional[EscrowService] = None,
        notifications: Optional[NotificationService] = None,
        history: Optional[OrderHistoryService] = None,
        invoice_generator: Optional[InvoiceGenerator] = None,
    ):
        self.session = session
        self.escrow_service = escrow_service
        self.notifications = notifications or NotificationService(session)
        self.history = history or OrderHistoryService(session)
        self.invoice_generator = invoice_generator

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create_order(self, buyer_id: str, params: CreateOrderParams) -> ServiceResult:
        """
        Create a pending order with VAT and platform fee computed from the total.

        Milestones are inserted after the order is committed. A failure there
        is logged and reported as a warning; the order stands.
        """
        try:
            if not self.session.get(Profile, buyer_id):
                return not_found("Buyer")
            seller = self.session.get(ProviderProfile, params.seller_id)
            if not seller:
                return not_found("Seller")
            if seller.user_id == buyer_id:
                return fail(ErrorCode.VALIDATION, "You cannot place an order with yourself")

            pricing = FeeCalculator.calculate_order_pricing(params.total_amount)
            order = Order(
                order_number=generate_order_number(),
                buyer_id=buyer_id,
                seller_id=seller.id,
                listing_id=params.listing_id,
                order_type=params.order_type.value,
                status=OrderStatus.PENDING.value,
                escrow_status=EscrowStatus.PENDING.value,
                total_amount=pricing.total_amount,
                platform_fee=pricing.platform_fee,
                vat_amount=pricing.vat_amount,
                vat_rate=pricing.vat_rate,
                currency=params.currency,
            )
            self.session.add(order)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ ORDER_CREATE_FAILED: buyer {buyer_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        warnings = []
        milestone_count = 0
        if params.milestones:
            try:
                for milestone in params.milestones:
                    self.session.add(milestone.to_model(order.id))
                self.session.commit()
                milestone_count = len(params.milestones)
            except SQLAlchemyError as e:
                self.session.rollback()
                logger.error(f"❌ MILESTONE_INSERT_FAILED: order {order.id}: {e}")
                warnings.append("Order created but milestones could not be saved")

        self.history.log_order_event(
            order.id,
            OrderEventType.CREATED,
            {
                "total_amount": str(order.total_amount),
                "order_type": order.order_type,
                "milestone_count": milestone_count,
            },
            actor_id=buyer_id,
        )
        self.notifications.send_notification(
            seller.user_id,
            "order_created",
            "New Order Received",
            f"You have a new order {order.order_number} for {order.total_amount} {order.currency}.",
            link=Config.order_link(order.id),
            metadata={"order_id": order.id},
        )
        self._commit_side_effects(order.id)

        logger.info(
            f"✅ ORDER_CREATED: {order.order_number} buyer={buyer_id} seller={seller.id} "
            f"total={order.total_amount} vat={order.vat_amount} fee={order.platform_fee}"
        )
        return ok(order, warnings=warnings)

    def get_order(self, order_id: str) -> ServiceResult:
        try:
            order = self.session.get(Order, order_id)
            if not order:
                return not_found("Order")
            milestones = self.session.scalars(
                select(OrderMilestone)
                .where(OrderMilestone.order_id == order_id)
                .order_by(OrderMilestone.created_at)
            ).all()
            return ok(OrderDetails(
                order=order,
                milestones=list(milestones),
                active_dispute=self._active_dispute(order_id),
                buyer=self.session.get(Profile, order.buyer_id),
                seller=self.session.get(ProviderProfile, order.seller_id),
            ))
        except SQLAlchemyError as e:
            logger.error(f"❌ ORDER_FETCH_FAILED: {order_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

    def get_user_role(self, order: Order, user_id: str) -> Optional[OrderRole]:
        return resolve_order_role(self.session, order, user_id)

    def get_orders(self, user_id: str, filters: Optional[OrderFilters] = None) -> OrderListResult:
        """
        Orders visible to a user, newest first.

        A seller filter for a user with no provider profile yields an empty
        page rather than an error.
        """
        filters = filters or OrderFilters()
        try:
            statuses = filters.statuses()
        except ValueError as e:
            return OrderListResult(orders=[], count=0, error=str(e))

        try:
            provider_ids = get_provider_profile_ids(self.session, user_id)

            if filters.role is OrderRole.BUYER:
                scope = Order.buyer_id == user_id
            elif filters.role is OrderRole.SELLER:
                if not provider_ids:
                    return OrderListResult(orders=[], count=0)
                scope = Order.seller_id.in_(provider_ids)
            elif provider_ids:
                scope = or_(Order.buyer_id == user_id, Order.seller_id.in_(provider_ids))
            else:
                scope = Order.buyer_id == user_id

            stmt = select(Order).where(scope)
            if statuses:
                stmt = stmt.where(Order.status.in_(statuses))
            if filters.search:
                stmt = stmt.where(Order.order_number.ilike(f"%{filters.search.strip()}%"))

            count = self.session.scalar(select(func.count()).select_from(stmt.subquery()))
            orders = self.session.scalars(
                stmt.order_by(Order.created_at.desc(), Order.id)
                .offset(filters.offset)
                .limit(filters.limit)
            ).all()
            return OrderListResult(orders=list(orders), count=count or 0)
        except SQLAlchemyError as e:
            logger.error(f"❌ ORDER_LIST_FAILED: user {user_id}: {e}")
            return OrderListResult(orders=[], count=0, error=DATABASE_ERROR_MESSAGE)

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def update_order_status(
        self,
        order_id: str,
        new_status: Union[OrderStatus, str],
        actor_id: str,
        reason: Optional[str] = None,
        event_type: Optional[OrderEventType] = None,
    ) -> ServiceResult:
        target = coerce_status(new_status)
        if target is None:
            return fail(ErrorCode.VALIDATION, f"Invalid status: {new_status}")

        # Terminal statuses settle escrow, so they go through the money-aware paths
        if target is OrderStatus.COMPLETED:
            return self.complete_order(order_id, actor_id)
        if target is OrderStatus.CANCELLED:
            return self.cancel_order(
                order_id, reason or "", actor_id, event_type=event_type or OrderEventType.CANCELLED
            )

        try:
            order = self.session.get(Order, order_id)
            if not order:
                return not_found("Order")
            if resolve_order_role(self.session, order, actor_id) is None:
                return fail(ErrorCode.UNAUTHORIZED, "Not authorized to update this order")

            is_valid, message = OrderStateMachine.validate_transition(order.status, target, order.id)
            if not is_valid:
                return fail(ErrorCode.INVALID_TRANSITION, message)

            from_status = order.status
            self._apply_status(order, target)
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ ORDER_STATUS_UPDATE_FAILED: {order_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        self._record_status_change(order, from_status, target, actor_id, reason, event_type)
        return self._commit(order, f"order {order.id} {from_status} → {target.value}")

    def perform_action(
        self, order_id: str, action: str, actor_id: str, reason: Optional[str] = None
    ) -> ServiceResult:
        """Apply a UI action after checking it is offered to this actor right now"""
        try:
            order = self.session.get(Order, order_id)
            if not order:
                return not_found("Order")
            role = resolve_order_role(self.session, order, actor_id)
            dispute_open = self._active_dispute(order_id) is not None
        except SQLAlchemyError as e:
            logger.error(f"❌ ORDER_ACTION_FAILED: {order_id} {action}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        if role is None:
            return fail(ErrorCode.UNAUTHORIZED, "Not authorized to act on this order")

        offered = {a.action for a in OrderStateMachine.get_available_actions(order.status, role, dispute_open)}
        if action not in offered:
            logger.warning(f"⚠️ ACTION_NOT_OFFERED: {action} by {role.value} on order {order.id} ({order.status})")
            return fail(
                ErrorCode.INVALID_TRANSITION,
                f"Action '{action}' is not available for a {order.status} order",
            )

        target = OrderStateMachine.get_status_for_action(action, order.status)
        if target is None:
            return fail(ErrorCode.VALIDATION, f"Action '{action}' does not change the order status")
        if action == "dispute":
            return fail(ErrorCode.VALIDATION, "Disputes must be raised with a reason through the dispute service")

        if target is OrderStatus.CANCELLED:
            event = OrderEventType.DECLINED if action == "decline" else OrderEventType.CANCELLED
            return self.cancel_order(order_id, reason or "", actor_id, event_type=event)
        if target is OrderStatus.COMPLETED:
            return self.complete_order(order_id, actor_id)
        return self.update_order_status(order_id, target, actor_id, reason)

    def cancel_order(
        self,
        order_id: str,
        reason: str,
        cancelled_by: str,
        event_type: OrderEventType = OrderEventType.CANCELLED,
    ) -> ServiceResult:
        """
        Cancel an order, refunding any funds still in escrow first.

        A refund failure aborts the cancellation and leaves the order as it was.
        """
        try:
            order = self.session.get(Order, order_id)
            if not order:
                return not_found("Order")
            if resolve_order_role(self.session, order, cancelled_by) is None:
                return fail(ErrorCode.UNAUTHORIZED, "Not authorized to cancel this order")
            if not OrderStateMachine.can_transition(order.status, OrderStatus.CANCELLED):
                logger.warning(f"❌ CANCEL_REJECTED: order {order.id} in {order.status}")
                return fail(ErrorCode.INVALID_TRANSITION, f"Cannot cancel order in {order.status} status")

            from_status = order.status
            refund_reference = None
            refund_amount = Decimal("0")
            if order.escrow_status in (EscrowStatus.HELD.value, EscrowStatus.PARTIAL_RELEASE.value):
                if not self.escrow_service:
                    return fail(ErrorCode.EXTERNAL_FAILURE, "Payment service unavailable to refund held funds")
                refund_amount = self.escrow_service.get_escrow_balance(order.id).balance
                if refund_amount > 0:
                    refund = self.escrow_service.process_refund(order, refund_amount, reason or "Order cancelled")
                    if not refund.success:
                        self.session.rollback()
                        return fail(ErrorCode.EXTERNAL_FAILURE, f"Failed to refund buyer: {refund.error}")
                    refund_reference = refund.reference
                order.escrow_status = EscrowStatus.REFUNDED.value

            self._apply_status(order, OrderStatus.CANCELLED)
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ ORDER_CANCEL_FAILED: {order_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        self._record_status_change(
            order, from_status, OrderStatus.CANCELLED, cancelled_by, reason, event_type,
            extra={"cancelled_by": cancelled_by},
        )
        if refund_reference:
            self.history.log_order_event(
                order.id, OrderEventType.REFUNDED,
                {"amount": str(refund_amount), "refund_id": refund_reference}, actor_id=cancelled_by,
            )
        return self._commit(order, f"order {order.id} cancelled from {from_status}")

    def complete_order(
        self, order_id: str, completed_by: str, generate_invoices: bool = True
    ) -> ServiceResult:
        """
        Complete an order and release whatever remains in escrow to the seller.

        Invoice generation is best-effort: its errors are returned in
        CompletionDetails.invoice_errors and never fail the completion.
        """
        try:
            order = self.session.get(Order, order_id)
            if not order:
                return not_found("Order")
            if resolve_order_role(self.session, order, completed_by) is None:
                return fail(ErrorCode.UNAUTHORIZED, "Not authorized to complete this order")

            is_valid, message = OrderStateMachine.validate_transition(
                order.status, OrderStatus.COMPLETED, order.id
            )
            if not is_valid:
                return fail(ErrorCode.INVALID_TRANSITION, message)

            from_status = order.status
            transfer_id = None
            if order.escrow_status in (EscrowStatus.HELD.value, EscrowStatus.PARTIAL_RELEASE.value):
                if not self.escrow_service:
                    return fail(ErrorCode.EXTERNAL_FAILURE, "Payment service unavailable to release held funds")
                remaining = self.escrow_service.get_escrow_balance(order.id).balance
                if remaining > 0:
                    release = self.escrow_service.release_escrow(order, remaining)
                    if not release.success:
                        self.session.rollback()
                        return fail(ErrorCode.EXTERNAL_FAILURE, release.error)
                    transfer_id = release.reference

            # A completed order never keeps escrow pending
            if order.escrow_status != EscrowStatus.REFUNDED.value:
                order.escrow_status = EscrowStatus.RELEASED.value
            self._apply_status(order, OrderStatus.COMPLETED)
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ ORDER_COMPLETE_FAILED: {order_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        self._record_status_change(order, from_status, OrderStatus.COMPLETED, completed_by, None, None)
        if transfer_id:
            self.history.log_order_event(
                order.id, OrderEventType.PAYMENT_RELEASED, {"transfer_id": transfer_id},
                actor_id=completed_by,
            )
        result = self._commit(order, f"order {order.id} completed from {from_status}")
        if not result.success:
            return result

        invoice_errors = self._generate_invoices(order) if generate_invoices else []
        return ok(
            CompletionDetails(order=order, invoice_errors=invoice_errors, transfer_id=transfer_id),
            warnings=invoice_errors,
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def initiate_payment(self, order_id: str, buyer_id: str) -> ServiceResult:
        """Create the provider payment intent the buyer pays against"""
        if not self.escrow_service:
            return fail(ErrorCode.EXTERNAL_FAILURE, "Payment service unavailable")
        try:
            order = self.session.get(Order, order_id)
            if not order:
                return not_found("Order")
            if order.buyer_id != buyer_id:
                return fail(ErrorCode.UNAUTHORIZED, "Only the buyer can pay for this order")
            if order.status not in (OrderStatus.PENDING.value, OrderStatus.ACCEPTED.value):
                return fail(ErrorCode.INVALID_TRANSITION, f"Cannot pay for order in {order.status} status")
            if order.stripe_payment_intent_id:
                return fail(ErrorCode.VALIDATION, "Payment has already been initiated for this order")

            payment = self.escrow_service.create_payment_intent(order)
            if not payment.success:
                self.session.rollback()
                return fail(ErrorCode.EXTERNAL_FAILURE, payment.error)
            self.session.commit()
            return ok(payment)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ PAYMENT_INITIATE_FAILED: order {order_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

    def confirm_payment(
        self, order_id: str, amount: Optional[Decimal] = None, payment_reference: Optional[str] = None
    ) -> ServiceResult:
        """
        Record captured funds as held. A pending order is accepted
        automatically once its payment is secured.
        """
        if not self.escrow_service:
            return fail(ErrorCode.EXTERNAL_FAILURE, "Payment service unavailable")
        try:
            order = self.session.get(Order, order_id)
            if not order:
                return not_found("Order")
            if OrderStateMachine.is_terminal_status(order.status):
                return fail(ErrorCode.INVALID_TRANSITION, f"Cannot take payment for a {order.status} order")

            hold_amount = order.total_amount if amount is None else amount
            hold = self.escrow_service.hold_payment(order, hold_amount, payment_reference)
            if not hold.success:
                self.session.rollback()
                return fail(ErrorCode.VALIDATION, hold.error)

            from_status = order.status
            if order.status == OrderStatus.PENDING.value:
                self._apply_status(order, OrderStatus.ACCEPTED)
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ PAYMENT_CONFIRM_FAILED: order {order_id}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)

        self.history.log_order_event(
            order.id, OrderEventType.PAYMENT_RECEIVED,
            {"amount": str(hold.amount), "reference": payment_reference}, actor_id=order.buyer_id,
        )
        if order.status != from_status:
            self.history.log_order_event(
                order.id, OrderEventType.ACCEPTED,
                {"from_status": from_status, "to_status": order.status, "reason": "Payment confirmed"},
                actor_id=None,
            )
        self.notifications.send_notification(
            get_seller_user_id(self.session, order),
            "payment_received",
            "Payment Received",
            f"Payment of {hold.amount} {order.currency} for order {order.order_number} is held in escrow.",
            link=Config.order_link(order.id),
            metadata={"order_id": order.id},
        )
        return self._commit(order, f"payment held for order {order.id}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _active_dispute(self, order_id: str) -> Optional[Dispute]:
        disputes = self.session.scalars(
            select(Dispute).where(Dispute.order_id == order_id).order_by(Dispute.created_at.desc())
        ).all()
        return next((d for d in disputes if DisputeStateMachine.is_active(d.status)), None)

    @staticmethod
    def _apply_status(order: Order, target: OrderStatus):
        order.status = target.value
        if target is OrderStatus.COMPLETED:
            order.completed_at = utc_now()

    def _record_status_change(self, order, from_status, target, actor_id, reason, event_type, extra=None):
        details = {"from_status": from_status, "to_status": target.value, "reason": reason}
        details.update(extra or {})
        self.history.log_order_event(
            order.id, event_type or STATUS_EVENT_TYPES[target], details, actor_id=actor_id
        )

        label = OrderStateMachine.get_status_label(target)
        message = f"Order {order.order_number} is now {label.lower()}."
        if reason:
            message += f" Reason: {reason}"
        self.notifications.send_notification(
            counterparty_user_id(self.session, order, actor_id),
            "order_status_changed",
            f"Order {label}",
            message,
            link=Config.order_link(order.id),
            metadata={"order_id": order.id, "from_status": from_status, "to_status": target.value},
        )

    def _commit(self, order: Order, description: str) -> ServiceResult:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ ORDER_COMMIT_FAILED: {description}: {e}")
            return fail(ErrorCode.DATABASE, DATABASE_ERROR_MESSAGE)
        logger.info(f"✅ ORDER_UPDATED: {description}")
        return ok(order)

    def _commit_side_effects(self, order_id: str):
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.warning(f"⚠️ ORDER_SIDE_EFFECTS_LOST: order {order_id}: {e}")

    def _generate_invoices(self, order: Order) -> List[str]:
        if not self.invoice_generator:
            return []
        try:
            errors = list(self.invoice_generator(order) or [])
        except Exception as e:
            logger.error(f"❌ INVOICE_GENERATION_FAILED: order {order.id}: {e}")
            return ["Failed to generate invoices"]

        for user_id in (order.buyer_id, get_seller_user_id(self.session, order)):
            self.notifications.send_notification(
                user_id,
                "invoice_ready",
                "Invoices Available",
                "Invoices for your completed order are now available for download.",
                link=Config.order_link(order.id),
                metadata={"order_id": order.id},
            )
        self._commit_side_effects(order.id)
        if errors:
            logger.warning(f"⚠️ INVOICE_ERRORS: order {order.id}: {errors}")
        return errors

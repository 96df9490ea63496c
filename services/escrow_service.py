"""
Escrow Service
Moves order funds through the payment provider and records every movement
in the escrow ledger. The ledger, not the provider, is the source of truth
for an order's escrow balance.

The service flushes but never commits; the calling service owns the
transaction boundary.
"""

import logging
from decimal import Decimal
from typing import NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import (
    EscrowStatus, EscrowTransaction, EscrowTransactionType, Order, ProviderProfile,
)
from services.payment_processor import PaymentProcessor, PaymentProcessorError
from utils.fee_calculator import EscrowBalance, FeeCalculator

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class PaymentResult(NamedTuple):
    """Result of a single payment collaborator call"""

    success: bool
    reference: Optional[str] = None
    amount: Decimal = ZERO
    platform_fee: Decimal = ZERO
    net_amount: Decimal = ZERO
    error: Optional[str] = None


class EscrowService:
    """Payment collaborator for orders: intents, holds, releases and refunds"""

    def __init__(self, session: Session, processor: PaymentProcessor):
        self.session = session
        self.processor = processor

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def _record(self, order: Order, tx_type: EscrowTransactionType, amount: Decimal,
                reference: Optional[str] = None, milestone_id: Optional[str] = None) -> EscrowTransaction:
        entry = EscrowTransaction(
            order_id=order.id,
            milestone_id=milestone_id,
            type=tx_type.value,
            amount=FeeCalculator.quantize(amount),
            stripe_transfer_id=reference,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def get_escrow_balance(self, order_id: str) -> EscrowBalance:
        transactions = self.session.scalars(
            select(EscrowTransaction).where(EscrowTransaction.order_id == order_id)
        ).all()
        return FeeCalculator.calculate_escrow_balance(transactions)

    @staticmethod
    def calculate_platform_fee(amount, fee_percent=None) -> Decimal:
        return FeeCalculator.calculate_platform_fee(amount, fee_percent)

    # ------------------------------------------------------------------
    # Money movement
    # ------------------------------------------------------------------

    def create_payment_intent(self, order: Order) -> PaymentResult:
        """Open a provider payment intent for the order total and record the deposit"""
        try:
            intent = self.processor.create_payment_intent(
                amount=order.total_amount,
                currency=order.currency,
                metadata={"order_id": order.id, "order_number": order.order_number,
                          "buyer_id": order.buyer_id},
                description=f"Order {order.order_number}",
            )
        except PaymentProcessorError as e:
            logger.error(f"❌ PAYMENT_INTENT_FAILED: order {order.id}: {e}")
            return PaymentResult(success=False, error=f"Failed to create payment: {e}")

        order.stripe_payment_intent_id = intent.id
        self._record(order, EscrowTransactionType.DEPOSIT, order.total_amount, reference=intent.id)
        logger.info(f"✅ PAYMENT_INTENT: order {order.id} intent={intent.id}")
        return PaymentResult(success=True, reference=intent.id, amount=order.total_amount,
                             net_amount=order.total_amount)

    def hold_payment(self, order: Order, amount, reference: Optional[str] = None) -> PaymentResult:
        """Record captured buyer funds as held in escrow"""
        hold_amount = FeeCalculator.quantize(amount)
        if hold_amount <= ZERO:
            return PaymentResult(success=False, error="Hold amount must be greater than 0")

        self._record(order, EscrowTransactionType.HOLD, hold_amount,
                     reference=reference or order.stripe_payment_intent_id)
        order.escrow_status = EscrowStatus.HELD.value
        logger.info(f"🔒 ESCROW_HELD: order {order.id} amount={hold_amount} {order.currency}")
        return PaymentResult(success=True, reference=reference, amount=hold_amount, net_amount=hold_amount)

    def release_escrow(self, order: Order, amount, milestone_id: Optional[str] = None,
                       fee_percent=None) -> PaymentResult:
        """
        Transfer funds to the seller minus the platform fee.

        Records a release for the seller's share and a fee deduction for the
        platform's, then marks escrow released or partially released.
        """
        gross = FeeCalculator.quantize(amount)
        if gross <= ZERO:
            return PaymentResult(success=False, error="Release amount must be greater than 0")

        seller = order.seller or self.session.get(ProviderProfile, order.seller_id)
        if not seller or not seller.stripe_account_id:
            return PaymentResult(success=False, error="Seller has not completed payment onboarding")

        balance = self.get_escrow_balance(order.id)
        if gross > balance.balance:
            logger.warning(
                f"⚠️ RELEASE_EXCEEDS_BALANCE: order {order.id} requested={gross} balance={balance.balance}"
            )
            return PaymentResult(
                success=False,
                error=f"Insufficient escrow balance: {balance.balance} available, {gross} requested",
            )

        breakdown = FeeCalculator.calculate_release_breakdown(gross, fee_percent)
        try:
            transfer = self.processor.transfer_to_seller(
                amount=breakdown.seller_amount,
                currency=order.currency,
                destination_account=seller.stripe_account_id,
                metadata={"order_id": order.id, "milestone_id": milestone_id},
            )
        except PaymentProcessorError as e:
            logger.error(f"❌ RELEASE_FAILED: order {order.id} milestone={milestone_id}: {e}")
            return PaymentResult(success=False, error=f"Failed to release funds: {e}")

        self._record(order, EscrowTransactionType.RELEASE, breakdown.seller_amount,
                     reference=transfer.id, milestone_id=milestone_id)
        if breakdown.platform_fee > ZERO:
            self._record(order, EscrowTransactionType.FEE_DEDUCTION, breakdown.platform_fee,
                         milestone_id=milestone_id)

        remaining = self.get_escrow_balance(order.id).balance
        order.escrow_status = (
            EscrowStatus.RELEASED.value if remaining <= ZERO else EscrowStatus.PARTIAL_RELEASE.value
        )
        logger.info(
            f"✅ ESCROW_RELEASED: order {order.id} gross={gross} seller={breakdown.seller_amount} "
            f"fee={breakdown.platform_fee} transfer={transfer.id} remaining={remaining}"
        )
        return PaymentResult(
            success=True,
            reference=transfer.id,
            amount=gross,
            platform_fee=breakdown.platform_fee,
            net_amount=breakdown.seller_amount,
        )

    def process_refund(self, order: Order, amount, reason: Optional[str] = None) -> PaymentResult:
        """Refund the buyer against the order's payment intent"""
        if not order.stripe_payment_intent_id:
            return PaymentResult(success=False, error="No payment intent found for this order")

        refund_amount = FeeCalculator.quantize(amount)
        if refund_amount <= ZERO:
            return PaymentResult(success=False, error="Refund amount must be greater than 0")

        balance = self.get_escrow_balance(order.id)
        if refund_amount > balance.balance:
            logger.warning(
                f"⚠️ REFUND_EXCEEDS_BALANCE: order {order.id} requested={refund_amount} balance={balance.balance}"
            )
            return PaymentResult(
                success=False,
                error=f"Insufficient escrow balance: {balance.balance} available, {refund_amount} requested",
            )

        try:
            refund = self.processor.refund_payment(
                payment_intent_id=order.stripe_payment_intent_id,
                amount=refund_amount,
                currency=order.currency,
                reason=reason,
            )
        except PaymentProcessorError as e:
            logger.error(f"❌ REFUND_FAILED: order {order.id} amount={refund_amount}: {e}")
            return PaymentResult(success=False, error=str(e))

        try:
            self._record(order, EscrowTransactionType.REFUND, refund_amount, reference=refund.id)
        except SQLAlchemyError as e:
            # Refund already executed at the provider
            logger.critical(
                f"🚨 REFUND_LEDGER_WRITE_FAILED: order {order.id} refund={refund.id} amount={refund_amount}: {e}"
            )
            raise
        order.escrow_status = EscrowStatus.REFUNDED.value
        logger.info(f"✅ REFUND_PROCESSED: order {order.id} amount={refund_amount} refund={refund.id}"
                    + (f" reason={reason}" if reason else ""))
        return PaymentResult(success=True, reference=refund.id, amount=refund_amount,
                             net_amount=refund_amount)

"""Fee, tax and settlement arithmetic for marketplace orders"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Iterable, NamedTuple, Optional

from config import Config
from models import EscrowTransactionType

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

# Currencies the payment provider expresses without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK", "HUF"})


class OrderPricing(NamedTuple):
    """Amounts recorded on an order at creation"""

    total_amount: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    platform_fee: Decimal


class ReleaseBreakdown(NamedTuple):
    """Split of a release between the seller and the platform"""

    gross_amount: Decimal
    platform_fee: Decimal
    seller_amount: Decimal


class ResolutionSplit(NamedTuple):
    """Money movement decided by a dispute resolution"""

    buyer_refund_amount: Decimal
    seller_payment_amount: Decimal


class EscrowBalance(NamedTuple):
    """Escrow ledger totals for one order"""

    total_held: Decimal
    total_released: Decimal
    total_refunded: Decimal
    total_fees: Decimal
    balance: Decimal


class FeeCalculator:
    """Handles all fee-related calculations with decimal precision"""

    PRECISION = Config.AMOUNT_PRECISION

    @classmethod
    def to_decimal(cls, value) -> Decimal:
        """Convert numbers and numeric strings to Decimal without float drift"""
        if isinstance(value, Decimal):
            return value
        if value is None:
            raise ValueError("Amount is required")
        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid amount: {value!r}") from e

    @classmethod
    def quantize(cls, amount) -> Decimal:
        return cls.to_decimal(amount).quantize(cls.PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def percentage_of(cls, amount, percent) -> Decimal:
        return cls.quantize(cls.to_decimal(amount) * cls.to_decimal(percent) / HUNDRED)

    @classmethod
    def calculate_vat(cls, total_amount, vat_rate: Optional[Decimal] = None) -> Decimal:
        rate = Config.VAT_RATE if vat_rate is None else cls.to_decimal(vat_rate)
        return cls.quantize(cls.to_decimal(total_amount) * rate)

    @classmethod
    def calculate_order_pricing(cls, total_amount) -> OrderPricing:
        """VAT and platform commission recorded when an order is created"""
        total = cls.quantize(total_amount)
        return OrderPricing(
            total_amount=total,
            vat_rate=Config.VAT_RATE,
            vat_amount=cls.calculate_vat(total),
            platform_fee=cls.percentage_of(total, Config.ORDER_PLATFORM_FEE_PERCENTAGE),
        )

    @classmethod
    def calculate_platform_fee(cls, amount, fee_percent=None) -> Decimal:
        """Fee deducted from a release before funds reach the seller"""
        percent = Config.RELEASE_PLATFORM_FEE_PERCENTAGE if fee_percent is None else fee_percent
        return cls.percentage_of(amount, percent)

    @classmethod
    def calculate_release_breakdown(cls, amount, fee_percent=None) -> ReleaseBreakdown:
        gross = cls.quantize(amount)
        fee = cls.calculate_platform_fee(gross, fee_percent)
        return ReleaseBreakdown(gross_amount=gross, platform_fee=fee, seller_amount=gross - fee)

    @classmethod
    def calculate_resolution_split(
        cls,
        order_total,
        resolution_amount=None,
        buyer_refund_percent=None,
        seller_payment_percent=None,
    ) -> ResolutionSplit:
        """
        Work out refund and payout for a dispute resolution.

        The refund is the explicit resolution amount when given, otherwise the
        buyer percentage of the order total. The payout is the seller
        percentage of the total when given, otherwise whatever the refund
        leaves. Callers validate inputs first.

        Raises:
            ValueError: when refund plus payout exceeds the order total
        """
        total = cls.quantize(order_total)

        if resolution_amount is not None:
            refund = cls.quantize(resolution_amount)
        elif buyer_refund_percent is not None:
            refund = cls.percentage_of(total, buyer_refund_percent)
        else:
            refund = ZERO

        if seller_payment_percent is not None:
            payment = cls.percentage_of(total, seller_payment_percent)
        else:
            payment = total - refund

        if refund < ZERO or payment < ZERO or refund + payment > total:
            raise ValueError(
                f"Refund ({refund}) plus seller payment ({payment}) cannot exceed order total ({total})"
            )
        return ResolutionSplit(buyer_refund_amount=refund, seller_payment_amount=payment)

    @classmethod
    def calculate_escrow_balance(cls, transactions: Iterable) -> EscrowBalance:
        """Fold escrow ledger rows into totals; balance = held - released - refunded - fees"""
        totals: Dict[str, Decimal] = {t.value: ZERO for t in EscrowTransactionType}
        for tx in transactions:
            tx_type = getattr(tx.type, "value", tx.type)
            if tx_type in totals:
                totals[tx_type] += cls.to_decimal(tx.amount)

        held = totals[EscrowTransactionType.HOLD.value]
        released = totals[EscrowTransactionType.RELEASE.value]
        refunded = totals[EscrowTransactionType.REFUND.value]
        fees = totals[EscrowTransactionType.FEE_DEDUCTION.value]
        return EscrowBalance(
            total_held=held,
            total_released=released,
            total_refunded=refunded,
            total_fees=fees,
            balance=held - released - refunded - fees,
        )

    @classmethod
    def to_minor_units(cls, amount, currency: str) -> int:
        """Provider amounts are integers in the currency's smallest unit"""
        value = cls.to_decimal(amount)
        if currency.upper() in ZERO_DECIMAL_CURRENCIES:
            return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return int((value * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @classmethod
    def from_minor_units(cls, amount: int, currency: str) -> Decimal:
        if currency.upper() in ZERO_DECIMAL_CURRENCIES:
            return Decimal(amount)
        return cls.quantize(Decimal(amount) / HUNDRED)

"""
Shared fixtures for the order, milestone and dispute test suites.

Every test gets a fresh in-memory SQLite database built from the model
metadata, a recording fake payment processor, and factories for parties
and orders.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from itertools import count
from types import SimpleNamespace
from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from database import enable_sqlite_savepoints
from models import (
    Base, EscrowStatus, EscrowTransaction, EscrowTransactionType, Order, OrderStatus,
    OrderType, Profile, ProviderProfile,
)
from services.dispute_service import DisputeService
from services.escrow_service import EscrowService
from services.milestone_service import MilestoneService
from services.notification_service import NotificationService
from services.order_history import OrderHistoryService
from services.order_service import OrderService
from services.payment_processor import (
    PaymentIntentRecord, PaymentProcessor, PaymentProcessorError, RefundRecord, TransferRecord,
)
from utils.fee_calculator import FeeCalculator
from utils.helpers import generate_order_number, utc_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@dataclass
class FakePaymentProcessor(PaymentProcessor):
    """Records provider calls; individual operations can be made to fail"""

    fail_intent: bool = False
    fail_transfer: bool = False
    fail_refund: bool = False
    intents: List[dict] = field(default_factory=list)
    transfers: List[dict] = field(default_factory=list)
    refunds: List[dict] = field(default_factory=list)
    _ids: count = field(default_factory=lambda: count(1))

    def create_payment_intent(self, amount, currency, metadata, description=""):
        if self.fail_intent:
            raise PaymentProcessorError("Card declined")
        record = PaymentIntentRecord(
            id=f"pi_test_{next(self._ids)}", amount=amount, currency=currency,
            status="requires_payment_method", client_secret="secret",
        )
        self.intents.append({"amount": amount, "currency": currency, "metadata": metadata})
        return record

    def transfer_to_seller(self, amount, currency, destination_account, metadata):
        if self.fail_transfer:
            raise PaymentProcessorError("Destination account is restricted")
        record = TransferRecord(
            id=f"tr_test_{next(self._ids)}", amount=amount, currency=currency,
            destination=destination_account,
        )
        self.transfers.append({"amount": amount, "destination": destination_account, "metadata": metadata})
        return record

    def refund_payment(self, payment_intent_id, amount, currency, reason=None):
        if self.fail_refund:
            raise PaymentProcessorError("Charge already refunded")
        record = RefundRecord(id=f"re_test_{next(self._ids)}", amount=amount, status="succeeded")
        self.refunds.append({"payment_intent_id": payment_intent_id, "amount": amount, "reason": reason})
        return record


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(test_engine)
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def db_session(engine):
    session = Session(bind=engine, expire_on_commit=False)
    yield session
    session.close()


@pytest.fixture
def payment_processor():
    return FakePaymentProcessor()


@pytest.fixture
def escrow_service(db_session, payment_processor):
    return EscrowService(db_session, payment_processor)


@pytest.fixture
def notifications(db_session):
    return NotificationService(db_session)


@pytest.fixture
def history(db_session):
    return OrderHistoryService(db_session)


@pytest.fixture
def order_service(db_session, escrow_service, notifications, history):
    return OrderService(db_session, escrow_service, notifications, history)


@pytest.fixture
def dispute_service(db_session, escrow_service, notifications, history):
    return DisputeService(db_session, escrow_service, notifications, history)


@pytest.fixture
def milestone_service(db_session, escrow_service, notifications, history, dispute_service):
    return MilestoneService(db_session, escrow_service, notifications, history, dispute_service)


@pytest.fixture
def parties(db_session):
    """Buyer, seller (profile + provider profile), an admin and an outsider"""
    buyer = Profile(full_name="Bella Buyer", email="buyer@example.com")
    seller_user = Profile(full_name="Sam Seller", email="seller@example.com")
    admin = Profile(full_name="Ada Admin", email="admin@example.com", is_admin=True)
    outsider = Profile(full_name="Olly Outsider", email="outsider@example.com")
    db_session.add_all([buyer, seller_user, admin, outsider])
    db_session.flush()

    provider = ProviderProfile(
        user_id=seller_user.id, display_name="Sam's Studio", stripe_account_id="acct_test_seller"
    )
    db_session.add(provider)
    db_session.commit()
    return SimpleNamespace(
        buyer=buyer, seller_user=seller_user, seller=provider, admin=admin, outsider=outsider
    )


@pytest.fixture
def make_order(db_session, parties):
    """Insert an order directly in a given state, optionally with funds held"""

    def _make_order(
        status: OrderStatus = OrderStatus.PENDING,
        total: str = "1000.00",
        funded: bool = False,
        escrow_status: Optional[EscrowStatus] = None,
        created_days_ago: int = 0,
    ) -> Order:
        total_amount = Decimal(total)
        pricing = FeeCalculator.calculate_order_pricing(total_amount)
        order = Order(
            order_number=generate_order_number(),
            buyer_id=parties.buyer.id,
            seller_id=parties.seller.id,
            order_type=OrderType.SERVICE.value,
            status=status.value,
            escrow_status=(escrow_status or EscrowStatus.PENDING).value,
            total_amount=pricing.total_amount,
            platform_fee=pricing.platform_fee,
            vat_amount=pricing.vat_amount,
            vat_rate=pricing.vat_rate,
            currency="GBP",
            created_at=utc_now() - timedelta(days=created_days_ago),
        )
        db_session.add(order)
        db_session.flush()

        if funded:
            order.stripe_payment_intent_id = f"pi_funded_{order.id[:8]}"
            db_session.add(EscrowTransaction(
                order_id=order.id,
                type=EscrowTransactionType.HOLD.value,
                amount=total_amount,
                stripe_transfer_id=order.stripe_payment_intent_id,
            ))
            order.escrow_status = (escrow_status or EscrowStatus.HELD).value
        db_session.commit()
        return order

    return _make_order

"""
Dispute Resolution Tests
Refund-then-release saga: outcomes, step records, double-pay guard and the
partial-failure path that escalates to admins
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from models import (
    DisputeEvent, DisputeResolutionStep, DisputeStatus, EscrowStatus, NotificationQueue,
    OrderEvent, OrderStatus, ResolutionStepStatus,
)
from services.dispute_service import (
    CreateDisputeParams, DisputeService, ResolveDisputeParams, derive_resolution_outcome,
)
from services.milestone_service import MilestoneInput
from utils.service_results import ErrorCode


@pytest.fixture
def disputed_order(dispute_service, make_order, parties):
    """Funded order of 1000 under review by an admin"""

    def _disputed_order(status=OrderStatus.IN_PROGRESS, **order_kwargs):
        order_kwargs.setdefault("funded", True)
        order = make_order(status, **order_kwargs)
        dispute = dispute_service.create_dispute(
            parties.buyer.id, CreateDisputeParams(order_id=order.id, reason="Work never delivered")
        ).data
        assert dispute_service.assign_dispute(dispute.id, parties.admin.id, parties.admin.id).success
        return order, dispute

    return _disputed_order


def _steps(db_session, dispute_id):
    return [
        (s.step_name, s.status, s.amount)
        for s in db_session.scalars(
            select(DisputeResolutionStep)
            .where(DisputeResolutionStep.dispute_id == dispute_id)
            .order_by(DisputeResolutionStep.created_at)
        )
    ]


class TestResolveDisputeParams:

    def test_requires_an_outcome(self):
        with pytest.raises(ValueError):
            ResolveDisputeParams(resolution="Settled")

    @pytest.mark.parametrize("kwargs", [
        {"buyer_refund_percent": 120},
        {"seller_payment_percent": -1},
        {"buyer_refund_percent": 60, "seller_payment_percent": 50},
        {"resolution_amount": Decimal("-5")},
    ])
    def test_rejects_bad_splits(self, kwargs):
        with pytest.raises(ValueError):
            ResolveDisputeParams(resolution="Settled", **kwargs)


class TestOutcomeDerivation:

    def test_full_refund_cancels(self):
        params = ResolveDisputeParams(resolution="r", buyer_refund_percent=100)
        assert derive_resolution_outcome(params, Decimal("1000"), Decimal("1000")) == (
            OrderStatus.CANCELLED, EscrowStatus.REFUNDED,
        )

    def test_refund_of_whole_total_counts_as_full(self):
        params = ResolveDisputeParams(resolution="r", resolution_amount=Decimal("1000"))
        assert derive_resolution_outcome(params, Decimal("1000"), Decimal("1000"))[0] is OrderStatus.CANCELLED

    def test_no_refund_completes(self):
        params = ResolveDisputeParams(resolution="r", buyer_refund_percent=0)
        assert derive_resolution_outcome(params, Decimal("1000"), Decimal("0")) == (
            OrderStatus.COMPLETED, EscrowStatus.RELEASED,
        )

    def test_split_completes_with_refund(self):
        params = ResolveDisputeParams(resolution="r", buyer_refund_percent=40, seller_payment_percent=60)
        assert derive_resolution_outcome(params, Decimal("1000"), Decimal("400")) == (
            OrderStatus.COMPLETED, EscrowStatus.REFUNDED,
        )


class TestResolveDispute:

    def test_full_refund(self, db_session, dispute_service, payment_processor, disputed_order, parties):
        order, dispute = disputed_order()

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id,
            ResolveDisputeParams(resolution="Seller did not deliver", buyer_refund_percent=100),
        )

        assert result.success is True
        assert result.buyer_refund_amount == Decimal("1000.00")
        assert result.seller_payment_amount == Decimal("0.00")
        assert result.order_status == OrderStatus.CANCELLED.value
        assert result.escrow_status == EscrowStatus.REFUNDED.value
        assert payment_processor.refunds[0]["amount"] == Decimal("1000.00")
        assert payment_processor.transfers == []
        assert dispute.status == DisputeStatus.RESOLVED.value
        assert dispute.resolution_amount == Decimal("1000.00")
        assert dispute.resolved_at is not None
        assert _steps(db_session, dispute.id) == [
            ("refund", ResolutionStepStatus.COMPLETED.value, Decimal("1000.00")),
        ]

    @pytest.mark.parametrize("kwargs", [{"buyer_refund_percent": 0}, {"seller_payment_percent": 100}])
    def test_seller_wins(self, dispute_service, payment_processor, disputed_order, parties, kwargs):
        order, dispute = disputed_order()

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id, ResolveDisputeParams(resolution="Work was delivered", **kwargs)
        )

        assert result.success is True
        assert result.order_status == OrderStatus.COMPLETED.value
        assert result.escrow_status == EscrowStatus.RELEASED.value
        assert payment_processor.refunds == []
        assert payment_processor.transfers[0]["amount"] == Decimal("920.00")
        assert order.completed_at is not None

    def test_split(self, db_session, dispute_service, escrow_service, payment_processor, disputed_order, parties):
        order, dispute = disputed_order()

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id,
            ResolveDisputeParams(resolution="Half delivered", buyer_refund_percent=50, seller_payment_percent=50),
        )

        assert result.success is True
        assert result.refund_id.startswith("re_test_")
        assert result.transfer_id.startswith("tr_test_")
        assert result.order_status == OrderStatus.COMPLETED.value
        assert result.escrow_status == EscrowStatus.REFUNDED.value
        assert payment_processor.refunds[0]["amount"] == Decimal("500.00")
        assert payment_processor.transfers[0]["amount"] == Decimal("460.00")
        assert escrow_service.get_escrow_balance(order.id).balance == Decimal("0.00")
        assert [s[:2] for s in _steps(db_session, dispute.id)] == [
            ("refund", "completed"), ("release", "completed"),
        ]

    def test_explicit_amount_pays_remainder_to_seller(self, dispute_service, payment_processor, disputed_order, parties):
        _, dispute = disputed_order()

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id,
            ResolveDisputeParams(resolution="Partial refund", resolution_amount=Decimal("200")),
        )

        assert result.buyer_refund_amount == Decimal("200.00")
        assert result.seller_payment_amount == Decimal("800.00")
        assert payment_processor.transfers[0]["amount"] == Decimal("736.00")

    def test_refused_when_funds_already_released(self, db_session, dispute_service, payment_processor,
                                                 disputed_order, parties):
        """No double pay: a released escrow cannot be refunded"""
        order, dispute = disputed_order()
        order.escrow_status = EscrowStatus.RELEASED.value
        db_session.commit()

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id, ResolveDisputeParams(resolution="Refund", buyer_refund_percent=100)
        )

        assert result.success is False
        assert "already been released" in result.error
        assert payment_processor.refunds == []
        assert dispute.status == DisputeStatus.UNDER_REVIEW.value

    def test_failed_refund_aborts_everything(self, db_session, dispute_service, payment_processor,
                                             disputed_order, parties):
        order, dispute = disputed_order()
        payment_processor.fail_refund = True

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id,
            ResolveDisputeParams(resolution="Split", buyer_refund_percent=50, seller_payment_percent=50),
        )

        assert result.success is False
        assert result.error == "Failed to process refund: Charge already refunded"
        assert payment_processor.transfers == []
        db_session.expire_all()
        assert dispute.status == DisputeStatus.UNDER_REVIEW.value
        assert order.status == OrderStatus.DISPUTED.value
        assert _steps(db_session, dispute.id) == [("refund", "failed", Decimal("500.00"))]

    def test_failed_release_keeps_refund_and_escalates(self, db_session, dispute_service, payment_processor,
                                                       disputed_order, parties):
        _, dispute = disputed_order()
        payment_processor.fail_transfer = True

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id,
            ResolveDisputeParams(resolution="Split", buyer_refund_percent=30, seller_payment_percent=70),
        )

        assert result.success is True
        assert result.requires_manual_review is True
        assert result.refund_id is not None
        assert result.transfer_id is None
        assert len(payment_processor.refunds) == 1
        assert dispute.status == DisputeStatus.RESOLVED.value
        assert [s[:2] for s in _steps(db_session, dispute.id)] == [
            ("refund", "completed"), ("release", "failed"),
        ]

        event_types = db_session.scalars(
            select(DisputeEvent.event_type).where(DisputeEvent.dispute_id == dispute.id)
        ).all()
        assert "release_failed" in event_types
        admin_alerts = db_session.scalars(
            select(NotificationQueue.notification_type).where(NotificationQueue.user_id == parties.admin.id)
        ).all()
        assert "dispute_release_failed" in admin_alerts

    def test_release_skipped_without_balance(self, db_session, dispute_service, payment_processor,
                                             disputed_order, parties):
        _, dispute = disputed_order(funded=False)
        order = dispute.order
        order.stripe_payment_intent_id = "pi_unheld"
        db_session.commit()

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id, ResolveDisputeParams(resolution="Seller wins", seller_payment_percent=100)
        )

        assert result.success is True
        assert payment_processor.transfers == []
        assert _steps(db_session, dispute.id) == [("release", "skipped", Decimal("1000.00"))]

    def test_only_admins_resolve(self, dispute_service, disputed_order, parties):
        _, dispute = disputed_order()
        result = dispute_service.resolve_dispute(
            dispute.id, parties.buyer.id, ResolveDisputeParams(resolution="Me", buyer_refund_percent=100)
        )
        assert result.error_code is ErrorCode.UNAUTHORIZED

    def test_open_dispute_must_be_reviewed_first(self, dispute_service, make_order, parties):
        order = make_order(OrderStatus.IN_PROGRESS, funded=True)
        dispute = dispute_service.create_dispute(
            parties.buyer.id, CreateDisputeParams(order_id=order.id, reason="Late")
        ).data

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id, ResolveDisputeParams(resolution="r", buyer_refund_percent=100)
        )

        assert result.error_code is ErrorCode.INVALID_TRANSITION

    def test_cannot_resolve_twice(self, dispute_service, payment_processor, disputed_order, parties):
        _, dispute = disputed_order()
        params = ResolveDisputeParams(resolution="Refund", buyer_refund_percent=100)
        assert dispute_service.resolve_dispute(dispute.id, parties.admin.id, params).success is True

        again = dispute_service.resolve_dispute(dispute.id, parties.admin.id, params)

        assert again.success is False
        assert len(payment_processor.refunds) == 1

    def test_refund_above_total_is_rejected(self, dispute_service, payment_processor, disputed_order, parties):
        _, dispute = disputed_order()
        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id,
            ResolveDisputeParams(resolution="Too much", resolution_amount=Decimal("5000")),
        )
        assert result.error_code is ErrorCode.VALIDATION
        assert payment_processor.refunds == []

    def test_without_payment_service(self, db_session, disputed_order, parties):
        _, dispute = disputed_order()
        service = DisputeService(db_session)
        result = service.resolve_dispute(
            dispute.id, parties.admin.id, ResolveDisputeParams(resolution="r", buyer_refund_percent=100)
        )
        assert result.error == "Payment service unavailable"


# Escrow states an order may settle into for each terminal status
SETTLED_ESCROW = {
    OrderStatus.COMPLETED.value: {EscrowStatus.RELEASED.value, EscrowStatus.REFUNDED.value},
    OrderStatus.CANCELLED.value: {EscrowStatus.REFUNDED.value},
}

OUTCOMES = [
    ({"buyer_refund_percent": 100}, OrderStatus.CANCELLED, EscrowStatus.REFUNDED),
    ({"seller_payment_percent": 100}, OrderStatus.COMPLETED, EscrowStatus.RELEASED),
    ({"buyer_refund_percent": 0}, OrderStatus.COMPLETED, EscrowStatus.RELEASED),
    ({"buyer_refund_percent": 50, "seller_payment_percent": 50}, OrderStatus.COMPLETED, EscrowStatus.REFUNDED),
]


class TestResolutionConsistency:

    @pytest.mark.parametrize("origin", [OrderStatus.IN_PROGRESS, OrderStatus.ACCEPTED])
    @pytest.mark.parametrize("kwargs,order_status,escrow_status", OUTCOMES)
    def test_status_and_escrow_settle_together(self, dispute_service, escrow_service, disputed_order,
                                               parties, origin, kwargs, order_status, escrow_status):
        order, dispute = disputed_order(origin)

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id, ResolveDisputeParams(resolution="Settled", **kwargs)
        )

        assert result.success is True
        assert (order.status, order.escrow_status) == (order_status.value, escrow_status.value)
        assert order.escrow_status in SETTLED_ESCROW[order.status]
        assert escrow_service.get_escrow_balance(order.id).balance == Decimal("0")

    def test_accepted_order_reaches_completed_through_in_progress(self, db_session, dispute_service,
                                                                   payment_processor, disputed_order, parties):
        order, dispute = disputed_order(OrderStatus.ACCEPTED)
        assert order.status == OrderStatus.ACCEPTED.value

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id, ResolveDisputeParams(resolution="Delivered", seller_payment_percent=100)
        )

        assert result.success is True
        assert order.status == OrderStatus.COMPLETED.value
        assert order.completed_at is not None
        assert payment_processor.transfers[0]["amount"] == Decimal("920.00")
        resolved = db_session.scalar(
            select(OrderEvent).where(
                OrderEvent.order_id == order.id, OrderEvent.event_type == "dispute_resolved"
            )
        )
        assert resolved.details["from_status"] == "accepted"
        assert resolved.details["via"] == ["in_progress"]

    def test_refund_on_completed_order_needs_manual_intervention(self, dispute_service, order_service,
                                                                 payment_processor, make_order, parties):
        order = make_order(OrderStatus.IN_PROGRESS, funded=True)
        assert order_service.complete_order(order.id, parties.buyer.id).success is True
        dispute = dispute_service.create_dispute(
            parties.buyer.id, CreateDisputeParams(order_id=order.id, reason="Broke after a day")
        ).data
        dispute_service.assign_dispute(dispute.id, parties.admin.id, parties.admin.id)

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id, ResolveDisputeParams(resolution="Refund", buyer_refund_percent=100)
        )

        assert result.success is False
        assert "Manual intervention required" in result.error
        assert payment_processor.refunds == []
        assert (order.status, order.escrow_status) == ("completed", "released")

    def test_seller_wins_on_completed_order_keeps_it_settled(self, dispute_service, order_service,
                                                             payment_processor, make_order, parties):
        order = make_order(OrderStatus.IN_PROGRESS, funded=True)
        order_service.complete_order(order.id, parties.buyer.id)
        dispute = dispute_service.create_dispute(
            parties.buyer.id, CreateDisputeParams(order_id=order.id, reason="Broke after a day")
        ).data
        dispute_service.assign_dispute(dispute.id, parties.admin.id, parties.admin.id)

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id, ResolveDisputeParams(resolution="Wear and tear", seller_payment_percent=100)
        )

        assert result.success is True
        assert len(payment_processor.transfers) == 1
        assert (order.status, order.escrow_status) == ("completed", "released")


class TestRefundAfterMilestonePayout:

    @pytest.fixture
    def partly_paid(self, db_session, milestone_service, dispute_service, make_order, parties):
        """Order of 1000 whose 400 milestone was paid before the dispute"""
        order = make_order(OrderStatus.ACCEPTED, funded=True)
        milestones = milestone_service.create_milestones(
            order.id,
            [MilestoneInput("Draft", Decimal("400")), MilestoneInput("Final", Decimal("600"))],
            parties.buyer.id,
        ).data
        order.status = OrderStatus.IN_PROGRESS.value
        db_session.commit()
        draft = next(m for m in milestones if m.amount == Decimal("400"))
        milestone_service.submit_milestone(draft.id, parties.seller_user.id)
        assert milestone_service.approve_milestone(draft.id, parties.buyer.id).success is True

        dispute = dispute_service.create_dispute(
            parties.buyer.id, CreateDisputeParams(order_id=order.id, reason="Final stage never arrived")
        ).data
        dispute_service.assign_dispute(dispute.id, parties.admin.id, parties.admin.id)
        return order, dispute

    def test_full_refund_is_refused_before_any_payment(self, db_session, dispute_service, escrow_service,
                                                       payment_processor, partly_paid, parties):
        order, dispute = partly_paid

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id, ResolveDisputeParams(resolution="Refund all", buyer_refund_percent=100)
        )

        assert result.success is False
        assert result.error == (
            "Cannot refund 1000.00 - only 600.00 remains in escrow. Manual intervention required."
        )
        assert payment_processor.refunds == []
        assert len(payment_processor.transfers) == 1
        assert _steps(db_session, dispute.id) == []
        assert dispute.status == DisputeStatus.UNDER_REVIEW.value
        assert escrow_service.get_escrow_balance(order.id).balance == Decimal("600.00")

    def test_refund_of_remaining_balance_succeeds(self, db_session, dispute_service, escrow_service,
                                                  payment_processor, partly_paid, parties):
        order, dispute = partly_paid

        result = dispute_service.resolve_dispute(
            dispute.id, parties.admin.id,
            ResolveDisputeParams(resolution="Refund unfinished stage", resolution_amount=Decimal("600")),
        )

        assert result.success is True
        assert payment_processor.refunds[0]["amount"] == Decimal("600.00")
        assert (order.status, order.escrow_status) == ("completed", "refunded")
        assert escrow_service.get_escrow_balance(order.id).balance == Decimal("0.00")
        assert [s[:2] for s in _steps(db_session, dispute.id)] == [
            ("refund", "completed"), ("release", "skipped"),
        ]

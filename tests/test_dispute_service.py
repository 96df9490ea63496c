"""
Dispute Service Tests
Raising disputes, review pipeline, evidence, assignment, listing and the
auto-resolution heuristics
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from models import (
    DisputeEvent, DisputeStatus, NotificationQueue, OrderEvent, OrderStatus,
)
from services.dispute_service import CreateDisputeParams
from utils.helpers import utc_now
from utils.service_results import ErrorCode

LONG_REASON = "The delivered work is missing two of the five agreed deliverables entirely."


@pytest.fixture
def open_dispute(dispute_service, make_order, parties):
    order = make_order(OrderStatus.IN_PROGRESS, funded=True)
    result = dispute_service.create_dispute(
        parties.buyer.id,
        CreateDisputeParams(order_id=order.id, reason=LONG_REASON, evidence_urls=["https://files.example/1.png"]),
    )
    assert result.success is True
    return order, result.data


class TestCreateDispute:

    def test_buyer_raises_dispute(self, db_session, open_dispute, parties):
        order, dispute = open_dispute

        assert dispute.status == DisputeStatus.OPEN.value
        assert dispute.raised_by == parties.buyer.id
        assert dispute.evidence_urls == ["https://files.example/1.png"]
        assert order.status == OrderStatus.DISPUTED.value

        event = db_session.scalar(select(DisputeEvent).where(DisputeEvent.dispute_id == dispute.id))
        assert event.event_type == "dispute_created"
        assert event.actor_name == "Bella Buyer"
        order_event = db_session.scalar(select(OrderEvent).where(OrderEvent.order_id == order.id))
        assert order_event.details["from_status"] == "in_progress"
        assert order_event.details["to_status"] == "disputed"

        notified = db_session.scalars(
            select(NotificationQueue.notification_type).where(NotificationQueue.user_id == parties.seller_user.id)
        ).all()
        assert notified == ["dispute_opened"]

    def test_second_active_dispute_is_rejected(self, dispute_service, open_dispute, parties):
        order, _ = open_dispute

        result = dispute_service.create_dispute(
            parties.seller_user.id, CreateDisputeParams(order_id=order.id, reason="Buyer unresponsive")
        )

        assert result.success is False
        assert result.error == "An active dispute already exists for this order"

    def test_completed_order_can_be_disputed_without_status_change(self, dispute_service, make_order, parties):
        order = make_order(OrderStatus.COMPLETED)

        result = dispute_service.create_dispute(
            parties.buyer.id, CreateDisputeParams(order_id=order.id, reason="Item broke a day later")
        )

        assert result.success is True
        assert order.status == OrderStatus.COMPLETED.value

    @pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.CANCELLED])
    def test_non_disputable_statuses(self, dispute_service, make_order, parties, status):
        order = make_order(status)
        result = dispute_service.create_dispute(
            parties.buyer.id, CreateDisputeParams(order_id=order.id, reason="Reason")
        )
        assert result.error == f"Cannot dispute orders with status: {status.value}"

    def test_only_participants(self, dispute_service, make_order, parties):
        order = make_order(OrderStatus.IN_PROGRESS)
        for user in (parties.outsider, parties.admin):
            result = dispute_service.create_dispute(
                user.id, CreateDisputeParams(order_id=order.id, reason="Reason")
            )
            assert result.error_code is ErrorCode.UNAUTHORIZED

    def test_reason_required(self):
        with pytest.raises(ValueError, match="Dispute reason is required"):
            CreateDisputeParams(order_id="o", reason="  ")

    def test_cancelled_dispute_allows_a_new_one(self, dispute_service, open_dispute, parties):
        order, dispute = open_dispute
        assert dispute_service.update_dispute_status(
            dispute.id, DisputeStatus.CANCELLED, parties.buyer.id
        ).success is True
        assert order.status == OrderStatus.IN_PROGRESS.value

        result = dispute_service.create_dispute(
            parties.buyer.id, CreateDisputeParams(order_id=order.id, reason="Second attempt")
        )

        assert result.success is True


class TestReads:

    def test_get_dispute_with_events(self, dispute_service, open_dispute, parties):
        order, dispute = open_dispute

        details = dispute_service.get_dispute(dispute.id, parties.seller_user.id).data

        assert details.dispute.id == dispute.id
        assert details.order.id == order.id
        assert [e.event_type for e in details.events] == ["dispute_created"]

    def test_outsider_cannot_view(self, dispute_service, open_dispute, parties):
        _, dispute = open_dispute
        result = dispute_service.get_dispute(dispute.id, parties.outsider.id)
        assert result.error == "Not authorized to view this dispute"

    def test_user_disputes(self, dispute_service, open_dispute, parties):
        _, dispute = open_dispute

        as_seller = dispute_service.get_user_disputes(parties.seller_user.id)
        assert [d.id for d in as_seller.disputes] == [dispute.id]
        assert as_seller.total == 1

        assert dispute_service.get_user_disputes(parties.buyer.id, status="resolved").total == 0
        assert dispute_service.get_user_disputes(parties.outsider.id).disputes == []
        assert dispute_service.get_user_disputes(parties.buyer.id, status="closed").error

    def test_stats(self, db_session, dispute_service, open_dispute):
        _, dispute = open_dispute
        dispute.status = DisputeStatus.RESOLVED.value
        dispute.created_at = utc_now() - timedelta(days=4)
        dispute.resolved_at = utc_now()
        db_session.commit()

        stats = dispute_service.get_dispute_stats().data

        assert stats.total == 1
        assert stats.resolved == 1
        assert stats.open == 0
        assert stats.average_resolution_days == 4
        assert stats.by_status["resolved"] == 1


class TestReviewPipeline:

    def test_assign_moves_open_to_under_review(self, db_session, dispute_service, open_dispute, parties):
        _, dispute = open_dispute

        result = dispute_service.assign_dispute(dispute.id, parties.admin.id, parties.admin.id)

        assert result.success is True
        assert dispute.assigned_to == parties.admin.id
        assert dispute.status == DisputeStatus.UNDER_REVIEW.value
        notified = db_session.scalars(
            select(NotificationQueue.notification_type).where(NotificationQueue.user_id == parties.admin.id)
        ).all()
        assert "dispute_assigned" in notified

    def test_assign_to_non_admin(self, dispute_service, open_dispute, parties):
        _, dispute = open_dispute
        result = dispute_service.assign_dispute(dispute.id, parties.outsider.id, parties.admin.id)
        assert result.error == "Admin user not found"

    def test_admin_moves_through_review(self, dispute_service, open_dispute, parties):
        _, dispute = open_dispute
        dispute_service.assign_dispute(dispute.id, parties.admin.id, parties.admin.id)

        result = dispute_service.update_dispute_status(dispute.id, "mediation", parties.admin.id, notes="Call booked")

        assert result.success is True
        assert dispute.status == DisputeStatus.MEDIATION.value

    def test_illegal_dispute_transition(self, dispute_service, open_dispute, parties):
        _, dispute = open_dispute
        result = dispute_service.update_dispute_status(dispute.id, DisputeStatus.ARBITRATION, parties.admin.id)
        assert result.error_code is ErrorCode.INVALID_TRANSITION
        assert dispute.status == DisputeStatus.OPEN.value

    def test_resolved_only_through_resolution(self, dispute_service, open_dispute, parties):
        _, dispute = open_dispute
        result = dispute_service.update_dispute_status(dispute.id, DisputeStatus.RESOLVED, parties.admin.id)
        assert result.error_code is ErrorCode.VALIDATION

    def test_parties_cannot_drive_review(self, dispute_service, open_dispute, parties):
        _, dispute = open_dispute
        result = dispute_service.update_dispute_status(dispute.id, DisputeStatus.UNDER_REVIEW, parties.buyer.id)
        assert result.error_code is ErrorCode.UNAUTHORIZED

    def test_only_raiser_may_cancel(self, dispute_service, open_dispute, parties):
        _, dispute = open_dispute
        result = dispute_service.update_dispute_status(dispute.id, DisputeStatus.CANCELLED, parties.seller_user.id)
        assert result.error_code is ErrorCode.UNAUTHORIZED


class TestEvidence:

    def test_party_adds_evidence(self, dispute_service, open_dispute, parties):
        _, dispute = open_dispute

        result = dispute_service.add_dispute_evidence(
            dispute.id, parties.seller_user.id, ["https://files.example/delivery.pdf", " "]
        )

        assert result.success is True
        assert dispute.evidence_urls == ["https://files.example/1.png", "https://files.example/delivery.pdf"]

    def test_evidence_required(self, dispute_service, open_dispute, parties):
        _, dispute = open_dispute
        result = dispute_service.add_dispute_evidence(dispute.id, parties.buyer.id, [])
        assert result.error_code is ErrorCode.VALIDATION

    def test_no_evidence_after_arbitration(self, db_session, dispute_service, open_dispute, parties):
        _, dispute = open_dispute
        dispute.status = DisputeStatus.ARBITRATION.value
        db_session.commit()

        result = dispute_service.add_dispute_evidence(dispute.id, parties.buyer.id, ["https://x"])

        assert result.error == "Cannot add evidence in current status"


class TestAutoResolution:

    def test_silent_seller_after_eight_days(self, db_session, dispute_service, open_dispute):
        _, dispute = open_dispute
        dispute.created_at = utc_now() - timedelta(days=8)
        db_session.commit()

        check = dispute_service.check_auto_resolution(dispute.id).data

        assert check.should_auto_resolve is True
        assert check.buyer_refund_percent == 100
        assert check.reason == "seller_no_response"

    def test_seller_response_prevents_auto_refund(self, db_session, dispute_service, open_dispute, parties):
        _, dispute = open_dispute
        dispute_service.add_dispute_evidence(dispute.id, parties.seller_user.id, ["https://files.example/proof"])
        dispute.created_at = utc_now() - timedelta(days=8)
        db_session.commit()

        check = dispute_service.check_auto_resolution(dispute.id).data

        assert check.should_auto_resolve is False

    def test_no_response_rule_needs_a_known_seller(self, db_session, dispute_service, open_dispute):
        """Without a seller profile, system events must not count as seller silence"""
        _, dispute = open_dispute
        dispute.created_at = utc_now() - timedelta(days=8)
        db_session.commit()

        with patch("services.dispute_service.get_seller_user_id", return_value=None):
            check = dispute_service.check_auto_resolution(dispute.id).data

        assert check.should_auto_resolve is False

    def test_fresh_dispute_is_not_auto_resolved(self, dispute_service, open_dispute):
        _, dispute = open_dispute
        assert dispute_service.check_auto_resolution(dispute.id).data.should_auto_resolve is False

    def test_thin_dispute_favours_seller(self, dispute_service, make_order, parties):
        order = make_order(OrderStatus.IN_PROGRESS)
        dispute = dispute_service.create_dispute(
            parties.buyer.id, CreateDisputeParams(order_id=order.id, reason="Bad")
        ).data

        check = dispute_service.check_auto_resolution(dispute.id).data

        assert check.should_auto_resolve is True
        assert check.buyer_refund_percent == 0
        assert check.reason == "insufficient_evidence"

    def test_explicit_clock(self, dispute_service, open_dispute):
        _, dispute = open_dispute
        later = utc_now() + timedelta(days=30)
        assert dispute_service.check_auto_resolution(dispute.id, now=later).data.should_auto_resolve is True

    def test_candidates(self, db_session, dispute_service, open_dispute):
        _, dispute = open_dispute
        dispute.created_at = utc_now() - timedelta(days=8)
        db_session.commit()

        candidates = dispute_service.find_auto_resolution_candidates().data

        assert [c.dispute_id for c in candidates] == [dispute.id]

    def test_unknown_dispute(self, dispute_service):
        assert dispute_service.check_auto_resolution("missing").error == "Dispute not found"

"""
Milestone and dispute transition tables
"""

from models import DisputeStatus, MilestoneStatus
from utils.entity_state_machines import DisputeStateMachine, MilestoneStateMachine


class TestMilestoneStateMachine:

    def test_happy_path(self):
        """pending → submitted → approved → paid"""
        assert MilestoneStateMachine.can_transition(MilestoneStatus.PENDING, MilestoneStatus.SUBMITTED)
        assert MilestoneStateMachine.can_transition(MilestoneStatus.SUBMITTED, MilestoneStatus.APPROVED)
        assert MilestoneStateMachine.can_transition(MilestoneStatus.APPROVED, MilestoneStatus.PAID)

    def test_failed_release_can_return_to_submitted(self):
        assert MilestoneStateMachine.can_transition("approved", "submitted") is True

    def test_cannot_skip_submission(self):
        assert MilestoneStateMachine.can_transition(MilestoneStatus.PENDING, MilestoneStatus.APPROVED) is False
        assert MilestoneStateMachine.can_transition(MilestoneStatus.PENDING, MilestoneStatus.PAID) is False

    def test_paid_and_rejected_are_terminal(self):
        for status in (MilestoneStatus.PAID, MilestoneStatus.REJECTED):
            assert MilestoneStateMachine.is_terminal_state(status) is True
            assert MilestoneStateMachine.get_valid_next_states(status) == []
        assert MilestoneStateMachine.can_transition(MilestoneStatus.PAID, MilestoneStatus.REJECTED) is False

    def test_validate_transition_message(self):
        is_valid, message = MilestoneStateMachine.validate_transition("paid", "submitted", "ms-1")
        assert is_valid is False
        assert message == "Cannot transition milestone from paid to submitted"


class TestDisputeStateMachine:

    def test_review_pipeline(self):
        assert DisputeStateMachine.get_valid_next_states(DisputeStatus.OPEN) == [
            DisputeStatus.UNDER_REVIEW, DisputeStatus.CANCELLED,
        ]
        assert DisputeStateMachine.can_transition(DisputeStatus.UNDER_REVIEW, DisputeStatus.MEDIATION)
        assert DisputeStateMachine.can_transition(DisputeStatus.MEDIATION, DisputeStatus.ARBITRATION)
        assert DisputeStateMachine.can_transition(DisputeStatus.ARBITRATION, DisputeStatus.RESOLVED)
        assert DisputeStateMachine.can_transition(DisputeStatus.ESCALATED, DisputeStatus.RESOLVED)

    def test_open_cannot_resolve_directly(self):
        assert DisputeStateMachine.can_transition(DisputeStatus.OPEN, DisputeStatus.RESOLVED) is False

    def test_terminal_states(self):
        assert DisputeStateMachine.is_terminal_state("resolved") is True
        assert DisputeStateMachine.is_terminal_state(DisputeStatus.CANCELLED) is True
        assert DisputeStateMachine.is_terminal_state(DisputeStatus.ESCALATED) is False

    def test_is_active(self):
        """Any non-terminal dispute blocks a new one on the same order"""
        assert DisputeStateMachine.is_active(DisputeStatus.OPEN) is True
        assert DisputeStateMachine.is_active("escalated") is True
        assert DisputeStateMachine.is_active(DisputeStatus.RESOLVED) is False
        assert DisputeStateMachine.is_active("nonsense") is False

    def test_resolvable_states_can_reach_resolved(self):
        for status in DisputeStateMachine.RESOLVABLE_STATES:
            assert DisputeStateMachine.can_transition(status, DisputeStatus.RESOLVED)

    def test_coerce_rejects_unknown(self):
        assert DisputeStateMachine.coerce("UNDER_REVIEW") is DisputeStatus.UNDER_REVIEW
        assert DisputeStateMachine.coerce("closed") is None
        assert DisputeStateMachine.coerce(None) is None

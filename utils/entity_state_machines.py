"""
Entity-Specific State Machine Implementations
Transition tables for milestones and disputes

Each machine is a static table plus total query helpers, matching the
order status machine. Nothing here touches the database.
"""

import logging
from types import MappingProxyType
from typing import FrozenSet, List, Mapping, Optional, Tuple, Type, Union

from models import MilestoneStatus, DisputeStatus

logger = logging.getLogger(__name__)


class TransitionTable:
    """Shared behaviour for enum-keyed transition tables"""

    status_enum: Type = None
    entity_name: str = "entity"
    VALID_TRANSITIONS: Mapping = MappingProxyType({})
    TERMINAL_STATES: FrozenSet = frozenset()

    @classmethod
    def coerce(cls, status) -> Optional[object]:
        if isinstance(status, cls.status_enum):
            return status
        if isinstance(status, str):
            try:
                return cls.status_enum(status.strip().lower())
            except ValueError:
                return None
        return None

    @classmethod
    def can_transition(cls, current, target) -> bool:
        current_status = cls.coerce(current)
        target_status = cls.coerce(target)
        if current_status is None or target_status is None:
            return False
        return target_status in cls.VALID_TRANSITIONS.get(current_status, frozenset())

    @classmethod
    def validate_transition(cls, current, target, entity_id: Optional[str] = None) -> Tuple[bool, str]:
        if cls.can_transition(current, target):
            return True, "Valid transition"
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        logger.warning(
            f"❌ INVALID_{cls.entity_name.upper()}_TRANSITION: {entity_id} "
            f"{current_value} → {target_value}"
        )
        return False, f"Cannot transition {cls.entity_name} from {current_value} to {target_value}"

    @classmethod
    def get_valid_next_states(cls, current) -> List:
        current_status = cls.coerce(current)
        if current_status is None:
            return []
        allowed = cls.VALID_TRANSITIONS.get(current_status, frozenset())
        return [s for s in cls.status_enum if s in allowed]

    @classmethod
    def is_terminal_state(cls, status) -> bool:
        return cls.coerce(status) in cls.TERMINAL_STATES


class MilestoneStateMachine(TransitionTable):
    """
    pending → submitted (seller) → approved (buyer) → paid (after release)

    Any unpaid milestone may be rejected when disputed. approved → submitted
    is the compensating move when the release transfer fails.
    """

    status_enum = MilestoneStatus
    entity_name = "milestone"

    VALID_TRANSITIONS = MappingProxyType({
        MilestoneStatus.PENDING: frozenset({MilestoneStatus.SUBMITTED, MilestoneStatus.REJECTED}),
        MilestoneStatus.SUBMITTED: frozenset({MilestoneStatus.APPROVED, MilestoneStatus.REJECTED}),
        MilestoneStatus.APPROVED: frozenset({
            MilestoneStatus.PAID,
            MilestoneStatus.SUBMITTED,
            MilestoneStatus.REJECTED,
        }),
        MilestoneStatus.PAID: frozenset(),
        MilestoneStatus.REJECTED: frozenset(),
    })
    TERMINAL_STATES = frozenset({MilestoneStatus.PAID, MilestoneStatus.REJECTED})


class DisputeStateMachine(TransitionTable):
    """Dispute review pipeline from open through to resolved or cancelled"""

    status_enum = DisputeStatus
    entity_name = "dispute"

    VALID_TRANSITIONS = MappingProxyType({
        DisputeStatus.OPEN: frozenset({DisputeStatus.UNDER_REVIEW, DisputeStatus.CANCELLED}),
        DisputeStatus.UNDER_REVIEW: frozenset({
            DisputeStatus.MEDIATION,
            DisputeStatus.RESOLVED,
            DisputeStatus.ESCALATED,
        }),
        DisputeStatus.MEDIATION: frozenset({
            DisputeStatus.RESOLVED,
            DisputeStatus.ARBITRATION,
            DisputeStatus.ESCALATED,
        }),
        DisputeStatus.ARBITRATION: frozenset({DisputeStatus.RESOLVED, DisputeStatus.ESCALATED}),
        DisputeStatus.ESCALATED: frozenset({DisputeStatus.RESOLVED}),
        DisputeStatus.RESOLVED: frozenset(),
        DisputeStatus.CANCELLED: frozenset(),
    })
    TERMINAL_STATES = frozenset({DisputeStatus.RESOLVED, DisputeStatus.CANCELLED})

    # Review states from which a financial resolution may be executed
    RESOLVABLE_STATES = frozenset({
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.MEDIATION,
        DisputeStatus.ARBITRATION,
        DisputeStatus.ESCALATED,
    })

    # States in which parties may still submit evidence
    EVIDENCE_STATES = frozenset({
        DisputeStatus.OPEN,
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.MEDIATION,
    })

    # Counted as "open" in dispute statistics
    OPEN_STATES = frozenset({
        DisputeStatus.OPEN,
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.MEDIATION,
        DisputeStatus.ARBITRATION,
    })

    @classmethod
    def is_active(cls, status: Union[DisputeStatus, str, None]) -> bool:
        """A dispute blocks new disputes on its order until it is terminal"""
        coerced = cls.coerce(status)
        return coerced is not None and coerced not in cls.TERMINAL_STATES

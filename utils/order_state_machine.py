"""
Order Status Machine
====================

Static lookup tables governing order status transitions and the UI actions
each party may take. Pure functions only: no I/O, no persistence, never raises.
Invalid input yields False, None or an empty list.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import FrozenSet, List, Mapping, Optional, Tuple, Union

from models import OrderStatus, OrderRole

logger = logging.getLogger(__name__)

StatusLike = Union[OrderStatus, str, None]
RoleLike = Union[OrderRole, str, None]


@dataclass(frozen=True)
class OrderAction:
    """An action offered to a party in the order UI"""

    action: str
    label: str
    variant: str = "default"  # default, secondary, destructive, outline
    requires_confirmation: bool = False
    confirmation_message: Optional[str] = None


VALID_TRANSITIONS: Mapping[OrderStatus, FrozenSet[OrderStatus]] = MappingProxyType({
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.CANCELLED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED}),
    OrderStatus.IN_PROGRESS: frozenset({
        OrderStatus.COMPLETED,
        OrderStatus.DISPUTED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.DISPUTED: frozenset({
        OrderStatus.IN_PROGRESS,
        OrderStatus.CANCELLED,
        OrderStatus.COMPLETED,
    }),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
})

TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

ACTIVE_STATES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.PENDING,
    OrderStatus.ACCEPTED,
    OrderStatus.IN_PROGRESS,
    OrderStatus.DISPUTED,
})

# Display order of next statuses follows the enum declaration order
_STATUS_ORDER: Tuple[OrderStatus, ...] = tuple(OrderStatus)

ACTION_STATUS_MAP: Mapping[str, OrderStatus] = MappingProxyType({
    "accept": OrderStatus.ACCEPTED,
    "decline": OrderStatus.CANCELLED,
    "start": OrderStatus.IN_PROGRESS,
    "complete": OrderStatus.COMPLETED,
    "dispute": OrderStatus.DISPUTED,
    "cancel": OrderStatus.CANCELLED,
    "resume_work": OrderStatus.IN_PROGRESS,
    "approve_completion": OrderStatus.COMPLETED,
})

STATUS_LABELS: Mapping[OrderStatus, str] = MappingProxyType({
    OrderStatus.PENDING: "Pending",
    OrderStatus.ACCEPTED: "Accepted",
    OrderStatus.IN_PROGRESS: "In Progress",
    OrderStatus.COMPLETED: "Completed",
    OrderStatus.DISPUTED: "Disputed",
    OrderStatus.CANCELLED: "Cancelled",
})

STATUS_DESCRIPTIONS: Mapping[OrderStatus, str] = MappingProxyType({
    OrderStatus.PENDING: "Waiting for the seller to accept the order",
    OrderStatus.ACCEPTED: "Seller has accepted, work will begin soon",
    OrderStatus.IN_PROGRESS: "Work is currently in progress",
    OrderStatus.COMPLETED: "Order has been completed successfully",
    OrderStatus.DISPUTED: "A dispute has been raised and is being reviewed",
    OrderStatus.CANCELLED: "Order has been cancelled",
})

_MESSAGE = OrderAction("message", "Send Message", "outline")
_VIEW_DETAILS = OrderAction("view_details", "View Details", "outline")

# (status, role) -> role-specific actions; "*" applies to every role
_ROLE_ACTIONS: Mapping[Tuple[OrderStatus, str], Tuple[OrderAction, ...]] = MappingProxyType({
    (OrderStatus.PENDING, OrderRole.SELLER.value): (
        OrderAction("accept", "Accept Order"),
        OrderAction(
            "decline", "Decline Order", "destructive", True,
            "Are you sure you want to decline this order? This cannot be undone.",
        ),
    ),
    (OrderStatus.PENDING, OrderRole.BUYER.value): (
        OrderAction(
            "cancel", "Cancel Order", "destructive", True,
            "Are you sure you want to cancel this order?",
        ),
    ),
    (OrderStatus.ACCEPTED, OrderRole.SELLER.value): (
        OrderAction("start", "Start Work"),
        OrderAction(
            "cancel", "Cancel Order", "destructive", True,
            "Are you sure you want to cancel this order? The buyer will be refunded.",
        ),
    ),
    (OrderStatus.ACCEPTED, OrderRole.BUYER.value): (
        OrderAction(
            "cancel", "Cancel Order", "destructive", True,
            "Are you sure you want to cancel this order?",
        ),
    ),
    (OrderStatus.IN_PROGRESS, OrderRole.SELLER.value): (
        OrderAction(
            "complete", "Mark as Complete", "default", True,
            "Mark this order as complete? The buyer will be asked to confirm.",
        ),
        OrderAction("submit_milestone", "Submit Milestone", "secondary"),
    ),
    (OrderStatus.IN_PROGRESS, OrderRole.BUYER.value): (
        OrderAction("approve_milestone", "Approve Milestone", "secondary"),
    ),
    (OrderStatus.IN_PROGRESS, "*"): (
        OrderAction(
            "cancel", "Request Cancellation", "outline", True,
            "Request cancellation of this order? The other party will be notified.",
        ),
    ),
    (OrderStatus.DISPUTED, OrderRole.BUYER.value): (
        OrderAction(
            "approve_completion", "Approve & Complete", "default", True,
            "Approve the work and complete the order? Funds will be released to the seller.",
        ),
    ),
    (OrderStatus.DISPUTED, OrderRole.SELLER.value): (
        OrderAction("resume_work", "Resume Work", "secondary"),
    ),
    (OrderStatus.DISPUTED, "*"): (
        OrderAction("view_dispute", "View Dispute", "outline"),
    ),
    (OrderStatus.COMPLETED, OrderRole.BUYER.value): (
        OrderAction("leave_review", "Leave Review", "secondary"),
    ),
    (OrderStatus.COMPLETED, "*"): (_VIEW_DETAILS,),
    (OrderStatus.CANCELLED, "*"): (_VIEW_DETAILS,),
})

_OPEN_DISPUTE_ACTION = OrderAction(
    "dispute", "Raise Dispute", "destructive", True,
    "Raise a dispute for this order? An administrator will review the case.",
)


def coerce_status(status: StatusLike) -> Optional[OrderStatus]:
    """Accept an OrderStatus or its string value; unknown input yields None"""
    if isinstance(status, OrderStatus):
        return status
    if isinstance(status, str):
        try:
            return OrderStatus(status.strip().lower())
        except ValueError:
            return None
    return None


def _coerce_role(role: RoleLike) -> Optional[str]:
    if isinstance(role, OrderRole):
        return role.value
    if isinstance(role, str) and role.strip():
        return role.strip().lower()
    return None


class OrderStateMachine:
    """
    Validates order status transitions and derives the actions available to
    each party. Mirrors the transition table above; every method is total.
    """

    VALID_TRANSITIONS = VALID_TRANSITIONS
    TERMINAL_STATES = TERMINAL_STATES
    ACTIVE_STATES = ACTIVE_STATES

    @classmethod
    def can_transition(cls, current: StatusLike, target: StatusLike) -> bool:
        current_status = coerce_status(current)
        target_status = coerce_status(target)
        if current_status is None or target_status is None:
            return False
        return target_status in cls.VALID_TRANSITIONS.get(current_status, frozenset())

    @classmethod
    def validate_transition(
        cls, current: StatusLike, target: StatusLike, order_id: Optional[str] = None
    ) -> Tuple[bool, str]:
        """
        Check a transition and produce the message surfaced to the user.

        Returns:
            (is_valid, message)
        """
        if cls.can_transition(current, target):
            logger.debug(f"✅ VALID_TRANSITION: order {order_id} {current} → {target}")
            return True, "Valid transition"

        current_label = _status_value(current)
        target_label = _status_value(target)
        logger.warning(
            f"❌ INVALID_TRANSITION: order {order_id} {current_label} → {target_label}"
        )
        return False, f"Cannot transition from {current_label} to {target_label}"

    @classmethod
    def get_next_statuses(cls, status: StatusLike) -> List[OrderStatus]:
        current = coerce_status(status)
        if current is None:
            return []
        allowed = cls.VALID_TRANSITIONS.get(current, frozenset())
        return [s for s in _STATUS_ORDER if s in allowed]

    @classmethod
    def find_transition_path(cls, current: StatusLike, target: StatusLike) -> Optional[List[OrderStatus]]:
        """
        Shortest chain of legal moves from current to target.

        Returns the statuses visited after current (empty when already there),
        or None when target cannot be reached.
        """
        start = coerce_status(current)
        goal = coerce_status(target)
        if start is None or goal is None:
            return None
        if start is goal:
            return []

        paths = {start: []}
        frontier = [start]
        while frontier:
            next_frontier = []
            for status in frontier:
                for candidate in cls.get_next_statuses(status):
                    if candidate in paths:
                        continue
                    paths[candidate] = paths[status] + [candidate]
                    if candidate is goal:
                        return paths[candidate]
                    next_frontier.append(candidate)
            frontier = next_frontier
        return None

    @classmethod
    def is_terminal_status(cls, status: StatusLike) -> bool:
        return coerce_status(status) in cls.TERMINAL_STATES

    @classmethod
    def is_active_status(cls, status: StatusLike) -> bool:
        return coerce_status(status) in cls.ACTIVE_STATES

    @classmethod
    def get_available_actions(
        cls, status: StatusLike, role: RoleLike, is_dispute_open: bool = False
    ) -> List[OrderAction]:
        """
        Actions a party may take on an order in the given status.

        Buyers are only offered "dispute" while no dispute is open on the
        order. Every non-terminal status also offers "message".
        """
        current = coerce_status(status)
        role_value = _coerce_role(role)
        if current is None or role_value is None:
            return []

        actions: List[OrderAction] = list(_ROLE_ACTIONS.get((current, role_value), ()))
        if (
            current is OrderStatus.IN_PROGRESS
            and role_value == OrderRole.BUYER.value
            and not is_dispute_open
        ):
            actions.insert(0, _OPEN_DISPUTE_ACTION)
        actions.extend(_ROLE_ACTIONS.get((current, "*"), ()))

        if current not in cls.TERMINAL_STATES:
            actions.append(_MESSAGE)
        return actions

    @classmethod
    def get_status_for_action(cls, action: str, current: StatusLike) -> Optional[OrderStatus]:
        """Resulting status of a status-changing action, or None if not allowed"""
        target = ACTION_STATUS_MAP.get(action) if isinstance(action, str) else None
        if target is None:
            return None
        return target if cls.can_transition(current, target) else None

    @classmethod
    def get_status_label(cls, status: StatusLike) -> str:
        current = coerce_status(status)
        if current is None:
            return str(status or "")
        return STATUS_LABELS[current]

    @classmethod
    def get_status_description(cls, status: StatusLike) -> str:
        current = coerce_status(status)
        return STATUS_DESCRIPTIONS.get(current, "") if current else ""


def _status_value(status: StatusLike) -> str:
    if isinstance(status, OrderStatus):
        return status.value
    return str(status)

"""Order status, workflow event and error code enums.

The five order statuses and their wire values are part of the public
contract. ``ORDER_STATUS_TRANSITIONS`` lists every status edge; the
event-level rules in ``state_machine`` may only take edges listed here.
"""

from enum import Enum
from typing import Dict, Optional, Set


class OrderStatus(str, Enum):
    """Registration order lifecycle status.

    Valid transitions:
    - DRAFT -> NEW (submit)
    - NEW -> RETURNED, IN_PROGRESS
    - RETURNED -> RETURNED (returned again), IN_PROGRESS
    - IN_PROGRESS -> APPROVED (board registered)
    - APPROVED -> (terminal state)

    Editing keeps NEW and RETURNED orders in their current status; deleting
    a DRAFT order tombstones it without changing its status.
    """

    DRAFT = "draft"
    NEW = "new"
    RETURNED = "returned"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"


# Statuses an applicant sees in their own order list
USER_VISIBLE_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.DRAFT, OrderStatus.RETURNED, OrderStatus.APPROVED}
)


class OrderEvent(str, Enum):
    """Commands that drive an order through its lifecycle."""

    CREATE = "create"
    SUBMIT = "submit"
    DELETE = "delete"
    EDIT = "edit"
    RETURN_TO_USER = "return_to_user"
    SET_IN_PROGRESS = "set_in_progress"
    REGISTER_BOARD = "register_board"


class ErrorCode(str, Enum):
    """Stable error codes carried by failed service results."""

    DUPLICATE_ENGINE = "DUPLICATE_ENGINE"
    DUPLICATE_BOARD = "DUPLICATE_BOARD"
    INVALID_STATUS = "INVALID_STATUS"
    MISSING_COMMENT = "MISSING_COMMENT"
    INVALID_FORMAT = "INVALID_FORMAT"
    MISSING_DATA = "MISSING_DATA"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.DRAFT: {OrderStatus.NEW},
    OrderStatus.NEW: {OrderStatus.RETURNED, OrderStatus.IN_PROGRESS},
    OrderStatus.RETURNED: {OrderStatus.RETURNED, OrderStatus.IN_PROGRESS},
    OrderStatus.IN_PROGRESS: {OrderStatus.APPROVED},
    OrderStatus.APPROVED: set(),
}


def get_allowed_order_transitions(
    current_status: Optional[OrderStatus],
) -> Set[OrderStatus]:
    """Statuses reachable in one step, or ``{DRAFT}`` for a new order."""
    if current_status is None:
        return {OrderStatus.DRAFT}
    return set(ORDER_STATUS_TRANSITIONS.get(current_status, set()))

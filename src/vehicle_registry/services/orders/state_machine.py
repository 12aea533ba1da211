"""Order state machine with transition guards and side effects.

The machine is pure: it inspects an order snapshot and a transition request,
raises ``StateTransitionError`` when the request is not allowed, and returns
the column values a legal transition writes. Persistence, uniqueness checks
against other orders and cache invalidation are the lifecycle service's job.

Checks run status first, then the shape of the supplied data. Uniqueness
against other orders is checked by the service, after the data guards for
new values and before them for values already stored on the order.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Optional, Set

from vehicle_registry.core.logging import get_logger
from vehicle_registry.schemas.orders import OrderFields
from vehicle_registry.services.orders.enums import (
    ErrorCode,
    OrderEvent,
    OrderStatus,
    get_allowed_order_transitions,
)

logger = get_logger(__name__)

BOARD_NUMBER_PATTERN = re.compile(r"(?=.*[A-Z])[A-Z0-9]+")


class StateTransitionError(Exception):
    """Raised when a transition is not allowed for the order's current state.

    Attributes:
        code: Error code reported to the caller
        current_state: Status of the order when the request was checked
        event: Requested transition
        errors: Individual validation messages, if the failure has several
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        current_state: Optional[OrderStatus],
        event: OrderEvent,
        errors: Optional[list[str]] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.current_state = current_state
        self.event = event
        self.errors = errors or []
        self.context = context


@dataclass(frozen=True)
class TransitionRule:
    """Source statuses an event is legal from, and the status it leads to.

    ``None`` in ``sources`` stands for "no order yet"; a ``None`` target
    keeps the current status.
    """

    sources: FrozenSet[Optional[OrderStatus]]
    target: Optional[OrderStatus]
    status_message: str


EVENT_TRANSITIONS: Dict[OrderEvent, TransitionRule] = {
    OrderEvent.CREATE: TransitionRule(
        frozenset({None}), OrderStatus.DRAFT, "Order already exists"
    ),
    OrderEvent.SUBMIT: TransitionRule(
        frozenset({OrderStatus.DRAFT}),
        OrderStatus.NEW,
        "Only draft orders can be submitted",
    ),
    OrderEvent.DELETE: TransitionRule(
        frozenset({OrderStatus.DRAFT}),
        None,
        "Only draft orders can be deleted",
    ),
    OrderEvent.EDIT: TransitionRule(
        frozenset({OrderStatus.NEW, OrderStatus.RETURNED}),
        None,
        "Order cannot be edited in its current status",
    ),
    OrderEvent.RETURN_TO_USER: TransitionRule(
        frozenset({OrderStatus.NEW, OrderStatus.RETURNED}),
        OrderStatus.RETURNED,
        "Order cannot be returned from its current status",
    ),
    OrderEvent.SET_IN_PROGRESS: TransitionRule(
        frozenset({OrderStatus.NEW, OrderStatus.RETURNED}),
        OrderStatus.IN_PROGRESS,
        "Order cannot be moved to in progress from its current status",
    ),
    OrderEvent.REGISTER_BOARD: TransitionRule(
        frozenset({OrderStatus.IN_PROGRESS}),
        OrderStatus.APPROVED,
        "Order is not in progress",
    ),
}


@dataclass
class TransitionRequest:
    """Everything a transition needs besides the order itself."""

    event: OrderEvent
    actor_id: str
    actor_name: str
    at: datetime
    fields: Optional[OrderFields] = None
    comment: Optional[str] = None
    board_number: Optional[str] = None


def normalize_board_number(value: Optional[str]) -> str:
    """Uppercase a board number and drop all whitespace ("ab 12" -> "AB12")."""
    return "".join((value or "").split()).upper()


def is_valid_board_number(value: str) -> bool:
    """True if the normalized value has only A-Z and 0-9 and at least one letter."""
    return BOARD_NUMBER_PATTERN.fullmatch(value) is not None


def validate_order_fields(fields: OrderFields) -> list[str]:
    """Return one message per missing or invalid applicant/vehicle field."""
    errors: list[str] = []
    if not (fields.full_name or "").strip():
        errors.append("Applicant full name is required.")
    if not (fields.national_number or "").strip():
        errors.append("National number is required.")
    if not (fields.car_name or "").strip():
        errors.append("Car name is required.")
    if not (fields.model or "").strip():
        errors.append("Model is required.")
    if fields.year_of_manufacture is None or fields.year_of_manufacture <= 0:
        errors.append("Year of manufacture is invalid.")
    if not (fields.engine_number or "").strip():
        errors.append("Engine number is required.")
    return errors


class OrderStateMachine:
    """State machine for registration order lifecycle transitions."""

    def __init__(self):
        self._transition_guards: Dict[
            OrderEvent, Callable[[Optional[Any], TransitionRequest], None]
        ] = self._initialize_guards()
        self._side_effects: Dict[
            OrderEvent, Callable[[Optional[Any], TransitionRequest], Dict[str, Any]]
        ] = self._initialize_side_effects()

    def _initialize_guards(
        self,
    ) -> Dict[OrderEvent, Callable[[Optional[Any], TransitionRequest], None]]:
        return {
            OrderEvent.CREATE: self._guard_fields_valid,
            OrderEvent.EDIT: self._guard_fields_valid,
            OrderEvent.RETURN_TO_USER: self._guard_comment_present,
            OrderEvent.SET_IN_PROGRESS: self._guard_vehicle_data_complete,
            OrderEvent.REGISTER_BOARD: self._guard_board_number_format,
        }

    def _initialize_side_effects(
        self,
    ) -> Dict[OrderEvent, Callable[[Optional[Any], TransitionRequest], Dict[str, Any]]]:
        return {
            OrderEvent.CREATE: self._effect_created,
            OrderEvent.SUBMIT: self._effect_status_changed,
            OrderEvent.DELETE: self._effect_deleted,
            OrderEvent.EDIT: self._effect_modified,
            OrderEvent.RETURN_TO_USER: self._effect_returned,
            OrderEvent.SET_IN_PROGRESS: self._effect_status_changed,
            OrderEvent.REGISTER_BOARD: self._effect_board_registered,
        }

    def validate_transition(
        self, order: Optional[Any], request: TransitionRequest
    ) -> None:
        """Check status and data guards for the requested event.

        Raises:
            StateTransitionError: If the event is not allowed
        """
        self.check_status(order, request)

        guard = self._transition_guards.get(request.event)
        if guard is not None:
            guard(order, request)

    def check_status(self, order: Optional[Any], request: TransitionRequest) -> None:
        """Check only the status precondition of the requested event.

        Raises:
            StateTransitionError: With ``INVALID_STATUS`` if the event cannot
                fire from the order's current status
        """
        rule = EVENT_TRANSITIONS[request.event]
        current_status = order.status if order is not None else None

        if not self.is_allowed(current_status, request.event):
            errors = [rule.status_message] if request.event is OrderEvent.DELETE else None
            raise StateTransitionError(
                rule.status_message,
                code=ErrorCode.INVALID_STATUS,
                current_state=current_status,
                event=request.event,
                errors=errors,
                allowed_events=[e.value for e in self.get_allowed_events(current_status)],
            )

    def build_changes(
        self, order: Optional[Any], request: TransitionRequest
    ) -> Dict[str, Any]:
        """Column values written by a transition that already passed validation."""
        rule = EVENT_TRANSITIONS[request.event]
        changes = self._side_effects[request.event](order, request)
        if rule.target is not None:
            changes["status"] = rule.target
        return changes

    def apply_transition(
        self, order: Optional[Any], request: TransitionRequest
    ) -> Dict[str, Any]:
        """Validate the request and return the resulting column values."""
        self.validate_transition(order, request)
        changes = self.build_changes(order, request)

        logger.debug(
            "State transition validated",
            order_id=str(order.id) if order is not None else None,
            order_event=request.event.value,
            current_status=order.status.value if order is not None else None,
            target_status=changes["status"].value if "status" in changes else None,
        )
        return changes

    def is_allowed(self, status: Optional[OrderStatus], event: OrderEvent) -> bool:
        """True if ``event`` may fire from ``status``.

        Status-changing events must also follow an edge of
        ``ORDER_STATUS_TRANSITIONS``.
        """
        rule = EVENT_TRANSITIONS[event]
        if status not in rule.sources:
            return False
        return rule.target is None or rule.target in get_allowed_order_transitions(status)

    def get_allowed_events(self, status: Optional[OrderStatus]) -> Set[OrderEvent]:
        """Events that may fire from the given status."""
        return {event for event in EVENT_TRANSITIONS if self.is_allowed(status, event)}

    # Transition Guards

    def _guard_fields_valid(
        self, order: Optional[Any], request: TransitionRequest
    ) -> None:
        errors = (
            validate_order_fields(request.fields)
            if request.fields is not None
            else ["Order data is required."]
        )
        if errors:
            raise StateTransitionError(
                "Order data is invalid",
                code=ErrorCode.VALIDATION_FAILED,
                current_state=order.status if order is not None else None,
                event=request.event,
                errors=errors,
            )

    def _guard_comment_present(self, order: Any, request: TransitionRequest) -> None:
        if not (request.comment or "").strip():
            raise StateTransitionError(
                "A reason for returning the order is required",
                code=ErrorCode.MISSING_COMMENT,
                current_state=order.status,
                event=request.event,
            )

    def _guard_vehicle_data_complete(
        self, order: Any, request: TransitionRequest
    ) -> None:
        complete = (
            bool((order.car_name or "").strip())
            and bool((order.model or "").strip())
            and (order.year_of_manufacture or 0) > 0
        )
        if not complete:
            raise StateTransitionError(
                "Vehicle data is incomplete; correct the order before processing it",
                code=ErrorCode.MISSING_DATA,
                current_state=order.status,
                event=request.event,
            )

    def _guard_board_number_format(
        self, order: Any, request: TransitionRequest
    ) -> None:
        if not is_valid_board_number(normalize_board_number(request.board_number)):
            raise StateTransitionError(
                "Board number must contain only capital letters and digits, "
                "with at least one letter",
                code=ErrorCode.INVALID_FORMAT,
                current_state=order.status,
                event=request.event,
            )

    # Side Effects

    def _status_stamp(self, request: TransitionRequest) -> Dict[str, Any]:
        return {
            "status_changed_at": request.at,
            "status_changed_by_id": request.actor_id,
            "status_changed_by_name": request.actor_name,
        }

    def _effect_created(
        self, order: Optional[Any], request: TransitionRequest
    ) -> Dict[str, Any]:
        changes = request.fields.model_dump()
        changes.update(
            created_by_id=request.actor_id,
            created_by_name=request.actor_name,
            created_at=request.at,
            is_deleted=False,
        )
        return changes

    def _effect_status_changed(
        self, order: Any, request: TransitionRequest
    ) -> Dict[str, Any]:
        return self._status_stamp(request)

    def _effect_deleted(self, order: Any, request: TransitionRequest) -> Dict[str, Any]:
        return {
            "is_deleted": True,
            "deleted_at": request.at,
            "deleted_by_id": request.actor_id,
            "deleted_by_name": request.actor_name,
        }

    def _effect_modified(self, order: Any, request: TransitionRequest) -> Dict[str, Any]:
        changes = request.fields.model_dump()
        changes.update(
            modified_at=request.at,
            modified_by_id=request.actor_id,
            modified_by_name=request.actor_name,
        )
        return changes

    def _effect_returned(self, order: Any, request: TransitionRequest) -> Dict[str, Any]:
        changes = self._status_stamp(request)
        changes["return_comment"] = request.comment.strip()
        return changes

    def _effect_board_registered(
        self, order: Any, request: TransitionRequest
    ) -> Dict[str, Any]:
        changes = self._status_stamp(request)
        changes["board_number"] = normalize_board_number(request.board_number)
        return changes


def get_order_state_machine() -> OrderStateMachine:
    """Factory used by the lifecycle service and the HTTP dependencies."""
    return OrderStateMachine()

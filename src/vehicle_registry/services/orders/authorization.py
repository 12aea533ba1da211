"""Role and ownership policy for order operations.

The lifecycle service trusts its caller; this policy is what the HTTP layer
consults before invoking it. ``authorize`` is a pure function of the actor,
the operation and, for owner-only operations, the order's creator.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional


class ActorRole(str, Enum):
    USER = "user"
    ADMINISTRATOR = "administrator"
    ORDER_VALIDATOR = "order_validator"
    BOARD_REGISTRAR = "board_registrar"

    @classmethod
    def from_string(cls, value: str) -> "ActorRole":
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid_values = ", ".join(r.value for r in cls)
            raise ValueError(f"Invalid role: {value}. Valid values are: {valid_values}")


class OrderOperation(str, Enum):
    CREATE = "create"
    VIEW_OWN = "view_own"
    VIEW = "view"
    EDIT = "edit"
    SUBMIT = "submit"
    DELETE = "delete"
    RETURN_TO_USER = "return_to_user"
    SET_IN_PROGRESS = "set_in_progress"
    VIEW_VALIDATOR_QUEUE = "view_validator_queue"
    REGISTER_BOARD = "register_board"
    VIEW_BY_STATUS = "view_by_status"


@dataclass(frozen=True)
class Actor:
    """Identity supplied by the caller's identity provider."""

    id: str
    name: str
    role: ActorRole


_APPLICANT = frozenset({ActorRole.USER, ActorRole.ADMINISTRATOR})
_VALIDATOR = frozenset({ActorRole.ORDER_VALIDATOR, ActorRole.ADMINISTRATOR})
_REGISTRAR = frozenset({ActorRole.BOARD_REGISTRAR, ActorRole.ADMINISTRATOR})

OPERATION_ROLES: Dict[OrderOperation, FrozenSet[ActorRole]] = {
    OrderOperation.CREATE: _APPLICANT,
    OrderOperation.VIEW_OWN: _APPLICANT,
    OrderOperation.EDIT: _APPLICANT,
    OrderOperation.SUBMIT: _APPLICANT,
    OrderOperation.DELETE: _APPLICANT,
    OrderOperation.RETURN_TO_USER: _VALIDATOR,
    OrderOperation.SET_IN_PROGRESS: _VALIDATOR,
    OrderOperation.VIEW_VALIDATOR_QUEUE: _VALIDATOR,
    OrderOperation.REGISTER_BOARD: _REGISTRAR,
    OrderOperation.VIEW_BY_STATUS: _VALIDATOR | _REGISTRAR,
    OrderOperation.VIEW: frozenset(ActorRole),
}

# Operations a plain user may only perform on orders they created
OWNER_ONLY: FrozenSet[OrderOperation] = frozenset(
    {
        OrderOperation.EDIT,
        OrderOperation.SUBMIT,
        OrderOperation.DELETE,
        OrderOperation.VIEW,
    }
)


def requires_ownership(actor: Actor, operation: OrderOperation) -> bool:
    """True if the policy needs the order's creator to decide."""
    if operation is OrderOperation.VIEW:
        return actor.role is ActorRole.USER
    return operation in OWNER_ONLY


def authorize(
    actor: Actor,
    operation: OrderOperation,
    owner_id: Optional[str] = None,
) -> bool:
    """Decide whether ``actor`` may perform ``operation``.

    For owner-only operations ``owner_id`` must be the order's creator; a
    missing owner denies the request.
    """
    if actor.role not in OPERATION_ROLES[operation]:
        return False
    if requires_ownership(actor, operation):
        return owner_id is not None and owner_id == actor.id
    return True

"""
FastAPI dependencies for actor identity, role checks and service wiring.

Authentication happens upstream; the identity provider forwards the acting
user as ``X-Actor-Id``, ``X-Actor-Name`` and ``X-Actor-Role`` headers.
"""

from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from vehicle_registry.core.config import get_settings
from vehicle_registry.core.logging import get_logger, set_actor_id
from vehicle_registry.database.connection import get_db
from vehicle_registry.services.cache.order_cache import OrderCache
from vehicle_registry.services.orders.authorization import (
    OPERATION_ROLES,
    Actor,
    ActorRole,
    OrderOperation,
)
from vehicle_registry.services.orders.service import OrderLifecycleService

logger = get_logger(__name__)


async def get_current_actor(
    x_actor_id: Annotated[Optional[str], Header()] = None,
    x_actor_name: Annotated[Optional[str], Header()] = None,
    x_actor_role: Annotated[Optional[str], Header()] = None,
) -> Actor:
    """
    Build the acting user from identity headers.

    Raises:
        HTTPException: 401 if the identity headers are missing or invalid
    """
    if not x_actor_id or not x_actor_role:
        logger.warning("Request rejected: missing actor identity")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Actor identity headers are required",
        )

    try:
        role = ActorRole.from_string(x_actor_role)
    except ValueError:
        logger.warning("Request rejected: unknown role", role=x_actor_role)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown actor role",
        )

    set_actor_id(x_actor_id)
    return Actor(id=x_actor_id, name=x_actor_name or x_actor_id, role=role)


def require_operation(operation: OrderOperation):
    """
    Create a dependency that checks the actor's role for an operation.

    Ownership rules are checked by the route once the order is loaded.

    Example:
        @router.get("/queue")
        async def queue(actor: Annotated[Actor, Depends(require_operation(OrderOperation.VIEW_VALIDATOR_QUEUE))]):
            ...
    """

    async def role_checker(
        actor: Annotated[Actor, Depends(get_current_actor)],
    ) -> Actor:
        if actor.role not in OPERATION_ROLES[operation]:
            logger.warning(
                "Access denied: insufficient role",
                actor_role=actor.role.value,
                operation=operation.value,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return actor

    return role_checker


def get_order_cache() -> Optional[OrderCache]:
    """The shared order cache, or None when caching is disabled."""
    if not get_settings().cache_enabled:
        return None
    return OrderCache()


async def get_order_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    cache: Annotated[Optional[OrderCache], Depends(get_order_cache)],
) -> OrderLifecycleService:
    return OrderLifecycleService(db, cache=cache)


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
OrderServiceDep = Annotated[OrderLifecycleService, Depends(get_order_service)]

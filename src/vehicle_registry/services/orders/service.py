"""
Order lifecycle service.

Each mutation follows the same sequence: load the current row from the
repository (never from the cache), let the state machine check the status
guard, check uniqueness of values already on the row, run the data guards,
check uniqueness of new values against other orders, write with the
version token that was read, then invalidate the order's cache entries
before reporting success.

Every operation returns a ``ServiceResult``. Expected rejections carry an
``ErrorCode``; anything unexpected is logged with its context and reported
as ``UNEXPECTED_ERROR`` with a generic message.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from vehicle_registry.core.config import get_settings
from vehicle_registry.core.logging import get_logger
from vehicle_registry.database.models.order import Order
from vehicle_registry.schemas.orders import OrderFields, OrderResponse
from vehicle_registry.services.cache.order_cache import OrderCache
from vehicle_registry.services.orders.enums import (
    USER_VISIBLE_STATUSES,
    ErrorCode,
    OrderEvent,
    OrderStatus,
)
from vehicle_registry.services.orders.repository import (
    OrderRepository,
    PersistResult,
    PersistStatus,
)
from vehicle_registry.services.orders.results import ServiceResult
from vehicle_registry.services.orders.state_machine import (
    OrderStateMachine,
    StateTransitionError,
    TransitionRequest,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]

DUPLICATE_ENGINE_MESSAGE = "Engine number is already registered to another order."
DUPLICATE_BOARD_MESSAGE = "Board number is already assigned to another order."
NOT_FOUND_MESSAGE = "Order not found."
CONFLICT_MESSAGE = "The order was changed by someone else. Reload it and try again."


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderLifecycleService:
    """
    Registration order workflow operations.

    Attributes:
        repository: Order repository bound to the request's session
        cache: Read-through order cache, or None to read straight from the database
        state_machine: Transition rules
    """

    def __init__(
        self,
        session: AsyncSession,
        cache: Optional[OrderCache] = None,
        state_machine: Optional[OrderStateMachine] = None,
        clock: Optional[Clock] = None,
        max_conflict_retries: Optional[int] = None,
    ):
        self.repository = OrderRepository(session)
        self.cache = cache
        self.state_machine = state_machine or OrderStateMachine()
        self._clock = clock or utc_now
        self.max_conflict_retries = (
            max_conflict_retries
            if max_conflict_retries is not None
            else get_settings().max_conflict_retries
        )

    # Commands

    async def create(
        self, fields: OrderFields, actor_id: str, actor_name: str
    ) -> ServiceResult[OrderResponse]:
        """Create a Draft order owned by the actor."""

        async def action() -> ServiceResult[OrderResponse]:
            request = TransitionRequest(
                OrderEvent.CREATE, actor_id, actor_name, self._clock(), fields=fields
            )
            changes = self.state_machine.apply_transition(None, request)

            if await self.repository.engine_number_exists(changes["engine_number"]):
                return self._duplicate(PersistStatus.DUPLICATE_ENGINE, None, request)

            order_id = uuid.uuid4()
            persisted = await self.repository.add(
                Order(id=order_id, row_version=1, **changes)
            )
            if not persisted.saved:
                return self._duplicate(persisted.status, order_id, request)

            response = OrderResponse.model_validate(persisted.order)
            await self._invalidate(order_id, actor_id)

            logger.info(
                "Order created",
                order_id=str(order_id),
                actor_id=actor_id,
                status=response.status.value,
            )
            return ServiceResult.success(response)

        return await self._guarded("create_order", None, action)

    async def submit(
        self, order_id: uuid.UUID, actor_id: str, actor_name: str
    ) -> ServiceResult[OrderResponse]:
        """Draft -> New."""
        request = TransitionRequest(OrderEvent.SUBMIT, actor_id, actor_name, self._clock())
        return await self._transition(order_id, request)

    async def edit(
        self,
        order_id: uuid.UUID,
        fields: OrderFields,
        actor_id: str,
        actor_name: str,
    ) -> ServiceResult[OrderResponse]:
        """Overwrite applicant and vehicle fields of a New or Returned order."""
        request = TransitionRequest(
            OrderEvent.EDIT, actor_id, actor_name, self._clock(), fields=fields
        )
        return await self._transition(order_id, request)

    async def delete(
        self, order_id: uuid.UUID, actor_id: str, actor_name: str
    ) -> ServiceResult[bool]:
        """Soft-delete a Draft order."""
        request = TransitionRequest(OrderEvent.DELETE, actor_id, actor_name, self._clock())
        result = await self._transition(order_id, request)
        if not result.is_success:
            return result
        return ServiceResult.success(True)

    async def return_to_user(
        self,
        order_id: uuid.UUID,
        actor_id: str,
        actor_name: str,
        comment: Optional[str],
    ) -> ServiceResult[OrderResponse]:
        """Send a New or Returned order back to its applicant with a reason."""
        request = TransitionRequest(
            OrderEvent.RETURN_TO_USER,
            actor_id,
            actor_name,
            self._clock(),
            comment=comment,
        )
        return await self._transition(order_id, request)

    async def set_in_progress(
        self, order_id: uuid.UUID, actor_id: str, actor_name: str
    ) -> ServiceResult[OrderResponse]:
        """Accept a New or Returned order for registration."""
        request = TransitionRequest(
            OrderEvent.SET_IN_PROGRESS, actor_id, actor_name, self._clock()
        )
        return await self._transition(order_id, request)

    async def register_board(
        self,
        order_id: uuid.UUID,
        board_number: Optional[str],
        actor_id: str,
        actor_name: str,
    ) -> ServiceResult[OrderResponse]:
        """Assign a normalized board number and approve the order."""
        request = TransitionRequest(
            OrderEvent.REGISTER_BOARD,
            actor_id,
            actor_name,
            self._clock(),
            board_number=board_number,
        )
        return await self._transition(order_id, request)

    # Queries

    async def get_by_id(self, order_id: uuid.UUID) -> ServiceResult[OrderResponse]:
        async def load() -> Optional[OrderResponse]:
            order = await self.repository.get_by_id(order_id)
            return OrderResponse.model_validate(order) if order is not None else None

        async def action() -> ServiceResult[OrderResponse]:
            if self.cache is not None:
                response = await self.cache.get_order(order_id, load)
            else:
                response = await load()
            if response is None:
                return ServiceResult.failure(ErrorCode.ORDER_NOT_FOUND, NOT_FOUND_MESSAGE)
            return ServiceResult.success(response)

        return await self._guarded("get_order", order_id, action)

    async def get_for_user(self, user_id: str) -> ServiceResult[list[OrderResponse]]:
        """The applicant's own Draft, Returned and Approved orders."""

        async def load() -> list[OrderResponse]:
            orders = await self.repository.get_by_user(user_id, USER_VISIBLE_STATUSES)
            return [OrderResponse.model_validate(order) for order in orders]

        async def action() -> ServiceResult[list[OrderResponse]]:
            if self.cache is not None:
                return ServiceResult.success(await self.cache.get_user_orders(user_id, load))
            return ServiceResult.success(await load())

        return await self._guarded("get_user_orders", None, action, user_id=user_id)

    async def get_by_statuses(
        self, statuses: Iterable[OrderStatus]
    ) -> ServiceResult[list[OrderResponse]]:
        status_list = list(statuses)

        async def action() -> ServiceResult[list[OrderResponse]]:
            orders = await self.repository.get_by_statuses(status_list)
            return ServiceResult.success(
                [OrderResponse.model_validate(order) for order in orders]
            )

        return await self._guarded(
            "get_orders_by_statuses",
            None,
            action,
            statuses=[s.value for s in status_list],
        )

    async def get_validator_queue(self) -> ServiceResult[list[OrderResponse]]:
        async def action() -> ServiceResult[list[OrderResponse]]:
            orders = await self.repository.get_validator_queue()
            return ServiceResult.success(
                [OrderResponse.model_validate(order) for order in orders]
            )

        return await self._guarded("get_validator_queue", None, action)

    # Internals

    async def _transition(
        self, order_id: uuid.UUID, request: TransitionRequest
    ) -> ServiceResult[OrderResponse]:
        async def action() -> ServiceResult[OrderResponse]:
            for attempt in range(self.max_conflict_retries + 1):
                order = await self.repository.get_by_id(order_id)
                if order is None:
                    return ServiceResult.failure(
                        ErrorCode.ORDER_NOT_FOUND, NOT_FOUND_MESSAGE
                    )

                self.state_machine.check_status(order, request)
                duplicate = await self._find_stored_duplicate(order, request)
                if duplicate is not None:
                    return self._duplicate(duplicate, order_id, request)

                changes = self.state_machine.apply_transition(order, request)

                duplicate = await self._find_duplicate(order, request, changes)
                if duplicate is not None:
                    return self._duplicate(duplicate, order_id, request)

                owner_id = order.created_by_id
                persisted = await self.repository.update(
                    order_id, order.row_version, changes
                )
                if persisted.status is PersistStatus.CONFLICT:
                    logger.info(
                        "Order changed concurrently, reloading",
                        order_id=str(order_id),
                        order_event=request.event.value,
                        attempt=attempt + 1,
                    )
                    continue
                if not persisted.saved:
                    return self._duplicate(persisted.status, order_id, request)

                return await self._finish(persisted, owner_id, request)

            logger.warning(
                "Order update abandoned after repeated conflicts",
                order_id=str(order_id),
                order_event=request.event.value,
                attempts=self.max_conflict_retries + 1,
            )
            return ServiceResult.failure(ErrorCode.CONCURRENCY_CONFLICT, CONFLICT_MESSAGE)

        return await self._guarded(
            request.event.value, order_id, action, actor_id=request.actor_id
        )

    async def _find_stored_duplicate(
        self, order: Order, request: TransitionRequest
    ) -> Optional[PersistStatus]:
        """Uniqueness of values already on the row, checked before data guards."""
        if request.event is OrderEvent.SET_IN_PROGRESS:
            if await self.repository.engine_number_exists(
                order.engine_number, exclude_id=order.id
            ):
                return PersistStatus.DUPLICATE_ENGINE
        return None

    async def _find_duplicate(
        self, order: Order, request: TransitionRequest, changes: dict[str, Any]
    ) -> Optional[PersistStatus]:
        """Uniqueness pre-check of new values against other non-deleted orders."""
        if request.event is OrderEvent.EDIT:
            if await self.repository.engine_number_exists(
                changes["engine_number"], exclude_id=order.id
            ):
                return PersistStatus.DUPLICATE_ENGINE
        elif request.event is OrderEvent.REGISTER_BOARD:
            if await self.repository.board_number_exists(
                changes["board_number"], exclude_id=order.id
            ):
                return PersistStatus.DUPLICATE_BOARD
        return None

    async def _finish(
        self, persisted: PersistResult, owner_id: str, request: TransitionRequest
    ) -> ServiceResult[OrderResponse]:
        response = OrderResponse.model_validate(persisted.order)
        await self._invalidate(response.id, owner_id)

        logger.info(
            "Order transition applied",
            order_id=str(response.id),
            order_event=request.event.value,
            status=response.status.value,
            actor_id=request.actor_id,
            row_version=response.row_version,
        )
        return ServiceResult.success(response)

    def _duplicate(
        self,
        status: PersistStatus,
        order_id: Optional[uuid.UUID],
        request: TransitionRequest,
    ) -> ServiceResult[Any]:
        logger.info(
            "Order rejected as duplicate",
            order_id=str(order_id) if order_id else None,
            order_event=request.event.value,
            outcome=status.value,
        )
        if status is PersistStatus.DUPLICATE_BOARD:
            return ServiceResult.failure(ErrorCode.DUPLICATE_BOARD, DUPLICATE_BOARD_MESSAGE)
        return ServiceResult.failure(ErrorCode.DUPLICATE_ENGINE, DUPLICATE_ENGINE_MESSAGE)

    async def _invalidate(self, order_id: uuid.UUID, owner_id: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate(order_id, owner_id)

    async def _guarded(
        self,
        operation: str,
        order_id: Optional[uuid.UUID],
        action: Callable[[], Awaitable[ServiceResult[Any]]],
        **context: Any,
    ) -> ServiceResult[Any]:
        """Run ``action`` and turn exceptions into failed results."""
        try:
            return await action()
        except StateTransitionError as e:
            logger.info(
                "Order transition rejected",
                operation=operation,
                order_id=str(order_id) if order_id else None,
                error_code=e.code.value,
                current_status=e.current_state.value if e.current_state else None,
                **context,
            )
            if e.errors:
                return ServiceResult.validation_failure(e.errors, code=e.code)
            return ServiceResult.failure(e.code, e.message)
        except Exception as e:
            logger.error(
                "Order operation failed unexpectedly",
                operation=operation,
                order_id=str(order_id) if order_id else None,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
                **context,
            )
            return ServiceResult.failure(
                ErrorCode.UNEXPECTED_ERROR,
                "An unexpected error occurred while processing the order.",
            )

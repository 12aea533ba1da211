"""
Registration order API endpoints.

Routes are thin: they check the actor's role and ownership, call the
lifecycle service and translate its ``ServiceResult`` into a response.
Failed results become ``OrderAPIError`` and are rendered by the handler
registered in ``vehicle_registry.main``.
"""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from vehicle_registry.api.deps import (
    CurrentActor,
    OrderServiceDep,
    require_operation,
)
from vehicle_registry.core.logging import get_logger
from vehicle_registry.schemas.orders import (
    ErrorResponse,
    OrderFields,
    OrderResponse,
    RegisterBoardRequest,
    ReturnOrderRequest,
)
from vehicle_registry.services.orders.authorization import (
    Actor,
    OrderOperation,
    authorize,
)
from vehicle_registry.services.orders.enums import ErrorCode, OrderStatus
from vehicle_registry.services.orders.results import ServiceResult
from vehicle_registry.services.orders.service import OrderLifecycleService

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

HTTP_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.ORDER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_STATUS: status.HTTP_409_CONFLICT,
    ErrorCode.DUPLICATE_ENGINE: status.HTTP_409_CONFLICT,
    ErrorCode.DUPLICATE_BOARD: status.HTTP_409_CONFLICT,
    ErrorCode.CONCURRENCY_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.MISSING_COMMENT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_FORMAT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.MISSING_DATA: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.VALIDATION_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.UNEXPECTED_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    code: {"model": ErrorResponse} for code in (404, 409, 422, 500)
}


class OrderAPIError(Exception):
    """A failed service result on its way to the HTTP client."""

    def __init__(self, result: ServiceResult[Any]):
        super().__init__(result.error_message)
        self.code = result.error_code or ErrorCode.UNEXPECTED_ERROR
        self.message = result.error_message or ""
        self.errors = list(result.validation_errors)
        self.status_code = HTTP_STATUS_BY_CODE.get(
            self.code, status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(code=self.code.value, message=self.message, errors=self.errors)


def unwrap(result: ServiceResult[Any]) -> Any:
    if not result.is_success:
        raise OrderAPIError(result)
    return result.data


async def load_owned_order(
    service: OrderLifecycleService,
    order_id: UUID,
    actor: Actor,
    operation: OrderOperation,
) -> OrderResponse:
    """
    Load an order and enforce the ownership rule for ``operation``.

    Raises:
        OrderAPIError: If the order does not exist
        HTTPException: 403 if the actor may not act on this order
    """
    order = unwrap(await service.get_by_id(order_id))
    if not authorize(actor, operation, owner_id=order.created_by_id):
        logger.warning(
            "Access denied: not the order owner",
            order_id=str(order_id),
            operation=operation.value,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You may only act on your own orders",
        )
    return order


@router.post(
    "/",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Create a draft registration order",
)
async def create_order(
    fields: OrderFields,
    actor: Annotated[Actor, Depends(require_operation(OrderOperation.CREATE))],
    service: OrderServiceDep,
) -> OrderResponse:
    return unwrap(await service.create(fields, actor.id, actor.name))


@router.get(
    "/mine",
    response_model=list[OrderResponse],
    summary="Orders created by the current user",
)
async def list_my_orders(
    actor: Annotated[Actor, Depends(require_operation(OrderOperation.VIEW_OWN))],
    service: OrderServiceDep,
) -> list[OrderResponse]:
    return unwrap(await service.get_for_user(actor.id))


@router.get(
    "/queue",
    response_model=list[OrderResponse],
    summary="Orders awaiting validation, oldest first",
)
async def validator_queue(
    actor: Annotated[
        Actor, Depends(require_operation(OrderOperation.VIEW_VALIDATOR_QUEUE))
    ],
    service: OrderServiceDep,
) -> list[OrderResponse]:
    return unwrap(await service.get_validator_queue())


@router.get(
    "/",
    response_model=list[OrderResponse],
    summary="Orders in any of the given statuses",
)
async def list_orders_by_status(
    actor: Annotated[Actor, Depends(require_operation(OrderOperation.VIEW_BY_STATUS))],
    service: OrderServiceDep,
    statuses: Annotated[list[OrderStatus], Query(alias="status")],
) -> list[OrderResponse]:
    return unwrap(await service.get_by_statuses(statuses))


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    summary="Get a single order",
)
async def get_order(
    order_id: UUID,
    actor: CurrentActor,
    service: OrderServiceDep,
) -> OrderResponse:
    return await load_owned_order(service, order_id, actor, OrderOperation.VIEW)


@router.put(
    "/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    summary="Edit a new or returned order",
)
async def edit_order(
    order_id: UUID,
    fields: OrderFields,
    actor: Annotated[Actor, Depends(require_operation(OrderOperation.EDIT))],
    service: OrderServiceDep,
) -> OrderResponse:
    await load_owned_order(service, order_id, actor, OrderOperation.EDIT)
    return unwrap(await service.edit(order_id, fields, actor.id, actor.name))


@router.delete(
    "/{order_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=ERROR_RESPONSES,
    summary="Delete a draft order",
)
async def delete_order(
    order_id: UUID,
    actor: Annotated[Actor, Depends(require_operation(OrderOperation.DELETE))],
    service: OrderServiceDep,
) -> None:
    await load_owned_order(service, order_id, actor, OrderOperation.DELETE)
    unwrap(await service.delete(order_id, actor.id, actor.name))


@router.post(
    "/{order_id}/submit",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    summary="Submit a draft order for validation",
)
async def submit_order(
    order_id: UUID,
    actor: Annotated[Actor, Depends(require_operation(OrderOperation.SUBMIT))],
    service: OrderServiceDep,
) -> OrderResponse:
    await load_owned_order(service, order_id, actor, OrderOperation.SUBMIT)
    return unwrap(await service.submit(order_id, actor.id, actor.name))


@router.post(
    "/{order_id}/return",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    summary="Return an order to its applicant",
)
async def return_order(
    order_id: UUID,
    body: ReturnOrderRequest,
    actor: Annotated[Actor, Depends(require_operation(OrderOperation.RETURN_TO_USER))],
    service: OrderServiceDep,
) -> OrderResponse:
    return unwrap(
        await service.return_to_user(order_id, actor.id, actor.name, body.comment)
    )


@router.post(
    "/{order_id}/in-progress",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    summary="Accept an order for registration",
)
async def set_order_in_progress(
    order_id: UUID,
    actor: Annotated[Actor, Depends(require_operation(OrderOperation.SET_IN_PROGRESS))],
    service: OrderServiceDep,
) -> OrderResponse:
    return unwrap(await service.set_in_progress(order_id, actor.id, actor.name))


@router.post(
    "/{order_id}/board",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    summary="Register the board number and approve the order",
)
async def register_board(
    order_id: UUID,
    body: RegisterBoardRequest,
    actor: Annotated[Actor, Depends(require_operation(OrderOperation.REGISTER_BOARD))],
    service: OrderServiceDep,
) -> OrderResponse:
    return unwrap(
        await service.register_board(order_id, body.board_number, actor.id, actor.name)
    )

"""
Registration order data access.

Every read goes through ``_active_orders`` so soft-deleted orders never
reach the workflow. Writes return a ``PersistResult`` for the conditions a
caller is expected to handle (stale version, unique-index violations) and
raise ``OrderRepositoryError`` for infrastructure failures.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from vehicle_registry.core.logging import get_logger, log_performance
from vehicle_registry.database.models.order import (
    BOARD_NUMBER_INDEX,
    ENGINE_NUMBER_INDEX,
    Order,
)
from vehicle_registry.services.orders.enums import OrderStatus

logger = get_logger(__name__)


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class PersistStatus(str, Enum):
    SAVED = "saved"
    CONFLICT = "conflict"
    DUPLICATE_ENGINE = "duplicate_engine"
    DUPLICATE_BOARD = "duplicate_board"


@dataclass(frozen=True)
class PersistResult:
    """Outcome of ``add`` or ``update``; ``order`` is set only when saved."""

    status: PersistStatus
    order: Optional[Order] = None

    @property
    def saved(self) -> bool:
        return self.status is PersistStatus.SAVED


def _duplicate_status(error: IntegrityError) -> Optional[PersistStatus]:
    """Map a unique-index violation to the field it concerns."""
    detail = str(error.orig) if error.orig is not None else str(error)
    if ENGINE_NUMBER_INDEX in detail or "engine_number" in detail:
        return PersistStatus.DUPLICATE_ENGINE
    if BOARD_NUMBER_INDEX in detail or "board_number" in detail:
        return PersistStatus.DUPLICATE_BOARD
    return None


class OrderRepository:
    """
    Repository for registration orders.

    The repository owns the transaction boundary of each write: ``add`` and
    ``update`` commit on success and roll back on failure.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _active_orders() -> Select[tuple[Order]]:
        """Base query scoped to orders that are not soft-deleted."""
        return select(Order).where(Order.is_deleted.is_(False))

    async def _fetch_all(
        self, stmt: Select[tuple[Order]], operation: str, **context: Any
    ) -> list[Order]:
        try:
            with log_performance(logger, operation, **context):
                result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(
                "Order query failed",
                operation=operation,
                error=str(e),
                **context,
            )
            raise OrderRepositoryError(
                f"Failed to execute {operation}", error=str(e), **context
            ) from e

    async def get_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        """
        Get a non-deleted order by ID.

        Raises:
            OrderRepositoryError: If query fails
        """
        stmt = self._active_orders().where(Order.id == order_id)
        try:
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch order", order_id=str(order_id), error=str(e))
            raise OrderRepositoryError(
                "Failed to fetch order", order_id=str(order_id), error=str(e)
            ) from e

    async def get_by_user(
        self,
        user_id: str,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> list[Order]:
        """Orders created by ``user_id``, newest first, optionally status-filtered."""
        stmt = self._active_orders().where(Order.created_by_id == user_id)
        if statuses is not None:
            stmt = stmt.where(Order.status.in_(list(statuses)))
        stmt = stmt.order_by(Order.created_at.desc())
        return await self._fetch_all(stmt, "get_orders_by_user", user_id=user_id)

    async def get_by_statuses(self, statuses: Iterable[OrderStatus]) -> list[Order]:
        """Orders in any of ``statuses``, oldest first."""
        status_list = list(statuses)
        if not status_list:
            return []
        stmt = (
            self._active_orders()
            .where(Order.status.in_(status_list))
            .order_by(Order.created_at.asc())
        )
        return await self._fetch_all(
            stmt,
            "get_orders_by_statuses",
            statuses=[s.value for s in status_list],
        )

    async def get_validator_queue(self) -> list[Order]:
        """
        Orders awaiting a validator decision.

        New orders, plus returned orders the applicant edited after the
        return. Oldest status change first; orders without a recorded status
        change sort by creation time.
        """
        stmt = (
            self._active_orders()
            .where(
                or_(
                    Order.status == OrderStatus.NEW,
                    and_(
                        Order.status == OrderStatus.RETURNED,
                        Order.modified_at.is_not(None),
                        Order.modified_at > Order.status_changed_at,
                    ),
                )
            )
            .order_by(
                func.coalesce(Order.status_changed_at, Order.created_at).asc(),
                Order.created_at.asc(),
            )
        )
        return await self._fetch_all(stmt, "get_validator_queue")

    async def _exists(
        self,
        column: Any,
        value: Optional[str],
        exclude_id: Optional[uuid.UUID],
    ) -> bool:
        if value is None or not value.strip():
            return False

        stmt = self._active_orders().where(column == value)
        if exclude_id is not None:
            stmt = stmt.where(Order.id != exclude_id)
        stmt = select(stmt.exists())

        try:
            result = await self.session.execute(stmt)
            return bool(result.scalar())
        except SQLAlchemyError as e:
            logger.error("Uniqueness check failed", column=column.key, error=str(e))
            raise OrderRepositoryError(
                "Uniqueness check failed", column=column.key, error=str(e)
            ) from e

    async def engine_number_exists(
        self, engine_number: Optional[str], exclude_id: Optional[uuid.UUID] = None
    ) -> bool:
        """True if another non-deleted order uses this exact engine number."""
        return await self._exists(Order.engine_number, engine_number, exclude_id)

    async def board_number_exists(
        self, board_number: Optional[str], exclude_id: Optional[uuid.UUID] = None
    ) -> bool:
        """True if another non-deleted order uses this exact board number."""
        return await self._exists(Order.board_number, board_number, exclude_id)

    async def add(self, order: Order) -> PersistResult:
        """
        Insert a new order and commit.

        Raises:
            OrderRepositoryError: If the insert fails for any reason other
                than an engine or board number collision
        """
        self.session.add(order)
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            duplicate = _duplicate_status(e)
            if duplicate is None:
                logger.error("Order insert violated a constraint", error=str(e))
                raise OrderRepositoryError(
                    "Order creation failed due to data integrity violation",
                    error=str(e),
                ) from e
            logger.warning(
                "Order insert rejected by unique index",
                order_id=str(order.id),
                outcome=duplicate.value,
            )
            return PersistResult(duplicate)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Order insert failed", error=str(e))
            raise OrderRepositoryError("Order creation failed", error=str(e)) from e

        logger.info("Order persisted", order_id=str(order.id))
        return PersistResult(PersistStatus.SAVED, order)

    async def update(
        self,
        order_id: uuid.UUID,
        expected_version: int,
        changes: dict[str, Any],
    ) -> PersistResult:
        """
        Apply ``changes`` if the row still carries ``expected_version``.

        The version check and the write are one ``UPDATE ... WHERE
        row_version = :expected`` statement, so a concurrent writer that
        committed first turns this call into a ``CONFLICT``.

        Raises:
            OrderRepositoryError: If the update fails for any reason other
                than a stale version or a unique-index collision
        """
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.row_version == expected_version)
            .values(**changes, row_version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
            if result.rowcount != 1:
                await self.session.rollback()
                logger.info(
                    "Order update lost optimistic concurrency check",
                    order_id=str(order_id),
                    expected_version=expected_version,
                )
                return PersistResult(PersistStatus.CONFLICT)

            refreshed = await self.session.execute(
                select(Order)
                .where(Order.id == order_id)
                .execution_options(populate_existing=True)
            )
            order = refreshed.scalar_one()
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            duplicate = _duplicate_status(e)
            if duplicate is None:
                logger.error(
                    "Order update violated a constraint",
                    order_id=str(order_id),
                    error=str(e),
                )
                raise OrderRepositoryError(
                    "Order update failed due to data integrity violation",
                    order_id=str(order_id),
                    error=str(e),
                ) from e
            logger.warning(
                "Order update rejected by unique index",
                order_id=str(order_id),
                outcome=duplicate.value,
            )
            return PersistResult(duplicate)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Order update failed", order_id=str(order_id), error=str(e))
            raise OrderRepositoryError(
                "Order update failed", order_id=str(order_id), error=str(e)
            ) from e

        logger.debug(
            "Order updated",
            order_id=str(order_id),
            row_version=order.row_version,
            fields=sorted(changes),
        )
        return PersistResult(PersistStatus.SAVED, order)


def get_order_repository(session: AsyncSession) -> OrderRepository:
    return OrderRepository(session)


"""
Tests for OrderLifecycleService.

Runs the full workflow against SQLite with the in-memory Redis stand-in:
the end-to-end scenarios, rejection without side effects, cache coherency
after every mutation, the unique-index safety net and optimistic
concurrency with one automatic retry.
"""

import uuid
from typing import Callable
from unittest.mock import AsyncMock, create_autospec, patch

import pytest
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vehicle_registry.schemas.orders import OrderFields, OrderResponse
from vehicle_registry.services.cache.order_cache import OrderCache
from vehicle_registry.services.orders.enums import ErrorCode, OrderStatus
from vehicle_registry.services.orders.repository import (
    OrderRepositoryError,
    PersistResult,
    PersistStatus,
)
from vehicle_registry.services.orders.service import OrderLifecycleService

APPLICANT = ("user-1", "Lina")
VALIDATOR = ("validator-1", "Omar")
REGISTRAR = ("registrar-1", "Sami")


async def create_draft(
    service: OrderLifecycleService, fields: OrderFields, actor=APPLICANT
) -> OrderResponse:
    result = await service.create(fields, *actor)
    assert result.is_success, result.error_message
    return result.data


async def create_new(service: OrderLifecycleService, fields: OrderFields) -> OrderResponse:
    draft = await create_draft(service, fields)
    result = await service.submit(draft.id, *APPLICANT)
    assert result.is_success, result.error_message
    return result.data


async def create_in_progress(
    service: OrderLifecycleService, fields: OrderFields
) -> OrderResponse:
    order = await create_new(service, fields)
    result = await service.set_in_progress(order.id, *VALIDATOR)
    assert result.is_success, result.error_message
    return result.data


async def load(service: OrderLifecycleService, order_id: uuid.UUID) -> OrderResponse:
    result = await service.get_by_id(order_id)
    assert result.is_success
    return result.data


# ============================================================================
# Scenario Tests
# ============================================================================


class TestWorkflowScenarios:
    """The documented end-to-end workflow scenarios."""

    @pytest.mark.asyncio
    async def test_duplicate_engine_on_create(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        first = await service.create(make_fields(engine_number="EN100"), *APPLICANT)
        second = await service.create(make_fields(engine_number="EN100"), "user-2", "Rami")

        assert first.is_success
        assert first.data.status is OrderStatus.DRAFT
        assert first.data.created_by_id == "user-1"
        assert first.data.row_version == 1
        assert not second.is_success
        assert second.error_code is ErrorCode.DUPLICATE_ENGINE

    @pytest.mark.asyncio
    async def test_return_edit_and_accept(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        order = await create_new(service, make_fields())
        assert order.status is OrderStatus.NEW
        assert order.status_changed_by_id == "user-1"

        returned = await service.return_to_user(order.id, *VALIDATOR, "missing color")
        assert returned.is_success
        assert returned.data.status is OrderStatus.RETURNED
        assert returned.data.return_comment == "missing color"
        assert returned.data.status_changed_by_name == "Omar"

        edited = await service.edit(order.id, make_fields(color="Blue"), *APPLICANT)
        assert edited.is_success
        assert edited.data.status is OrderStatus.RETURNED
        assert edited.data.color == "Blue"
        assert edited.data.modified_by_id == "user-1"

        accepted = await service.set_in_progress(order.id, *VALIDATOR)
        assert accepted.is_success
        assert accepted.data.status is OrderStatus.IN_PROGRESS
        assert accepted.data.row_version == 5

    @pytest.mark.asyncio
    async def test_register_board_normalizes_and_rejects_duplicates(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        first = await create_in_progress(service, make_fields(engine_number="EN1"))
        second = await create_in_progress(service, make_fields(engine_number="EN2"))

        approved = await service.register_board(first.id, "ab 12", *REGISTRAR)
        duplicate = await service.register_board(second.id, "ab12", *REGISTRAR)

        assert approved.is_success
        assert approved.data.status is OrderStatus.APPROVED
        assert approved.data.board_number == "AB12"
        assert approved.data.status_changed_by_id == "registrar-1"
        assert duplicate.error_code is ErrorCode.DUPLICATE_BOARD
        assert (await load(service, second.id)).status is OrderStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_set_in_progress_on_draft_is_invalid(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        draft = await create_draft(service, fields)

        result = await service.set_in_progress(draft.id, *VALIDATOR)

        assert result.error_code is ErrorCode.INVALID_STATUS
        stored = await load(service, draft.id)
        assert stored.status is OrderStatus.DRAFT
        assert stored.row_version == draft.row_version
        assert stored.status_changed_at is None

    @pytest.mark.asyncio
    async def test_delete_of_new_order_is_rejected(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        order = await create_new(service, fields)

        result = await service.delete(order.id, *APPLICANT)

        assert not result.is_success
        assert result.is_validation_failure
        assert result.error_code is ErrorCode.INVALID_STATUS
        assert result.validation_errors == ["Only draft orders can be deleted"]
        assert (await load(service, order.id)).row_version == order.row_version


# ============================================================================
# Command Tests
# ============================================================================


class TestCreate:
    @pytest.mark.asyncio
    async def test_invalid_fields_return_validation_errors(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        result = await service.create(
            make_fields(full_name="", model="", year_of_manufacture=-5), *APPLICANT
        )

        assert result.is_validation_failure
        assert result.error_code is ErrorCode.VALIDATION_FAILED
        assert result.validation_errors == [
            "Applicant full name is required.",
            "Model is required.",
            "Year of manufacture is invalid.",
        ]
        assert (await service.get_for_user("user-1")).data == []

    @pytest.mark.asyncio
    async def test_unique_index_catches_duplicate_missed_by_precheck(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        await create_draft(service, make_fields(engine_number="EN100"))

        with patch.object(
            service.repository, "engine_number_exists", AsyncMock(return_value=False)
        ):
            result = await service.create(make_fields(engine_number="EN100"), *APPLICANT)

        assert result.error_code is ErrorCode.DUPLICATE_ENGINE
        assert len((await service.get_for_user("user-1")).data) == 1


class TestSubmitAndDelete:
    @pytest.mark.asyncio
    async def test_submit_twice_is_invalid(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        order = await create_new(service, fields)

        result = await service.submit(order.id, *APPLICANT)

        assert result.error_code is ErrorCode.INVALID_STATUS

    @pytest.mark.asyncio
    async def test_delete_draft_hides_order_and_frees_engine(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        draft = await create_draft(service, make_fields(engine_number="EN100"))

        deleted = await service.delete(draft.id, *APPLICANT)

        assert deleted.is_success
        assert deleted.data is True
        assert (await service.get_by_id(draft.id)).error_code is ErrorCode.ORDER_NOT_FOUND
        assert (await service.create(make_fields(engine_number="EN100"), *APPLICANT)).is_success

    @pytest.mark.asyncio
    async def test_unknown_order(self, service: OrderLifecycleService) -> None:
        result = await service.submit(uuid.uuid4(), *APPLICANT)

        assert result.error_code is ErrorCode.ORDER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_submit_logs_applied_transition(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        draft = await create_draft(service, fields)
        logger = create_autospec(structlog.stdlib.BoundLogger, instance=True)

        with patch("vehicle_registry.services.orders.service.logger", logger):
            result = await service.submit(draft.id, *APPLICANT)

        assert result.is_success, result.error_message
        logger.error.assert_not_called()
        logger.info.assert_any_call(
            "Order transition applied",
            order_id=str(draft.id),
            order_event="submit",
            status="new",
            actor_id="user-1",
            row_version=2,
        )


class TestEdit:
    @pytest.mark.asyncio
    async def test_edit_draft_is_invalid(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        draft = await create_draft(service, fields)

        result = await service.edit(draft.id, fields, *APPLICANT)

        assert result.error_code is ErrorCode.INVALID_STATUS

    @pytest.mark.asyncio
    async def test_edit_to_engine_of_another_order(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        await create_draft(service, make_fields(engine_number="EN1"))
        order = await create_new(service, make_fields(engine_number="EN2"))

        result = await service.edit(order.id, make_fields(engine_number="EN1"), *APPLICANT)

        assert result.error_code is ErrorCode.DUPLICATE_ENGINE
        assert (await load(service, order.id)).engine_number == "EN2"

    @pytest.mark.asyncio
    async def test_edit_keeping_own_engine_number(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        order = await create_new(service, make_fields(engine_number="EN1"))

        result = await service.edit(
            order.id, make_fields(engine_number="EN1", model="Yaris"), *APPLICANT
        )

        assert result.is_success
        assert result.data.status is OrderStatus.NEW
        assert result.data.model == "Yaris"


class TestValidatorActions:
    @pytest.mark.asyncio
    async def test_return_requires_comment(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        order = await create_new(service, fields)

        result = await service.return_to_user(order.id, *VALIDATOR, "   ")

        assert result.error_code is ErrorCode.MISSING_COMMENT
        assert not result.is_validation_failure

    @pytest.mark.asyncio
    async def test_return_again_overwrites_comment(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        order = await create_new(service, fields)
        await service.return_to_user(order.id, *VALIDATOR, "missing color")

        result = await service.return_to_user(order.id, *VALIDATOR, "wrong model")

        assert result.data.status is OrderStatus.RETURNED
        assert result.data.return_comment == "wrong model"

    @pytest.mark.asyncio
    async def test_set_in_progress_with_engine_taken_meanwhile(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        order = await create_new(service, make_fields(engine_number="EN1"))
        exists = AsyncMock(return_value=True)

        with patch.object(service.repository, "engine_number_exists", exists):
            result = await service.set_in_progress(order.id, *VALIDATOR)

        assert result.error_code is ErrorCode.DUPLICATE_ENGINE
        exists.assert_awaited_once_with("EN1", exclude_id=order.id)
        assert (await load(service, order.id)).status is OrderStatus.NEW

    @pytest.mark.asyncio
    async def test_set_in_progress_reports_duplicate_engine_before_missing_data(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        order = await create_new(service, make_fields(engine_number="EN1"))
        cleared = await service.repository.update(
            order.id, order.row_version, {"car_name": " "}
        )
        assert cleared.saved

        exists = AsyncMock(return_value=True)
        with patch.object(service.repository, "engine_number_exists", exists):
            duplicate = await service.set_in_progress(order.id, *VALIDATOR)
        incomplete = await service.set_in_progress(order.id, *VALIDATOR)

        assert duplicate.error_code is ErrorCode.DUPLICATE_ENGINE
        assert incomplete.error_code is ErrorCode.MISSING_DATA

    @pytest.mark.asyncio
    async def test_set_in_progress_on_draft_checks_status_first(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        draft = await create_draft(service, fields)
        exists = AsyncMock(return_value=True)

        with patch.object(service.repository, "engine_number_exists", exists):
            result = await service.set_in_progress(draft.id, *VALIDATOR)

        assert result.error_code is ErrorCode.INVALID_STATUS
        exists.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_register_board_on_new_order(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        order = await create_new(service, fields)

        result = await service.register_board(order.id, "AB12", *REGISTRAR)

        assert result.error_code is ErrorCode.INVALID_STATUS

    @pytest.mark.asyncio
    async def test_register_board_invalid_format(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        order = await create_in_progress(service, fields)

        result = await service.register_board(order.id, "12-34", *REGISTRAR)

        assert result.error_code is ErrorCode.INVALID_FORMAT
        assert (await load(service, order.id)).board_number is None

    @pytest.mark.asyncio
    async def test_approved_order_is_terminal(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        order = await create_in_progress(service, fields)
        await service.register_board(order.id, "AB12", *REGISTRAR)

        results = [
            await service.register_board(order.id, "CD34", *REGISTRAR),
            await service.return_to_user(order.id, *VALIDATOR, "late"),
            await service.set_in_progress(order.id, *VALIDATOR),
            await service.edit(order.id, fields, *APPLICANT),
            await service.delete(order.id, *APPLICANT),
        ]

        assert all(r.error_code is ErrorCode.INVALID_STATUS for r in results)
        assert (await load(service, order.id)).board_number == "AB12"


# ============================================================================
# Query Tests
# ============================================================================


class TestQueries:
    @pytest.mark.asyncio
    async def test_user_view_shows_draft_returned_and_approved_only(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        draft = await create_draft(service, make_fields(engine_number="EN1"))
        submitted = await create_new(service, make_fields(engine_number="EN2"))
        returned = await create_new(service, make_fields(engine_number="EN3"))
        await service.return_to_user(returned.id, *VALIDATOR, "missing color")
        approved = await create_in_progress(service, make_fields(engine_number="EN4"))
        await service.register_board(approved.id, "AB12", *REGISTRAR)
        await create_draft(service, make_fields(engine_number="EN5"), actor=("user-2", "Rami"))

        result = await service.get_for_user("user-1")

        assert result.is_success
        assert {o.id for o in result.data} == {draft.id, returned.id, approved.id}
        assert submitted.id not in {o.id for o in result.data}

    @pytest.mark.asyncio
    async def test_validator_queue_resurfaces_edited_returns(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        first = await create_new(service, make_fields(engine_number="EN1"))
        second = await create_new(service, make_fields(engine_number="EN2"))
        await service.return_to_user(first.id, *VALIDATOR, "missing color")

        queue_after_return = await service.get_validator_queue()
        await service.edit(first.id, make_fields(engine_number="EN1", color="Red"), *APPLICANT)
        queue_after_edit = await service.get_validator_queue()

        assert [o.id for o in queue_after_return.data] == [second.id]
        assert [o.id for o in queue_after_edit.data] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_get_by_statuses(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        await create_draft(service, make_fields(engine_number="EN1"))
        in_progress = await create_in_progress(service, make_fields(engine_number="EN2"))

        result = await service.get_by_statuses([OrderStatus.IN_PROGRESS])

        assert [o.id for o in result.data] == [in_progress.id]


# ============================================================================
# Rejection Tests
# ============================================================================


class TestRejectionLeavesOrderUntouched:
    """A rejected transition changes neither the row nor the cache."""

    @pytest.mark.asyncio
    async def test_row_and_cache_unchanged(
        self,
        service: OrderLifecycleService,
        fake_redis,
        fields: OrderFields,
    ) -> None:
        order = await create_new(service, fields)
        before = await load(service, order.id)
        await service.get_for_user("user-1")
        cache_before = dict(fake_redis.store)
        deletes_before = len(fake_redis.delete_calls)

        rejections = [
            await service.submit(order.id, *APPLICANT),
            await service.delete(order.id, *APPLICANT),
            await service.return_to_user(order.id, *VALIDATOR, ""),
            await service.register_board(order.id, "AB12", *REGISTRAR),
            await service.edit(order.id, OrderFields(), *APPLICANT),
        ]

        assert not any(r.is_success for r in rejections)
        assert fake_redis.store == cache_before
        assert len(fake_redis.delete_calls) == deletes_before
        fresh = OrderResponse.model_validate(
            await service.repository.get_by_id(order.id)
        )
        assert fresh == before


# ============================================================================
# Cache Coherency Tests
# ============================================================================


class TestCacheCoherency:
    """Reads straight after a mutation reflect it."""

    @pytest.mark.asyncio
    async def test_each_mutation_invalidates_order_and_owner_list(
        self,
        service: OrderLifecycleService,
        order_cache: OrderCache,
        make_fields: Callable[..., OrderFields],
    ) -> None:
        draft = await create_draft(service, make_fields())
        await service.get_for_user("user-1")
        assert (await load(service, draft.id)).status is OrderStatus.DRAFT

        await service.submit(draft.id, *APPLICANT)
        assert (await load(service, draft.id)).status is OrderStatus.NEW
        assert (await service.get_for_user("user-1")).data == []

        await service.return_to_user(draft.id, *VALIDATOR, "missing color")
        mine = (await service.get_for_user("user-1")).data
        assert [o.status for o in mine] == [OrderStatus.RETURNED]

        await service.edit(draft.id, make_fields(color="Green"), *APPLICANT)
        assert (await load(service, draft.id)).color == "Green"
        assert (await service.get_for_user("user-1")).data[0].color == "Green"

        await service.set_in_progress(draft.id, *VALIDATOR)
        assert (await load(service, draft.id)).status is OrderStatus.IN_PROGRESS
        assert (await service.get_for_user("user-1")).data == []

        await service.register_board(draft.id, "xy 9", *REGISTRAR)
        approved = await load(service, draft.id)
        assert approved.status is OrderStatus.APPROVED
        assert approved.board_number == "XY9"
        assert (await service.get_for_user("user-1")).data == [approved]

        assert await load(service, draft.id) == approved
        assert order_cache.get_stats()["hits"] > 0

    @pytest.mark.asyncio
    async def test_create_invalidates_creator_list(
        self, service: OrderLifecycleService, make_fields: Callable[..., OrderFields]
    ) -> None:
        assert (await service.get_for_user("user-1")).data == []

        draft = await create_draft(service, make_fields())

        assert [o.id for o in (await service.get_for_user("user-1")).data] == [draft.id]

    @pytest.mark.asyncio
    async def test_delete_invalidates(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        draft = await create_draft(service, fields)
        await load(service, draft.id)
        await service.get_for_user("user-1")

        await service.delete(draft.id, *APPLICANT)

        assert (await service.get_by_id(draft.id)).error_code is ErrorCode.ORDER_NOT_FOUND
        assert (await service.get_for_user("user-1")).data == []

    @pytest.mark.asyncio
    async def test_validator_action_invalidates_owner_not_actor(
        self, service: OrderLifecycleService, fake_redis, order_cache: OrderCache, fields
    ) -> None:
        order = await create_new(service, fields)

        await service.return_to_user(order.id, *VALIDATOR, "missing color")

        assert fake_redis.delete_calls[-1] == (
            order_cache.order_key(order.id),
            order_cache.user_orders_key("user-1"),
        )

    @pytest.mark.asyncio
    async def test_invalidation_failure_is_reported(
        self, service: OrderLifecycleService, fake_redis, fields: OrderFields
    ) -> None:
        draft = await create_draft(service, fields)
        fake_redis.fail_deletes = True

        result = await service.submit(draft.id, *APPLICANT)

        assert result.error_code is ErrorCode.UNEXPECTED_ERROR
        assert "Redis" not in (result.error_message or "")

    @pytest.mark.asyncio
    async def test_works_without_cache(
        self, db_session: AsyncSession, clock, fields: OrderFields
    ) -> None:
        service = OrderLifecycleService(db_session, cache=None, clock=clock)

        draft = await create_draft(service, fields)
        await service.submit(draft.id, *APPLICANT)

        assert (await load(service, draft.id)).status is OrderStatus.NEW


# ============================================================================
# Concurrency Tests
# ============================================================================


class TestOptimisticConcurrency:
    @pytest.mark.asyncio
    async def test_conflict_is_retried_against_fresh_state(
        self,
        service: OrderLifecycleService,
        session_factory: async_sessionmaker[AsyncSession],
        clock,
        fields: OrderFields,
    ) -> None:
        order = await create_new(service, fields)
        original_update = service.repository.update
        raced: list[bool] = []

        async def racing_update(order_id, expected_version, changes):
            if not raced:
                raced.append(True)
                async with session_factory() as other_session:
                    other = OrderLifecycleService(other_session, clock=clock)
                    result = await other.return_to_user(
                        order_id, *VALIDATOR, "missing color"
                    )
                    assert result.is_success
            return await original_update(order_id, expected_version, changes)

        with patch.object(service.repository, "update", side_effect=racing_update):
            result = await service.set_in_progress(order.id, "validator-2", "Huda")

        assert result.is_success
        assert result.data.status is OrderStatus.IN_PROGRESS
        assert result.data.return_comment == "missing color"
        assert result.data.row_version == order.row_version + 2

    @pytest.mark.asyncio
    async def test_retry_rechecks_status(
        self,
        service: OrderLifecycleService,
        session_factory: async_sessionmaker[AsyncSession],
        clock,
        make_fields: Callable[..., OrderFields],
    ) -> None:
        order = await create_new(service, make_fields())
        original_update = service.repository.update
        raced: list[bool] = []

        async def racing_update(order_id, expected_version, changes):
            if not raced:
                raced.append(True)
                async with session_factory() as other_session:
                    other = OrderLifecycleService(other_session, clock=clock)
                    assert (await other.set_in_progress(order_id, *VALIDATOR)).is_success
            return await original_update(order_id, expected_version, changes)

        with patch.object(service.repository, "update", side_effect=racing_update):
            result = await service.edit(order.id, make_fields(color="Red"), *APPLICANT)

        assert result.error_code is ErrorCode.INVALID_STATUS
        stored = await load(service, order.id)
        assert stored.status is OrderStatus.IN_PROGRESS
        assert stored.color == "White"

    @pytest.mark.asyncio
    async def test_repeated_conflicts_surface_as_concurrency_conflict(
        self, service: OrderLifecycleService, fields: OrderFields
    ) -> None:
        draft = await create_draft(service, fields)
        update = AsyncMock(return_value=PersistResult(PersistStatus.CONFLICT))

        with patch.object(service.repository, "update", update):
            result = await service.submit(draft.id, *APPLICANT)

        assert result.error_code is ErrorCode.CONCURRENCY_CONFLICT
        assert update.await_count == 2
        assert (await load(service, draft.id)).status is OrderStatus.DRAFT


# ============================================================================
# Error Handling Tests
# ============================================================================


class TestUnexpectedErrors:
    @pytest.mark.asyncio
    async def test_repository_failure_becomes_generic_failure(
        self, service: OrderLifecycleService
    ) -> None:
        with patch.object(
            service.repository,
            "get_by_id",
            AsyncMock(side_effect=OrderRepositoryError("Failed to fetch order")),
        ):
            result = await service.get_by_id(uuid.uuid4())

        assert result.error_code is ErrorCode.UNEXPECTED_ERROR
        assert "fetch" not in result.error_message

    @pytest.mark.asyncio
    async def test_query_failure(self, service: OrderLifecycleService) -> None:
        with patch.object(
            service.repository,
            "get_validator_queue",
            AsyncMock(side_effect=RuntimeError("connection reset")),
        ):
            result = await service.get_validator_queue()

        assert not result.is_success
        assert result.error_code is ErrorCode.UNEXPECTED_ERROR

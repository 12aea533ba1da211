"""
Read-through cache for registration orders.

Single orders and per-user order lists are cached as JSON snapshots of
``OrderResponse``. The cache is advisory: a failed read or store is logged
and the caller falls back to the repository. Invalidation is different, it
must succeed, otherwise a later read could serve a stale snapshot, so
invalidation errors propagate to the lifecycle service.
"""

from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from vehicle_registry.cache.redis_client import (
    CacheKeyManager,
    RedisClient,
    get_cache_key_manager,
    get_redis_client,
)
from vehicle_registry.core.config import get_settings
from vehicle_registry.core.logging import get_logger
from vehicle_registry.schemas.orders import OrderResponse

logger = get_logger(__name__)

OrderLoader = Callable[[], Awaitable[Optional[OrderResponse]]]
OrderListLoader = Callable[[], Awaitable[list[OrderResponse]]]


class OrderCacheError(Exception):
    """Raised when cached order entries could not be invalidated."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderCache:
    """
    Cache-aside wrapper around the order reads.

    Attributes:
        order_ttl: Lifetime of a single order entry, in seconds; defaults to
            the configured value when not given
        user_orders_ttl: Lifetime of a per-user list entry, in seconds
    """

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        key_manager: Optional[CacheKeyManager] = None,
        order_ttl: Optional[int] = None,
        user_orders_ttl: Optional[int] = None,
    ):
        settings = get_settings()
        self._redis_client = redis_client
        self._key_manager = key_manager or get_cache_key_manager()
        self.order_ttl = (
            order_ttl if order_ttl is not None else settings.order_cache_ttl_seconds
        )
        self.user_orders_ttl = (
            user_orders_ttl
            if user_orders_ttl is not None
            else settings.user_orders_cache_ttl_seconds
        )
        if self.order_ttl < 1 or self.user_orders_ttl < 1:
            raise ValueError("Order cache TTLs must be at least one second")
        self._cache_stats = {
            "hits": 0,
            "misses": 0,
            "invalidations": 0,
            "errors": 0,
        }

    async def _get_redis_client(self) -> RedisClient:
        if self._redis_client is None:
            self._redis_client = await get_redis_client()
        return self._redis_client

    def order_key(self, order_id: UUID) -> str:
        return self._key_manager.order_key(order_id)

    def user_orders_key(self, user_id: str) -> str:
        return self._key_manager.user_orders_key(user_id)

    async def _read(self, cache_key: str) -> Any:
        try:
            redis = await self._get_redis_client()
            cached = await redis.get_json(cache_key)
        except Exception as e:
            self._cache_stats["errors"] += 1
            logger.warning(
                "Order cache read failed, falling back to database",
                cache_key=cache_key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if cached is None:
            self._cache_stats["misses"] += 1
        else:
            self._cache_stats["hits"] += 1
        return cached

    async def _store(self, cache_key: str, payload: Any, ttl: int) -> None:
        try:
            redis = await self._get_redis_client()
            await redis.set_json(cache_key, payload, ex=ttl)
        except Exception as e:
            self._cache_stats["errors"] += 1
            logger.warning(
                "Order cache store failed",
                cache_key=cache_key,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def get_order(
        self, order_id: UUID, loader: OrderLoader
    ) -> Optional[OrderResponse]:
        """
        Return the cached order, loading and caching it on a miss.

        A loader result of ``None`` (order not found) is never cached.
        """
        cache_key = self.order_key(order_id)
        cached = await self._read(cache_key)
        if cached is not None:
            try:
                return OrderResponse.model_validate(cached)
            except ValueError as e:
                logger.warning(
                    "Discarding malformed cached order",
                    cache_key=cache_key,
                    error=str(e),
                )

        order = await loader()
        if order is not None:
            await self._store(cache_key, order.model_dump(mode="json"), self.order_ttl)
        return order

    async def get_user_orders(
        self, user_id: str, loader: OrderListLoader
    ) -> list[OrderResponse]:
        """Return the user's cached order list, loading it on a miss."""
        cache_key = self.user_orders_key(user_id)
        cached = await self._read(cache_key)
        if cached is not None:
            try:
                return [OrderResponse.model_validate(item) for item in cached]
            except (TypeError, ValueError) as e:
                logger.warning(
                    "Discarding malformed cached order list",
                    cache_key=cache_key,
                    error=str(e),
                )

        orders = await loader()
        await self._store(
            cache_key,
            [order.model_dump(mode="json") for order in orders],
            self.user_orders_ttl,
        )
        return orders

    async def invalidate(self, order_id: UUID, user_id: str) -> int:
        """
        Remove the order entry and its owner's list entry in one ``DEL``.

        Returns:
            Number of entries that were present

        Raises:
            OrderCacheError: If Redis could not be reached
        """
        order_key = self.order_key(order_id)
        list_key = self.user_orders_key(user_id)

        try:
            redis = await self._get_redis_client()
            count = await redis.delete(order_key, list_key)
        except Exception as e:
            self._cache_stats["errors"] += 1
            logger.error(
                "Order cache invalidation failed",
                order_id=str(order_id),
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise OrderCacheError(
                "Failed to invalidate cached order",
                order_id=str(order_id),
                user_id=user_id,
            ) from e

        self._cache_stats["invalidations"] += count
        logger.debug(
            "Order cache invalidated",
            order_id=str(order_id),
            user_id=user_id,
            keys_deleted=count,
        )
        return count

    def get_stats(self) -> dict[str, int]:
        return dict(self._cache_stats)

"""
Redis client with connection pooling, retries and JSON helpers.

The order cache talks to Redis only through ``RedisClient``; keys are
built by ``CacheKeyManager`` so every entry lives under one namespace.
"""

import json
from typing import Any, Optional, Union

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from vehicle_registry.core.config import get_settings
from vehicle_registry.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Async Redis client with connection pooling and retry logic.

    Hit and miss counters are kept for ``GET`` operations and exposed through
    ``get_cache_stats`` for the readiness endpoint.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        health_check_interval: int = 30,
    ):
        settings = get_settings()
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._health_check_interval = health_check_interval

        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_connected = False

        self._cache_hits = 0
        self._cache_misses = 0
        self._total_operations = 0

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @staticmethod
    def _sanitize_url(url: str) -> str:
        """Strip credentials from a Redis URL before logging it."""
        if "://" in url:
            protocol, rest = url.split("://", 1)
            if "@" in rest:
                _, host_part = rest.split("@", 1)
                return f"{protocol}://***@{host_part}"
        return url

    async def connect(self) -> None:
        """
        Create the connection pool and verify connectivity with ``PING``.

        Raises:
            ConnectionError: If connection cannot be established
        """
        if self._is_connected:
            logger.warning("Redis client already connected")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                health_check_interval=self._health_check_interval,
                retry=Retry(ExponentialBackoff(base=0.1, cap=2.0), retries=3),
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)

            await self._client.ping()
            self._is_connected = True

            logger.info(
                "Redis connection established",
                url=self._sanitize_url(self._url),
                pool_size=self._max_connections,
            )
        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Failed to connect to Redis",
                error=str(e),
                url=self._sanitize_url(self._url),
            )
            await self._release()
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def _release(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None
        self._is_connected = False

    async def disconnect(self) -> None:
        """Close the pool and release all connections."""
        if not self._is_connected:
            return
        await self._release()
        logger.info("Redis connection closed")

    async def health_check(self) -> bool:
        """Return True if Redis answers ``PING``."""
        if not self._is_connected or self._client is None:
            return False

        try:
            await self._client.ping()
            return True
        except RedisError as e:
            logger.error(
                "Redis health check failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    def _ensure_connected(self) -> None:
        if not self._is_connected or self._client is None:
            raise ConnectionError("Redis client is not connected")

    async def get(self, key: str) -> Optional[str]:
        """
        Get value by key.

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If the operation fails
        """
        self._ensure_connected()

        try:
            self._total_operations += 1
            value = await self._client.get(key)
        except RedisError as e:
            logger.error("Redis GET operation failed", key=key, error=str(e))
            raise

        if value is None:
            self._cache_misses += 1
        else:
            self._cache_hits += 1
        return value

    async def set(
        self,
        key: str,
        value: Union[str, bytes, int, float],
        ex: Optional[int] = None,
    ) -> bool:
        """
        Set value with an optional expiration in seconds.

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If the operation fails
        """
        self._ensure_connected()

        try:
            self._total_operations += 1
            result = await self._client.set(key, value, ex=ex)
            return bool(result)
        except RedisError as e:
            logger.error("Redis SET operation failed", key=key, error=str(e))
            raise

    async def delete(self, *keys: str) -> int:
        """
        Delete one or more keys in a single ``DEL`` command.

        Returns:
            Number of keys that existed and were removed

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If the operation fails
        """
        self._ensure_connected()

        try:
            self._total_operations += 1
            count = await self._client.delete(*keys)
            logger.debug("Redis DELETE operation", keys=keys, count=count)
            return count
        except RedisError as e:
            logger.error("Redis DELETE operation failed", keys=keys, error=str(e))
            raise

    async def get_json(self, key: str) -> Any:
        """
        Get and decode a JSON value.

        Raises:
            json.JSONDecodeError: If the stored value is not valid JSON
        """
        value = await self.get(key)
        if value is None:
            return None

        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            logger.error("Failed to decode JSON from cache", key=key, error=str(e))
            raise

    async def set_json(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        """
        Encode a value as JSON and store it.

        Raises:
            TypeError: If value is not JSON serializable
        """
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error("Failed to serialize value to JSON", key=key, error=str(e))
            raise
        return await self.set(key, payload, ex=ex)

    def get_cache_stats(self) -> dict[str, Any]:
        lookups = self._cache_hits + self._cache_misses
        hit_rate = self._cache_hits / lookups * 100 if lookups else 0.0
        return {
            "total_operations": self._total_operations,
            "cache_hits": self._cache_hits,
            "cache_misses": self._cache_misses,
            "hit_rate_percent": round(hit_rate, 2),
        }


class CacheKeyManager:
    """
    Builds namespaced cache keys.

    Example:
        >>> manager = CacheKeyManager("registry")
        >>> manager.order_key("7b0c...")
        'registry:order:7b0c...'
    """

    def __init__(self, namespace: str = "vehicle_registry"):
        self.namespace = namespace

    def make_key(self, *parts: Union[str, int]) -> str:
        key_parts = [str(part) for part in parts if part != "" and part is not None]
        return ":".join([self.namespace] + key_parts)

    def order_key(self, order_id: Any) -> str:
        """Key of a single cached order."""
        return self.make_key("order", order_id)

    def user_orders_key(self, user_id: Any) -> str:
        """Key of a user's cached order list."""
        return self.make_key("user_orders", user_id)


_redis_client: Optional[RedisClient] = None
_cache_key_manager: Optional[CacheKeyManager] = None


async def get_redis_client() -> RedisClient:
    """
    Get or create the global Redis client.

    Raises:
        ConnectionError: If Redis connection fails
    """
    global _redis_client

    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client

    return _redis_client


def get_cache_key_manager() -> CacheKeyManager:
    global _cache_key_manager

    if _cache_key_manager is None:
        _cache_key_manager = CacheKeyManager()

    return _cache_key_manager


async def close_redis_client() -> None:
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None

"""
Storage mechanisms backing component caches.

A storage mechanism is an explicitly lossy key-value store: ``get`` may return
``None`` at any time, even right after a successful ``put``. Component caches
never depend on a value surviving.
"""

from collections import OrderedDict
from typing import Optional, Protocol, runtime_checkable

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StorageError
from shared.logging import get_logger


@runtime_checkable
class StorageMechanism(Protocol):
    """Key-value store used by component caches."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def put(self, key: str, value: Optional[str]) -> None:
        """Store ``value``; ``None`` removes the key."""
        ...


class InMemoryStorage:
    """Process-local storage, optionally bounded with least-recently-used eviction."""

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries
        self._data: "OrderedDict[str, str]" = OrderedDict()

    async def get(self, key: str) -> Optional[str]:
        value = self._data.get(key)
        if value is not None:
            self._data.move_to_end(key)
        return value

    async def put(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self._data.pop(key, None)
            return
        self._data[key] = value
        self._data.move_to_end(key)
        if self.max_entries is not None:
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def __len__(self) -> int:
        return len(self._data)

    async def health_check(self) -> bool:
        return True


class RedisStorage:
    """Redis-backed storage; entries expire after ``ttl_seconds``."""

    KEY_PREFIX = "invq:"

    def __init__(self, redis_url: str, ttl_seconds: int = 1800, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger("session.storage.redis")
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def get(self, key: str) -> Optional[str]:
        try:
            redis_client = await self._get_redis()
            value = await redis_client.get(self._make_key(key))
        except RedisError as e:
            # a failed read is just another lost entry
            self.logger.error("Storage get error", key=key, error=str(e))
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def put(self, key: str, value: Optional[str]) -> None:
        try:
            redis_client = await self._get_redis()
            if value is None:
                await redis_client.delete(self._make_key(key))
            else:
                await redis_client.setex(self._make_key(key), self.ttl_seconds, value)
        except RedisError as e:
            self.logger.error("Storage put error", key=key, error=str(e))
            raise StorageError(f"Could not write storage key '{key}'", {"error": str(e)}) from e

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            redis_client = await self._get_redis()
            await redis_client.ping()
            return True
        except RedisError:
            return False

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

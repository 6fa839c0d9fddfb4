"""
Unit tests for storage mechanisms.
"""

import pytest
from fakeredis import aioredis
from unittest.mock import AsyncMock
from redis.exceptions import ConnectionError as RedisConnectionError

from service_session.app.caching.storage import InMemoryStorage, RedisStorage, StorageMechanism
from shared.errors import StorageError


class TestInMemoryStorage:
    """Test cases for InMemoryStorage."""

    @pytest.mark.asyncio
    async def test_put_get_delete(self):
        """Test the basic operations."""
        storage = InMemoryStorage()

        await storage.put("k", "v")
        assert await storage.get("k") == "v"

        await storage.put("k", None)
        assert await storage.get("k") is None
        assert len(storage) == 0

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        """Test that the least recently used key is evicted first."""
        storage = InMemoryStorage(max_entries=2)

        await storage.put("a", "1")
        await storage.put("b", "2")
        await storage.get("a")
        await storage.put("c", "3")

        assert await storage.get("a") == "1"
        assert await storage.get("b") is None
        assert await storage.get("c") == "3"

    def test_satisfies_protocol(self):
        """Test the runtime protocol check."""
        assert isinstance(InMemoryStorage(), StorageMechanism)
        assert isinstance(RedisStorage("redis://localhost:6379/0"), StorageMechanism)


class TestRedisStorage:
    """Test cases for RedisStorage."""

    @pytest.fixture
    def fake_redis(self):
        """In-process Redis double."""
        return aioredis.FakeRedis(decode_responses=True)

    @pytest.fixture
    def storage(self, fake_redis):
        """Create RedisStorage instance backed by the fake client."""
        return RedisStorage("redis://localhost:6379/0", ttl_seconds=60, client=fake_redis)

    @pytest.mark.asyncio
    async def test_put_get_delete(self, storage, fake_redis):
        """Test the basic operations and key layout."""
        await storage.put("session-1:accounts:balance", "100.00")

        assert await storage.get("session-1:accounts:balance") == "100.00"
        assert await fake_redis.get("invq:session-1:accounts:balance") == "100.00"
        assert 0 < await fake_redis.ttl("invq:session-1:accounts:balance") <= 60

        await storage.put("session-1:accounts:balance", None)
        assert await storage.get("session-1:accounts:balance") is None

    @pytest.mark.asyncio
    async def test_health_check(self, storage):
        """Test health check against a reachable server."""
        assert await storage.health_check() is True

    @pytest.mark.asyncio
    async def test_read_failure_is_a_miss(self, storage):
        """Test that read errors look like lost entries."""
        broken = AsyncMock()
        broken.get.side_effect = RedisConnectionError("down")
        storage._redis = broken

        assert await storage.get("k") is None

    @pytest.mark.asyncio
    async def test_write_failure_raises(self, storage):
        """Test that write errors are reported."""
        broken = AsyncMock()
        broken.setex.side_effect = RedisConnectionError("down")
        storage._redis = broken

        with pytest.raises(StorageError):
            await storage.put("k", "v")

    @pytest.mark.asyncio
    async def test_close(self, storage):
        """Test closing releases the client."""
        await storage.close()
        assert storage._redis is None

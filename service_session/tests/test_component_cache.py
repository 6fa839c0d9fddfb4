"""
Unit tests for ComponentCache.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from service_session.app.caching.component_cache import ComponentCache
from service_session.app.caching.entries import RefreshRegistry, build_entry_metadata
from service_session.app.caching.storage import InMemoryStorage
from service_session.app.session.context import RequestContext
from service_session.tests.conftest import DemoEvent
from shared.errors import (
    CacheWriteFailedError,
    ConfigurationError,
    DecodeError,
    EncodeError,
    RefreshFailedError,
    RefreshTypeMismatchError,
    RefreshUnavailableError,
    StorageError,
    TypeMismatchError,
    UnknownEntryError,
)

BALANCE = [{
    "name": "balance",
    "type": "decimal",
    "invalidatingEvents": ["BALANCES_CHANGED"],
    "refreshFunction": "load_balance",
}]


def _cache(event_registry, codec, source=None, storage=None, timeout=1.0):
    registry = RefreshRegistry({"load_balance": source} if source is not None else {})
    return ComponentCache(
        "balances",
        storage or InMemoryStorage(),
        codec,
        build_entry_metadata(BALANCE, event_registry),
        registry,
        refresh_timeout=timeout,
    )


class TestComponentCacheEntries:
    """Test cases for storing and reading entries."""

    @pytest.mark.asyncio
    async def test_store_and_get(self, account_cache, context):
        """Test storing entries of several types."""
        await account_cache.store_entry(context, "nickname", "Checking")
        await account_cache.store_entry(context, "accounts", ["acc-1", "acc-2"])
        await account_cache.store_entry(context, "visits", 3)

        assert await account_cache.get_entry(context, "nickname") == "Checking"
        assert await account_cache.get_entry(context, "accounts") == ["acc-1", "acc-2"]
        assert await account_cache.get_entry(context, "visits") == 3

    @pytest.mark.asyncio
    async def test_storage_layout(self, account_cache, context, storage):
        """Test the storage key and serialized form of entries."""
        await account_cache.store_entry(context, "nickname", "Checking")
        await account_cache.store_entry(context, "balance", Decimal("100.00"))

        assert await storage.get("session-abc:accounts:nickname") == "Checking"
        assert await storage.get("session-abc:accounts:balance") == '"100.00"'

    @pytest.mark.asyncio
    async def test_type_mismatch_does_not_write(self, account_cache, context, storage):
        """Test that a value of the wrong type is refused and nothing is stored."""
        with pytest.raises(TypeMismatchError) as exc_info:
            await account_cache.store_entry(context, "visits", "3")

        assert exc_info.value.details["expected"] == "int"
        assert len(storage) == 0

    @pytest.mark.asyncio
    async def test_type_check_is_exact(self, account_cache, context):
        """Test that subclasses of the declared type are refused."""
        with pytest.raises(TypeMismatchError):
            await account_cache.store_entry(context, "visits", True)

    @pytest.mark.asyncio
    async def test_unknown_entry(self, account_cache, context):
        """Test every operation rejects undeclared names."""
        with pytest.raises(UnknownEntryError):
            await account_cache.get_entry(context, "missing")
        with pytest.raises(UnknownEntryError):
            await account_cache.store_entry(context, "missing", "x")
        with pytest.raises(UnknownEntryError):
            await account_cache.clear_entry(context, "missing")

    @pytest.mark.asyncio
    async def test_absent_without_refresh(self, account_cache, context):
        """Test that absent entries without a source read as None."""
        assert await account_cache.get_entry(context, "nickname") is None

    @pytest.mark.asyncio
    async def test_clear_entry(self, account_cache, context):
        """Test clearing an entry."""
        await account_cache.store_entry(context, "visits", 1)
        await account_cache.clear_entry(context, "visits")

        assert await account_cache.get_entry(context, "visits") is None

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, account_cache, codec):
        """Test that entries are keyed by session."""
        first = RequestContext(session_id="session-1", event_log=codec.new_log())
        second = RequestContext(session_id="session-2", event_log=codec.new_log())

        await account_cache.store_entry(first, "visits", 1)

        assert await account_cache.get_entry(second, "visits") is None

    @pytest.mark.asyncio
    async def test_corrupt_stored_value(self, account_cache, context, storage):
        """Test that an undecodable stored value is a decode error."""
        await storage.put("session-abc:accounts:visits", "not-a-number")

        with pytest.raises(DecodeError):
            await account_cache.get_entry(context, "visits")

    def test_invalid_component_id(self, storage, codec):
        """Test that component ids must be usable as consumer names."""
        with pytest.raises(ConfigurationError):
            ComponentCache("bad:id", storage, codec, [])


class TestComponentCacheRefresh:
    """Test cases for refreshing absent entries."""

    @pytest.mark.asyncio
    async def test_refresh_then_cache(self, account_cache, context, balance_source, metrics):
        """Test that a refreshed value is cached for later reads."""
        first = await account_cache.get_entry(context, "balance")
        second = await account_cache.get_entry(context, "balance")

        assert first == second == Decimal("100.00")
        assert str(second) == "100.00"
        assert balance_source.calls["count"] == 1
        assert metrics.get_sample_value("cache_misses_total", component="accounts") == 1
        assert metrics.get_sample_value("cache_hits_total", component="accounts") == 1
        assert metrics.get_sample_value("cache_refreshes_total", component="accounts", status="ok") == 1

    @pytest.mark.asyncio
    async def test_sync_source(self, event_registry, codec, context):
        """Test that plain functions work as refresh sources."""
        cache = _cache(event_registry, codec, source=lambda: Decimal("7.50"))

        assert await cache.get_entry(context, "balance") == Decimal("7.50")

    @pytest.mark.asyncio
    async def test_refresh_unavailable(self, event_registry, codec, context):
        """Test an entry whose source was never registered."""
        cache = _cache(event_registry, codec)

        with pytest.raises(RefreshUnavailableError):
            await cache.get_entry(context, "balance")

    @pytest.mark.asyncio
    async def test_refresh_failed(self, event_registry, codec, context):
        """Test a source that raises."""
        async def broken():
            raise RuntimeError("backend down")

        cache = _cache(event_registry, codec, source=broken)

        with pytest.raises(RefreshFailedError) as exc_info:
            await cache.get_entry(context, "balance")
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_refresh_timeout(self, event_registry, codec, context):
        """Test a source that takes too long."""
        async def slow():
            await asyncio.sleep(1)
            return Decimal("1")

        cache = _cache(event_registry, codec, source=slow, timeout=0.05)

        with pytest.raises(RefreshFailedError):
            await cache.get_entry(context, "balance")

    @pytest.mark.asyncio
    async def test_refresh_wrong_type(self, event_registry, codec, context):
        """Test a source that returns the wrong type; nothing is cached."""
        storage = InMemoryStorage()
        cache = _cache(event_registry, codec, source=lambda: 100.0, storage=storage)

        with pytest.raises(RefreshTypeMismatchError):
            await cache.get_entry(context, "balance")
        assert len(storage) == 0

    @pytest.mark.asyncio
    async def test_cache_write_failed_carries_value(self, event_registry, codec, context):
        """Test that a failed write still hands back the refreshed value."""
        storage = AsyncMock()
        storage.get.return_value = None
        storage.put.side_effect = StorageError("full")
        cache = _cache(event_registry, codec, source=lambda: Decimal("42.00"), storage=storage)

        with pytest.raises(CacheWriteFailedError) as exc_info:
            await cache.get_entry(context, "balance")

        assert exc_info.value.value == Decimal("42.00")
        assert isinstance(exc_info.value.__cause__, StorageError)


class TestComponentCacheInvalidation:
    """Test cases for the begin/end request hooks."""

    @pytest.mark.asyncio
    async def test_balance_invalidation_cycle(self, account_cache, codec, balance_source):
        """Test that a balance change clears the cached balance on the next request."""
        log = codec.new_log()

        # request 1: balance is loaded and cached
        ctx = RequestContext(session_id="session-abc", event_log=log)
        await account_cache.begin_request(ctx)
        assert await account_cache.get_entry(ctx, "balance") == Decimal("100.00")
        await account_cache.store_entry(ctx, "nickname", "Checking")
        await account_cache.end_request(ctx)

        # request 2: a payment changes the balance
        ctx = RequestContext(session_id="session-abc", event_log=log)
        await account_cache.begin_request(ctx)
        balance_source.calls["value"] = Decimal("75.25")
        codec.append(log, DemoEvent.BALANCES_CHANGED)
        # still cached until the next request begins
        assert await account_cache.get_entry(ctx, "balance") == Decimal("100.00")
        await account_cache.end_request(ctx)

        # request 3: the change is applied
        ctx = RequestContext(session_id="session-abc", event_log=log)
        await account_cache.begin_request(ctx)
        assert await account_cache.get_entry(ctx, "balance") == Decimal("75.25")
        assert await account_cache.get_entry(ctx, "nickname") == "Checking"
        await account_cache.end_request(ctx)

        assert balance_source.calls["count"] == 2
        assert log.watermarks["accounts"] == 1

    @pytest.mark.asyncio
    async def test_begin_request_clears_matching_entries(self, account_cache, codec, storage, metrics):
        """Test that only entries declared for the event are cleared."""
        log = codec.new_log()
        ctx = RequestContext(session_id="session-abc", event_log=log)
        await account_cache.store_entry(ctx, "nickname", "Checking")
        await account_cache.store_entry(ctx, "accounts", ["acc-1"])
        await account_cache.store_entry(ctx, "visits", 4)
        codec.append(log, DemoEvent.PROFILE_CHANGED)

        await account_cache.begin_request(ctx)

        assert await account_cache.get_entry(ctx, "nickname") is None
        assert await account_cache.get_entry(ctx, "accounts") == ["acc-1"]
        assert await account_cache.get_entry(ctx, "visits") == 4
        assert ctx.observed_positions["accounts"] == 1
        assert metrics.get_sample_value("cache_invalidations_total", component="accounts") == 1

    @pytest.mark.asyncio
    async def test_lost_history_clears_everything(self, account_cache, codec):
        """Test that a reset log invalidates every entry with invalidators."""
        log = codec.reset_log()
        ctx = RequestContext(session_id="session-abc", event_log=log)
        await account_cache.store_entry(ctx, "nickname", "Checking")
        await account_cache.store_entry(ctx, "accounts", ["acc-1"])
        await account_cache.store_entry(ctx, "visits", 4)

        await account_cache.begin_request(ctx)

        assert await account_cache.get_entry(ctx, "nickname") is None
        assert await account_cache.get_entry(ctx, "accounts") is None
        # no invalidating events declared
        assert await account_cache.get_entry(ctx, "visits") == 4

    @pytest.mark.asyncio
    async def test_end_without_begin(self, account_cache, context):
        """Test that end_request without begin_request leaves the log alone."""
        context.event_log.modified = False

        await account_cache.end_request(context)

        assert context.event_log.watermarks == {}
        assert context.event_log.modified is False


class TestComponentCacheSerialization:
    """Test cases for the stored form of entries."""

    @pytest.fixture
    def cache(self, event_registry, codec, storage):
        """Cache with JSON-native and string-encoded entry types."""
        descriptors = [
            {"name": "rate", "type": "float", "invalidatingEvents": []},
            {"name": "history", "type": "list", "invalidatingEvents": []},
            {"name": "visits", "type": "int", "invalidatingEvents": []},
            {"name": "enabled", "type": "bool", "invalidatingEvents": []},
            {"name": "balance", "type": "decimal", "invalidatingEvents": []},
        ]
        return ComponentCache("ledger", storage, codec, build_entry_metadata(descriptors, event_registry))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name, value", [
        ("rate", float("inf")),
        ("rate", float("nan")),
        ("history", [1.5, float("-inf")]),
        ("balance", Decimal("NaN")),
    ])
    async def test_non_finite_numbers_are_refused(self, cache, context, storage, name, value):
        """Test that values JSON cannot hold fail on write instead of on read."""
        with pytest.raises(EncodeError):
            await cache.store_entry(context, name, value)

        assert len(storage) == 0

    @pytest.mark.asyncio
    async def test_finite_values_round_trip(self, cache, context):
        """Test the JSON-native types and decimals survive storage."""
        await cache.store_entry(context, "rate", 0.25)
        await cache.store_entry(context, "history", [1.5, 2])
        await cache.store_entry(context, "balance", Decimal("100.00"))

        assert await cache.get_entry(context, "rate") == 0.25
        assert await cache.get_entry(context, "history") == [1.5, 2]
        assert await cache.get_entry(context, "balance") == Decimal("100.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name, stored", [
        ("visits", '"5"'),
        ("enabled", "1"),
        ("rate", '"0.5"'),
        ("history", '{"a": 1}'),
    ])
    async def test_stored_value_of_wrong_shape(self, cache, context, storage, name, stored):
        """Test that stored values are not coerced into the declared type."""
        await storage.put(f"session-abc:ledger:{name}", stored)

        with pytest.raises(DecodeError):
            await cache.get_entry(context, name)

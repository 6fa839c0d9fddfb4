"""
Shared fixtures for session service tests.
"""

from decimal import Decimal
from enum import IntEnum

import pytest

from service_session.app.caching.component_cache import ComponentCache
from service_session.app.caching.entries import RefreshRegistry, build_entry_metadata
from service_session.app.caching.storage import InMemoryStorage
from service_session.app.events.registry import EventKindRegistry
from service_session.app.queue.event_log import EventLogCodec
from service_session.app.session.context import RequestContext
from shared.metrics import MetricsCollector

PASSPHRASE = "correct horse battery staple, but much longer"


class DemoEvent(IntEnum):
    BALANCES_CHANGED = 0
    ACCOUNTS_CHANGED = 1
    PROFILE_CHANGED = 2


ACCOUNT_DESCRIPTORS = [
    {
        "name": "balance",
        "type": "decimal",
        "invalidatingEvents": ["BALANCES_CHANGED"],
        "refreshFunction": "load_balance",
    },
    {
        "name": "accounts",
        "type": "list",
        "invalidatingEvents": ["ACCOUNTS_CHANGED"],
    },
    {
        "name": "nickname",
        "type": "str",
        "invalidatingEvents": ["PROFILE_CHANGED", "ACCOUNTS_CHANGED"],
    },
    {
        "name": "visits",
        "type": "int",
        "invalidatingEvents": [],
    },
]


@pytest.fixture
def event_registry():
    """Registry over the demo event kinds."""
    return EventKindRegistry(DemoEvent)


@pytest.fixture
def codec(event_registry):
    """Event log codec with the default block capacity."""
    return EventLogCodec(event_registry)


@pytest.fixture
def small_codec(event_registry):
    """Event log codec with tiny blocks so eviction is easy to reach."""
    return EventLogCodec(event_registry, block_capacity=4)


@pytest.fixture
def storage():
    """Unbounded in-memory storage."""
    return InMemoryStorage()


@pytest.fixture
def metrics():
    """Metrics collector with its own registry."""
    return MetricsCollector("session-test")


@pytest.fixture
def balance_source():
    """Refresh source whose result and call count tests can inspect."""
    calls = {"count": 0, "value": Decimal("100.00")}

    async def load_balance():
        calls["count"] += 1
        return calls["value"]

    load_balance.calls = calls
    return load_balance


@pytest.fixture
def refresh_registry(balance_source):
    """Refresh registry holding the balance source."""
    return RefreshRegistry({"load_balance": balance_source})


@pytest.fixture
def account_cache(storage, codec, event_registry, refresh_registry, metrics):
    """Component cache for the demo accounts component."""
    return ComponentCache(
        "accounts",
        storage,
        codec,
        build_entry_metadata(ACCOUNT_DESCRIPTORS, event_registry),
        refresh_registry,
        refresh_timeout=1.0,
        metrics=metrics,
    )


@pytest.fixture
def context(codec):
    """Request context for an existing session with an empty log."""
    return RequestContext(session_id="session-abc", event_log=codec.new_log())

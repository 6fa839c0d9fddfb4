"""
Per-component cache of typed, named entries kept in a lossy storage mechanism.

Entries are invalidated by events recorded in the session's event log: at the
start of each request the cache reads the events appended since it last looked
and clears every entry declared as invalidated by one of them. Entries with a
refresh source are reloaded on demand when absent.
"""

import asyncio
import inspect
import math
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from shared.errors import (
    CacheWriteFailedError,
    ConfigurationError,
    DecodeError,
    EncodeError,
    RefreshFailedError,
    RefreshTypeMismatchError,
    TypeMismatchError,
    UnknownEntryError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..queue.event_log import EventLogCodec, validate_consumer_name
from ..session.context import RequestContext
from .entries import EntryMetadata, RefreshRegistry
from .storage import StorageMechanism

# JSON-native types are decoded strictly; anything stored as a JSON string (Decimal) is not
STRICT_JSON_TYPES = (int, float, bool, list, dict)


class ComponentCache:
    """Cache for one component; one instance per component for the whole process.

    All per-request state lives in the ``RequestContext`` passed to each call.
    """

    def __init__(
        self,
        component_id: str,
        storage: StorageMechanism,
        codec: EventLogCodec,
        entries: Iterable[EntryMetadata],
        refresh_registry: Optional[RefreshRegistry] = None,
        *,
        refresh_timeout: Optional[float] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.component_id = validate_consumer_name(component_id)
        self.storage = storage
        self.codec = codec
        self.refresh_registry = refresh_registry or RefreshRegistry()
        self.refresh_timeout = refresh_timeout
        self.metrics = metrics
        self.logger = get_logger(f"session.cache.{component_id}")

        self._entries: Dict[str, EntryMetadata] = {}
        self._adapters: Dict[type, TypeAdapter] = {}
        for entry in entries:
            if entry.name in self._entries:
                raise ConfigurationError(f"Entry '{entry.name}' is declared more than once for {component_id}")
            self._entries[entry.name] = entry
            if entry.value_type is not str and entry.value_type not in self._adapters:
                self._adapters[entry.value_type] = TypeAdapter(entry.value_type)
            if entry.refresh_source_id and entry.refresh_source_id not in self.refresh_registry:
                self.logger.warning(
                    "Refresh source is not registered",
                    entry=entry.name,
                    refresh_source=entry.refresh_source_id
                )

    @property
    def entries(self) -> List[EntryMetadata]:
        return list(self._entries.values())

    def _metadata(self, name: str) -> EntryMetadata:
        entry = self._entries.get(name)
        if entry is None:
            raise UnknownEntryError(name, self.component_id)
        return entry

    def _storage_key(self, context: RequestContext, name: str) -> str:
        return f"{context.session_id}:{self.component_id}:{name}"

    def _count(self, metric_name: str, **labels):
        if self.metrics is not None:
            self.metrics.increment_counter(metric_name, component=self.component_id, **labels)

    async def store_entry(self, context: RequestContext, name: str, value: Any) -> None:
        """Store ``value`` under ``name``; it must have exactly the declared type."""
        entry = self._metadata(name)
        if type(value) is not entry.value_type:
            raise TypeMismatchError(name, entry.value_type, type(value))
        serialized = self._serialize(entry, value)
        await self.storage.put(self._storage_key(context, name), serialized)

    async def clear_entry(self, context: RequestContext, name: str) -> None:
        """Forget any stored value for ``name``."""
        self._metadata(name)
        await self.storage.put(self._storage_key(context, name), None)

    async def get_entry(self, context: RequestContext, name: str) -> Any:
        """Return the cached value, refreshing it if absent and a source is declared.

        Returns ``None`` when the value is absent and there is no refresh source;
        callers must be prepared for that.
        """
        entry = self._metadata(name)
        stored = await self.storage.get(self._storage_key(context, name))
        if stored is not None:
            self._count("cache_hits_total")
            return self._deserialize(entry, stored)

        self._count("cache_misses_total")
        if not entry.refresh_source_id:
            return None

        value = await self._refresh(entry)
        try:
            await self.store_entry(context, name, value)
        except Exception as e:
            self.logger.warning(
                "Refreshed value could not be cached",
                entry=name,
                error=str(e)
            )
            raise CacheWriteFailedError(name, value) from e
        return value

    async def begin_request(self, context: RequestContext) -> None:
        """Clear entries invalidated by events appended since this component last looked."""
        new_events, watermark = self.codec.get_new_events(context.event_log, self.component_id)
        context.observed_positions[self.component_id] = watermark
        if not new_events:
            return

        cleared = []
        for entry in self._entries.values():
            if entry.is_invalidated_by(new_events):
                await self.clear_entry(context, entry.name)
                cleared.append(entry.name)
                self._count("cache_invalidations_total")

        if cleared:
            self.logger.info(
                "Invalidated cache entries",
                events=sorted(event.name for event in new_events),
                cleared=cleared
            )

    async def end_request(self, context: RequestContext) -> None:
        """Persist the watermark observed in ``begin_request``."""
        position = context.observed_positions.pop(self.component_id, None)
        if position is None:
            self.logger.warning("end_request called without begin_request")
            return
        self.codec.mark_consumed(context.event_log, self.component_id, position)

    async def _refresh(self, entry: EntryMetadata) -> Any:
        source_id = entry.refresh_source_id
        source = self.refresh_registry.resolve(source_id)

        try:
            if inspect.iscoroutinefunction(source):
                result = await asyncio.wait_for(source(), self.refresh_timeout)
            else:
                result = await asyncio.wait_for(asyncio.to_thread(source), self.refresh_timeout)
                if inspect.isawaitable(result):
                    result = await asyncio.wait_for(result, self.refresh_timeout)
        except Exception as e:
            self._count("cache_refreshes_total", status="error")
            self.logger.error(
                "Refresh source failed",
                entry=entry.name,
                refresh_source=source_id,
                error=repr(e)
            )
            raise RefreshFailedError(entry.name, source_id, e) from e

        if type(result) is not entry.value_type:
            self._count("cache_refreshes_total", status="wrong_type")
            raise RefreshTypeMismatchError(source_id, entry.value_type, type(result))

        self._count("cache_refreshes_total", status="ok")
        self.logger.debug("Refreshed cache entry", entry=entry.name, refresh_source=source_id)
        return result

    def _serialize(self, entry: EntryMetadata, value: Any) -> str:
        if isinstance(value, str):
            return value
        if not _is_finite(value):
            raise EncodeError(
                f"Value for entry '{entry.name}' contains a non-finite number",
                {"entry": entry.name}
            )
        try:
            return self._adapters[entry.value_type].dump_json(value).decode("utf-8")
        except (PydanticSerializationError, ValueError, TypeError) as e:
            raise EncodeError(
                f"Value for entry '{entry.name}' could not be serialized: {e}",
                {"entry": entry.name}
            ) from e

    def _deserialize(self, entry: EntryMetadata, stored: str) -> Any:
        if entry.value_type is str:
            return stored
        try:
            return self._adapters[entry.value_type].validate_json(
                stored, strict=entry.value_type in STRICT_JSON_TYPES
            )
        except ValidationError as e:
            raise DecodeError(
                f"Stored value for entry '{entry.name}' is not a valid {entry.value_type.__name__}",
                {"entry": entry.name}
            ) from e


def _is_finite(value: Any) -> bool:
    """JSON has no inf or nan; pydantic would silently write them as null."""
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, Decimal):
        return value.is_finite()
    if isinstance(value, dict):
        return all(_is_finite(item) for item in value.values())
    if isinstance(value, (list, tuple, set, frozenset)):
        return all(_is_finite(item) for item in value)
    return True

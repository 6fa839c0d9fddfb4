"""
Entry declarations for component caches.

Entries are declared once at startup from descriptor records (normally parsed
from a JSON descriptor file by the hosting application)::

    {
        "name": "balance",
        "type": "decimal",
        "invalidatingEvents": ["BALANCES_CHANGED"],
        "refreshFunction": "load_balance"
    }
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from shared.errors import ConfigurationError, RefreshUnavailableError
from ..events.registry import EventKindRegistry

NAME_FIELD = "name"
TYPE_FIELD = "type"
EVENTS_FIELD = "invalidatingEvents"
REFRESH_FIELD = "refreshFunction"

RefreshSource = Callable[[], Any]


@dataclass(frozen=True)
class EntryMetadata:
    """Static declaration of one cache entry."""
    name: str
    value_type: type
    invalidators: FrozenSet[IntEnum] = frozenset()
    refresh_source_id: Optional[str] = None
    type_tag: Optional[str] = None

    def is_invalidated_by(self, events: Iterable[IntEnum]) -> bool:
        return not self.invalidators.isdisjoint(events)


class TypeRegistry:
    """Maps the semantic type tags used in descriptors to Python types."""

    DEFAULT_TYPES: Dict[str, type] = {
        "str": str,
        "int": int,
        "float": float,
        "bool": bool,
        "decimal": Decimal,
        "dict": dict,
        "list": list,
    }

    def __init__(self, types: Optional[Mapping[str, type]] = None):
        self._types: Dict[str, type] = dict(self.DEFAULT_TYPES)
        for tag, value_type in (types or {}).items():
            self.register(tag, value_type)

    def register(self, tag: str, value_type: type) -> None:
        if not isinstance(value_type, type):
            raise ConfigurationError(f"Type tag '{tag}' must map to a class")
        self._types[tag] = value_type

    def resolve(self, tag: str) -> type:
        try:
            return self._types[tag]
        except KeyError:
            raise ConfigurationError(f"Unknown entry type '{tag}'", {"type": tag}) from None


class RefreshRegistry:
    """Explicit table of refresh sources, assembled once at startup."""

    def __init__(self, sources: Optional[Mapping[str, RefreshSource]] = None):
        self._sources: Dict[str, RefreshSource] = {}
        for source_id, source in (sources or {}).items():
            self.register(source_id, source)

    def register(self, source_id: str, source: RefreshSource) -> None:
        if not callable(source):
            raise ConfigurationError(f"Refresh source '{source_id}' is not callable")
        if source_id in self._sources:
            raise ConfigurationError(f"Refresh source '{source_id}' is already registered")
        self._sources[source_id] = source

    def source(self, source_id: str) -> Callable[[RefreshSource], RefreshSource]:
        """Decorator form of ``register``."""
        def decorator(func: RefreshSource) -> RefreshSource:
            self.register(source_id, func)
            return func
        return decorator

    def resolve(self, source_id: str) -> RefreshSource:
        try:
            return self._sources[source_id]
        except KeyError:
            raise RefreshUnavailableError(source_id) from None

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._sources


def build_entry_metadata(
    descriptors: Iterable[Mapping[str, Any]],
    event_registry: EventKindRegistry,
    type_registry: Optional[TypeRegistry] = None,
) -> List[EntryMetadata]:
    """Turn parsed descriptor records into ``EntryMetadata``."""
    type_registry = type_registry or TypeRegistry()
    entries: List[EntryMetadata] = []
    seen = set()

    for record in descriptors:
        try:
            name = record[NAME_FIELD]
            type_tag = record[TYPE_FIELD]
            event_names = record[EVENTS_FIELD]
        except KeyError as e:
            raise ConfigurationError(f"Entry descriptor is missing field {e}", {"descriptor": dict(record)}) from None

        if not isinstance(name, str) or not name:
            raise ConfigurationError("Entry name must be a non-empty string")
        if name in seen:
            raise ConfigurationError(f"Entry '{name}' is declared more than once")
        if isinstance(event_names, str):
            raise ConfigurationError(f"'{EVENTS_FIELD}' of entry '{name}' must be a list")
        seen.add(name)

        refresh_source_id = record.get(REFRESH_FIELD)
        entries.append(EntryMetadata(
            name=name,
            value_type=type_registry.resolve(type_tag),
            invalidators=frozenset(event_registry.from_name(event) for event in event_names),
            refresh_source_id=refresh_source_id or None,
            type_tag=type_tag,
        ))

    return entries

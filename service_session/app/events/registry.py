"""
Registry of cache invalidation event kinds.

Applications declare their event kinds as an ``IntEnum`` whose values are the
explicit byte codes written into the event log token, for example::

    class DemoEvent(IntEnum):
        BALANCES_CHANGED = 0
        ACCOUNTS_CHANGED = 1

The registry checks the table once, at startup.
"""

from enum import IntEnum
from typing import Dict, FrozenSet, Iterator, Type

from shared.errors import ConfigurationError, DecodeError

# The wire format stores one byte per event.
MAX_EVENT_KINDS = 256


class EventKindRegistry:
    """Closed, ordered set of invalidation event kinds."""

    def __init__(self, enum_cls: Type[IntEnum]):
        self.enum_cls = enum_cls
        self._by_code: Dict[int, IntEnum] = {}
        self._by_name: Dict[str, IntEnum] = {}

        names = list(enum_cls.__members__)
        if not names:
            raise ConfigurationError(f"Event kind enum {enum_cls.__name__} has no members")
        if len(names) > MAX_EVENT_KINDS:
            raise ConfigurationError(
                f"Event kind enum {enum_cls.__name__} has {len(names)} members; at most {MAX_EVENT_KINDS} are allowed"
            )

        for name, member in enum_cls.__members__.items():
            code = int(member)
            if not 0 <= code < MAX_EVENT_KINDS:
                raise ConfigurationError(
                    f"Event kind {name} has code {code}, outside [0, {MAX_EVENT_KINDS - 1}]"
                )
            # IntEnum silently turns a duplicated value into an alias
            if code in self._by_code or member.name != name:
                raise ConfigurationError(
                    f"Event kind {name} reuses code {code}",
                    {"code": code}
                )
            self._by_code[code] = member
            self._by_name[name] = member

        self._all_kinds = frozenset(self._by_code.values())

    @property
    def max_code(self) -> int:
        return max(self._by_code)

    def all_kinds(self) -> FrozenSet[IntEnum]:
        """Every declared kind; what a consumer sees when history was lost."""
        return self._all_kinds

    def from_code(self, code: int) -> IntEnum:
        try:
            return self._by_code[code]
        except KeyError:
            raise DecodeError(
                f"Unexpected event code {code} for {self.enum_cls.__name__}",
                {"code": code}
            ) from None

    def from_name(self, name: str) -> IntEnum:
        try:
            return self._by_name[name]
        except KeyError:
            raise ConfigurationError(
                f"'{name}' is not a valid {self.enum_cls.__name__}",
                {"event": name}
            ) from None

    def __contains__(self, kind: object) -> bool:
        return isinstance(kind, self.enum_cls) and kind.name in self._by_name

    def __iter__(self) -> Iterator[IntEnum]:
        return iter(self._by_code[code] for code in sorted(self._by_code))

    def __len__(self) -> int:
        return len(self._by_code)

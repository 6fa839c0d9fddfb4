"""
Block-structured invalidation event log carried in a client-held token.

The log for one session is rebuilt from the inbound token at the start of a
request and written back out at the end. Memory is bounded to two blocks: when
the current block fills up it becomes the previous block, and the old previous
block is dropped and counted in ``discarded_block_count``. A consumer whose
watermark points into a discarded block can no longer tell what it missed and
is told that every kind of event may have happened.

Token format::

    "[" <discarded> "|" (<consumer> ":" <watermark> ".")* "|" <previous?><current> "]"

Each event is one character from ``EVENT_ALPHABET``, which excludes the
structural characters and anything a cookie value may not contain.
"""

import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Optional, Set, Tuple

from shared.errors import ConfigurationError, DecodeError, EncodeError
from shared.logging import get_logger
from ..events.registry import EventKindRegistry

BLOCK_CAPACITY = 256

FIRST_EVENT_CHAR = 65
LAST_EVENT_CHAR = 126
STRUCTURAL_CHARS = "[]|:."
EVENT_ALPHABET = "".join(
    chr(c) for c in range(FIRST_EVENT_CHAR, LAST_EVENT_CHAR + 1)
    if chr(c) not in STRUCTURAL_CHARS and chr(c) != "\\"
)

CONSUMER_NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
_COUNT_PATTERN = re.compile(r"[0-9]+")
_WATERMARK_PATTERN = re.compile(r"([A-Za-z0-9_-]+):([0-9]+)")

logger = get_logger("session.queue.event_log")


def validate_consumer_name(name: str) -> str:
    """Consumer names end up inside the token, so they may not contain delimiters."""
    if not isinstance(name, str) or not CONSUMER_NAME_PATTERN.fullmatch(name):
        raise ConfigurationError(
            f"Consumer name {name!r} must match {CONSUMER_NAME_PATTERN.pattern}",
            {"consumer": name}
        )
    return name


@dataclass
class EventLog:
    """One session's event log plus every consumer's watermark.

    Blocks hold raw event codes. A previous block is always completely full.
    """

    discarded_block_count: int = 0
    watermarks: Dict[str, int] = field(default_factory=dict)
    previous_block: Optional[bytes] = None
    current_block: bytearray = field(default_factory=bytearray)
    modified: bool = field(default=False, compare=False)

    def __post_init__(self):
        self.current_block = bytearray(self.current_block)
        if self.previous_block is not None:
            self.previous_block = bytes(self.previous_block)
            if not self.current_block:
                # same logical state as a full current block with no previous one
                self.current_block = bytearray(self.previous_block)
                self.previous_block = None


class EventLogCodec:
    """Appends to, queries, encodes and decodes ``EventLog`` values."""

    def __init__(self, registry: EventKindRegistry, block_capacity: int = BLOCK_CAPACITY):
        if block_capacity < 1:
            raise ConfigurationError("block_capacity must be positive")
        if registry.max_code >= len(EVENT_ALPHABET):
            raise ConfigurationError(
                f"Event code {registry.max_code} does not fit the token alphabet "
                f"({len(EVENT_ALPHABET)} codes available)"
            )
        self.registry = registry
        self.block_capacity = block_capacity
        self._char_to_code = {char: code for code, char in enumerate(EVENT_ALPHABET)}

    def new_log(self) -> EventLog:
        """An empty log for a brand-new session."""
        return EventLog(modified=True)

    def reset_log(self) -> EventLog:
        """An empty log whose earlier history is marked as lost.

        Every consumer's next ``get_new_events`` reports all kinds, so nothing
        cached before the history went missing survives.
        """
        return EventLog(discarded_block_count=1, modified=True)

    def length(self, log: EventLog) -> int:
        """Logical number of events ever appended to the log."""
        previous = self.block_capacity if log.previous_block is not None else 0
        return log.discarded_block_count * self.block_capacity + previous + len(log.current_block)

    def append(self, log: EventLog, kind: IntEnum) -> None:
        """Append one event, evicting the oldest block if the current one is full."""
        if kind not in self.registry:
            raise ConfigurationError(f"{kind!r} is not a registered event kind")

        if len(log.current_block) >= self.block_capacity:
            if log.previous_block is not None:
                log.discarded_block_count += 1
            log.previous_block = bytes(log.current_block)
            log.current_block = bytearray()

        log.current_block.append(int(kind))
        log.modified = True

    def get_new_events(self, log: EventLog, consumer: str) -> Tuple[Set[IntEnum], int]:
        """Kinds of events appended since the consumer's watermark, and the new watermark.

        Does not persist anything; see ``mark_consumed``.
        """
        position = log.watermarks.get(consumer, 0)
        length = self.length(log)
        if length <= position:
            return set(), position

        discarded = log.discarded_block_count * self.block_capacity
        if position < discarded:
            logger.info(
                "Consumer fell behind discarded events; reporting all kinds",
                consumer=consumer,
                watermark=position,
                discarded_events=discarded
            )
            return set(self.registry.all_kinds()), length

        retained = (log.previous_block or b"") + bytes(log.current_block)
        offset = position - discarded
        return {self.registry.from_code(code) for code in retained[offset:]}, length

    def mark_consumed(self, log: EventLog, consumer: str, position: Optional[int] = None) -> None:
        """Advance the consumer's watermark to ``position`` (default: the log length).

        Watermarks never move backwards.
        """
        validate_consumer_name(consumer)
        target = self.length(log) if position is None else position
        if target < 0:
            raise ValueError("watermark position must be non-negative")
        current = log.watermarks.get(consumer)
        if current is None or target > current:
            log.watermarks[consumer] = target
            log.modified = True

    def encode(self, log: EventLog) -> str:
        """Serialize the log to its ASCII token."""
        parts = ["[", str(log.discarded_block_count), "|"]
        for consumer in sorted(log.watermarks):
            parts.append(f"{consumer}:{log.watermarks[consumer]}.")
        parts.append("|")
        if log.previous_block is not None:
            if len(log.previous_block) != self.block_capacity:
                raise EncodeError(
                    f"Previous block holds {len(log.previous_block)} events; expected {self.block_capacity}"
                )
            parts.append(self._encode_block(log.previous_block))
        if len(log.current_block) > self.block_capacity:
            raise EncodeError(
                f"Current block holds {len(log.current_block)} events; at most {self.block_capacity} fit"
            )
        parts.append(self._encode_block(log.current_block))
        parts.append("]")
        return "".join(parts)

    def decode(self, token: str) -> EventLog:
        """Parse a token produced by ``encode``; raises ``DecodeError`` if malformed."""
        if not isinstance(token, str) or len(token) < 2 or token[0] != "[" or token[-1] != "]":
            raise DecodeError("Event log token must be enclosed in brackets")

        sections = token[1:-1].split("|")
        if len(sections) != 3:
            raise DecodeError("Event log token must have exactly three sections")
        discarded_text, watermarks_text, events_text = sections

        if not _COUNT_PATTERN.fullmatch(discarded_text):
            raise DecodeError("Discarded block count is not a non-negative integer")
        discarded_block_count = int(discarded_text)

        watermarks = self._decode_watermarks(watermarks_text)

        if len(events_text) > 2 * self.block_capacity:
            raise DecodeError(
                "Event log token holds more than two blocks of events",
                {"events": len(events_text)}
            )
        codes = bytes(self._decode_event_char(char) for char in events_text)

        if len(codes) <= self.block_capacity:
            previous_block, current_block = None, codes
        else:
            previous_block = codes[:self.block_capacity]
            current_block = codes[self.block_capacity:]

        return EventLog(
            discarded_block_count=discarded_block_count,
            watermarks=watermarks,
            previous_block=previous_block,
            current_block=bytearray(current_block),
        )

    def _encode_block(self, block: bytes) -> str:
        try:
            return "".join(EVENT_ALPHABET[code] for code in block)
        except IndexError:
            raise EncodeError("Event log holds a code outside the token alphabet") from None

    def _decode_event_char(self, char: str) -> int:
        code = self._char_to_code.get(char)
        if code is None:
            raise DecodeError(f"Unexpected character {char!r} in event log token")
        # raises DecodeError for codes that are in the alphabet but not registered
        self.registry.from_code(code)
        return code

    def _decode_watermarks(self, text: str) -> Dict[str, int]:
        watermarks: Dict[str, int] = {}
        if not text:
            return watermarks
        if not text.endswith("."):
            raise DecodeError("Watermark section must end with '.'")
        for entry in text[:-1].split("."):
            match = _WATERMARK_PATTERN.fullmatch(entry)
            if match is None:
                raise DecodeError(f"Watermark entry {entry!r} is not name:integer")
            consumer, position = match.group(1), int(match.group(2))
            if consumer in watermarks:
                raise DecodeError(f"Duplicate watermark for consumer {consumer!r}")
            watermarks[consumer] = position
        return watermarks

"""
Request-scoped session state.

A ``RequestContext`` is built at the start of every request from the inbound
cookies and discarded when the response is written. Nothing about a session
outlives the request in process memory.
"""

from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..queue.event_log import EventLog

current_context: ContextVar[Optional["RequestContext"]] = ContextVar("current_session_context", default=None)


@dataclass
class RequestContext:
    """Session state for one request."""
    session_id: str
    event_log: EventLog
    is_new_session: bool = False
    # watermark each component observed in begin_request, persisted in end_request
    observed_positions: Dict[str, int] = field(default_factory=dict)
    session_data: Any = None
    session_data_modified: bool = False
    outbound_cookies: Dict[str, str] = field(default_factory=dict)


def get_request_context() -> RequestContext:
    """The context of the request being handled by the current task."""
    context = current_context.get()
    if context is None:
        raise RuntimeError("No session request is active")
    return context

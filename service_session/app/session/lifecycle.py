"""
Request lifecycle for stateless sessions.

``begin`` rebuilds the session from the inbound cookies and lets every
component cache apply the invalidations it has not seen yet; ``end`` advances
the component watermarks and produces the outbound cookies. Both are
transport-agnostic: cookies go in and come out as plain mappings.
"""

from contextlib import asynccontextmanager
from enum import IntEnum
from typing import AsyncIterator, Dict, Iterable, List, Mapping, Optional

from shared.errors import DecodeError, TamperedDataError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..caching.component_cache import ComponentCache
from ..queue.event_log import EventLog, EventLogCodec
from ..security.secure_serializer import SecureTokenCodec
from .context import RequestContext
from .session_data import SecureSessionData, SimpleSessionData

DEFAULT_QUEUE_COOKIE_NAME = "invalidationqueue"


class SessionLifecycle:
    """Drives one request's begin/end hooks for all component caches."""

    def __init__(
        self,
        codec: EventLogCodec,
        caches: Iterable[ComponentCache],
        *,
        session_ids: Optional[SimpleSessionData] = None,
        secure_session: Optional[SecureSessionData] = None,
        queue_token_codec: Optional[SecureTokenCodec] = None,
        queue_cookie_name: str = DEFAULT_QUEUE_COOKIE_NAME,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.codec = codec
        self.caches: List[ComponentCache] = list(caches)
        self.session_ids = session_ids or SimpleSessionData()
        self.secure_session = secure_session
        self.queue_token_codec = queue_token_codec
        self.queue_cookie_name = queue_cookie_name
        self.metrics = metrics
        self.logger = get_logger("session.lifecycle")

        component_ids = [cache.component_id for cache in self.caches]
        if len(set(component_ids)) != len(component_ids):
            raise ValueError("Component ids must be unique")

    async def begin(self, cookies: Mapping[str, str]) -> RequestContext:
        """Start a request: restore the session and apply pending invalidations.

        Raises ``TamperedDataError`` if the secure session cookie fails
        authentication.
        """
        session_id, is_new = self.session_ids.read(cookies)
        event_log = self._read_event_log(cookies.get(self.queue_cookie_name), is_new)
        context = RequestContext(session_id=session_id, event_log=event_log, is_new_session=is_new)

        if self.secure_session is not None:
            context.session_data, context.session_data_modified = self.secure_session.read(cookies)

        for cache in self.caches:
            await cache.begin_request(context)
        return context

    async def end(self, context: RequestContext, succeeded: bool = True) -> Dict[str, str]:
        """Finish a request and return the cookies to send back.

        When the handler failed the component watermarks are left where they
        were, so the invalidations are applied again on the next request.
        """
        if succeeded:
            for cache in reversed(self.caches):
                await cache.end_request(context)

        cookies: Dict[str, str] = {}
        cookies.update(self.session_ids.write(context))
        if context.event_log.modified:
            cookies[self.queue_cookie_name] = self._write_event_log(context.event_log)
        if self.secure_session is not None:
            cookies.update(self.secure_session.write(context))
        return cookies

    @asynccontextmanager
    async def turn(self, cookies: Mapping[str, str]) -> AsyncIterator[RequestContext]:
        """Run one request as ``async with``; outbound cookies land in ``context.outbound_cookies``."""
        context = await self.begin(cookies)
        try:
            yield context
        except Exception:
            context.outbound_cookies = await self.end(context, succeeded=False)
            raise
        context.outbound_cookies = await self.end(context)

    def add_event(self, context: RequestContext, kind: IntEnum) -> None:
        """Record that something changed; caches see it from the next request on."""
        self.codec.append(context.event_log, kind)
        self.logger.debug("Recorded invalidation event", kind=kind.name)

    def _read_event_log(self, token: Optional[str], is_new_session: bool) -> EventLog:
        if is_new_session:
            return self.codec.new_log()
        if token is None:
            # an existing session without its log may hold stale entries
            self.logger.warning("Event log token missing for existing session; resetting log")
            return self.codec.reset_log()

        try:
            if self.queue_token_codec is not None:
                token = self.queue_token_codec.decode(token)
                if not isinstance(token, str):
                    raise DecodeError("Encrypted event log token does not hold a string")
            return self.codec.decode(token)
        except (DecodeError, TamperedDataError) as e:
            self.logger.warning("Unreadable event log token; resetting log", error=e.message)
            if self.metrics is not None:
                self.metrics.increment_counter("token_decode_failures_total", token="event_log")
            return self.codec.reset_log()

    def _write_event_log(self, event_log: EventLog) -> str:
        token = self.codec.encode(event_log)
        if self.queue_token_codec is not None:
            token = self.queue_token_codec.encode(token)
        return token

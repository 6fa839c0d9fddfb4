"""
Stateless session service wiring.

Hosting applications supply their event kinds, the parsed entry descriptors
for each component and the refresh sources; the service assembles the codec,
storage, component caches and request middleware around a FastAPI app.
"""

from enum import IntEnum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Type

from pydantic import BaseModel

from shared.base_service import BaseService
from shared.config import ServiceConfig
from .caching.component_cache import ComponentCache
from .caching.entries import RefreshRegistry, TypeRegistry, build_entry_metadata
from .caching.storage import InMemoryStorage, RedisStorage, StorageMechanism
from .events.registry import EventKindRegistry
from .queue.event_log import EventLogCodec
from .security.secure_serializer import SecureSerializer, SecureTokenCodec
from .session.context import RequestContext
from .session.lifecycle import SessionLifecycle
from .session.middleware import SessionLifecycleMiddleware
from .session.session_data import SecureSessionData, SimpleSessionData

SERVICE_NAME = "session"
SERVICE_PORT = 8020


class SessionService(BaseService):
    """FastAPI service whose requests carry invalidation-aware session state."""

    def __init__(
        self,
        event_kinds: Type[IntEnum],
        components: Mapping[str, Iterable[Mapping[str, Any]]],
        refresh_registry: Optional[RefreshRegistry] = None,
        *,
        type_registry: Optional[TypeRegistry] = None,
        config: Optional[ServiceConfig] = None,
        storage: Optional[StorageMechanism] = None,
        session_model: Optional[Type[BaseModel]] = None,
        session_factory: Optional[Callable[[], BaseModel]] = None,
    ):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config)

        self.event_registry = EventKindRegistry(event_kinds)
        self.codec = EventLogCodec(self.event_registry, self.config.block_capacity)
        self.refresh_registry = refresh_registry or RefreshRegistry()
        self.type_registry = type_registry or TypeRegistry()
        self.storage = storage or self._create_storage()
        self.serializer = SecureSerializer(self.config.key_cache_size)

        self.caches: Dict[str, ComponentCache] = {}
        for component_id, descriptors in components.items():
            self.caches[component_id] = ComponentCache(
                component_id,
                self.storage,
                self.codec,
                build_entry_metadata(descriptors, self.event_registry, self.type_registry),
                self.refresh_registry,
                refresh_timeout=self.config.refresh_timeout_seconds,
                metrics=self.metrics,
            )

        token_codec = None
        if self.config.session_passphrase:
            token_codec = SecureTokenCodec(self.serializer, self.config.session_passphrase)

        secure_session = None
        if session_model is not None:
            if token_codec is None:
                raise ValueError("A session model requires session_passphrase to be configured")
            secure_session = SecureSessionData(
                token_codec,
                session_model,
                session_factory or session_model,
                cookie_name=self.config.secure_cookie_name,
            )

        self.lifecycle = SessionLifecycle(
            self.codec,
            self.caches.values(),
            session_ids=SimpleSessionData(self.config.session_cookie_name),
            secure_session=secure_session,
            queue_token_codec=token_codec if self.config.encrypt_queue_token else None,
            queue_cookie_name=self.config.queue_cookie_name,
            metrics=self.metrics,
        )
        self.app.add_middleware(
            SessionLifecycleMiddleware,
            lifecycle=self.lifecycle,
            secure_cookies=self.config.env != "local",
        )

        @self.app.on_event("shutdown")
        async def _shutdown():
            close = getattr(self.storage, "close", None)
            if close is not None:
                await close()

    def _create_storage(self) -> StorageMechanism:
        if self.config.storage_backend == "redis":
            return RedisStorage(self.config.redis_url, self.config.storage_ttl_seconds)
        return InMemoryStorage(self.config.memory_storage_max_entries)

    def cache(self, component_id: str) -> ComponentCache:
        return self.caches[component_id]

    def add_event(self, context: RequestContext, kind: IntEnum) -> None:
        self.lifecycle.add_event(context, kind)

    async def _check_dependencies(self) -> Dict[str, str]:
        health_check = getattr(self.storage, "health_check", None)
        if health_check is None:
            return {}
        return {"storage": "ok" if await health_check() else "error"}


def create_app(
    event_kinds: Type[IntEnum],
    components: Mapping[str, Iterable[Mapping[str, Any]]],
    refresh_registry: Optional[RefreshRegistry] = None,
    **kwargs,
):
    """Create FastAPI application."""
    service = SessionService(event_kinds, components, refresh_registry, **kwargs)
    return service.app

"""
Stateless Session Service package.

Lets a fleet of stateless request handlers share an invalidation-aware cache
without server-side session affinity. All per-session state is round-tripped
through client-held tokens on every request.

Structure:
- app.main: FastAPI service wiring.
- app.events: Registry of invalidation event kinds.
- app.queue: Block-structured event log and its token codec.
- app.security: Authenticated-encryption token codec.
- app.caching: Entry declarations, storage mechanisms and component caches.
- app.session: Request context, session cookies, lifecycle and middleware.
"""

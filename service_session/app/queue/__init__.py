"""
Event log package.

The log records which kinds of invalidation events happened during a session
and how far each component has read. It lives entirely in a client-held token.
"""

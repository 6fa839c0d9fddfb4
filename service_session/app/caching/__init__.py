"""
Component cache package.

Typed, named cache entries per component, cleared by invalidation events and
optionally refreshed on demand. Storage is treated as lossy: a missing value
is always an acceptable outcome.
"""

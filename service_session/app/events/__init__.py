"""
Invalidation event kinds.
"""

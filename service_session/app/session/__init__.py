"""
Request-scoped session handling: context, cookies, lifecycle and middleware.
"""

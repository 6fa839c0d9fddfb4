"""
Starlette middleware that wraps every HTTP request in a session turn.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shared.errors import TamperedDataError
from shared.logging import clear_context, get_logger, set_request_id, set_session_context
from .context import RequestContext, current_context
from .lifecycle import SessionLifecycle


class SessionLifecycleMiddleware(BaseHTTPMiddleware):
    """Reads session cookies, runs the lifecycle hooks and writes cookies back."""

    def __init__(self, app, lifecycle: SessionLifecycle, secure_cookies: bool = False):
        super().__init__(app)
        self.lifecycle = lifecycle
        self.secure_cookies = secure_cookies
        self.logger = get_logger("session.middleware")

    async def dispatch(self, request: Request, call_next):
        request_id = set_request_id(request.headers.get("X-Request-ID"))
        try:
            try:
                context = await self.lifecycle.begin(request.cookies)
            except TamperedDataError as e:
                self.logger.warning("Rejecting request with tampered session cookie", path=request.url.path)
                return JSONResponse(
                    status_code=400,
                    content=e.to_response(request_id).model_dump(),
                    headers={"X-Request-ID": request_id}
                )

            set_session_context(context.session_id)
            request.state.session = context
            token = current_context.set(context)
            try:
                response = await call_next(request)
            except Exception:
                # no response to attach cookies to; watermarks stay put
                await self.lifecycle.end(context, succeeded=False)
                raise
            finally:
                current_context.reset(token)

            cookies = await self.lifecycle.end(context, succeeded=response.status_code < 500)
            for name, value in cookies.items():
                response.set_cookie(
                    name,
                    value,
                    path="/",
                    httponly=True,
                    samesite="lax",
                    secure=self.secure_cookies,
                )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            clear_context()


def get_session_context(request: Request) -> RequestContext:
    """FastAPI dependency returning the current request's session context."""
    return request.state.session

"""
Session identity and confidential session payloads carried in cookies.
"""

import re
import secrets
from typing import Callable, Dict, Mapping, Optional, Tuple, Type

from pydantic import BaseModel

from shared.errors import DecodeError
from shared.logging import get_logger
from ..security.secure_serializer import SecureTokenCodec
from .context import RequestContext

SESSION_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,128}")

logger = get_logger("session.session_data")


class SimpleSessionData:
    """Session identity only: a random session id kept in its own cookie."""

    def __init__(self, cookie_name: str = "session-id"):
        self.cookie_name = cookie_name

    @staticmethod
    def new_session_id() -> str:
        return f"session-{secrets.token_urlsafe(16)}"

    def read(self, cookies: Mapping[str, str]) -> Tuple[str, bool]:
        """Return ``(session_id, is_new)`` for the inbound cookies."""
        value = cookies.get(self.cookie_name)
        if value and SESSION_ID_PATTERN.fullmatch(value):
            return value, False
        if value:
            logger.warning("Ignoring malformed session id cookie")
        return self.new_session_id(), True

    def write(self, context: RequestContext) -> Dict[str, str]:
        # the id never changes during a session, so it is only sent once
        if context.is_new_session:
            return {self.cookie_name: context.session_id}
        return {}


class SecureSessionData:
    """Confidential, tamper-evident session payload kept in an encrypted cookie.

    A cookie that fails authentication raises ``TamperedDataError``; it is
    never replaced by a fresh payload silently.
    """

    def __init__(
        self,
        codec: SecureTokenCodec,
        model: Type[BaseModel],
        factory: Callable[[], BaseModel],
        cookie_name: str = "key-session-values",
    ):
        self.codec = codec
        self.model = model
        self.factory = factory
        self.cookie_name = cookie_name

    def read(self, cookies: Mapping[str, str]) -> Tuple[BaseModel, bool]:
        """Return ``(payload, modified)``; a new payload counts as modified.

        An authentic payload that no longer fits the model (for example after
        the model changed between deployments) is replaced by a fresh one.
        """
        value = cookies.get(self.cookie_name)
        if value is None:
            return self.factory(), True
        try:
            return self.codec.decode(value, self.model), False
        except DecodeError as e:
            logger.warning("Secure session payload does not fit the model; starting fresh", error=e.message)
            return self.factory(), True

    def write(self, context: RequestContext) -> Dict[str, str]:
        if context.session_data_modified and context.session_data is not None:
            return {self.cookie_name: self.codec.encode(context.session_data)}
        return {}

    @staticmethod
    def modify(context: RequestContext, payload: Optional[BaseModel]) -> None:
        """Replace the payload; it will be written out at the end of the request."""
        context.session_data = payload
        context.session_data_modified = True

"""
Shared error handling for the stateless session layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class InvalidationQueueException(Exception):
    """Base exception for the session layer."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(InvalidationQueueException):
    """Invalid static configuration (event kinds, entries, passphrases)."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class DecodeError(InvalidationQueueException):
    """Malformed token or stored entry payload."""

    def __init__(self, message: str = "Could not decode data", details: Optional[Dict[str, Any]] = None):
        super().__init__("DECODE_ERROR", message, details)


class EncodeError(InvalidationQueueException):
    """A value could not be serialized."""

    def __init__(self, message: str = "Could not encode data", details: Optional[Dict[str, Any]] = None):
        super().__init__("ENCODE_ERROR", message, details)


class CryptoError(InvalidationQueueException):
    """Cryptographic failure other than an authentication mismatch."""

    def __init__(self, message: str = "Error utilizing cryptography", details: Optional[Dict[str, Any]] = None):
        super().__init__("CRYPTO_ERROR", message, details)


class TamperedDataError(InvalidationQueueException):
    """Authenticated decryption failed; the data cannot be trusted."""

    def __init__(self, message: str = "Data appears to have been tampered with", details: Optional[Dict[str, Any]] = None):
        super().__init__("TAMPERED_DATA", message, details)


class StorageError(InvalidationQueueException):
    """The storage mechanism rejected a write."""

    def __init__(self, message: str = "Storage error", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_ERROR", message, details)


class UnknownEntryError(InvalidationQueueException):
    """The component cache has no entry declared under this name."""

    def __init__(self, name: str, component_id: Optional[str] = None):
        super().__init__(
            "UNKNOWN_ENTRY",
            f"The component cache is not configured to support the entry '{name}'",
            {"entry": name, "component": component_id}
        )


class TypeMismatchError(InvalidationQueueException):
    """A value does not match the declared type of its entry."""

    def __init__(self, name: str, expected: type, actual: type):
        super().__init__(
            "TYPE_MISMATCH",
            f"The value was of type '{actual.__name__}', but the entry '{name}' "
            f"expects values of type '{expected.__name__}'",
            {"entry": name, "expected": expected.__name__, "actual": actual.__name__}
        )


class RefreshError(InvalidationQueueException):
    """Base class for failures while refreshing an absent entry."""


class RefreshUnavailableError(RefreshError):
    """The declared refresh source could not be resolved."""

    def __init__(self, refresh_source_id: str):
        super().__init__(
            "REFRESH_UNAVAILABLE",
            f"Refresh source '{refresh_source_id}' could not be looked up",
            {"refresh_source": refresh_source_id}
        )


class RefreshFailedError(RefreshError):
    """The refresh source raised (or timed out)."""

    def __init__(self, name: str, refresh_source_id: str, cause: BaseException):
        super().__init__(
            "REFRESH_FAILED",
            f"Refresh source '{refresh_source_id}' failed for entry '{name}': {cause!r}",
            {"entry": name, "refresh_source": refresh_source_id}
        )


class RefreshTypeMismatchError(RefreshError):
    """The refresh source returned a value of the wrong type."""

    def __init__(self, refresh_source_id: str, expected: type, actual: type):
        super().__init__(
            "REFRESH_TYPE_MISMATCH",
            f"Refresh source '{refresh_source_id}' was expected to return "
            f"'{expected.__name__}' but it actually returned '{actual.__name__}'",
            {"refresh_source": refresh_source_id, "expected": expected.__name__, "actual": actual.__name__}
        )


class CacheWriteFailedError(RefreshError):
    """A refreshed value could not be cached.

    The read itself succeeded; the produced value is available as ``value``.
    """

    def __init__(self, name: str, value: Any):
        self.value = value
        super().__init__(
            "CACHE_WRITE_FAILED",
            f"Unable to cache the value refresh returned for entry '{name}'",
            {"entry": name}
        )

"""
Tamper-evident, confidential serialization of session payloads.

Payloads are JSON-serialized, encrypted with AES-GCM under a key derived from
a passphrase, and rendered as URL-safe base64 so they can be handed to the
client (for example in a cookie) and trusted when they come back.

Layout of the decoded bytes: ``nonce (12) || ciphertext || tag (16)``.
"""

import base64
import binascii
import json
import os
import threading
from typing import Any, Dict, Optional, Type

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, ValidationError

from shared.config import MIN_PASSPHRASE_LENGTH
from shared.errors import ConfigurationError, CryptoError, DecodeError, EncodeError, TamperedDataError
from shared.logging import get_logger

NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32
KEY_SALT = b"invalidationqueue-session-token"
KEY_ITERATIONS = 100000
DEFAULT_KEY_CACHE_SIZE = 10


def check_passphrase(passphrase: str) -> str:
    """Reject passphrases that are too short to derive a key from."""
    if not isinstance(passphrase, str) or len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise ConfigurationError(
            f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters long"
        )
    return passphrase


class SecureSerializer:
    """AEAD serializer shared by every request in the process.

    Derived keys are cached per passphrase. Only a handful of passphrases are
    expected; past ``key_cache_size`` the key is derived on every call.
    """

    def __init__(self, key_cache_size: int = DEFAULT_KEY_CACHE_SIZE):
        self.key_cache_size = key_cache_size
        self.logger = get_logger("session.security.secure_serializer")
        self._keys: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def encode(self, payload: Any, passphrase: str) -> str:
        """Serialize and encrypt ``payload`` into printable ASCII."""
        plaintext = self._serialize(payload)
        nonce = os.urandom(NONCE_LENGTH)
        try:
            encrypted = AESGCM(self._get_key(passphrase)).encrypt(nonce, plaintext, None)
        except (ValueError, TypeError, OverflowError) as e:
            raise CryptoError(f"Encryption failed: {e}") from e
        return base64.urlsafe_b64encode(nonce + encrypted).decode("ascii")

    def decode(self, token: str, passphrase: str, model: Optional[Type[BaseModel]] = None) -> Any:
        """Decrypt and deserialize a value produced by ``encode``.

        If ``model`` is given the payload is validated into that pydantic model.
        """
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError, AttributeError, ValueError) as e:
            raise TamperedDataError("Secure token is not valid base64") from e
        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            raise TamperedDataError("Secure token is too short")

        nonce, encrypted = raw[:NONCE_LENGTH], raw[NONCE_LENGTH:]
        key = self._get_key(passphrase)
        try:
            plaintext = AESGCM(key).decrypt(nonce, encrypted, None)
        except InvalidTag as e:
            self.logger.warning("Secure token failed authentication")
            raise TamperedDataError() from e
        except (ValueError, TypeError, OverflowError) as e:
            raise CryptoError(f"Decryption failed: {e}") from e

        return self._deserialize(plaintext, model)

    def _serialize(self, payload: Any) -> bytes:
        if isinstance(payload, BaseModel):
            return payload.model_dump_json().encode("utf-8")
        try:
            return json.dumps(payload, separators=(",", ":"), allow_nan=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise EncodeError(f"Payload of type '{type(payload).__name__}' cannot be serialized: {e}") from e

    def _deserialize(self, plaintext: bytes, model: Optional[Type[BaseModel]]) -> Any:
        try:
            if model is not None:
                return model.model_validate_json(plaintext)
            return json.loads(plaintext.decode("utf-8"))
        except (ValidationError, UnicodeDecodeError, ValueError) as e:
            raise DecodeError(f"Decrypted payload has an invalid layout: {e}") from e

    def _get_key(self, passphrase: str) -> bytes:
        check_passphrase(passphrase)
        with self._lock:
            key = self._keys.get(passphrase)
        if key is not None:
            return key

        key = self._derive_key(passphrase)
        with self._lock:
            if len(self._keys) < self.key_cache_size:
                self._keys[passphrase] = key
        return key

    @staticmethod
    def _derive_key(passphrase: str) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=KEY_SALT,
            iterations=KEY_ITERATIONS,
        )
        return kdf.derive(passphrase.encode("utf-8"))

    def cached_key_count(self) -> int:
        with self._lock:
            return len(self._keys)


class SecureTokenCodec:
    """A ``SecureSerializer`` bound to one passphrase, checked at configuration time."""

    def __init__(self, serializer: SecureSerializer, passphrase: str):
        self.serializer = serializer
        self._passphrase = check_passphrase(passphrase)

    def encode(self, payload: Any) -> str:
        return self.serializer.encode(payload, self._passphrase)

    def decode(self, token: str, model: Optional[Type[BaseModel]] = None) -> Any:
        return self.serializer.decode(token, self._passphrase, model)

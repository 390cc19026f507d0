"""Bearer token codec and provider token cipher.

Bearer layout: ``v1.`` + base64url(nonce || ChaCha20-Poly1305(claims)).
The claims JSON carries the key id, the verifier and an expiration, so both
values are sealed together and one cannot be swapped without the other.

Provider access tokens are sealed at rest with AES-GCM; the stored value is
base64url(nonce || ciphertext).
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from datetime import datetime
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from headb.utils.datetime import to_unix, utcnow

if TYPE_CHECKING:
    from headb.config import SecurityConfig

_NONCE_SIZE = 12  # 96-bit nonce for both ciphers
_BEARER_VERSION = "v1"
_BEARER_ISSUER = "headb"

BEARER_KEY_SIZES = (32,)
PROVIDER_KEY_SIZES = (16, 24, 32)


class InvalidTokenError(Exception):
    """Token could not be opened: tampered, malformed, wrong key or expired."""


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def load_key(value: str, sizes: tuple[int, ...], name: str) -> bytes:
    """Turn a configured secret into key bytes.

    Accepts a raw string whose UTF-8 encoding has an allowed length, or the
    base64url encoding of such a key.

    Raises:
        ValueError: If neither form yields a key of an allowed size
    """
    raw = value.encode("utf-8")
    if len(raw) in sizes:
        return raw

    try:
        decoded = _b64decode(value)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) in sizes:
        return decoded

    allowed = "/".join(str(s) for s in sizes)
    raise ValueError(f"{name} must be {allowed} bytes (raw or base64url-encoded)")


class BearerTokenCodec:
    """Seals (key_value, key_id) pairs into opaque URL-safe bearers."""

    def __init__(self, key: bytes) -> None:
        if len(key) not in BEARER_KEY_SIZES:
            raise ValueError("Bearer token key must be 32 bytes")
        self._aead = ChaCha20Poly1305(key)
        self._aad = f"{_BEARER_ISSUER}.{_BEARER_VERSION}".encode()

    @classmethod
    def from_config(cls, security: SecurityConfig) -> BearerTokenCodec:
        return cls(load_key(security.token_aead_key, BEARER_KEY_SIZES, "TOKEN_AEAD_KEY"))

    def encrypt(self, key_value: str, key_id: str, expires_at: datetime) -> str:
        """Build a bearer for the given verifier and key id.

        Args:
            key_value: The verifier (never persisted)
            key_id: The ApiKey row id
            expires_at: Expiration, naive values are read as UTC

        Returns:
            URL-safe bearer string
        """
        claims = {
            "iss": _BEARER_ISSUER,
            "kid": key_id,
            "kv": key_value,
            "exp": to_unix(expires_at),
        }
        payload = json.dumps(claims, separators=(",", ":")).encode()
        nonce = os.urandom(_NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, payload, self._aad)
        return f"{_BEARER_VERSION}.{_b64encode(nonce + sealed)}"

    def decrypt(self, bearer: str, now: datetime | None = None) -> tuple[str, str]:
        """Open a bearer.

        Returns:
            Tuple of (key_value, key_id)

        Raises:
            InvalidTokenError: On tampering, decode failure, wrong key or expiry
        """
        version, sep, body = bearer.partition(".")
        if not sep or version != _BEARER_VERSION or not body:
            raise InvalidTokenError("Unsupported bearer format")

        try:
            data = _b64decode(body)
        except (binascii.Error, ValueError) as e:
            raise InvalidTokenError("Bearer is not valid base64url") from e

        if len(data) <= _NONCE_SIZE:
            raise InvalidTokenError("Bearer is too short")

        nonce, sealed = data[:_NONCE_SIZE], data[_NONCE_SIZE:]
        try:
            payload = self._aead.decrypt(nonce, sealed, self._aad)
        except InvalidTag as e:
            raise InvalidTokenError("Bearer failed authentication") from e

        try:
            claims = json.loads(payload)
        except ValueError as e:
            raise InvalidTokenError("Bearer claims are not valid JSON") from e

        if not isinstance(claims, dict) or claims.get("iss") != _BEARER_ISSUER:
            raise InvalidTokenError("Bearer issuer mismatch")

        key_id = claims.get("kid")
        key_value = claims.get("kv")
        expires = claims.get("exp")
        if not isinstance(key_id, str) or not isinstance(key_value, str):
            raise InvalidTokenError("Bearer is missing key claims")
        if not isinstance(expires, int):
            raise InvalidTokenError("Bearer is missing an expiration")

        if expires <= to_unix(now or utcnow()):
            raise InvalidTokenError("Bearer has expired")

        return key_value, key_id


class ProviderTokenCipher:
    """Seals provider access tokens for storage (AES-GCM)."""

    def __init__(self, key: bytes) -> None:
        if len(key) not in PROVIDER_KEY_SIZES:
            raise ValueError("Provider token key must be 16, 24 or 32 bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_config(cls, security: SecurityConfig) -> ProviderTokenCipher:
        return cls(
            load_key(
                security.provider_token_aead_key,
                PROVIDER_KEY_SIZES,
                "PROVIDER_TOKEN_AEAD_KEY",
            )
        )

    def encrypt(self, access_token: str) -> str:
        nonce = os.urandom(_NONCE_SIZE)
        return _b64encode(nonce + self._aead.encrypt(nonce, access_token.encode(), None))

    def decrypt(self, sealed: str) -> str:
        """Recover the provider access token.

        Raises:
            InvalidTokenError: If the value was tampered with or the key is wrong
        """
        try:
            data = _b64decode(sealed)
        except (binascii.Error, ValueError) as e:
            raise InvalidTokenError("Provider token is not valid base64url") from e

        if len(data) <= _NONCE_SIZE:
            raise InvalidTokenError("Provider token is too short")

        try:
            plain = self._aead.decrypt(data[:_NONCE_SIZE], data[_NONCE_SIZE:], None)
        except InvalidTag as e:
            raise InvalidTokenError("Provider token failed authentication") from e
        return plain.decode()

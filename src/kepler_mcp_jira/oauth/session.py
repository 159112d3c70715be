"""Stateless OAuth sessions carried inside the ``state`` parameter.

Nothing about a pending authorization is kept server-side. The PKCE
verifier, redirect URI and a creation timestamp are encrypted into the
``state`` value that the authorization server echoes back on the
callback, so the callback can be served by any process that derives the
same key from the same configured secret.

Wire format::

    base64url( hex(iv) ":" hex(ciphertext || hmac_tag) )

The ciphertext is AES-256-CBC over the JSON-encoded session with a fresh
random IV per call. The trailing HMAC-SHA256 tag covers ``iv || ciphertext``
so that a flipped byte anywhere fails verification instead of decrypting
to a different session.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from kepler_mcp_jira.logging_config import get_logger
from kepler_mcp_jira.oauth.errors import InvalidStateError
from kepler_mcp_jira.oauth.pkce import is_valid_code_verifier

logger = get_logger(__name__)

SESSION_TTL = timedelta(minutes=15)

KEY_SIZE = 32
IV_SIZE = 16
TAG_SIZE = 32
BLOCK_SIZE = 16

_HEX_PATTERN = re.compile(r"[0-9a-f]+")
_MAC_KEY_LABEL = b"kepler-mcp-jira/state-mac"


@dataclass(frozen=True)
class AuthSession:
    """A pending authorization, alive only inside an encrypted state.

    Attributes:
        code_verifier: PKCE verifier for the token request
        redirect_uri: Redirect URI used on the authorization request
        created_at: When the flow started (UTC)
        identity_hint: Optional login hint, usually an email address
        origin_hint: Where the flow was started from (site URL, client name)
    """

    code_verifier: str
    redirect_uri: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    identity_hint: str | None = None
    origin_hint: str = "unknown"

    def age(self, now: datetime | None = None) -> timedelta:
        """Time elapsed since the session was created."""
        return (now or datetime.now(UTC)) - self.created_at

    def is_expired(self, ttl: timedelta = SESSION_TTL, now: datetime | None = None) -> bool:
        """Check whether the session is older than ``ttl``."""
        return self.age(now) > ttl

    def to_dict(self) -> dict[str, Any]:
        return {
            "code_verifier": self.code_verifier,
            "redirect_uri": self.redirect_uri,
            "created_at": self.created_at.isoformat(),
            "identity_hint": self.identity_hint,
            "origin_hint": self.origin_hint,
        }

    @classmethod
    def from_dict(cls, data: Any) -> AuthSession:
        """Rebuild a session from decrypted JSON.

        Raises:
            InvalidStateError: If any field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise InvalidStateError("Session payload is not an object")

        verifier = data.get("code_verifier")
        redirect_uri = data.get("redirect_uri")
        created_at_raw = data.get("created_at")
        identity_hint = data.get("identity_hint")
        origin_hint = data.get("origin_hint", "unknown")

        if not isinstance(verifier, str) or not is_valid_code_verifier(verifier):
            raise InvalidStateError("Session carries an invalid code verifier")
        if not isinstance(redirect_uri, str) or not redirect_uri:
            raise InvalidStateError("Session is missing its redirect URI")
        if identity_hint is not None and not isinstance(identity_hint, str):
            raise InvalidStateError("Session identity hint must be a string")
        if not isinstance(origin_hint, str):
            raise InvalidStateError("Session origin hint must be a string")
        if not isinstance(created_at_raw, str):
            raise InvalidStateError("Session is missing its creation time")

        try:
            created_at = datetime.fromisoformat(created_at_raw)
        except ValueError:
            raise InvalidStateError("Session creation time is malformed") from None
        if created_at.tzinfo is None:
            raise InvalidStateError("Session creation time has no timezone")

        return cls(
            code_verifier=verifier,
            redirect_uri=redirect_uri,
            created_at=created_at,
            identity_hint=identity_hint,
            origin_hint=origin_hint,
        )


def derive_state_key(secret: str) -> bytes:
    """Derive the AES-256 state key from a configured secret.

    Args:
        secret: Deployment secret shared by every instance

    Returns:
        32-byte key

    Raises:
        ValueError: If the secret is empty
    """
    if not secret:
        msg = "A state encryption secret is required; refusing to use a default"
        raise ValueError(msg)
    return hashlib.sha256(secret.encode("utf-8")).digest()


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    raw = base64.b64decode(padded, altchars=b"-_", validate=True)
    # Reject non-canonical encodings (stray trailing bits) so every
    # distinct state string maps to distinct bytes
    if _b64url_encode(raw) != value:
        raise ValueError("non-canonical base64url")
    return raw


class SessionCodec:
    """Encrypts ``AuthSession`` values into opaque state strings and back.

    The codec holds the only process-wide secret material of the flow and
    is safe to share between concurrent tasks; it has no mutable state.
    """

    def __init__(self, key: bytes, ttl: timedelta = SESSION_TTL) -> None:
        """Initialize the codec.

        Args:
            key: 32-byte key, usually from derive_state_key()
            ttl: Maximum session age accepted by decrypt()

        Raises:
            ValueError: If the key has the wrong length
        """
        if len(key) != KEY_SIZE:
            msg = f"State key must be {KEY_SIZE} bytes, got {len(key)}"
            raise ValueError(msg)
        self._key = key
        self._mac_key = hashlib.sha256(_MAC_KEY_LABEL + key).digest()
        self._ttl = ttl

    @classmethod
    def from_secret(cls, secret: str, ttl: timedelta = SESSION_TTL) -> SessionCodec:
        """Build a codec from a configured secret string."""
        return cls(derive_state_key(secret), ttl)

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def _tag(self, iv: bytes, ciphertext: bytes) -> hmac.HMAC:
        mac = hmac.HMAC(self._mac_key, hashes.SHA256())
        mac.update(iv)
        mac.update(ciphertext)
        return mac

    def encrypt(self, session: AuthSession) -> str:
        """Encrypt a session into a URL-safe state string.

        Two calls with the same session produce different output.
        """
        plaintext = json.dumps(session.to_dict(), separators=(",", ":")).encode("utf-8")

        padder = padding.PKCS7(BLOCK_SIZE * 8).padder()
        padded = padder.update(plaintext) + padder.finalize()

        iv = os.urandom(IV_SIZE)
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        tag = self._tag(iv, ciphertext).finalize()

        combined = f"{iv.hex()}:{(ciphertext + tag).hex()}"
        return _b64url_encode(combined.encode("ascii"))

    def decrypt(self, state: str, now: datetime | None = None) -> AuthSession:
        """Decrypt and validate a state string.

        Args:
            state: Value produced by encrypt()
            now: Reference time for the TTL check (defaults to now)

        Returns:
            The embedded session

        Raises:
            InvalidStateError: On any malformed, tampered, foreign-key or
                expired state
        """
        if not state or not isinstance(state, str):
            raise InvalidStateError("State is empty")

        try:
            combined = _b64url_decode(state).decode("ascii")
        except (binascii.Error, ValueError):
            raise InvalidStateError("State is not valid base64url") from None

        parts = combined.split(":")
        if len(parts) != 2 or not all(_HEX_PATTERN.fullmatch(p) for p in parts):
            raise InvalidStateError("State has an invalid format")

        iv_hex, body_hex = parts
        if len(iv_hex) % 2 or len(body_hex) % 2:
            raise InvalidStateError("State has an invalid format")
        iv = bytes.fromhex(iv_hex)
        body = bytes.fromhex(body_hex)

        if len(iv) != IV_SIZE:
            raise InvalidStateError("State has an invalid IV")
        ciphertext, tag = body[:-TAG_SIZE], body[-TAG_SIZE:]
        if len(body) < BLOCK_SIZE + TAG_SIZE or len(ciphertext) % BLOCK_SIZE:
            raise InvalidStateError("State has an invalid ciphertext length")

        try:
            self._tag(iv, ciphertext).verify(tag)
        except InvalidSignature:
            raise InvalidStateError("State failed integrity check") from None

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        try:
            unpadder = padding.PKCS7(BLOCK_SIZE * 8).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            payload = json.loads(plaintext.decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            raise InvalidStateError("State payload could not be decoded") from None

        session = AuthSession.from_dict(payload)

        if session.is_expired(self._ttl, now):
            minutes = int(session.age(now).total_seconds() // 60)
            logger.warning("OAuth state expired (%d minutes old)", minutes)
            raise InvalidStateError("OAuth session expired", expired=True)

        return session


def encrypt_session(session: AuthSession, key: bytes) -> str:
    """Encrypt ``session`` under ``key``. See SessionCodec.encrypt()."""
    return SessionCodec(key).encrypt(session)


def decrypt_session(state: str, key: bytes) -> AuthSession:
    """Decrypt ``state`` under ``key``. See SessionCodec.decrypt()."""
    return SessionCodec(key).decrypt(state)

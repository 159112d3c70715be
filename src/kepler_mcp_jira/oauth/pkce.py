"""PKCE (Proof Key for Code Exchange) helpers.

Implements the S256 method from RFC 7636.
"""

from __future__ import annotations

import base64
import hashlib
import re
import secrets
from dataclasses import dataclass

# 32 random bytes -> 43 chars, 96 random bytes -> 128 chars
MIN_VERIFIER_BYTES = 32
MAX_VERIFIER_BYTES = 96

_VERIFIER_PATTERN = re.compile(r"[A-Za-z0-9\-._~]{43,128}")


@dataclass(frozen=True)
class PKCEPair:
    """A code verifier and the S256 challenge derived from it.

    Attributes:
        code_verifier: Secret kept by the client until the token request
        code_challenge: Value sent on the authorization request
    """

    code_verifier: str
    code_challenge: str


def is_valid_code_verifier(value: str) -> bool:
    """Check the RFC 7636 length and alphabet rules for a verifier."""
    return bool(_VERIFIER_PATTERN.fullmatch(value))


def generate_code_verifier(nbytes: int = MIN_VERIFIER_BYTES) -> str:
    """Generate a cryptographically random code verifier.

    Args:
        nbytes: Number of random bytes, 32 to 96 inclusive

    Returns:
        URL-safe verifier of 43 to 128 characters

    Raises:
        ValueError: If nbytes is out of range
    """
    if nbytes < MIN_VERIFIER_BYTES:
        msg = f"nbytes must be at least {MIN_VERIFIER_BYTES} for sufficient entropy"
        raise ValueError(msg)
    if nbytes > MAX_VERIFIER_BYTES:
        msg = f"nbytes must be at most {MAX_VERIFIER_BYTES} to stay within 128 characters"
        raise ValueError(msg)

    return secrets.token_urlsafe(nbytes)


def generate_code_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for a verifier.

    Args:
        verifier: A valid PKCE code verifier

    Returns:
        BASE64URL(SHA256(verifier)) without padding

    Raises:
        ValueError: If the verifier violates RFC 7636
    """
    if not is_valid_code_verifier(verifier):
        msg = "code verifier must be 43-128 characters of [A-Za-z0-9-._~]"
        raise ValueError(msg)

    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def create_pkce_pair(nbytes: int = MIN_VERIFIER_BYTES) -> PKCEPair:
    """Create a fresh verifier/challenge pair."""
    verifier = generate_code_verifier(nbytes)
    return PKCEPair(code_verifier=verifier, code_challenge=generate_code_challenge(verifier))

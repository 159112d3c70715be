"""Pluggable persistence for the token set produced by the OAuth flow.

The auth core never keeps tokens itself; a deployment picks a store
(memory, encrypted file, or its own implementation) and the
``TokenManager`` reads and writes through it.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from kepler_mcp_jira.logging_config import get_logger
from kepler_mcp_jira.oauth.flows import TokenSet

logger = get_logger(__name__)


class TokenStoreError(Exception):
    """Error during token storage operations."""


class TokenStore(ABC):
    """Holds at most one token set for the running deployment."""

    @abstractmethod
    async def save(self, tokens: TokenSet) -> None:
        """Persist ``tokens``, replacing any previous set."""

    @abstractmethod
    async def load(self) -> TokenSet | None:
        """Return the stored token set, or None."""

    @abstractmethod
    async def clear(self) -> None:
        """Forget the stored token set."""


class InMemoryTokenStore(TokenStore):
    """Tokens live in process memory and are lost on restart."""

    def __init__(self) -> None:
        self._tokens: TokenSet | None = None

    async def save(self, tokens: TokenSet) -> None:
        self._tokens = tokens
        logger.debug("Stored tokens in memory")

    async def load(self) -> TokenSet | None:
        return self._tokens

    async def clear(self) -> None:
        self._tokens = None


def serialize_tokens(tokens: TokenSet) -> dict[str, Any]:
    """Convert a TokenSet to a JSON-safe dict."""
    return {
        "access_token": tokens.access_token,
        "token_type": tokens.token_type,
        "expires_in": tokens.expires_in,
        "refresh_token": tokens.refresh_token,
        "scope": tokens.scope,
        "obtained_at": tokens.obtained_at.isoformat(),
    }


def deserialize_tokens(data: dict[str, Any]) -> TokenSet:
    """Rebuild a TokenSet from serialize_tokens() output.

    Raises:
        TokenStoreError: If required fields are missing or malformed
    """
    try:
        return TokenSet(
            access_token=str(data["access_token"]),
            token_type=str(data.get("token_type") or "Bearer"),
            expires_in=int(data["expires_in"]),
            refresh_token=data.get("refresh_token") or None,
            scope=data.get("scope") or None,
            obtained_at=datetime.fromisoformat(str(data["obtained_at"])),
        )
    except (KeyError, TypeError, ValueError) as e:
        msg = f"Malformed token data: {e}"
        raise TokenStoreError(msg) from e


class EncryptedFileTokenStore(TokenStore):
    """Fernet-encrypted JSON file with atomic replacement on write."""

    def __init__(self, encryption_key: str, file_path: str | Path) -> None:
        """Initialize encrypted file store.

        Args:
            encryption_key: Fernet-compatible encryption key
            file_path: Path to the token file

        Raises:
            TokenStoreError: If encryption key is invalid
        """
        try:
            self._fernet = Fernet(encryption_key.encode())
        except (ValueError, TypeError) as e:
            raise TokenStoreError(f"Invalid encryption key: {e}") from e

        self._file_path = Path(file_path)
        self._lock = asyncio.Lock()

    def _read(self) -> TokenSet | None:
        if not self._file_path.exists():
            return None

        try:
            decrypted = self._fernet.decrypt(self._file_path.read_bytes())
        except InvalidToken:
            logger.error("Failed to decrypt token file - wrong key?")
            raise TokenStoreError("Failed to decrypt token file") from None

        try:
            data = json.loads(decrypted.decode())
        except json.JSONDecodeError as e:
            logger.error("Failed to parse token file: %s", e)
            raise TokenStoreError(f"Failed to parse token file: {e}") from e

        if not isinstance(data, dict):
            raise TokenStoreError("Token file does not contain an object")
        return deserialize_tokens(data)

    def _write(self, payload: bytes) -> None:
        dir_path = self._file_path.parent
        dir_path.mkdir(parents=True, exist_ok=True)

        fd, temp_path_str = tempfile.mkstemp(dir=dir_path)
        temp_path = Path(temp_path_str)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
            temp_path.replace(self._file_path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

    async def save(self, tokens: TokenSet) -> None:
        encrypted = self._fernet.encrypt(json.dumps(serialize_tokens(tokens)).encode())
        async with self._lock:
            self._write(encrypted)
        logger.debug("Saved encrypted tokens to %s", self._file_path)

    async def load(self) -> TokenSet | None:
        async with self._lock:
            return self._read()

    async def clear(self) -> None:
        async with self._lock:
            if self._file_path.exists():
                self._file_path.unlink()
                logger.debug("Deleted token file %s", self._file_path)


def create_token_store(
    encryption_key: str | None = None,
    file_path: str | Path | None = None,
) -> TokenStore:
    """Pick a token store from configuration.

    Args:
        encryption_key: Optional Fernet encryption key
        file_path: Optional path for persistent storage

    Returns:
        EncryptedFileTokenStore when both are set, else InMemoryTokenStore
    """
    if file_path and encryption_key:
        return EncryptedFileTokenStore(encryption_key, file_path)
    return InMemoryTokenStore()

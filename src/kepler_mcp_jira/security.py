"""Security utilities for the Kepler Jira auth core.

Provides secret redaction for logs and the credential strategies the
dispatcher uses to authenticate outgoing Jira requests.
"""

from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from kepler_mcp_jira.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from kepler_mcp_jira.config import Config
    from kepler_mcp_jira.oauth.token_manager import TokenManager

logger = get_logger(__name__)


def redact(value: str | None) -> str:
    """Redact a potentially sensitive value for safe logging.

    Returns:
        "***" if value is non-empty, "<empty>" if empty/None
    """
    if value is None or value == "":
        return "<empty>"
    return "***"


class AuthStrategy(ABC):
    """Source of authorization headers for outgoing API calls.

    ``get_auth_headers`` returns None when the strategy has no usable
    credential right now, letting a chain fall through to the next one.
    """

    @abstractmethod
    async def get_auth_headers(self) -> dict[str, str] | None:
        """Get authorization headers, or None if unavailable."""


class NoAuthStrategy(AuthStrategy):
    """Never supplies a credential."""

    async def get_auth_headers(self) -> dict[str, str] | None:
        return None


class BearerTokenAuthStrategy(AuthStrategy):
    """OAuth access token from the token manager, refreshed as needed."""

    def __init__(self, token_manager: TokenManager) -> None:
        self._token_manager = token_manager

    async def get_auth_headers(self) -> dict[str, str] | None:
        # Imported here: the oauth package imports this module
        from kepler_mcp_jira.oauth.token_store import TokenStoreError

        try:
            tokens = await self._token_manager.get_valid_tokens()
        except TokenStoreError as e:
            logger.error("Stored OAuth tokens are unreadable, skipping bearer auth: %s", e)
            return None
        if tokens is None:
            return None
        return {"Authorization": f"Bearer {tokens.access_token}"}


class BasicTokenAuthStrategy(AuthStrategy):
    """Long-lived Jira API token sent as HTTP Basic credentials."""

    def __init__(self, email: str, api_token: str) -> None:
        self._email = email
        self._api_token = api_token

    async def get_auth_headers(self) -> dict[str, str] | None:
        if not self._email or not self._api_token:
            return None
        raw = f"{self._email}:{self._api_token}".encode()
        return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}


class ChainedAuthStrategy(AuthStrategy):
    """Tries strategies in order and uses the first that yields headers."""

    def __init__(self, strategies: Sequence[AuthStrategy]) -> None:
        self._strategies = list(strategies)

    async def get_auth_headers(self) -> dict[str, str] | None:
        for strategy in self._strategies:
            headers = await strategy.get_auth_headers()
            if headers:
                return headers
            logger.debug("%s had no credential, trying next", type(strategy).__name__)
        return None


def build_auth_strategy(
    config: Config,
    token_manager: TokenManager | None = None,
) -> AuthStrategy:
    """Build the credential chain for the dispatcher.

    Priority:
    1. OAuth bearer token, when OAuth is enabled and a manager is given
    2. Basic API token, when jira_email and jira_api_token are set
    3. Otherwise NoAuthStrategy (calls fail as unauthenticated)

    Args:
        config: Application configuration
        token_manager: Manager holding OAuth tokens

    Returns:
        Configured AuthStrategy instance
    """
    strategies: list[AuthStrategy] = []

    if config.oauth_user_auth_enabled and token_manager is not None:
        strategies.append(BearerTokenAuthStrategy(token_manager))

    if config.jira_email and config.jira_api_token:
        strategies.append(
            BasicTokenAuthStrategy(config.jira_email, config.jira_api_token.get_secret_value())
        )

    if not strategies:
        logger.warning("No Jira credentials configured; API calls will be rejected")
        return NoAuthStrategy()

    logger.debug("Using credential chain: %s", ", ".join(type(s).__name__ for s in strategies))
    return ChainedAuthStrategy(strategies)


def mask_sensitive_data(
    data: dict[str, Any], sensitive_keys: set[str] | None = None
) -> dict[str, Any]:
    """Return a copy of ``data`` with secret-looking values replaced by "***"."""
    if sensitive_keys is None:
        sensitive_keys = {
            "access_token",
            "refresh_token",
            "token",
            "secret",
            "password",
            "client_secret",
            "authorization",
            "code_verifier",
        }

    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = mask_sensitive_data(value, sensitive_keys)
        elif any(sensitive in key.lower() for sensitive in sensitive_keys):
            result[key] = "***"
        else:
            result[key] = value

    return result

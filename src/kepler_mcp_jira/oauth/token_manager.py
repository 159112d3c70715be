"""Access to a live access token with single-flight refresh."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from kepler_mcp_jira.logging_config import get_logger
from kepler_mcp_jira.oauth.errors import AuthError, MisconfiguredClientError

if TYPE_CHECKING:
    from kepler_mcp_jira.oauth.flows import OAuth2AuthorizationCodeFlow, TokenSet
    from kepler_mcp_jira.oauth.token_store import TokenStore

logger = get_logger(__name__)


class TokenManager:
    """Hands out valid tokens from a store, refreshing them when needed.

    Concurrent callers that find the token near expiry share one refresh:
    the first takes the lock and refreshes, the rest wait on the lock and
    then see the new token in the store.
    """

    def __init__(
        self,
        store: TokenStore,
        flow: OAuth2AuthorizationCodeFlow | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Where tokens are persisted
            flow: Flow used for refresh; None disables refresh
        """
        self._store = store
        self._flow = flow
        self._lock = asyncio.Lock()

    @property
    def store(self) -> TokenStore:
        return self._store

    async def save(self, tokens: TokenSet) -> None:
        """Persist a freshly obtained token set."""
        async with self._lock:
            await self._store.save(tokens)

    async def clear(self) -> None:
        """Forget stored tokens (e.g. after the user revoked access)."""
        async with self._lock:
            await self._store.clear()

    async def get_valid_tokens(self) -> TokenSet | None:
        """Return a usable token set, refreshing it if it is about to expire.

        Returns:
            Tokens that are not expired, or None when none are available
        """
        tokens = await self._store.load()
        if tokens is None:
            return None
        if not tokens.needs_refresh:
            return tokens

        async with self._lock:
            current = await self._store.load()
            if current is None:
                return None
            if current.access_token != tokens.access_token and not current.needs_refresh:
                # Another task refreshed while we waited for the lock
                return current
            if not current.refresh_token or self._flow is None:
                return None if current.is_expired else current

            try:
                refreshed = await self._flow.refresh(current.refresh_token)
            except AuthError as e:
                logger.error("Token refresh failed: %s", e)
                return None if current.is_expired else current

            await self._store.save(refreshed)
            return refreshed

    async def force_refresh(self) -> TokenSet:
        """Refresh unconditionally, e.g. after the API rejected the token.

        Raises:
            MisconfiguredClientError: If no flow is configured
            AuthError: If there is nothing to refresh or refresh fails
        """
        if self._flow is None:
            raise MisconfiguredClientError("Token refresh requires an OAuth flow")

        async with self._lock:
            current = await self._store.load()
            if current is None or not current.refresh_token:
                raise AuthError("No refresh token available; re-authentication required")

            refreshed = await self._flow.refresh(current.refresh_token)
            await self._store.save(refreshed)
            logger.info("Forced token refresh succeeded")
            return refreshed

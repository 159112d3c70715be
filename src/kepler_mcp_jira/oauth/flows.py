"""OAuth 2.0 Authorization Code flow with PKCE and stateless sessions.

The flow never stores anything between the authorization request and
the callback: the PKCE verifier and redirect URI travel inside the
encrypted ``state`` (see ``oauth.session``). Token persistence is left to
the caller.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from kepler_mcp_jira.logging_config import get_logger
from kepler_mcp_jira.oauth.errors import (
    AuthorizationDeniedError,
    ExchangeFailedError,
    ExpiredOrInvalidSessionError,
    InvalidStateError,
    MalformedResponseError,
    MisconfiguredClientError,
)
from kepler_mcp_jira.oauth.pkce import create_pkce_pair
from kepler_mcp_jira.oauth.session import AuthSession, SessionCodec
from kepler_mcp_jira.security import redact

if TYPE_CHECKING:
    from kepler_mcp_jira.config import Config

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0

# Used when the token endpoint omits expires_in; short so refresh stays safe
DEFAULT_EXPIRES_IN = 300

TOKEN_REFRESH_BUFFER = timedelta(minutes=5)

USER_AGENT = "kepler-mcp-jira"


@dataclass
class TokenSet:
    """Tokens returned by a successful exchange or refresh."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int = DEFAULT_EXPIRES_IN
    refresh_token: str | None = None
    scope: str | None = None
    obtained_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if not self.access_token:
            msg = "access_token must not be empty"
            raise ValueError(msg)

    @property
    def expires_at(self) -> datetime:
        return self.obtained_at + timedelta(seconds=self.expires_in)

    @property
    def is_expired(self) -> bool:
        """Check if the access token is expired."""
        return datetime.now(UTC) >= self.expires_at

    @property
    def needs_refresh(self) -> bool:
        """Check if the token is expired or about to expire."""
        return datetime.now(UTC) >= (self.expires_at - TOKEN_REFRESH_BUFFER)

    @classmethod
    def from_token_response(
        cls,
        response: Mapping[str, Any],
        default_expires_in: int = DEFAULT_EXPIRES_IN,
    ) -> TokenSet:
        """Normalize a token endpoint JSON response.

        Raises:
            MalformedResponseError: If access_token is missing or empty
        """
        access_token = response.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise MalformedResponseError("Invalid token response: missing access_token")

        expires_in = response.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else default_expires_in
        except (TypeError, ValueError):
            expires_in = default_expires_in

        return cls(
            access_token=access_token,
            token_type=response.get("token_type") or "Bearer",
            expires_in=expires_in,
            refresh_token=response.get("refresh_token"),
            scope=response.get("scope"),
        )


@dataclass(frozen=True)
class AuthorizationRequest:
    """An authorization URL and the opaque state embedded in it."""

    url: str
    state: str


def parse_callback(params: Mapping[str, str]) -> tuple[str, str]:
    """Extract ``(code, state)`` from redirect query parameters.

    Raises:
        AuthorizationDeniedError: If the provider returned an error
        ExpiredOrInvalidSessionError: If code or state is missing
    """
    error = params.get("error")
    if error:
        raise AuthorizationDeniedError(error, params.get("error_description"))

    code = params.get("code")
    state = params.get("state")
    if not code or not state:
        raise ExpiredOrInvalidSessionError("Callback is missing the code or state parameter")
    return code, state


class OAuth2AuthorizationCodeFlow:
    """Authorization Code + PKCE flow against a single provider.

    Example:
        ```python
        codec = SessionCodec.from_secret(secret)
        flow = OAuth2AuthorizationCodeFlow(
            authorization_url="https://auth.atlassian.com/authorize",
            token_url="https://auth.atlassian.com/oauth/token",
            client_id="abc",
            client_secret="s3cret",
            redirect_uri="https://mcp.example.com/oauth/callback",
            scope="read:jira-work offline_access",
            codec=codec,
        )
        request = flow.build_authorization_url("user@example.com")
        # ... user authorizes, provider redirects back with code + state
        tokens = await flow.exchange_code(code, request.state)
        ```
    """

    def __init__(
        self,
        authorization_url: str | None,
        token_url: str | None,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str,
        scope: str,
        codec: SessionCodec,
        extra_authorize_params: Mapping[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the flow.

        Args:
            authorization_url: Provider authorization endpoint
            token_url: Provider token endpoint
            client_id: OAuth client identifier
            client_secret: OAuth client secret (None for public clients)
            redirect_uri: Registered callback URI
            scope: Space-separated scopes
            codec: Codec used to seal the session into ``state``
            extra_authorize_params: Fixed extra query parameters
                (e.g. audience, prompt)
            timeout: Upper bound in seconds for token endpoint calls
            http_client: Optional shared HTTP client
        """
        self.authorization_url = authorization_url
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.codec = codec
        self.extra_authorize_params = dict(extra_authorize_params or {})
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def build_authorization_url(
        self,
        identity_hint: str | None = None,
        origin_hint: str | None = None,
    ) -> AuthorizationRequest:
        """Compose the provider authorization URL with a sealed session.

        Args:
            identity_hint: Optional user hint, sent as login_hint
            origin_hint: Optional note of where the flow was started

        Returns:
            AuthorizationRequest with the URL and its state value

        Raises:
            MisconfiguredClientError: If client id or endpoint is missing
        """
        if not self.client_id:
            raise MisconfiguredClientError("OAuth client id is not configured")
        if not self.authorization_url:
            raise MisconfiguredClientError("OAuth authorization endpoint is not configured")

        pkce = create_pkce_pair()
        session = AuthSession(
            code_verifier=pkce.code_verifier,
            redirect_uri=self.redirect_uri,
            identity_hint=identity_hint,
            origin_hint=origin_hint or "unknown",
        )
        state = self.codec.encrypt(session)

        params: dict[str, str] = dict(self.extra_authorize_params)
        params.update(
            {
                "client_id": self.client_id,
                "scope": self.scope,
                "redirect_uri": self.redirect_uri,
                "state": state,
                "response_type": "code",
                "code_challenge": pkce.code_challenge,
                "code_challenge_method": "S256",
            }
        )
        if identity_hint:
            params["login_hint"] = identity_hint

        url = f"{self.authorization_url}?{urlencode(params)}"
        logger.debug(
            "Created authorization URL for client %s (state %s...)",
            self.client_id,
            state[:12],
        )
        return AuthorizationRequest(url=url, state=state)

    def decode_state(self, state: str) -> AuthSession:
        """Decrypt a callback state into its session.

        Raises:
            ExpiredOrInvalidSessionError: If the state is unusable
        """
        try:
            return self.codec.decrypt(state)
        except InvalidStateError as e:
            logger.warning("Rejected OAuth state: %s", e)
            raise ExpiredOrInvalidSessionError(expired=e.expired) from e

    async def _token_request(self, data: dict[str, str], action: str) -> dict[str, Any]:
        if not self.token_url or not self.client_id:
            raise MisconfiguredClientError("OAuth token endpoint or client id is not configured")

        data["client_id"] = self.client_id
        if self.client_secret:
            data["client_secret"] = self.client_secret

        client = await self._get_client()
        logger.debug(
            "Token %s request to %s (client secret: %s)",
            action,
            self.token_url,
            redact(self.client_secret),
        )

        try:
            response = await client.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            logger.error("Token %s timed out after %.1fs", action, self.timeout)
            raise ExchangeFailedError(f"Token {action} timed out", timed_out=True) from e
        except httpx.HTTPError as e:
            logger.error("Token %s transport error: %s", action, e)
            raise ExchangeFailedError(f"Token {action} error: {e}") from e

        if not response.is_success:
            logger.error(
                "Token %s failed: %s %s - %s",
                action,
                response.status_code,
                response.reason_phrase,
                response.text,
            )
            raise ExchangeFailedError(
                f"Token {action} failed",
                status=response.status_code,
                body=response.text,
            )

        try:
            token_data = response.json()
        except ValueError:
            raise MalformedResponseError(f"Token {action} response is not JSON") from None
        if not isinstance(token_data, dict):
            raise MalformedResponseError(f"Token {action} response is not an object")
        return token_data

    async def exchange_code(self, code: str, state: str) -> TokenSet:
        """Exchange an authorization code using the session sealed in ``state``.

        The redirect URI sent is the one stored in the session, not the
        one currently configured, so the value always matches the
        authorization request even across instances.

        Raises:
            ExpiredOrInvalidSessionError: If state is invalid or expired
            ExchangeFailedError: If the token endpoint fails or times out
            MalformedResponseError: If the response lacks an access token
            MisconfiguredClientError: If the client is not configured
        """
        session = self.decode_state(state)
        logger.debug(
            "Exchanging authorization code (session age %ds, hint %s)",
            int(session.age().total_seconds()),
            session.identity_hint or "N/A",
        )

        token_data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": session.code_verifier,
                "redirect_uri": session.redirect_uri,
            },
            "exchange",
        )
        tokens = TokenSet.from_token_response(token_data)

        logger.info(
            "Exchanged code for tokens (scope: %s, expires in %ss, refresh token: %s)",
            tokens.scope or "N/A",
            tokens.expires_in,
            "yes" if tokens.refresh_token else "no",
        )
        return tokens

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Use a refresh token to obtain a new token set.

        The previous refresh token is kept when the provider does not
        rotate it.

        Raises:
            ExchangeFailedError: If the token endpoint fails or times out
            MalformedResponseError: If the response lacks an access token
            MisconfiguredClientError: If the client is not configured
        """
        token_data = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "refresh",
        )
        if not token_data.get("refresh_token"):
            token_data["refresh_token"] = refresh_token

        tokens = TokenSet.from_token_response(token_data)
        logger.info("Refreshed access token (expires in %ss)", tokens.expires_in)
        return tokens


def create_authorization_flow(
    config: Config,
    http_client: httpx.AsyncClient | None = None,
) -> OAuth2AuthorizationCodeFlow:
    """Build the flow from application configuration.

    Raises:
        MisconfiguredClientError: If no state secret is configured
    """
    if config.oauth_state_secret is None:
        raise MisconfiguredClientError("oauth_state_secret is not configured")

    codec = SessionCodec.from_secret(config.oauth_state_secret.get_secret_value())

    extra: dict[str, str] = {}
    if config.oauth_prompt:
        extra["prompt"] = config.oauth_prompt
    if config.is_cloud:
        extra["audience"] = "api.atlassian.com"

    return OAuth2AuthorizationCodeFlow(
        authorization_url=config.resolved_authorization_url,
        token_url=config.resolved_token_url,
        client_id=config.oauth_client_id,
        client_secret=(
            config.oauth_client_secret.get_secret_value()
            if config.oauth_client_secret
            else None
        ),
        redirect_uri=config.resolved_redirect_uri,
        scope=config.resolved_scope,
        codec=codec,
        extra_authorize_params=extra,
        timeout=config.oauth_timeout,
        http_client=http_client,
    )

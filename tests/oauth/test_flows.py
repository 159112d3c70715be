"""Tests for the authorization code flow."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx

from kepler_mcp_jira.config import Config
from kepler_mcp_jira.oauth.errors import (
    AuthorizationDeniedError,
    ExchangeFailedError,
    ExpiredOrInvalidSessionError,
    MalformedResponseError,
    MisconfiguredClientError,
)
from kepler_mcp_jira.oauth.flows import (
    OAuth2AuthorizationCodeFlow,
    TokenSet,
    create_authorization_flow,
    parse_callback,
)
from kepler_mcp_jira.oauth.pkce import generate_code_challenge, generate_code_verifier
from kepler_mcp_jira.oauth.session import AuthSession, SessionCodec

AUTHORIZE_URL = "https://auth.example.com/authorize"
TOKEN_URL = "https://auth.example.com/token"
REDIRECT_URI = "http://localhost:8000/oauth/callback"


@pytest.fixture
def flow(codec: SessionCodec) -> OAuth2AuthorizationCodeFlow:
    return OAuth2AuthorizationCodeFlow(
        authorization_url=AUTHORIZE_URL,
        token_url=TOKEN_URL,
        client_id="test-client",
        client_secret="test-secret",
        redirect_uri=REDIRECT_URI,
        scope="read write",
        codec=codec,
    )


def query_of(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestTokenSet:
    """Tests for TokenSet dataclass."""

    def test_from_token_response(self) -> None:
        token_set = TokenSet.from_token_response(
            {
                "access_token": "access123",
                "refresh_token": "refresh123",
                "expires_in": 3600,
                "token_type": "Bearer",
                "scope": "read write",
            }
        )

        assert token_set.access_token == "access123"
        assert token_set.refresh_token == "refresh123"
        assert token_set.expires_in == 3600
        assert token_set.scope == "read write"

    def test_defaults_when_fields_missing(self) -> None:
        token_set = TokenSet.from_token_response({"access_token": "tok"})

        assert token_set.token_type == "Bearer"
        assert token_set.expires_in == 300
        assert token_set.refresh_token is None

    @pytest.mark.parametrize("payload", [{}, {"access_token": ""}, {"access_token": 42}])
    def test_missing_access_token(self, payload: dict[str, object]) -> None:
        with pytest.raises(MalformedResponseError):
            TokenSet.from_token_response(payload)

    def test_empty_access_token_rejected(self) -> None:
        with pytest.raises(ValueError):
            TokenSet(access_token="")

    def test_is_expired(self) -> None:
        expired = TokenSet(
            access_token="token",
            expires_in=60,
            obtained_at=datetime.now(UTC) - timedelta(hours=1),
        )
        assert expired.is_expired is True

        valid = TokenSet(access_token="token", expires_in=3600)
        assert valid.is_expired is False

    def test_needs_refresh(self) -> None:
        expiring_soon = TokenSet(access_token="token", expires_in=120)
        assert expiring_soon.needs_refresh is True
        assert expiring_soon.is_expired is False

        plenty_time = TokenSet(access_token="token", expires_in=3600)
        assert plenty_time.needs_refresh is False


class TestParseCallback:
    """Tests for parse_callback."""

    def test_returns_code_and_state(self) -> None:
        assert parse_callback({"code": "abc", "state": "xyz"}) == ("abc", "xyz")

    def test_provider_error(self) -> None:
        with pytest.raises(AuthorizationDeniedError) as exc_info:
            parse_callback({"error": "access_denied", "error_description": "User said no"})

        assert exc_info.value.error == "access_denied"
        assert exc_info.value.restart_required is True
        assert "User said no" in str(exc_info.value)

    @pytest.mark.parametrize("params", [{}, {"code": "abc"}, {"state": "xyz"}])
    def test_missing_parameters(self, params: dict[str, str]) -> None:
        with pytest.raises(ExpiredOrInvalidSessionError):
            parse_callback(params)


class TestBuildAuthorizationUrl:
    """Tests for building the authorization URL."""

    def test_contains_required_parameters(
        self, flow: OAuth2AuthorizationCodeFlow
    ) -> None:
        request = flow.build_authorization_url()
        query = query_of(request.url)

        assert request.url.startswith(AUTHORIZE_URL + "?")
        assert query["client_id"] == "test-client"
        assert query["scope"] == "read write"
        assert query["redirect_uri"] == REDIRECT_URI
        assert query["response_type"] == "code"
        assert query["code_challenge_method"] == "S256"
        assert query["state"] == request.state
        assert "login_hint" not in query

    def test_challenge_matches_sealed_verifier(
        self, flow: OAuth2AuthorizationCodeFlow
    ) -> None:
        request = flow.build_authorization_url()
        session = flow.decode_state(request.state)

        assert query_of(request.url)["code_challenge"] == generate_code_challenge(
            session.code_verifier
        )
        assert session.redirect_uri == REDIRECT_URI

    def test_hints(self, flow: OAuth2AuthorizationCodeFlow) -> None:
        request = flow.build_authorization_url("dev@example.com", "acme")
        session = flow.decode_state(request.state)

        assert query_of(request.url)["login_hint"] == "dev@example.com"
        assert session.identity_hint == "dev@example.com"
        assert session.origin_hint == "acme"

    def test_extra_parameters(self, codec: SessionCodec) -> None:
        flow = OAuth2AuthorizationCodeFlow(
            authorization_url=AUTHORIZE_URL,
            token_url=TOKEN_URL,
            client_id="test-client",
            client_secret=None,
            redirect_uri=REDIRECT_URI,
            scope="read",
            codec=codec,
            extra_authorize_params={"audience": "api.atlassian.com", "prompt": "consent"},
        )
        query = query_of(flow.build_authorization_url().url)

        assert query["audience"] == "api.atlassian.com"
        assert query["prompt"] == "consent"

    def test_each_url_has_fresh_state(self, flow: OAuth2AuthorizationCodeFlow) -> None:
        assert flow.build_authorization_url().state != flow.build_authorization_url().state

    @pytest.mark.parametrize("missing", ["client_id", "authorization_url"])
    def test_misconfigured(self, codec: SessionCodec, missing: str) -> None:
        kwargs: dict[str, object] = {
            "authorization_url": AUTHORIZE_URL,
            "token_url": TOKEN_URL,
            "client_id": "test-client",
            "client_secret": None,
            "redirect_uri": REDIRECT_URI,
            "scope": "read",
            "codec": codec,
        }
        kwargs[missing] = None
        flow = OAuth2AuthorizationCodeFlow(**kwargs)  # type: ignore[arg-type]

        with pytest.raises(MisconfiguredClientError):
            flow.build_authorization_url()


class TestExchangeCode:
    """Tests for exchanging an authorization code."""

    @respx.mock
    async def test_end_to_end(self, flow: OAuth2AuthorizationCodeFlow) -> None:
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        )

        request = flow.build_authorization_url()
        challenge = query_of(request.url)["code_challenge"]

        tokens = await flow.exchange_code("auth-code", request.state)

        assert tokens.access_token == "tok"
        assert tokens.expires_in == 3600
        sent = query_of("?" + route.calls.last.request.content.decode())
        assert sent["grant_type"] == "authorization_code"
        assert sent["code"] == "auth-code"
        assert sent["redirect_uri"] == REDIRECT_URI
        assert sent["client_id"] == "test-client"
        assert sent["client_secret"] == "test-secret"
        assert generate_code_challenge(sent["code_verifier"]) == challenge

        await flow.close()

    @respx.mock
    async def test_uses_redirect_uri_from_state(
        self, flow: OAuth2AuthorizationCodeFlow, codec: SessionCodec
    ) -> None:
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "tok"})
        )
        state = codec.encrypt(
            AuthSession(
                code_verifier=generate_code_verifier(),
                redirect_uri="https://other-instance.example.com/oauth/callback",
            )
        )

        await flow.exchange_code("auth-code", state)

        sent = query_of("?" + route.calls.last.request.content.decode())
        assert sent["redirect_uri"] == "https://other-instance.example.com/oauth/callback"

        await flow.close()

    @respx.mock
    async def test_garbage_state_makes_no_request(
        self, flow: OAuth2AuthorizationCodeFlow
    ) -> None:
        route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={}))

        with pytest.raises(ExpiredOrInvalidSessionError) as exc_info:
            await flow.exchange_code("auth-code", "garbage")

        assert exc_info.value.restart_required is True
        assert not route.called

    async def test_expired_state(
        self, flow: OAuth2AuthorizationCodeFlow, codec: SessionCodec
    ) -> None:
        state = codec.encrypt(
            AuthSession(
                code_verifier=generate_code_verifier(),
                redirect_uri=REDIRECT_URI,
                created_at=datetime.now(UTC) - timedelta(minutes=16),
            )
        )

        with pytest.raises(ExpiredOrInvalidSessionError) as exc_info:
            await flow.exchange_code("auth-code", state)

        assert exc_info.value.expired is True

    @respx.mock
    async def test_error_status(self, flow: OAuth2AuthorizationCodeFlow) -> None:
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(400, json={"error": "invalid_grant"})
        )
        state = flow.build_authorization_url().state

        with pytest.raises(ExchangeFailedError) as exc_info:
            await flow.exchange_code("auth-code", state)

        assert exc_info.value.status == 400
        assert "invalid_grant" in (exc_info.value.body or "")
        assert exc_info.value.retryable is False
        assert str(exc_info.value).startswith("[400]")

        await flow.close()

    @respx.mock
    async def test_server_error_is_retryable(
        self, flow: OAuth2AuthorizationCodeFlow
    ) -> None:
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(503, text="unavailable"))
        state = flow.build_authorization_url().state

        with pytest.raises(ExchangeFailedError) as exc_info:
            await flow.exchange_code("auth-code", state)

        assert exc_info.value.retryable is True

        await flow.close()

    @respx.mock
    async def test_missing_access_token(self, flow: OAuth2AuthorizationCodeFlow) -> None:
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"token_type": "Bearer"})
        )
        state = flow.build_authorization_url().state

        with pytest.raises(MalformedResponseError):
            await flow.exchange_code("auth-code", state)

        await flow.close()

    @respx.mock
    async def test_non_json_response(self, flow: OAuth2AuthorizationCodeFlow) -> None:
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, text="<html>"))
        state = flow.build_authorization_url().state

        with pytest.raises(MalformedResponseError):
            await flow.exchange_code("auth-code", state)

        await flow.close()

    @respx.mock
    async def test_timeout(self, flow: OAuth2AuthorizationCodeFlow) -> None:
        respx.post(TOKEN_URL).mock(side_effect=httpx.ReadTimeout("slow"))
        state = flow.build_authorization_url().state

        with pytest.raises(ExchangeFailedError) as exc_info:
            await flow.exchange_code("auth-code", state)

        assert exc_info.value.timed_out is True
        assert exc_info.value.status is None
        assert exc_info.value.retryable is True

        await flow.close()

    @respx.mock
    async def test_connection_error(self, flow: OAuth2AuthorizationCodeFlow) -> None:
        respx.post(TOKEN_URL).mock(side_effect=httpx.ConnectError("refused"))
        state = flow.build_authorization_url().state

        with pytest.raises(ExchangeFailedError) as exc_info:
            await flow.exchange_code("auth-code", state)

        assert exc_info.value.timed_out is False

        await flow.close()

    async def test_missing_token_url(self, codec: SessionCodec) -> None:
        flow = OAuth2AuthorizationCodeFlow(
            authorization_url=AUTHORIZE_URL,
            token_url=None,
            client_id="test-client",
            client_secret=None,
            redirect_uri=REDIRECT_URI,
            scope="read",
            codec=codec,
        )
        state = flow.build_authorization_url().state

        with pytest.raises(MisconfiguredClientError):
            await flow.exchange_code("auth-code", state)


class TestRefresh:
    """Tests for refreshing tokens."""

    @respx.mock
    async def test_refresh_keeps_old_refresh_token(
        self, flow: OAuth2AuthorizationCodeFlow
    ) -> None:
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(
                200, json={"access_token": "new-access", "expires_in": 3600}
            )
        )

        tokens = await flow.refresh("refresh-token")

        assert tokens.access_token == "new-access"
        assert tokens.refresh_token == "refresh-token"
        sent = query_of("?" + route.calls.last.request.content.decode())
        assert sent["grant_type"] == "refresh_token"
        assert sent["refresh_token"] == "refresh-token"

        await flow.close()

    @respx.mock
    async def test_refresh_rotates_refresh_token(
        self, flow: OAuth2AuthorizationCodeFlow
    ) -> None:
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(
                200, json={"access_token": "new-access", "refresh_token": "rotated"}
            )
        )

        tokens = await flow.refresh("refresh-token")

        assert tokens.refresh_token == "rotated"

        await flow.close()


class TestCreateAuthorizationFlow:
    """Tests for create_authorization_flow."""

    def test_cloud_defaults(self, oauth_config: Config) -> None:
        flow = create_authorization_flow(oauth_config)
        query = query_of(flow.build_authorization_url().url)

        assert flow.authorization_url == "https://auth.atlassian.com/authorize"
        assert flow.token_url == "https://auth.atlassian.com/oauth/token"
        assert query["audience"] == "api.atlassian.com"
        assert query["prompt"] == "consent"
        assert "offline_access" in query["scope"]

    def test_server_defaults(self) -> None:
        config = Config(
            jira_url="https://jira.internal.example.com",
            oauth_user_auth_enabled=True,
            oauth_client_id="client",
            oauth_state_secret="secret",
        )
        flow = create_authorization_flow(config)
        query = query_of(flow.build_authorization_url().url)

        assert flow.authorization_url == (
            "https://jira.internal.example.com/plugins/servlet/oauth2/authorize"
        )
        assert query["scope"] == "READ WRITE"
        assert "audience" not in query

    def test_requires_state_secret(self, default_config: Config) -> None:
        with pytest.raises(MisconfiguredClientError):
            create_authorization_flow(default_config)

    def test_shared_secret_across_instances(self, oauth_config: Config) -> None:
        first = create_authorization_flow(oauth_config)
        second = create_authorization_flow(oauth_config)

        state = first.build_authorization_url().state

        assert second.decode_state(state).redirect_uri == oauth_config.resolved_redirect_uri

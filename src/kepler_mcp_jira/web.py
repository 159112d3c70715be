"""HTTP endpoints for starting and completing the OAuth flow.

Because the pending session lives inside ``state``, the authorize and
callback requests can land on different processes; any instance that
shares the state secret can finish the flow.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from starlette.applications import Starlette
from starlette.responses import JSONResponse, RedirectResponse
from starlette.routing import Route

from kepler_mcp_jira.logging_config import get_logger
from kepler_mcp_jira.oauth.errors import (
    AuthError,
    AuthorizationDeniedError,
    ExchangeFailedError,
    ExpiredOrInvalidSessionError,
    MalformedResponseError,
    MisconfiguredClientError,
)
from kepler_mcp_jira.oauth.flows import parse_callback
from kepler_mcp_jira.oauth.token_store import TokenStoreError
from kepler_mcp_jira.security import mask_sensitive_data

if TYPE_CHECKING:
    from starlette.requests import Request

    from kepler_mcp_jira.config import Config
    from kepler_mcp_jira.oauth.flows import OAuth2AuthorizationCodeFlow
    from kepler_mcp_jira.oauth.token_manager import TokenManager

logger = get_logger(__name__)

_CALLBACK_SECRETS = {"code", "state"}


def _auth_error_response(error: AuthError) -> JSONResponse:
    """Map an AuthError to a response the user can act on."""
    if isinstance(error, AuthorizationDeniedError):
        return JSONResponse(
            {
                "error": error.error,
                "description": error.description,
                "action": "restart_authentication",
            },
            status_code=400,
        )
    if isinstance(error, ExpiredOrInvalidSessionError):
        return JSONResponse(
            {
                "error": "invalid_state",
                "description": str(error),
                "action": "restart_authentication",
            },
            status_code=400,
        )
    if isinstance(error, ExchangeFailedError):
        return JSONResponse(
            {
                "error": "exchange_failed",
                "status": error.status,
                "timed_out": error.timed_out,
                "retryable": error.retryable,
            },
            status_code=502,
        )
    if isinstance(error, MalformedResponseError):
        return JSONResponse(
            {"error": "malformed_token_response", "retryable": False},
            status_code=502,
        )
    if isinstance(error, MisconfiguredClientError):
        return JSONResponse(
            {"error": "server_misconfigured", "description": str(error)},
            status_code=500,
        )
    return JSONResponse({"error": "authentication_failed"}, status_code=500)


def create_callback_app(
    config: Config,
    flow: OAuth2AuthorizationCodeFlow,
    token_manager: TokenManager,
) -> Starlette:
    """Create the Starlette app serving the OAuth endpoints.

    Routes:
        GET /health
        GET /oauth/authorize?login_hint=...&origin=...
        GET /oauth/callback?code=...&state=...

    Args:
        config: Application configuration
        flow: Authorization code flow
        token_manager: Where the resulting tokens are saved

    Returns:
        Configured Starlette application
    """

    async def health_check(request: Request) -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "app_name": config.app_name,
            "environment": config.environment.value,
            "oauth_mode": "stateless",
        })

    async def oauth_authorize(request: Request) -> JSONResponse | RedirectResponse:
        """Redirect the browser to the provider's consent page."""
        try:
            auth_request = flow.build_authorization_url(
                identity_hint=request.query_params.get("login_hint"),
                origin_hint=request.query_params.get("origin"),
            )
        except MisconfiguredClientError as e:
            logger.error("Cannot start OAuth flow: %s", e)
            return _auth_error_response(e)

        logger.info("Starting OAuth flow (state %s...)", auth_request.state[:12])
        return RedirectResponse(url=auth_request.url, status_code=302)

    async def oauth_callback(request: Request) -> JSONResponse:
        """Finish the flow and store the resulting tokens."""
        params = dict(request.query_params)
        logger.debug(
            "OAuth callback received: %s",
            mask_sensitive_data(params, _CALLBACK_SECRETS),
        )

        try:
            code, state = parse_callback(params)
            tokens = await flow.exchange_code(code, state)
        except AuthError as e:
            logger.warning("OAuth callback failed: %s", e)
            return _auth_error_response(e)

        try:
            await token_manager.save(tokens)
        except TokenStoreError as e:
            logger.error("OAuth tokens could not be stored: %s", e)
            return JSONResponse(
                {
                    "error": "token_storage_failed",
                    "description": "Authentication succeeded but the tokens could not be saved.",
                    "action": "retry",
                },
                status_code=500,
            )
        logger.info("OAuth flow completed")

        return JSONResponse({
            "status": "authenticated",
            "message": "OAuth authentication successful. You can close this window.",
            "token_type": tokens.token_type,
            "expires_in": tokens.expires_in,
            "scope": tokens.scope,
            "refresh_token": tokens.refresh_token is not None,
        })

    routes = [
        Route("/health", health_check, methods=["GET"]),
        Route("/oauth/authorize", oauth_authorize, methods=["GET"]),
        Route("/oauth/callback", oauth_callback, methods=["GET"]),
    ]
    return Starlette(routes=routes)


async def run_callback_server(app: Starlette, host: str, port: int) -> None:
    """Serve the callback app with uvicorn.

    Args:
        app: Starlette ASGI application
        host: Host to bind to
        port: Port to bind to
    """
    import uvicorn

    logger.info("Starting OAuth callback server on %s:%d", host, port)

    server = uvicorn.Server(uvicorn.Config(app=app, host=host, port=port, log_level="info"))
    await server.serve()

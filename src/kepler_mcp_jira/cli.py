"""Command-line interface for Kepler MCP Jira.

Provides commands for running the OAuth callback server and inspecting
or refreshing the stored credential.
"""

from __future__ import annotations

import asyncio
import sys

import typer

from kepler_mcp_jira import __version__
from kepler_mcp_jira.config import Config, ConfigError, load_config
from kepler_mcp_jira.logging_config import get_logger, setup_logging
from kepler_mcp_jira.oauth.errors import AuthError
from kepler_mcp_jira.oauth.flows import OAuth2AuthorizationCodeFlow, create_authorization_flow
from kepler_mcp_jira.oauth.token_manager import TokenManager
from kepler_mcp_jira.oauth.token_store import TokenStoreError, create_token_store

app = typer.Typer(
    name="kepler-mcp-jira",
    help="Kepler MCP Jira - stateless OAuth and cached Jira access",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"kepler-mcp-jira version {__version__}")
        typer.echo(f"Python {sys.version}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Kepler MCP Jira CLI."""


def _load(config_path: str | None, cli_args: dict[str, str | int | None] | None = None) -> Config:
    try:
        config = load_config(path=config_path, cli_args=cli_args)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None
    setup_logging(config)
    return config


def _require_oauth(config: Config) -> OAuth2AuthorizationCodeFlow:
    if not config.oauth_user_auth_enabled:
        typer.echo(
            "OAuth user authentication is disabled (set JIRA_MCP_OAUTH_USER_AUTH_ENABLED=true)",
            err=True,
        )
        raise typer.Exit(code=1)
    return create_authorization_flow(config)


def _build_token_manager(config: Config, flow: OAuth2AuthorizationCodeFlow | None) -> TokenManager:
    encryption_key = (
        config.token_encryption_key.get_secret_value() if config.token_encryption_key else None
    )
    store = create_token_store(encryption_key=encryption_key, file_path=config.token_store_path)
    return TokenManager(store, flow)


ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to configuration file (JSON or YAML)",
)


@app.command("auth-url")
def auth_url(
    config_path: str | None = ConfigOption,
    login_hint: str | None = typer.Option(
        None, "--login-hint", help="Email address to pre-fill on the consent page"
    ),
    origin: str | None = typer.Option(
        None, "--origin", help="Where the flow was started from, kept in the state"
    ),
) -> None:
    """Print an authorization URL to open in a browser."""
    config = _load(config_path)
    flow = _require_oauth(config)
    request = flow.build_authorization_url(identity_hint=login_hint, origin_hint=origin)
    typer.echo(request.url)


@app.command()
def serve(
    config_path: str | None = ConfigOption,
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
    host: str | None = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to bind to"),
) -> None:
    """Run the OAuth callback server.

    Serves /oauth/authorize, /oauth/callback and /health. Tokens obtained
    on the callback are written to the configured token store.
    """
    cli_args: dict[str, str | int | None] = {}
    if log_level:
        cli_args["log_level"] = log_level
    if host:
        cli_args["host"] = host
    if port:
        cli_args["port"] = port

    config = _load(config_path, cli_args)
    flow = _require_oauth(config)
    logger = get_logger(__name__)

    logger.info(
        "Starting Kepler MCP Jira callback server (app: %s, env: %s)",
        config.app_name,
        config.environment.value,
    )

    try:
        asyncio.run(_run_server(config, flow))
    except KeyboardInterrupt:
        logger.info("Shutting down (keyboard interrupt)")
        raise typer.Exit(code=0) from None


async def _run_server(config: Config, flow: OAuth2AuthorizationCodeFlow) -> None:
    from kepler_mcp_jira.web import create_callback_app, run_callback_server

    token_manager = _build_token_manager(config, flow)
    callback_app = create_callback_app(config, flow, token_manager)

    logger = get_logger(__name__)
    logger.info("Authorize at %s/oauth/authorize", config.public_base_url)

    try:
        await run_callback_server(callback_app, config.host, config.port)
    finally:
        await flow.close()


@app.command()
def refresh(config_path: str | None = ConfigOption) -> None:
    """Refresh the stored access token now."""
    config = _load(config_path)
    flow = _require_oauth(config)

    async def _refresh() -> None:
        manager = _build_token_manager(config, flow)
        try:
            tokens = await manager.force_refresh()
        finally:
            await flow.close()
        typer.echo(f"Token refreshed; expires at {tokens.expires_at.isoformat()}")

    try:
        asyncio.run(_refresh())
    except (AuthError, TokenStoreError) as e:
        typer.echo(f"Refresh failed: {e}", err=True)
        raise typer.Exit(code=1) from None


@app.command()
def status(
    config_path: str | None = ConfigOption,
    check: bool = typer.Option(
        False, "--check", help="Also call Jira to verify the credential"
    ),
) -> None:
    """Show which credential would be used for Jira calls."""
    config = _load(config_path)

    async def _status() -> bool:
        from kepler_mcp_jira.jira.client import create_jira_client

        flow = create_authorization_flow(config) if config.oauth_user_auth_enabled else None
        manager = _build_token_manager(config, flow)

        tokens = await manager.store.load()
        if tokens is None:
            typer.echo("OAuth token: none")
        else:
            state = "expired" if tokens.is_expired else "valid"
            typer.echo(f"OAuth token: {state} (expires {tokens.expires_at.isoformat()})")
        typer.echo(f"API token: {'configured' if config.jira_api_token else 'none'}")

        if not check:
            if flow is not None:
                await flow.close()
            return True

        client = create_jira_client(config, manager)
        try:
            ok = await client.test_connection()
        finally:
            await client.close()
            if flow is not None:
                await flow.close()
        typer.echo(f"Jira connection: {'ok' if ok else 'failed'}")
        return ok

    try:
        ok = asyncio.run(_status())
    except (ValueError, TokenStoreError) as e:
        typer.echo(f"Status check failed: {e}", err=True)
        raise typer.Exit(code=1) from None
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Print version information."""
    typer.echo(f"kepler-mcp-jira version {__version__}")
    typer.echo(f"Python {sys.version}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()

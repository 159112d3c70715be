"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import pytest

from kepler_mcp_jira.config import Config, Environment, LogLevel
from kepler_mcp_jira.oauth.session import SessionCodec

STATE_SECRET = "test-state-secret"


@pytest.fixture
def default_config() -> Config:
    """Create a default configuration for testing."""
    return Config()


@pytest.fixture
def dev_config() -> Config:
    """Create a development configuration for testing."""
    return Config(
        app_name="Test Jira Server",
        log_level=LogLevel.DEBUG,
        environment=Environment.DEV,
        host="127.0.0.1",
        port=8080,
    )


@pytest.fixture
def oauth_config() -> Config:
    """Create a configuration with OAuth enabled for testing."""
    return Config(
        app_name="OAuth Test Server",
        jira_url="https://acme.atlassian.net",
        oauth_user_auth_enabled=True,
        oauth_client_id="test-client-id",
        oauth_client_secret="test-client-secret",
        oauth_redirect_uri="http://localhost:8000/oauth/callback",
        oauth_state_secret=STATE_SECRET,
    )


@pytest.fixture
def jira_config() -> Config:
    """Create a configuration with API token credentials for testing."""
    return Config(
        app_name="Jira Test Server",
        jira_url="https://jira.example.com",
        jira_email="dev@example.com",
        jira_api_token="api-token",
    )


@pytest.fixture
def codec() -> SessionCodec:
    """Create a state codec keyed from the test secret."""
    return SessionCodec.from_secret(STATE_SECRET)

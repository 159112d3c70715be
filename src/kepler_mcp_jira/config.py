"""Configuration management for the Kepler Jira auth core.

Provides configuration loading from environment variables, .env files,
and optional configuration files with proper precedence handling.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "JIRA_MCP_"

ATLASSIAN_CLOUD_SUFFIX = ".atlassian.net"
ATLASSIAN_AUTHORIZATION_URL = "https://auth.atlassian.com/authorize"
ATLASSIAN_TOKEN_URL = "https://auth.atlassian.com/oauth/token"
CLOUD_DEFAULT_SCOPE = "read:jira-work read:jira-user write:jira-work offline_access"
SERVER_DEFAULT_SCOPE = "READ WRITE"


class ConfigError(Exception):
    """Raised when configuration validation fails."""


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Environment(str, Enum):
    """Deployment environments."""

    LOCAL = "local"
    DEV = "dev"
    STAGE = "stage"
    PROD = "prod"


class Config(BaseModel):
    """Main configuration model.

    Configuration can be loaded from:
    - Environment variables with JIRA_MCP_ prefix
    - Optional .env file in project root
    - Optional configuration file passed via CLI
    """

    # Core settings
    app_name: str = Field(default="Kepler MCP Jira", description="Application name")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    environment: Environment = Field(
        default=Environment.LOCAL, description="Deployment environment"
    )

    # Callback server settings
    host: str = Field(default="127.0.0.1", description="Callback server bind host")
    port: int = Field(default=8000, ge=1, le=65535, description="Callback server bind port")
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Externally visible base URL of the callback server",
    )

    # Jira site and fallback credential
    jira_url: str | None = Field(default=None, description="Jira site base URL")
    jira_email: str | None = Field(default=None, description="Account email for API token auth")
    jira_api_token: SecretStr | None = Field(
        default=None, description="Long-lived Jira API token (basic auth fallback)"
    )
    request_timeout: float = Field(default=30.0, gt=0, description="Jira API timeout (s)")
    cache_sweep_interval: float = Field(
        default=300.0, gt=0, description="Seconds between cache sweeps"
    )

    # OAuth 2.0 user authentication (Authorization Code with PKCE)
    oauth_user_auth_enabled: bool = Field(
        default=False, description="Enable OAuth user authentication"
    )
    oauth_authorization_url: str | None = Field(
        default=None, description="OAuth authorization endpoint URL"
    )
    oauth_token_url: str | None = Field(default=None, description="OAuth token endpoint URL")
    oauth_client_id: str | None = Field(default=None, description="OAuth client identifier")
    oauth_client_secret: SecretStr | None = Field(
        default=None, description="OAuth client secret"
    )
    oauth_scope: str | None = Field(default=None, description="OAuth scopes (space-separated)")
    oauth_redirect_uri: str | None = Field(
        default=None, description="OAuth callback/redirect URI"
    )
    oauth_prompt: str | None = Field(
        default="consent", description="prompt parameter for the authorization request"
    )
    oauth_state_secret: SecretStr | None = Field(
        default=None, description="Secret the state encryption key is derived from"
    )
    oauth_timeout: float = Field(default=30.0, gt=0, description="Token endpoint timeout (s)")

    # Token storage
    token_encryption_key: SecretStr | None = Field(
        default=None, description="Fernet encryption key for token storage"
    )
    token_store_path: str | None = Field(
        default=None, description="Path for persistent token storage"
    )

    model_config = {
        "extra": "allow",
        "validate_assignment": True,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> Any:
        """Normalize environment to lowercase."""
        if isinstance(v, str):
            return v.lower()
        return v

    @field_validator("jira_url", "public_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    @property
    def is_cloud(self) -> bool:
        """Whether jira_url points at Atlassian Cloud."""
        return bool(self.jira_url) and ATLASSIAN_CLOUD_SUFFIX in (self.jira_url or "")

    @property
    def resolved_authorization_url(self) -> str | None:
        if self.oauth_authorization_url:
            return self.oauth_authorization_url
        if self.is_cloud:
            return ATLASSIAN_AUTHORIZATION_URL
        if self.jira_url:
            return f"{self.jira_url}/plugins/servlet/oauth2/authorize"
        return None

    @property
    def resolved_token_url(self) -> str | None:
        if self.oauth_token_url:
            return self.oauth_token_url
        if self.is_cloud:
            return ATLASSIAN_TOKEN_URL
        if self.jira_url:
            return f"{self.jira_url}/plugins/servlet/oauth2/token"
        return None

    @property
    def resolved_scope(self) -> str:
        if self.oauth_scope:
            return self.oauth_scope
        return CLOUD_DEFAULT_SCOPE if self.is_cloud else SERVER_DEFAULT_SCOPE

    @property
    def resolved_redirect_uri(self) -> str:
        return self.oauth_redirect_uri or f"{self.public_base_url}/oauth/callback"

    @model_validator(mode="after")
    def validate_oauth_user_auth(self) -> Config:
        """Refuse to enable OAuth without its secrets and endpoints."""
        if self.oauth_user_auth_enabled:
            required_fields = [
                ("oauth_client_id", self.oauth_client_id),
                ("oauth_state_secret", self.oauth_state_secret),
                ("oauth_authorization_url or jira_url", self.resolved_authorization_url),
                ("oauth_token_url or jira_url", self.resolved_token_url),
            ]
            missing = [name for name, value in required_fields if not value]
            if missing:
                msg = (
                    f"OAuth user authentication is enabled but missing required fields: "
                    f"{', '.join(missing)}"
                )
                raise ValueError(msg)
            if self.oauth_state_secret is not None and not (
                self.oauth_state_secret.get_secret_value()
            ):
                msg = "oauth_state_secret must not be empty"
                raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def validate_api_token(self) -> Config:
        """Basic auth needs both halves of the credential."""
        if self.jira_api_token and not self.jira_email:
            msg = "jira_email is required when jira_api_token is set"
            raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def validate_token_store(self) -> Config:
        """Validate token store configuration."""
        if self.token_store_path and not self.token_encryption_key:
            msg = "token_encryption_key is required when token_store_path is set"
            raise ValueError(msg)
        return self


def _get_env_value(key: str, prefix: str = ENV_PREFIX) -> str | None:
    """Get environment variable value with prefix."""
    return os.environ.get(f"{prefix}{key.upper()}")


_INT_FIELDS = {"port"}
_FLOAT_FIELDS = {"request_timeout", "oauth_timeout", "cache_sweep_interval"}
_BOOL_FIELDS = {"oauth_user_auth_enabled"}


def _load_env_config() -> dict[str, Any]:
    """Load configuration from environment variables."""
    config: dict[str, Any] = {}
    for field_name in Config.model_fields:
        value = _get_env_value(field_name)
        if value is None:
            continue
        if field_name in _BOOL_FIELDS:
            config[field_name] = value.lower() in ("true", "1", "yes")
        elif field_name in _INT_FIELDS:
            with contextlib.suppress(ValueError):
                config[field_name] = int(value)
            config.setdefault(field_name, value)
        elif field_name in _FLOAT_FIELDS:
            with contextlib.suppress(ValueError):
                config[field_name] = float(value)
            config.setdefault(field_name, value)
        else:
            config[field_name] = value

    return config


def _load_file_config(path: str | Path) -> dict[str, Any]:
    """Load configuration from a file (JSON or YAML)."""
    path = Path(path)
    if not path.exists():
        msg = f"Configuration file not found: {path}"
        raise ConfigError(msg)

    suffix = path.suffix.lower()
    content = path.read_text()

    if suffix == ".json":
        return dict(json.loads(content))

    if suffix in (".yaml", ".yml"):
        import yaml

        return dict(yaml.safe_load(content) or {})

    msg = f"Unsupported configuration file format: {suffix}"
    raise ConfigError(msg)


_SECRET_KEYS = {
    "jira_api_token",
    "oauth_client_secret",
    "oauth_state_secret",
    "token_encryption_key",
}


def _redact_for_log(key: str, value: Any) -> str:
    """Redact sensitive values for logging."""
    if key in _SECRET_KEYS and value:
        return "***"
    return str(value)


def load_config(
    path: str | Path | None = None,
    cli_args: dict[str, Any] | None = None,
) -> Config:
    """Load and validate configuration.

    Precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Configuration file
    4. Model defaults

    Args:
        path: Optional path to configuration file
        cli_args: Optional CLI argument overrides

    Returns:
        Validated Config instance

    Raises:
        ConfigError: If configuration is invalid
    """
    load_dotenv()

    config_dict: dict[str, Any] = {}
    if path:
        logger.debug("Loading configuration from file: %s", path)
        config_dict.update(_load_file_config(path))

    for key, value in _load_env_config().items():
        config_dict[key] = value
        logger.debug("Config %s from environment: %s", key, _redact_for_log(key, value))

    if cli_args:
        for key, value in cli_args.items():
            if value is not None:
                config_dict[key] = value
                logger.debug("Config %s from CLI: %s", key, _redact_for_log(key, value))

    try:
        return Config(**config_dict)
    except ValueError as e:
        msg = f"Configuration validation failed: {e}"
        raise ConfigError(msg) from e

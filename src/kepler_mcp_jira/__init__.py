"""Kepler MCP Jira.

Stateless OAuth 2.1 (PKCE) authentication and a cached, coalescing
request layer for the Jira REST API.
"""

__version__ = "0.1.0"

from kepler_mcp_jira.cache import RequestCache
from kepler_mcp_jira.config import Config, ConfigError, load_config
from kepler_mcp_jira.jira.client import JiraClient, create_jira_client
from kepler_mcp_jira.oauth.flows import OAuth2AuthorizationCodeFlow, create_authorization_flow
from kepler_mcp_jira.oauth.session import AuthSession, SessionCodec
from kepler_mcp_jira.oauth.token_manager import TokenManager

__all__ = [
    "AuthSession",
    "Config",
    "ConfigError",
    "JiraClient",
    "OAuth2AuthorizationCodeFlow",
    "RequestCache",
    "SessionCodec",
    "TokenManager",
    "__version__",
    "create_authorization_flow",
    "create_jira_client",
    "load_config",
]

"""Jira API client and utilities."""

from kepler_mcp_jira.jira.client import JiraClient, create_jira_client
from kepler_mcp_jira.jira.dispatcher import ApiRequest, AuthenticatedDispatcher
from kepler_mcp_jira.jira.exceptions import (
    AuthRejectedError,
    JiraAPIError,
    NoSprintFoundError,
    RateLimitedError,
    UnauthenticatedError,
    UnreachableError,
    UpstreamError,
)

__all__ = [
    "ApiRequest",
    "AuthRejectedError",
    "AuthenticatedDispatcher",
    "JiraAPIError",
    "JiraClient",
    "NoSprintFoundError",
    "RateLimitedError",
    "UnauthenticatedError",
    "UnreachableError",
    "UpstreamError",
    "create_jira_client",
]

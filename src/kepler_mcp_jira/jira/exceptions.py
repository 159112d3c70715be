"""Jira API exceptions."""

from __future__ import annotations

from typing import Any


class JiraAPIError(Exception):
    """Base exception for Jira API errors.

    Attributes:
        message: Human-readable error message
        status_code: HTTP status code (if a response was received)
        response_body: Parsed or raw response body (if available)
    """

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_body = response_body

    def __str__(self) -> str:
        if self.status_code:
            return f"[{self.status_code}] {self.message}"
        return self.message


class UnauthenticatedError(JiraAPIError):
    """No OAuth token or API token is available for the request."""

    def __init__(
        self,
        message: str = "Authentication required: no OAuth token or API token available.",
    ) -> None:
        super().__init__(message)


class AuthRejectedError(JiraAPIError):
    """Jira rejected the credential (401 or 403).

    The caller should refresh the token or restart authentication rather
    than retry the same request.
    """

    def __init__(
        self,
        message: str = "Jira rejected the supplied credentials.",
        status_code: int = 401,
        response_body: Any = None,
    ) -> None:
        super().__init__(message, status_code, response_body)


class RateLimitedError(JiraAPIError):
    """Jira throttled the request (429 Too Many Requests).

    Attributes:
        retry_after: Seconds to wait before retrying (if provided by Jira)
    """

    retryable = True

    def __init__(
        self,
        message: str = "Rate limit exceeded.",
        status_code: int = 429,
        response_body: Any = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code, response_body)
        self.retry_after = retry_after


class UnreachableError(JiraAPIError):
    """No response was received (connection failure or timeout)."""

    retryable = True

    def __init__(self, message: str = "Network error: no response received from Jira.") -> None:
        super().__init__(message)


class UpstreamError(JiraAPIError):
    """Any other non-success response from Jira."""

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code is not None and self.status_code >= 500


class NoSprintFoundError(JiraAPIError):
    """A project has no Scrum board, or the requested sprint does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message)

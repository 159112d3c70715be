"""Tests for Jira API exceptions."""

from __future__ import annotations

from kepler_mcp_jira.jira.exceptions import (
    AuthRejectedError,
    JiraAPIError,
    RateLimitedError,
    UnauthenticatedError,
    UnreachableError,
    UpstreamError,
)


class TestJiraAPIError:
    """Tests for the exception hierarchy."""

    def test_str_with_status(self) -> None:
        assert str(JiraAPIError("Boom", status_code=500)) == "[500] Boom"

    def test_str_without_status(self) -> None:
        assert str(JiraAPIError("Boom")) == "Boom"

    def test_all_subclass_base(self) -> None:
        for error in (
            UnauthenticatedError(),
            AuthRejectedError(),
            RateLimitedError(),
            UnreachableError(),
            UpstreamError("x", 500),
        ):
            assert isinstance(error, JiraAPIError)

    def test_unauthenticated_message(self) -> None:
        error = UnauthenticatedError()
        assert "no OAuth token or API token" in str(error)
        assert error.status_code is None

    def test_retryable(self) -> None:
        assert AuthRejectedError().retryable is False
        assert RateLimitedError(retry_after=5).retryable is True
        assert UnreachableError().retryable is True
        assert UpstreamError("x", 503).retryable is True
        assert UpstreamError("x", 400).retryable is False

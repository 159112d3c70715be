"""Typed failures raised by the OAuth core.

The codec raises ``InvalidStateError``; everything a caller of the flow
sees is an ``AuthError`` subclass carrying enough information to decide
between restarting authentication, retrying later, or fixing deployment
configuration.
"""

from __future__ import annotations


class InvalidStateError(Exception):
    """Raised when an encrypted state value cannot be turned back into a session.

    Attributes:
        expired: True when the state decrypted correctly but is past its TTL
    """

    def __init__(self, message: str, *, expired: bool = False) -> None:
        super().__init__(message)
        self.expired = expired


class AuthError(Exception):
    """Base class for authentication failures."""

    restart_required = False
    retryable = False


class ExpiredOrInvalidSessionError(AuthError):
    """The state parameter was malformed, tampered with, or too old."""

    restart_required = True

    def __init__(
        self,
        message: str = "Invalid or expired OAuth state. Please restart the authentication flow.",
        *,
        expired: bool = False,
    ) -> None:
        super().__init__(message)
        self.expired = expired


class ExchangeFailedError(AuthError):
    """The token endpoint rejected the grant or could not be reached.

    Attributes:
        status: HTTP status code, None when no response was received
        body: Raw response body, if any
        timed_out: True when the request hit its timeout
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: str | None = None,
        *,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.timed_out = timed_out

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        # 4xx means the grant itself is bad; retrying the same code will not help
        return self.status is None or self.status >= 500 or self.status == 429

    def __str__(self) -> str:
        if self.status is not None:
            return f"[{self.status}] {self.args[0]}"
        return str(self.args[0])


class MalformedResponseError(AuthError):
    """The token endpoint answered 2xx but the payload was unusable."""


class MisconfiguredClientError(AuthError):
    """Required OAuth client configuration is missing."""


class AuthorizationDeniedError(AuthError):
    """The authorization server redirected back with an error.

    Attributes:
        error: OAuth error code (e.g. access_denied)
        description: Optional error_description from the provider
    """

    restart_required = True

    def __init__(self, error: str, description: str | None = None) -> None:
        message = f"Authorization failed: {error}"
        if description:
            message = f"{message} ({description})"
        super().__init__(message)
        self.error = error
        self.description = description

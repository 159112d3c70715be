"""Authenticated request dispatch to the Jira REST API.

The dispatcher attaches a credential to each request and turns failures
into the ``JiraAPIError`` taxonomy. It does not cache or retry; reads are
expected to reach it through ``RequestCache.cached_call`` in the client.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from kepler_mcp_jira.jira.exceptions import (
    AuthRejectedError,
    RateLimitedError,
    UnauthenticatedError,
    UnreachableError,
    UpstreamError,
)
from kepler_mcp_jira.logging_config import get_logger

if TYPE_CHECKING:
    from kepler_mcp_jira.security import AuthStrategy

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0

USER_AGENT = "kepler-mcp-jira"

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


@dataclass(frozen=True)
class ApiRequest:
    """A single call to the Jira API."""

    method: str
    path: str
    params: Mapping[str, Any] | None = None
    json: Any = None

    @property
    def idempotent(self) -> bool:
        """Whether the request may be served from or stored in the cache."""
        return self.method.upper() in IDEMPOTENT_METHODS


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        # HTTP-date form is not used by Jira
        return None


def _error_details(response: httpx.Response) -> tuple[str, Any]:
    try:
        body: Any = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}", response.text or None

    if isinstance(body, dict):
        messages = body.get("errorMessages")
        if isinstance(messages, list) and messages:
            return "; ".join(str(m) for m in messages), body
        message = body.get("message") or body.get("error") or str(body)
        return str(message), body
    return str(body), body


class AuthenticatedDispatcher:
    """Sends requests to Jira with the best available credential."""

    def __init__(
        self,
        base_url: str,
        auth_strategy: AuthStrategy,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            base_url: Jira site URL (e.g. "https://acme.atlassian.net")
            auth_strategy: Credential source, usually a chain of bearer
                then basic
            timeout: Per-request timeout in seconds
            http_client: Optional shared HTTP client
        """
        self._base_url = base_url.rstrip("/")
        self._auth_strategy = auth_strategy
        self._timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={
                    "Accept": "application/json",
                    "User-Agent": USER_AGENT,
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _raise_for_status(self, request: ApiRequest, response: httpx.Response) -> None:
        status = response.status_code
        message, body = _error_details(response)
        logger.error("Jira request failed: %s %s - %s", request.method, request.path, status)

        if status in (401, 403):
            raise AuthRejectedError(message, status, body)
        if status == 429:
            raise RateLimitedError(
                message,
                status,
                body,
                _parse_retry_after(response.headers.get("Retry-After")),
            )
        raise UpstreamError(message, status, body)

    async def call(self, request: ApiRequest) -> httpx.Response:
        """Send one request.

        Args:
            request: Method, path, query and body to send

        Returns:
            The successful HTTP response

        Raises:
            UnauthenticatedError: If no credential is available
            AuthRejectedError: On 401/403
            RateLimitedError: On 429
            UnreachableError: If no response was received
            UpstreamError: On any other non-success status
        """
        headers = await self._auth_strategy.get_auth_headers()
        if not headers:
            logger.error("No authentication method available for %s", request.path)
            raise UnauthenticatedError

        params = None
        if request.params:
            params = {k: v for k, v in request.params.items() if v is not None}

        client = await self._get_client()
        logger.debug("Jira API request: %s %s", request.method, request.path)

        try:
            response = await client.request(
                method=request.method.upper(),
                url=f"{self._base_url}{request.path}",
                params=params,
                json=request.json,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            logger.error("Jira request timed out: %s %s", request.method, request.path)
            raise UnreachableError(f"Request to Jira timed out: {request.path}") from e
        except httpx.TransportError as e:
            logger.error("Jira request transport error: %s", e)
            raise UnreachableError(f"Network error contacting Jira: {e}") from e

        if not response.is_success:
            self._raise_for_status(request, response)

        logger.debug("Response: %s %s", response.status_code, request.path)
        return response

"""Jira API client.

A thin layer over ``AuthenticatedDispatcher`` that routes every read
through the request cache with a TTL suited to how often the resource
changes, and sends writes straight through.
"""

from __future__ import annotations

import asyncio
import base64
from typing import TYPE_CHECKING, Any

from kepler_mcp_jira.cache import RequestCache
from kepler_mcp_jira.jira.dispatcher import ApiRequest, AuthenticatedDispatcher
from kepler_mcp_jira.jira.exceptions import JiraAPIError, NoSprintFoundError
from kepler_mcp_jira.logging_config import get_logger
from kepler_mcp_jira.security import build_auth_strategy

if TYPE_CHECKING:
    import httpx

    from kepler_mcp_jira.config import Config
    from kepler_mcp_jira.oauth.token_manager import TokenManager

logger = get_logger(__name__)

# Per-resource freshness, in seconds
PROJECTS_TTL = 600.0
BOARDS_TTL = 300.0
ACTIVE_SPRINT_TTL = 60.0
SPRINT_TTL = 300.0
SPRINT_ISSUES_TTL = 120.0
SPRINT_HISTORY_TTL = 600.0
SEARCH_TTL = 180.0
ISSUE_TTL = 60.0
CURRENT_USER_TTL = 600.0

DEFAULT_MAX_RESULTS = 50

# Projects loaded concurrently per batch, and the pause between batches
PROJECT_BATCH_SIZE = 3
PROJECT_BATCH_DELAY = 0.5


class JiraClient:
    """Async client for the Jira REST and Agile APIs.

    Example:
        ```python
        async with JiraClient(dispatcher) as client:
            projects = await client.get_projects()
            issues = await client.search_issues("project = ABC")
        ```
    """

    def __init__(
        self,
        dispatcher: AuthenticatedDispatcher,
        cache: RequestCache | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._cache = cache or RequestCache()

    @property
    def cache(self) -> RequestCache:
        return self._cache

    async def __aenter__(self) -> JiraClient:
        self._cache.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop the cache sweeper and close the HTTP client."""
        await self._cache.aclose()
        await self._dispatcher.close()

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _fetch(self, request: ApiRequest) -> Any:
        return self._decode(await self._dispatcher.call(request))

    async def _get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        cache_key: str,
        ttl: float,
        bypass_cache: bool = False,
    ) -> Any:
        request = ApiRequest("GET", path, params)
        return await self._cache.cached_call(
            cache_key,
            ttl,
            lambda: self._fetch(request),
            bypass=bypass_cache,
        )

    async def _write(
        self,
        method: str,
        path: str,
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        # Writes are never cached or coalesced
        return await self._fetch(ApiRequest(method, path, json=json_data))

    # -------------------------------------------------------------------------
    # Reads (cached)
    # -------------------------------------------------------------------------

    async def get_current_user(self) -> dict[str, Any]:
        """Get the user the credential belongs to."""
        return dict(
            await self._get("/rest/api/3/myself", cache_key="myself", ttl=CURRENT_USER_TTL)
        )

    async def test_connection(self) -> bool:
        """Check that Jira accepts the credential. Never cached."""
        try:
            await self._get(
                "/rest/api/3/myself",
                cache_key="myself",
                ttl=CURRENT_USER_TTL,
                bypass_cache=True,
            )
        except JiraAPIError as e:
            logger.error("Jira connection test failed: %s", e)
            return False
        logger.info("Jira connection test successful")
        return True

    async def get_projects(self, bypass_cache: bool = False) -> list[dict[str, Any]]:
        """List projects visible to the user."""
        result = await self._get(
            "/rest/api/3/project/search",
            {"maxResults": 1000},
            cache_key="projects",
            ttl=PROJECTS_TTL,
            bypass_cache=bypass_cache,
        )
        return list(result.get("values", []))

    async def get_boards(self, project_key: str) -> list[dict[str, Any]]:
        """List Scrum boards for a project."""
        result = await self._get(
            "/rest/agile/1.0/board",
            {"projectKeyOrId": project_key, "type": "scrum"},
            cache_key=f"boards:{project_key}",
            ttl=BOARDS_TTL,
        )
        return list(result.get("values", []))

    async def get_active_sprint(self, board_id: int) -> dict[str, Any] | None:
        """Get the active sprint of a board, or None."""
        result = await self._get(
            f"/rest/agile/1.0/board/{board_id}/sprint",
            {"state": "active"},
            cache_key=f"active_sprint:{board_id}",
            ttl=ACTIVE_SPRINT_TTL,
        )
        values = result.get("values", [])
        return dict(values[0]) if values else None

    async def get_sprint(self, sprint_id: int) -> dict[str, Any]:
        """Get a sprint by ID."""
        return dict(
            await self._get(
                f"/rest/agile/1.0/sprint/{sprint_id}",
                cache_key=f"sprint:{sprint_id}",
                ttl=SPRINT_TTL,
            )
        )

    async def get_sprint_issues(self, sprint_id: int) -> list[dict[str, Any]]:
        """Get the issues of a sprint, with changelog."""
        result = await self._get(
            f"/rest/agile/1.0/sprint/{sprint_id}/issue",
            {"maxResults": 1000, "expand": "changelog"},
            cache_key=f"sprint_issues:{sprint_id}",
            ttl=SPRINT_ISSUES_TTL,
        )
        return list(result.get("issues", []))

    async def get_sprint_history(self, board_id: int, limit: int = 6) -> list[dict[str, Any]]:
        """Get the most recent closed sprints of a board."""
        result = await self._get(
            f"/rest/agile/1.0/board/{board_id}/sprint",
            {"state": "closed", "maxResults": limit},
            cache_key=f"sprint_history:{board_id}:{limit}",
            ttl=SPRINT_HISTORY_TTL,
        )
        return list(result.get("values", []))

    async def search_issues(
        self,
        jql: str,
        max_results: int = DEFAULT_MAX_RESULTS,
        start_at: int = 0,
        fields: list[str] | None = None,
        bypass_cache: bool = False,
    ) -> dict[str, Any]:
        """Search issues with JQL.

        Returns:
            Jira search payload with ``issues`` and ``total``
        """
        field_list = ",".join(fields) if fields else None
        jql_key = base64.urlsafe_b64encode(jql.encode()).decode("ascii")
        return dict(
            await self._get(
                "/rest/api/3/search",
                {
                    "jql": jql,
                    "maxResults": max_results,
                    "startAt": start_at,
                    "fields": field_list,
                },
                cache_key=f"search:{jql_key}:{max_results}:{start_at}:{field_list or '*'}",
                ttl=SEARCH_TTL,
                bypass_cache=bypass_cache,
            )
        )

    async def get_issue(self, issue_key: str) -> dict[str, Any]:
        """Get a single issue."""
        return dict(
            await self._get(
                f"/rest/api/3/issue/{issue_key}",
                cache_key=f"issue:{issue_key}",
                ttl=ISSUE_TTL,
            )
        )

    # -------------------------------------------------------------------------
    # Aggregates (concurrent reads through the cache)
    # -------------------------------------------------------------------------

    async def get_sprint_data(
        self, project_key: str, sprint_id: int | None = None
    ) -> dict[str, Any]:
        """Load a project's board, sprint, sprint issues and recent sprints.

        The sprint and the closed-sprint history are fetched concurrently
        once the board is known.

        Args:
            project_key: Project whose first Scrum board is used
            sprint_id: Sprint to load instead of the active one

        Returns:
            Dict with ``board``, ``sprint``, ``issues`` and ``history``

        Raises:
            NoSprintFoundError: If the project has no board or no such sprint
        """
        boards = await self.get_boards(project_key)
        if not boards:
            msg = f"No Scrum board found for project '{project_key}'"
            raise NoSprintFoundError(msg)
        board = boards[0]

        sprint_lookup = (
            self.get_sprint(sprint_id)
            if sprint_id is not None
            else self.get_active_sprint(board["id"])
        )
        sprint, history = await asyncio.gather(
            sprint_lookup, self.get_sprint_history(board["id"])
        )
        if not sprint:
            msg = f"No active sprint found for project '{project_key}'"
            raise NoSprintFoundError(msg)

        issues = await self.get_sprint_issues(sprint["id"])
        return {"board": board, "sprint": sprint, "issues": issues, "history": history}

    async def get_projects_data(
        self,
        project_keys: list[str],
        batch_size: int = PROJECT_BATCH_SIZE,
        batch_delay: float = PROJECT_BATCH_DELAY,
    ) -> dict[str, dict[str, Any]]:
        """Load sprint data for several projects, a few at a time.

        A project that fails maps to ``{"error": message}`` instead of
        failing the whole batch.
        """
        results: dict[str, dict[str, Any]] = {}

        async def load(project_key: str) -> None:
            try:
                results[project_key] = await self.get_sprint_data(project_key)
            except JiraAPIError as e:
                logger.warning("Failed to load sprint data for %s: %s", project_key, e)
                results[project_key] = {"error": str(e)}

        for start in range(0, len(project_keys), batch_size):
            batch = project_keys[start : start + batch_size]
            await asyncio.gather(*(load(key) for key in batch))
            if start + batch_size < len(project_keys):
                await asyncio.sleep(batch_delay)

        return {key: results[key] for key in project_keys}

    # -------------------------------------------------------------------------
    # Writes (never cached)
    # -------------------------------------------------------------------------

    async def create_issue(
        self,
        project_key: str,
        summary: str,
        issue_type: str = "Task",
        description: str | None = None,
    ) -> dict[str, Any]:
        """Create an issue and drop cached searches."""
        fields: dict[str, Any] = {
            "project": {"key": project_key},
            "summary": summary,
            "issuetype": {"name": issue_type},
        }
        if description:
            fields["description"] = {
                "type": "doc",
                "version": 1,
                "content": [
                    {"type": "paragraph", "content": [{"type": "text", "text": description}]}
                ],
            }

        result = await self._write("POST", "/rest/api/3/issue", {"fields": fields})
        self._cache.invalidate_prefix("search:")
        return dict(result or {})

    async def add_comment(self, issue_key: str, body: str) -> dict[str, Any]:
        """Add a plain-text comment to an issue."""
        result = await self._write(
            "POST",
            f"/rest/api/3/issue/{issue_key}/comment",
            {
                "body": {
                    "type": "doc",
                    "version": 1,
                    "content": [{"type": "paragraph", "content": [{"type": "text", "text": body}]}],
                }
            },
        )
        self._cache.invalidate(f"issue:{issue_key}")
        return dict(result or {})

    async def transition_issue(self, issue_key: str, transition_id: str) -> None:
        """Move an issue through a workflow transition."""
        await self._write(
            "POST",
            f"/rest/api/3/issue/{issue_key}/transitions",
            {"transition": {"id": transition_id}},
        )
        self._cache.invalidate(f"issue:{issue_key}")
        self._cache.invalidate_prefix("search:")
        self._cache.invalidate_prefix("sprint_issues:")

    # -------------------------------------------------------------------------
    # Cache management
    # -------------------------------------------------------------------------

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> dict[str, Any]:
        stats = self._cache.stats
        return {
            "entries": stats.entries,
            "in_flight": stats.in_flight,
            "hits": stats.hits,
            "misses": stats.misses,
            "coalesced": stats.coalesced,
            "hit_rate": round(stats.hit_rate, 3),
        }


def create_jira_client(
    config: Config,
    token_manager: TokenManager | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> JiraClient:
    """Build a client with the credential chain from configuration.

    Raises:
        ValueError: If jira_url is not configured
    """
    if not config.jira_url:
        msg = "jira_url must be configured to create a Jira client"
        raise ValueError(msg)

    dispatcher = AuthenticatedDispatcher(
        config.jira_url,
        build_auth_strategy(config, token_manager),
        timeout=config.request_timeout,
        http_client=http_client,
    )
    return JiraClient(dispatcher, RequestCache(sweep_interval=config.cache_sweep_interval))

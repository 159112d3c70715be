"""Keyed response cache with TTL expiry and in-flight request coalescing.

Every read the Jira client makes goes through ``RequestCache.cached_call``.
A live entry is served without touching the network; otherwise concurrent
callers asking for the same key share a single fetch, and only a
successful result is stored.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from kepler_mcp_jira.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Seconds between background sweeps of stale entries
DEFAULT_SWEEP_INTERVAL = 300.0

DEFAULT_TTL = 300.0


@dataclass
class CacheEntry(Generic[T]):
    """A cached value and when it was stored (monotonic seconds)."""

    key: str
    value: T
    stored_at: float
    ttl: float

    def is_stale(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of cache counters."""

    entries: int
    in_flight: int
    hits: int
    misses: int
    coalesced: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses + self.coalesced
        if total == 0:
            return 0.0
        return (self.hits + self.coalesced) / total


class RequestCache:
    """Process-wide cache and in-flight map, owned by whoever creates it.

    The cache is safe for any number of concurrent asyncio tasks: each
    check-then-register step on the in-flight map runs without an
    intervening ``await``, so two tasks cannot both start a fetch for the
    same key.

    Example:
        ```python
        async with RequestCache() as cache:
            projects = await cache.cached_call(
                "projects", 600, lambda: client.fetch_projects()
            )
        ```
    """

    def __init__(
        self,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            sweep_interval: Seconds between background sweeps once started
            clock: Monotonic time source, replaceable in tests
        """
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._sweeper: asyncio.Task[None] | None = None
        self._hits = 0
        self._misses = 0
        self._coalesced = 0

    async def cached_call(
        self,
        key: str,
        ttl: float,
        fetch: Callable[[], Awaitable[T]],
        bypass: bool = False,
    ) -> T:
        """Return the cached value for ``key`` or fetch it once.

        Args:
            key: Cache key identifying the resource
            ttl: Seconds a successful result stays fresh
            fetch: Zero-argument coroutine function performing the call
            bypass: Skip the cache lookup (an in-flight fetch is still shared)

        Returns:
            The cached or freshly fetched value

        Raises:
            Exception: Whatever ``fetch`` raised; failures are not cached
        """
        if not bypass:
            entry = self._entries.get(key)
            if entry is not None and not entry.is_stale(self._clock()):
                self._hits += 1
                return entry.value  # type: ignore[no-any-return]

        task = self._in_flight.get(key)
        if task is not None:
            self._coalesced += 1
            logger.debug("Joining in-flight request for %s", key)
        else:
            self._misses += 1
            task = asyncio.ensure_future(fetch())
            self._in_flight[key] = task
            task.add_done_callback(lambda t: self._settle(key, ttl, t))

        # One waiter being cancelled must not cancel the fetch the others share
        return await asyncio.shield(task)  # type: ignore[no-any-return]

    def _settle(self, key: str, ttl: float, task: asyncio.Task[Any]) -> None:
        # Registered before any waiter, so it runs before they resume
        if self._in_flight.get(key) is not task:
            # Invalidated while in flight; the result predates the invalidation
            logger.debug("Discarding result of detached fetch for %s", key)
            return
        del self._in_flight[key]

        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug("Fetch for %s failed, not caching: %s", key, error)
            return

        self._entries[key] = CacheEntry(
            key=key, value=task.result(), stored_at=self._clock(), ttl=ttl
        )

    def get(self, key: str) -> Any | None:
        """Peek at a live cached value without counting a hit."""
        entry = self._entries.get(key)
        if entry is None or entry.is_stale(self._clock()):
            return None
        return entry.value

    def invalidate(self, key: str) -> bool:
        """Drop one entry and detach any fetch in flight for it.

        A detached fetch still answers its waiters but is never stored,
        and the next caller starts a new one.

        Returns:
            True if a cached entry existed
        """
        self._in_flight.pop(key, None)
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``."""
        for key in [k for k in self._in_flight if k.startswith(prefix)]:
            del self._in_flight[key]
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        """Drop all entries and detach every in-flight fetch."""
        self._entries.clear()
        self._in_flight.clear()
        logger.info("Request cache cleared")

    def sweep(self) -> int:
        """Remove entries older than their own TTL.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        stale = [k for k, entry in self._entries.items() if entry.is_stale(now)]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("Swept %d stale cache entries", len(stale))
        return len(stale)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the background sweeper on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.debug("Cache sweeper started (every %.0fs)", self._sweep_interval)

    async def aclose(self) -> None:
        """Stop the background sweeper."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

    async def __aenter__(self) -> RequestCache:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def is_sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    @property
    def stats(self) -> CacheStats:
        return CacheStats(
            entries=len(self._entries),
            in_flight=len(self._in_flight),
            hits=self._hits,
            misses=self._misses,
            coalesced=self._coalesced,
        )

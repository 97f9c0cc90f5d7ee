"""
Read-through stats service.

Wires the snapshot store, the request coalescer and the refresh policy
around a fetch adapter.  ``lookup`` is the request path used by the router;
``fetch_and_store`` is the write path shared with the scheduler.
"""

import asyncio
import logging
from typing import Protocol

from ghstats.coalescer import RequestCoalescer
from ghstats.errors import ConfigurationError, FetchError, UpstreamError
from ghstats.policy import Decision, LookupResult, RefreshPolicy
from ghstats.store import Snapshot, SnapshotStore

logger = logging.getLogger(__name__)


class FetchAdapter(Protocol):
    """Anything that can produce a fresh snapshot for a cache key."""

    async def fetch(self, key: str) -> Snapshot:
        ...


def _consume_exception(task: "asyncio.Task[Snapshot]") -> None:
    # Nobody may be left awaiting a failed fetch; mark the error retrieved.
    if not task.cancelled():
        task.exception()


class StatsService:
    """
    Serves snapshots per cache key with coalescing and stale-if-error.

    Fetches run as their own tasks and callers await them through
    ``asyncio.shield``: a caller that goes away (client disconnect) does not
    cancel the fetch, which still completes and updates the cache.

    Args:
        fetcher:   Fetch adapter producing snapshots.
        store:     Snapshot store, shared with the scheduler.
        coalescer: In-flight registry for the request path.
        policy:    Freshness rules.
    """

    def __init__(
        self,
        fetcher: FetchAdapter,
        store: SnapshotStore,
        coalescer: RequestCoalescer,
        policy: RefreshPolicy,
    ) -> None:
        self.fetcher = fetcher
        self.store = store
        self.coalescer = coalescer
        self.policy = policy

    async def lookup(self, key: str) -> LookupResult:
        """Return the snapshot for *key* following the refresh policy.

        Raises:
            ConfigurationError: *key* is empty.
            RateLimitedError:   Throttled and nothing cached for *key*.
            UnavailableError:   Fetch failed and nothing cached for *key*.
        """
        if not key:
            raise ConfigurationError("GITHUB_USERNAME not set")

        decision = self.policy.decide(self.store, self.coalescer, key)

        if decision is Decision.SERVE_FRESH:
            logger.info("Cache hit: key=%r", key)
            return self.policy.from_cache(self.store, key)

        if decision is Decision.AWAIT_IN_FLIGHT:
            pending = self.coalescer.in_flight(key)
            if pending is not None:
                logger.info("Waiting for in-flight request: key=%r", key)
                return await self._await_outcome(key, pending)

        logger.info("Cache miss, fetching data: key=%r", key)
        return await self._await_outcome(key, self.start_fetch(key))

    def start_fetch(self, key: str) -> "asyncio.Task[Snapshot]":
        """Start a coalesced fetch for *key* and return its task.

        The in-flight marker is cleared when the task settles, whether or
        not anyone is still waiting on it.
        """

        async def _run() -> Snapshot:
            try:
                return await self.fetch_and_store(key)
            finally:
                self.coalescer.end(key)

        task = asyncio.create_task(_run(), name=f"fetch:{key}")
        task.add_done_callback(_consume_exception)
        self.coalescer.begin(key, task)
        return task

    async def fetch_and_store(self, key: str) -> Snapshot:
        """Fetch *key* upstream, then write it through to memory and disk.

        Raises:
            RateLimitedError: GitHub throttled the fetch.
            UpstreamError:    Any other fetch failure.
        """
        snapshot = await self._fetch(key)
        self.store.set(key, snapshot)
        await self.store.persist(key)
        return snapshot

    def stats(self) -> dict[str, object]:
        return {
            "cache_count": self.store.stats()["cache_count"],
            "in_flight_count": self.coalescer.active_requests,
            "keys": self.store.keys(),
        }

    async def _await_outcome(
        self,
        key: str,
        pending: "asyncio.Future[Snapshot]",
    ) -> LookupResult:
        try:
            snapshot = await asyncio.shield(pending)
        except FetchError as exc:
            return self.policy.on_fetch_failure(self.store, key, exc)
        return self.policy.from_fetch(self.store, key, snapshot)

    async def _fetch(self, key: str) -> Snapshot:
        try:
            return await self.fetcher.fetch(key)
        except FetchError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error fetching key=%r", key)
            raise UpstreamError(f"Unexpected error fetching {key!r}: {exc}") from exc

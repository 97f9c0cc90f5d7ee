"""
Refresh policy: the per-request decision matrix.

For a key K, in priority order:
  1. a fresh entry exists            -> serve it from cache
  2. a fetch for K is already running -> await that fetch
  3. otherwise                        -> start a new fetch
If the awaited or started fetch fails, any stale entry is served instead
(stale-if-error).  Only when no entry exists at all does the failure reach
the caller.
"""

import copy
import logging
from dataclasses import dataclass
from enum import Enum

from ghstats.coalescer import RequestCoalescer
from ghstats.errors import FetchError, RateLimitedError, UnavailableError
from ghstats.store import Snapshot, SnapshotStore

logger = logging.getLogger(__name__)


class Decision(Enum):
    """What the request path should do for a key right now."""
    SERVE_FRESH = "serve_fresh"
    AWAIT_IN_FLIGHT = "await_in_flight"
    START_FETCH = "start_fetch"


@dataclass(frozen=True)
class LookupResult:
    """Outcome of a lookup handed to the router.

    ``snapshot`` is a private copy; changing it never touches the store.
    """
    snapshot: Snapshot
    served_from_cache: bool
    stale: bool = False
    remaining_ttl: int = 0


class RefreshPolicy:
    """Freshness rules and stale-if-error fallback for one TTL."""

    def __init__(self, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds

    def decide(
        self,
        store: SnapshotStore,
        coalescer: RequestCoalescer,
        key: str,
    ) -> Decision:
        """Pick the branch of the decision matrix for *key*."""
        if store.is_valid(key, self.ttl_seconds):
            return Decision.SERVE_FRESH
        if coalescer.in_flight(key) is not None:
            return Decision.AWAIT_IN_FLIGHT
        return Decision.START_FETCH

    def from_cache(self, store: SnapshotStore, key: str) -> LookupResult:
        """Serve the fresh entry for *key*."""
        snapshot = store.get_valid(key, self.ttl_seconds)
        if snapshot is None:
            raise LookupError(f"no fresh entry for {key!r}")
        return LookupResult(
            snapshot=copy.deepcopy(snapshot),
            served_from_cache=True,
            remaining_ttl=store.remaining_ttl(key, self.ttl_seconds),
        )

    def from_fetch(self, store: SnapshotStore, key: str, snapshot: Snapshot) -> LookupResult:
        """Serve a snapshot that came straight from an upstream fetch."""
        return LookupResult(
            snapshot=copy.deepcopy(snapshot),
            served_from_cache=False,
            remaining_ttl=store.remaining_ttl(key, self.ttl_seconds),
        )

    def on_fetch_failure(
        self,
        store: SnapshotStore,
        key: str,
        error: FetchError,
    ) -> LookupResult:
        """Fall back to stale data after *error*, or raise a typed failure.

        Args:
            store: Store holding the last known entry for *key*.
            key:   Cache key that failed to refresh.
            error: The fetch failure.

        Returns:
            The stale entry, flagged as cache-derived and stale.

        Raises:
            RateLimitedError: No entry exists and GitHub throttled the fetch.
            UnavailableError: No entry exists and the fetch failed otherwise.
        """
        stale = store.get(key)
        if stale is not None:
            logger.warning(
                "Fetch failed, returning stale cache: key=%r error=%s", key, error
            )
            return LookupResult(
                snapshot=copy.deepcopy(stale), served_from_cache=True, stale=True
            )

        if isinstance(error, RateLimitedError):
            logger.error(
                "GitHub rate limit exceeded with no cached data: key=%r "
                "retry_after=%s reset_at=%s",
                key,
                error.retry_after,
                error.reset_at,
            )
            raise error

        logger.error("Failed to fetch GitHub data with no cached data: key=%r error=%s", key, error)
        raise UnavailableError(f"Failed to fetch GitHub data for {key!r}") from error

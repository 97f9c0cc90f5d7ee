"""
Tests for the request path: ghstats.service.StatsService and
ghstats.policy.RefreshPolicy.

The fetch adapter is a small fake whose fetch can be held open on an
``asyncio.Event`` so concurrent callers overlap deterministically.
"""

import asyncio
from typing import Optional

import pytest

from ghstats.coalescer import RequestCoalescer
from ghstats.errors import (
    ConfigurationError,
    RateLimitedError,
    UnavailableError,
    UpstreamError,
)
from ghstats.policy import Decision, RefreshPolicy
from ghstats.service import StatsService
from ghstats.store import SnapshotStore

TTL = 3600


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetcher:
    """Counts calls; blocks until ``gate`` is set; then fails or succeeds."""

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.calls = 0
        self.error = error
        self.gate = asyncio.Event()
        self.gate.set()

    async def fetch(self, key: str) -> dict:
        self.calls += 1
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return {"profile": {"login": key}, "version": self.calls}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock: FakeClock) -> SnapshotStore:
    return SnapshotStore(tmp_path, clock=clock)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def service(fetcher: FakeFetcher, store: SnapshotStore) -> StatsService:
    return StatsService(fetcher, store, RequestCoalescer(), RefreshPolicy(TTL))


async def _until_in_flight(service: StatsService, key: str) -> None:
    for _ in range(100):
        if service.coalescer.in_flight(key) is not None:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"no fetch registered for {key!r}")


# ---------------------------------------------------------------------------
# Decision matrix
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_decide_branches(store: SnapshotStore, clock: FakeClock) -> None:
    """Fresh beats in-flight, in-flight beats a new fetch."""
    policy = RefreshPolicy(TTL)
    coalescer = RequestCoalescer()

    assert policy.decide(store, coalescer, "k") is Decision.START_FETCH

    coalescer.begin("k", asyncio.get_running_loop().create_future())
    assert policy.decide(store, coalescer, "k") is Decision.AWAIT_IN_FLIGHT

    store.set("k", {})
    assert policy.decide(store, coalescer, "k") is Decision.SERVE_FRESH

    clock.advance(TTL)
    assert policy.decide(store, coalescer, "k") is Decision.AWAIT_IN_FLIGHT


def test_policy_rejects_non_positive_ttl() -> None:
    with pytest.raises(ValueError):
        RefreshPolicy(0)


# ---------------------------------------------------------------------------
# Fresh hit and miss
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_fresh_entry_served_from_cache(
    service: StatsService, store: SnapshotStore, fetcher: FakeFetcher
) -> None:
    """A fresh entry is served without touching upstream."""
    store.set("octocat", {"v": "cached"})

    result = await service.lookup("octocat")

    assert result.snapshot == {"v": "cached"}
    assert result.served_from_cache is True
    assert result.stale is False
    assert result.remaining_ttl == TTL
    assert fetcher.calls == 0


@pytest.mark.asyncio
async def test_miss_fetches_and_writes_through(
    service: StatsService, store: SnapshotStore, fetcher: FakeFetcher
) -> None:
    """A miss fetches, stores in memory and on disk, and clears the marker."""
    result = await service.lookup("octocat")

    assert fetcher.calls == 1
    assert result.served_from_cache is False
    assert result.snapshot == {"profile": {"login": "octocat"}, "version": 1}
    assert store.get("octocat") == result.snapshot
    assert store.record_path("octocat").exists()
    assert service.coalescer.active_requests == 0


@pytest.mark.asyncio
async def test_stale_entry_triggers_refetch(
    service: StatsService, store: SnapshotStore, clock: FakeClock, fetcher: FakeFetcher
) -> None:
    store.set("octocat", {"v": "old"})
    clock.advance(TTL + 1)

    result = await service.lookup("octocat")

    assert fetcher.calls == 1
    assert result.served_from_cache is False
    assert store.get("octocat")["version"] == 1


# ---------------------------------------------------------------------------
# Coalescing
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_concurrent_lookups_share_one_fetch(
    service: StatsService, fetcher: FakeFetcher
) -> None:
    """N concurrent lookups for an expired key make exactly one upstream call."""
    fetcher.gate.clear()
    lookups = [asyncio.create_task(service.lookup("octocat")) for _ in range(5)]
    await _until_in_flight(service, "octocat")
    await asyncio.sleep(0)
    fetcher.gate.set()

    results = await asyncio.gather(*lookups)

    assert fetcher.calls == 1
    assert all(r.snapshot == results[0].snapshot for r in results)
    assert all(r.served_from_cache is False for r in results)
    assert service.coalescer.active_requests == 0


@pytest.mark.asyncio
async def test_concurrent_lookups_share_stale_fallback(
    service: StatsService, store: SnapshotStore, clock: FakeClock, fetcher: FakeFetcher
) -> None:
    """When the shared fetch fails, every waiter gets the same stale entry."""
    store.set("octocat", {"v": "old"})
    clock.advance(TTL * 2)
    fetcher.error = UpstreamError("boom", status_code=502)
    fetcher.gate.clear()

    lookups = [asyncio.create_task(service.lookup("octocat")) for _ in range(3)]
    await _until_in_flight(service, "octocat")
    await asyncio.sleep(0)
    fetcher.gate.set()
    results = await asyncio.gather(*lookups)

    assert fetcher.calls == 1
    for r in results:
        assert r.snapshot == {"v": "old"}
        assert r.served_from_cache is True
        assert r.stale is True
    assert service.coalescer.active_requests == 0


@pytest.mark.asyncio
async def test_concurrent_lookups_share_failure(
    service: StatsService, fetcher: FakeFetcher
) -> None:
    """With nothing cached, every waiter sees the same typed failure."""
    fetcher.error = RateLimitedError(retry_after=7)
    fetcher.gate.clear()

    lookups = [asyncio.create_task(service.lookup("octocat")) for _ in range(3)]
    await _until_in_flight(service, "octocat")
    await asyncio.sleep(0)
    fetcher.gate.set()
    results = await asyncio.gather(*lookups, return_exceptions=True)

    assert fetcher.calls == 1
    assert all(isinstance(r, RateLimitedError) for r in results)
    assert all(r.retry_after == 7 for r in results)


# ---------------------------------------------------------------------------
# Stale-if-error and typed failures
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [RateLimitedError(retry_after=30), UpstreamError("boom")],
)
async def test_stale_if_error(
    service: StatsService,
    store: SnapshotStore,
    clock: FakeClock,
    fetcher: FakeFetcher,
    error: Exception,
) -> None:
    """A failed refresh serves the previous snapshot, flagged stale."""
    store.set("octocat", {"v": "old"})
    clock.advance(TTL)
    fetcher.error = error

    result = await service.lookup("octocat")

    assert result.snapshot == {"v": "old"}
    assert result.served_from_cache is True
    assert result.stale is True
    assert service.coalescer.active_requests == 0


@pytest.mark.asyncio
async def test_rate_limit_without_entry(service: StatsService, fetcher: FakeFetcher) -> None:
    """No entry + rate limit surfaces RateLimitedError with the upstream hint."""
    fetcher.error = RateLimitedError(retry_after=42, reset_at=1_700_000_100)

    with pytest.raises(RateLimitedError) as exc_info:
        await service.lookup("octocat")

    assert exc_info.value.retry_after == 42
    assert exc_info.value.retry_after_seconds() == 42
    assert service.coalescer.active_requests == 0


@pytest.mark.asyncio
async def test_generic_failure_without_entry(service: StatsService, fetcher: FakeFetcher) -> None:
    """No entry + generic failure surfaces UnavailableError."""
    fetcher.error = UpstreamError("GitHub API error: 500", status_code=500)

    with pytest.raises(UnavailableError):
        await service.lookup("octocat")


@pytest.mark.asyncio
async def test_unexpected_exception_is_treated_as_upstream_failure(
    service: StatsService, fetcher: FakeFetcher
) -> None:
    fetcher.error = KeyError("login")

    with pytest.raises(UnavailableError) as exc_info:
        await service.lookup("octocat")

    assert isinstance(exc_info.value.__cause__, UpstreamError)


@pytest.mark.asyncio
async def test_empty_key_is_configuration_error(service: StatsService) -> None:
    with pytest.raises(ConfigurationError):
        await service.lookup("")


def test_retry_after_derived_from_reset() -> None:
    err = RateLimitedError(reset_at=1_000_060)
    assert err.retry_after_seconds(now=1_000_000) == 60
    assert err.retry_after_seconds(now=2_000_000) == 0
    assert RateLimitedError().retry_after_seconds() is None


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_caller_cancellation_does_not_cancel_fetch(
    service: StatsService, store: SnapshotStore, fetcher: FakeFetcher
) -> None:
    """A caller that stops waiting leaves the fetch to finish and fill the cache."""
    fetcher.gate.clear()
    caller = asyncio.create_task(service.lookup("octocat"))
    await _until_in_flight(service, "octocat")
    pending = service.coalescer.in_flight("octocat")

    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    fetcher.gate.set()
    snapshot = await pending

    assert store.get("octocat") == snapshot
    assert service.coalescer.active_requests == 0


# ---------------------------------------------------------------------------
# Isolation of served snapshots
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_served_snapshots_are_copies(
    service: StatsService, store: SnapshotStore, clock: FakeClock, fetcher: FakeFetcher
) -> None:
    """Mutating a lookup result never changes what the store holds."""
    fetched = await service.lookup("octocat")
    fetched.snapshot["profile"]["login"] = "mallory"

    cached = await service.lookup("octocat")
    assert cached.served_from_cache is True
    assert cached.snapshot["profile"]["login"] == "octocat"
    cached.snapshot["profile"]["login"] = "mallory"

    clock.advance(TTL)
    fetcher.error = UpstreamError("boom")
    stale = await service.lookup("octocat")
    assert stale.stale is True
    stale.snapshot.clear()

    assert store.get("octocat") == {"profile": {"login": "octocat"}, "version": 1}

"""
Request coalescing to prevent duplicate upstream API calls.

When multiple concurrent requests ask for the same user, only one upstream
fetch is made and every requester awaits the same outcome.
"""

import asyncio
import logging
from typing import Any, Optional

from ghstats.store import Snapshot

logger = logging.getLogger(__name__)

PendingOutcome = asyncio.Future[Snapshot]


class RequestCoalescer:
    """
    Tracks at most one in-flight fetch per cache key.

    Pattern:
    - The caller that finds no fresh entry and no in-flight fetch starts a
      fetch task and registers it with ``begin``
    - Later callers for the same key find it via ``in_flight`` and await it
    - The fetch task calls ``end`` when it settles, success or failure

    ``in_flight`` followed by ``begin`` is not atomic across an ``await``.
    If two callers both miss and both register, the second registration
    replaces the first; callers already holding the first outcome still
    resolve from it.  Both fetches hit the same upstream data, so the race
    costs one extra call, never a wrong answer.  Fetch start is not
    serialized across callers.

    Usage:
        coalescer = RequestCoalescer()
        pending = coalescer.in_flight("octocat")
        if pending is None:
            task = asyncio.create_task(fetch())
            coalescer.begin("octocat", task)
    """

    def __init__(self) -> None:
        self._in_flight: dict[str, PendingOutcome] = {}

    def in_flight(self, key: str) -> Optional[PendingOutcome]:
        """Return the pending outcome for *key*, if a fetch is underway."""
        return self._in_flight.get(key)

    def begin(self, key: str, outcome: PendingOutcome) -> None:
        """Register *outcome* as the in-flight fetch for *key*."""
        if key in self._in_flight:
            logger.debug("Replacing in-flight registration for key=%r", key)
        self._in_flight[key] = outcome
        logger.debug("In-flight request registered: key=%r", key)

    def end(self, key: str) -> None:
        """Clear the in-flight marker for *key* unconditionally."""
        self._in_flight.pop(key, None)
        logger.debug("In-flight request cleared: key=%r", key)

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight fetches."""
        return len(self._in_flight)

    def stats(self) -> dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "in_flight_count": len(self._in_flight),
            "keys": list(self._in_flight),
        }

"""
Background scheduler that keeps the snapshot cache warm.

Fires one refresh pass at startup and then at fixed wall-clock hours in a
configured timezone (00:00 and 12:00 Asia/Tokyo by default).  A pass walks
the configured usernames one at a time, fetching and storing each, so a
single process never bursts the GitHub rate limit.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from ghstats.service import StatsService

logger = logging.getLogger(__name__)

_STARTUP_TRIGGER: str = "startup"


@dataclass
class RefreshReport:
    """Outcome of one refresh pass."""
    trigger: str
    success_count: int = 0
    failure_count: int = 0
    elapsed_seconds: float = 0.0
    failed_keys: List[str] = field(default_factory=list)


def next_run_at(now: datetime, hour: int, tz: ZoneInfo) -> datetime:
    """
    Next occurrence of ``hour:00`` in *tz* strictly after *now*.

    Args:
        now:  Current time, timezone-aware.
        hour: Wall-clock hour, 0-23.
        tz:   Zone the hour is expressed in.

    Returns:
        The next trigger time, in *tz*.
    """
    local = now.astimezone(tz)
    candidate = local.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= local:
        candidate += timedelta(days=1)
    return candidate


def seconds_until(now: datetime, target: datetime) -> float:
    """Non-negative delay between two aware datetimes, compared in UTC."""
    delta = target.astimezone(timezone.utc) - now.astimezone(timezone.utc)
    return max(0.0, delta.total_seconds())


class RefreshScheduler:
    """
    Scheduler for periodic cache refresh passes.

    States: stopped -> running -> stopped.  Each configured hour is one
    background task that sleeps until its next occurrence and then runs a
    pass.  The startup pass runs as its own task so ``start()`` returns
    without waiting for it.

    Args:
        service:           Service whose ``fetch_and_store`` does the work.
        keys:              Ordered usernames to refresh.
        refresh_hours:     Wall-clock hours of the recurring triggers.
        timezone_name:     IANA zone of ``refresh_hours``.
        key_delay_seconds: Pause between consecutive keys in a pass.
        sleep:             Awaitable sleep; injectable for tests.
        clock:             Returns the current aware datetime; injectable.
    """

    def __init__(
        self,
        service: StatsService,
        keys: Sequence[str],
        refresh_hours: Sequence[int] = (0, 12),
        timezone_name: str = "Asia/Tokyo",
        key_delay_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.service = service
        self.keys: List[str] = list(keys)
        self.refresh_hours: List[int] = sorted(set(refresh_hours))
        self.tz = ZoneInfo(timezone_name)
        self.key_delay_seconds = key_delay_seconds
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tasks: List[asyncio.Task] = []
        self._running = False
        self._pass_lock = asyncio.Lock()
        self.last_report: Optional[RefreshReport] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def schedule_labels(self) -> List[str]:
        return [f"{hour:02d}:00 {self.tz.key}" for hour in self.refresh_hours]

    async def start(self) -> None:
        """Register the recurring triggers and fire the startup pass."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        if not self.keys:
            logger.warning("No target usernames configured, scheduler not started")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(
                self._run_daily_trigger(hour),
                name=f"refresh-trigger:{hour:02d}",
            )
            for hour in self.refresh_hours
        ]

        logger.info(
            "Scheduler started: target_usernames=%s schedules=%s",
            self.keys,
            self.schedule_labels,
        )

        self._tasks.append(
            asyncio.create_task(self.run_pass(_STARTUP_TRIGGER), name="refresh-startup")
        )

    async def stop(self) -> None:
        """Cancel every trigger task.  Safe to call more than once."""
        if not self._running:
            logger.warning("Scheduler not running")
            return

        self._running = False
        logger.info("Stopping scheduler")

        for task in self._tasks:
            task.cancel()

        # Wait for all tasks to complete cancellation
        await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks = []
        logger.info("Scheduler stopped")

    async def _run_daily_trigger(self, hour: int) -> None:
        """Run a pass at *hour*:00 every day until stopped."""
        label = f"{hour:02d}:00"
        last_target: Optional[datetime] = None
        while self._running:
            now = self._clock()
            # A tick is never reused, even if the sleep woke just before it.
            anchor = now if last_target is None or now > last_target else last_target
            target = next_run_at(anchor, hour, self.tz)
            delay = seconds_until(now, target)
            logger.debug("Next %s refresh in %.0fs", label, delay)

            try:
                await self._sleep(delay)
            except asyncio.CancelledError:
                logger.info("Refresh trigger %s cancelled", label)
                break

            last_target = target
            if self._pass_lock.locked():
                logger.warning("Refresh pass already running, skipping trigger %s", label)
                continue

            try:
                await self.run_pass(label)
            except Exception as e:
                # Log error but keep the trigger alive for the next day
                logger.error("Error in refresh trigger %s: %s", label, e, exc_info=True)

    async def run_pass(self, trigger: str) -> RefreshReport:
        """
        Refresh every configured key once, sequentially.

        A failing key is logged and counted; the pass always moves on to the
        next key.  Passes never overlap: a second call waits for the running one.

        Args:
            trigger: Label for logs, e.g. ``"startup"`` or ``"12:00"``.

        Returns:
            Success and failure counts plus elapsed wall time.
        """
        async with self._pass_lock:
            return await self._refresh_keys(trigger)

    async def _refresh_keys(self, trigger: str) -> RefreshReport:
        logger.info(
            "Starting scheduled data fetch: trigger=%s user_count=%d",
            trigger,
            len(self.keys),
        )
        report = RefreshReport(trigger=trigger)
        started = time.monotonic()

        for index, key in enumerate(self.keys):
            if index > 0 and self.key_delay_seconds > 0:
                await self._sleep(self.key_delay_seconds)

            logger.info("Fetching data for user: username=%r trigger=%s", key, trigger)
            try:
                await self.service.fetch_and_store(key)
            except Exception as e:
                report.failure_count += 1
                report.failed_keys.append(key)
                logger.error(
                    "Failed to fetch data for user: username=%r trigger=%s error=%s",
                    key,
                    trigger,
                    e,
                )
                continue

            report.success_count += 1
            logger.info("Successfully fetched and cached data: username=%r trigger=%s", key, trigger)

        report.elapsed_seconds = time.monotonic() - started
        self.last_report = report
        logger.info(
            "Scheduled data fetch completed: trigger=%s success=%d failure=%d elapsed_ms=%d",
            trigger,
            report.success_count,
            report.failure_count,
            report.elapsed_seconds * 1000,
        )
        return report

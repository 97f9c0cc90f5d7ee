"""
Exception taxonomy shared by the fetch, cache and serving layers.

Fetch failures (``RateLimitedError``, ``UpstreamError``) are caught at the
point of fetch and turned into a stale response or a typed failure for the
caller.  ``PersistenceError`` never leaves the snapshot store.
"""

import time
from typing import Optional


class StatsError(Exception):
    """Base class for every error raised by this package."""


class FetchError(StatsError):
    """The upstream fetch for a cache key failed."""


class RateLimitedError(FetchError):
    """GitHub throttled the request.

    Args:
        message:     Human readable description.
        retry_after: Seconds to wait, from the ``Retry-After`` header.
        reset_at:    Epoch seconds when the quota resets, from
                     ``X-RateLimit-Reset``.
    """

    def __init__(
        self,
        message: str = "GitHub API rate limit exceeded",
        retry_after: Optional[int] = None,
        reset_at: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.reset_at = reset_at

    def retry_after_seconds(self, now: Optional[float] = None) -> Optional[int]:
        """Return how long a client should back off, or ``None`` if unknown.

        An explicit ``retry_after`` wins; otherwise the delay is derived from
        ``reset_at`` and clamped at zero.
        """
        if self.retry_after is not None:
            return self.retry_after
        if self.reset_at is not None:
            current = int(time.time() if now is None else now)
            return max(0, self.reset_at - current)
        return None


class UpstreamError(FetchError):
    """Any non rate-limit failure talking to GitHub."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(StatsError):
    """Reading or writing a persisted cache record failed."""


class ConfigurationError(StatsError):
    """Required identity is missing or settings contradict each other."""


class UnavailableError(StatsError):
    """No data, fresh or stale, could be produced for a key."""

"""
Stats routes.

Endpoints:
  GET /            : Snapshot for the configured GitHub user
  GET /stats/cache : Cache, in-flight and scheduler counters

``GET /`` never fails while any snapshot, fresh or stale, exists for the
user.  Without one it answers 429 (with ``Retry-After`` when GitHub gave a
hint) on rate limiting and 503 on any other upstream failure.
"""

import copy
import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ghstats.config import Settings
from ghstats.errors import ConfigurationError, RateLimitedError, UnavailableError
from ghstats.policy import LookupResult

logger = logging.getLogger(__name__)

router = APIRouter()


def check_serving_config(settings: Settings) -> str:
    """
    Return the username to serve, or raise on unusable settings.

    Raises:
        ConfigurationError: ``GITHUB_USERNAME`` is empty, or private repos
            were requested without a token.
    """
    if not settings.github_username:
        raise ConfigurationError("GITHUB_USERNAME not set")
    if settings.include_private and not settings.github_token:
        raise ConfigurationError("INCLUDE_PRIVATE set but GITHUB_TOKEN not provided")
    return settings.github_username


def render(result: LookupResult) -> dict[str, Any]:
    """Response body for a lookup; the stored snapshot is left untouched."""
    body = dict(result.snapshot)
    meta = copy.deepcopy(body.get("meta") or {})
    meta["cached"] = result.served_from_cache
    meta["stale"] = result.stale
    meta["ttl_remaining"] = result.remaining_ttl
    body["meta"] = meta
    body["cached"] = result.served_from_cache
    return body


# ---------------------------------------------------------------------------
# GET /: stats for the configured user
# ---------------------------------------------------------------------------

@router.get("/", summary="Language, commit and profile stats")
async def get_stats(request: Request) -> Any:
    """
    Return the configured user's snapshot.

    Resolution order (see ``ghstats.policy``):
      1. Fresh cache entry.
      2. In-flight fetch for the same user.
      3. New upstream fetch.
      4. Stale cache entry if the fetch failed.
    """
    settings: Settings = request.app.state.settings
    try:
        username = check_serving_config(settings)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return JSONResponse(status_code=400, content={"error": str(exc)})

    service = request.app.state.service
    try:
        result = await service.lookup(username)
    except RateLimitedError as exc:
        headers: dict[str, str] = {}
        retry_after = exc.retry_after_seconds()
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
        return JSONResponse(
            status_code=429,
            content={"error": "GitHub API rate limit exceeded"},
            headers=headers,
        )
    except UnavailableError:
        return JSONResponse(
            status_code=503,
            content={"error": "Failed to fetch GitHub data"},
        )

    return render(result)


# ---------------------------------------------------------------------------
# GET /stats/cache: counters
# ---------------------------------------------------------------------------

@router.get("/stats/cache", summary="Cache counters")
async def get_cache_stats(request: Request) -> dict[str, Any]:
    """Entry count, in-flight fetches and scheduler state."""
    stats = request.app.state.service.stats()
    scheduler = request.app.state.scheduler
    stats["scheduler_running"] = scheduler.running
    if scheduler.last_report is not None:
        report = scheduler.last_report
        stats["last_refresh"] = {
            "trigger": report.trigger,
            "success_count": report.success_count,
            "failure_count": report.failure_count,
            "elapsed_seconds": round(report.elapsed_seconds, 3),
        }
    return stats

"""
GitHub REST API client.

All HTTP calls to api.github.com route through this module.  The client
aggregates a user's repositories into one ``StatsSnapshot``: language byte
counts, commit activity over the last 30 days, and profile info.

Failures are raised rather than returned as ``None``: the cache layer
needs to tell a throttled fetch (``RateLimitedError``) from any other
failure (``UpstreamError``) to decide on stale fallback.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import quote

import httpx

from ghstats.errors import RateLimitedError, UpstreamError
from ghstats.models import (
    CommitActivity,
    LanguageData,
    Profile,
    SnapshotMeta,
    StatsSnapshot,
)
from ghstats.store import Snapshot

logger = logging.getLogger(__name__)

_API_BASE: str = "https://api.github.com"
_COLORS_URL: str = "https://raw.githubusercontent.com/ozh/github-colors/master/colors.json"
_USER_AGENT: str = "github-most-used-langs-api"
_REQUEST_TIMEOUT: float = 30.0  # seconds

_DEFAULT_COLOR: str = "#8b8b8b"
_PER_PAGE: int = 100
_MAX_REPO_PAGES: int = 20
_MAX_COMMIT_PAGES: int = 10
_COMMIT_WINDOW_DAYS: int = 30
_BATCH_SIZE: int = 10
_COLORS_TTL: float = 86400.0  # seconds


def _parse_int_header(response: httpx.Response, name: str) -> Optional[int]:
    value = response.headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def check_response(response: httpx.Response) -> None:
    """
    Raise the matching error for a failed GitHub response.

    A 403 mentioning the rate limit, or any 429, is a ``RateLimitedError``
    carrying the ``Retry-After`` and ``X-RateLimit-Reset`` hints.

    Raises:
        RateLimitedError: GitHub throttled the request.
        UpstreamError:    Any other non-2xx status.
    """
    status = response.status_code
    if status in (403, 429):
        body = response.text
        if status == 429 or "rate limit" in body.lower():
            raise RateLimitedError(
                retry_after=_parse_int_header(response, "Retry-After"),
                reset_at=_parse_int_header(response, "X-RateLimit-Reset"),
            )
        raise UpstreamError(f"GitHub API forbidden: {body[:200]}", status_code=status)

    if response.is_error:
        raise UpstreamError(
            f"GitHub API error: {status} {response.reason_phrase}",
            status_code=status,
        )


def build_commit_activity(
    commits: list[dict[str, Any]],
    window_days: int = _COMMIT_WINDOW_DAYS,
    today: Optional[datetime] = None,
) -> list[CommitActivity]:
    """
    Count commits per UTC day over the window ending today.

    Every day in the window is present, zero-filled, in ascending order.
    Commits outside the window or without an author date are ignored.

    Args:
        commits:     Raw commit objects from the commits endpoint.
        window_days: Number of days, today included.
        today:       Override for the current UTC time.

    Returns:
        One ``CommitActivity`` per day.
    """
    now = today or datetime.now(timezone.utc)
    start = now.date() - timedelta(days=window_days - 1)
    counts: dict[str, int] = {
        (start + timedelta(days=i)).isoformat(): 0 for i in range(window_days)
    }

    for commit in commits:
        date = ((commit.get("commit") or {}).get("author") or {}).get("date")
        if not isinstance(date, str):
            continue
        day = date[:10]
        if day in counts:
            counts[day] += 1

    return [CommitActivity(date=day, count=count) for day, count in sorted(counts.items())]


def aggregate_languages(
    per_repo: list[dict[str, int]],
    colors: dict[str, Any],
) -> tuple[list[LanguageData], int]:
    """Sum language bytes across repos, largest first.

    Returns:
        ``(languages, total_bytes)``.
    """
    totals: dict[str, int] = {}
    for languages in per_repo:
        for name, size in languages.items():
            totals[name] = totals.get(name, 0) + int(size)

    total_bytes = sum(totals.values())
    result = [
        LanguageData(
            name=name,
            bytes=size,
            percentage=round(size / total_bytes * 100, 2) if total_bytes > 0 else 0.0,
            color=((colors.get(name) or {}).get("color") or _DEFAULT_COLOR),
        )
        for name, size in totals.items()
    ]
    result.sort(key=lambda lang: lang.bytes, reverse=True)
    return result, total_bytes


class GitHubClient:
    """
    Async HTTP client for the GitHub REST API.

    Implements the fetch adapter used by the cache: ``fetch(username)``
    returns a snapshot dict or raises ``RateLimitedError`` /
    ``UpstreamError``.

    Usage::

        client = GitHubClient(token="ghp_...")
        snapshot = await client.fetch("octocat")
        await client.close()

    Args:
        token:           Personal access token, optional.
        include_private: List private repos when the token owner is the
                         requested user.
        ttl_seconds:     TTL advertised in the snapshot's ``meta``.
        http_client:     Pre-built ``httpx.AsyncClient`` (tests inject one
                         with a mock transport).
    """

    def __init__(
        self,
        token: Optional[str] = None,
        include_private: bool = False,
        ttl_seconds: int = 3600,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._token = token
        self.include_private = include_private
        self.ttl_seconds = ttl_seconds
        self._client: httpx.AsyncClient = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(_REQUEST_TIMEOUT),
            limits=httpx.Limits(max_connections=50, keepalive_expiry=30.0),
        )
        self._colors: Optional[dict[str, Any]] = None
        self._colors_fetched_at: float = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client and release any held connections."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": _USER_AGENT,
        }
        if self._token:
            headers["Authorization"] = f"token {self._token}"
        return headers

    async def _get(self, url: str, params: Optional[dict[str, Any]] = None) -> httpx.Response:
        """GET *url*, mapping transport failures to ``UpstreamError``."""
        logger.debug("GitHub request: GET %s params=%s", url, params)
        try:
            return await self._client.get(url, params=params, headers=self._headers())
        except httpx.TimeoutException as exc:
            logger.error("GitHub request timed out: GET %s: %s", url, exc)
            raise UpstreamError(f"GitHub request timed out: {url}") from exc
        except httpx.RequestError as exc:
            logger.error("GitHub network error: GET %s: %s", url, exc)
            raise UpstreamError(f"GitHub network error: {exc}") from exc

    async def _get_json(self, url: str, params: Optional[dict[str, Any]] = None) -> Any:
        response = await self._get(url, params=params)
        check_response(response)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"GitHub returned invalid JSON for {url}") from exc

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def get_user_profile(self, username: str) -> dict[str, Any]:
        """``GET /users/{username}``"""
        return await self._get_json(f"{_API_BASE}/users/{quote(username, safe='')}")

    async def get_all_repos(
        self,
        username: str,
        include_private: Optional[bool] = None,
    ) -> list[dict[str, Any]]:
        """
        List every repository owned by *username*.

        With ``include_private`` and a token whose owner is *username*, the
        authenticated ``/user/repos`` listing is used so private repos are
        included.  Otherwise the public ``/users/{username}/repos`` listing
        is used.  Both stop at an empty page or after 20 pages.
        """
        private = self.include_private if include_private is None else include_private
        if private and self._token:
            auth_user = await self._get_json(f"{_API_BASE}/user")
            token_owner = (auth_user or {}).get("login")
            if token_owner == username:
                repos = await self._paginate_repos(
                    f"{_API_BASE}/user/repos",
                    {"visibility": "all"},
                    owner=username,
                )
                logger.info("Fetched all repos (including private): count=%d", len(repos))
                return repos

            logger.warning(
                "INCLUDE_PRIVATE requested but token owner does not match username; "
                "falling back to public repos (username=%r token_owner=%r)",
                username,
                token_owner,
            )

        repos = await self._paginate_repos(
            f"{_API_BASE}/users/{quote(username, safe='')}/repos",
            {"type": "owner"},
        )
        logger.info("Fetched all repos: count=%d", len(repos))
        return repos

    async def _paginate_repos(
        self,
        url: str,
        params: dict[str, Any],
        owner: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        repos: list[dict[str, Any]] = []
        for page in range(1, _MAX_REPO_PAGES + 1):
            page_repos = await self._get_json(
                url, params={**params, "per_page": _PER_PAGE, "page": page}
            )
            if owner is not None:
                page_repos = [
                    r for r in page_repos
                    if (r.get("owner") or {}).get("login") == owner
                ]
            if not page_repos:
                return repos
            repos.extend(page_repos)

        logger.warning("Reached maximum page limit: total_repos=%d", len(repos))
        return repos

    async def get_repo_languages(self, languages_url: str) -> dict[str, int]:
        """``GET {languages_url}``: bytes of code per language."""
        return await self._get_json(languages_url)

    async def get_repo_commits_since(
        self,
        owner: str,
        repo: str,
        since: str,
    ) -> list[dict[str, Any]]:
        """
        List commits in *owner*/*repo* since an ISO timestamp.

        An empty repository answers 409, which yields no commits.
        """
        url = f"{_API_BASE}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}/commits"
        commits: list[dict[str, Any]] = []
        for page in range(1, _MAX_COMMIT_PAGES + 1):
            response = await self._get(
                url, params={"since": since, "per_page": _PER_PAGE, "page": page}
            )
            if response.status_code == 409:
                return []
            check_response(response)
            try:
                page_commits = response.json()
            except ValueError as exc:
                raise UpstreamError(f"GitHub returned invalid JSON for {url}") from exc
            if not page_commits:
                break
            commits.extend(page_commits)
        return commits

    async def get_language_colors(self) -> dict[str, Any]:
        """
        Linguist colors keyed by language name, cached for 24 hours.

        Never raises: on failure the previously fetched colors, or an empty
        map, are returned and every language gets the default color.
        """
        now = time.monotonic()
        if self._colors is not None and now - self._colors_fetched_at < _COLORS_TTL:
            return self._colors

        try:
            logger.debug("Fetching GitHub colors")
            response = await self._client.get(_COLORS_URL)
            response.raise_for_status()
            colors = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to fetch GitHub colors, using cached or empty: %s", exc)
            return self._colors or {}

        self._colors = colors
        self._colors_fetched_at = now
        logger.info("Fetched GitHub colors: count=%d", len(colors))
        return colors

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def _process_repo(self, repo: dict[str, Any], since: str) -> dict[str, Any]:
        """Languages and recent commits for one repo; forks contribute stars only."""
        result: dict[str, Any] = {"stars": int(repo.get("stargazers_count") or 0)}
        if repo.get("fork"):
            return result

        full_name = repo.get("full_name", repo.get("name"))
        try:
            result["languages"] = await self.get_repo_languages(repo["languages_url"])
        except UpstreamError as exc:
            logger.warning("Failed to fetch languages for repo %s: %s", full_name, exc)

        try:
            owner = (repo.get("owner") or {}).get("login", "")
            result["commits"] = await self.get_repo_commits_since(owner, repo["name"], since)
        except UpstreamError as exc:
            logger.warning("Failed to fetch commits for repo %s: %s", full_name, exc)

        return result

    async def fetch_full_stats(
        self,
        username: str,
        include_private: Optional[bool] = None,
        ttl_seconds: Optional[int] = None,
    ) -> StatsSnapshot:
        """
        Aggregate profile, languages and commit activity for *username*.

        Repos are processed in batches of 10 concurrent requests.  A rate
        limit on any request aborts the whole fetch; other per-repo failures
        only drop that repo's contribution.

        Raises:
            RateLimitedError: GitHub throttled any request.
            UpstreamError:    Profile or repo listing failed.
        """
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds

        started = time.monotonic()
        logger.info("Starting full stats fetch: username=%r", username)

        user, colors, repos = await asyncio.gather(
            self.get_user_profile(username),
            self.get_language_colors(),
            self.get_all_repos(username, include_private),
        )

        since = (datetime.now(timezone.utc) - timedelta(days=_COMMIT_WINDOW_DAYS)).isoformat()
        processed: list[dict[str, Any]] = []
        for i in range(0, len(repos), _BATCH_SIZE):
            batch = repos[i:i + _BATCH_SIZE]
            processed.extend(
                await asyncio.gather(*(self._process_repo(repo, since) for repo in batch))
            )

        total_stars = sum(r["stars"] for r in processed)
        languages, total_bytes = aggregate_languages(
            [r["languages"] for r in processed if r.get("languages")], colors
        )
        commits = [c for r in processed for c in r.get("commits", [])]

        fetched_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        snapshot = StatsSnapshot(
            profile=Profile(
                login=user.get("login", username),
                name=user.get("name"),
                html_url=user.get("html_url", ""),
                avatar_url=user.get("avatar_url", ""),
                followers=int(user.get("followers") or 0),
                public_repos=int(user.get("public_repos") or 0),
                total_stars=total_stars,
                fetched_at=fetched_at,
            ),
            languages=languages,
            commit_activity=build_commit_activity(commits),
            meta=SnapshotMeta(cached=False, cached_at=fetched_at, ttl_seconds=ttl),
        )

        logger.info(
            "Full stats fetch completed: username=%r total_bytes=%d languages=%d "
            "stars=%d commits=%d elapsed_ms=%d",
            username,
            total_bytes,
            len(languages),
            total_stars,
            len(commits),
            (time.monotonic() - started) * 1000,
        )
        return snapshot

    async def fetch(self, key: str) -> Snapshot:
        """Fetch adapter entry point: the snapshot for *key* as a plain dict."""
        stats = await self.fetch_full_stats(key)
        return stats.model_dump(mode="json")

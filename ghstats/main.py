"""
FastAPI application entry point for the GitHub stats API.

Wires together all application components: CORS middleware, request timing,
route registration, the GitHub client, the snapshot store, the request
coalescer, and the background refresh scheduler.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ghstats.coalescer import RequestCoalescer
from ghstats.config import Settings, settings as default_settings
from ghstats.github_client import GitHubClient
from ghstats.policy import RefreshPolicy
from ghstats.routes.stats import router as stats_router
from ghstats.scheduler import RefreshScheduler
from ghstats.service import FetchAdapter, StatsService
from ghstats.store import SnapshotStore

# ---------------------------------------------------------------------------
# Logging: configured at module level before anything else runs
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=default_settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    fetcher: Optional[FetchAdapter] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use; defaults to the environment-loaded ones.
        fetcher:  Fetch adapter override; defaults to a ``GitHubClient``
                  owned (and closed) by the application.
    """
    settings = settings or default_settings

    # ------------------------------------------------------------------
    # Lifespan: manages startup and shutdown of long-lived resources
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Startup sequence:
          1. Create the GitHub client (unless one was injected).
          2. Create the snapshot store and load persisted records.
          3. Build the coalescer, policy and service.
          4. Start the scheduler, which fires its startup refresh pass.

        Shutdown sequence:
          1. Stop the scheduler, cancelling all triggers.
          2. Close the GitHub client if the app created it.
        """
        logger.info("Starting GitHub stats API …")

        owned_client: Optional[GitHubClient] = None
        adapter = fetcher
        if adapter is None:
            owned_client = GitHubClient(
                token=settings.github_token,
                include_private=settings.include_private,
                ttl_seconds=settings.cache_ttl_seconds,
            )
            adapter = owned_client

        store = SnapshotStore(settings.cache_dir)
        store.ensure_dir()
        await store.load_all()

        coalescer = RequestCoalescer()
        service = StatsService(
            adapter,
            store,
            coalescer,
            RefreshPolicy(settings.cache_ttl_seconds),
        )
        scheduler = RefreshScheduler(
            service,
            settings.target_usernames,
            refresh_hours=settings.refresh_hours,
            timezone_name=settings.refresh_timezone,
            key_delay_seconds=settings.refresh_key_delay_seconds,
        )

        app.state.store = store
        app.state.coalescer = coalescer
        app.state.service = service
        app.state.scheduler = scheduler

        await scheduler.start()

        logger.info(
            "GitHub stats API ready: username=%s cache_ttl=%d has_token=%s",
            settings.github_username or "(not set)",
            settings.cache_ttl_seconds,
            bool(settings.github_token),
        )

        yield  # application runs here

        logger.info("Shutting down GitHub stats API …")
        await scheduler.stop()
        if owned_client is not None:
            await owned_client.close()
        logger.info("GitHub stats API shutdown complete")

    app = FastAPI(
        title="GitHub Stats API",
        description="Cached GitHub language, commit and profile stats",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ------------------------------------------------------------------
    # Middleware
    # ------------------------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        logger.info(
            "Request completed: method=%s path=%s status=%d elapsed_ms=%d",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - started) * 1000,
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = "Not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"error": message})

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------
    app.include_router(stats_router, tags=["stats"])

    @app.get("/healthz", tags=["health"], response_class=PlainTextResponse)
    async def health_check() -> str:
        """Return service liveness status."""
        return "ok"

    return app


app = create_app()

"""FastAPI application entrypoint.

Validates configuration, wires the cache services, includes routers, and
exposes a healthcheck endpoint.
"""

import logging
from typing import Optional

import redis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .database import SessionLocal  # noqa: E402
from .deps import Settings, get_settings, validate_settings  # noqa: E402
from .routers import cache_monitoring as cache_monitoring_router  # noqa: E402
from .routers import metrics as metrics_router  # noqa: E402
from .routers import reports as reports_router  # noqa: E402
from . import schemas  # noqa: E402
from .services.action_normalizer import validate_precedence_tables  # noqa: E402
from .services.cache_store import SqlCacheStore  # noqa: E402
from .services.coalescer import RequestCoalescer  # noqa: E402
from .services.platform_fetcher import PlatformFetcher  # noqa: E402
from .services.refresh_orchestrator import LocalRefreshGuard, RedisRefreshGuard, RefreshOrchestrator  # noqa: E402
from .services.report_service import ReportService  # noqa: E402
from .telemetry import init_sentry  # noqa: E402


def build_refresh_guard(settings: Settings):
    """Redis lock shared with the arq worker, or a local lock for a standalone API process.

    Both sides use RedisRefreshGuard.LOCK_NAME, so a manual refresh and the
    scheduled refresh never overlap.
    """
    if settings.REFRESH_GUARD_BACKEND == "redis":
        return RedisRefreshGuard(redis.Redis.from_url(settings.REDIS_URL))
    return LocalRefreshGuard()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the API.

    Raises:
        ConfigurationError: for invalid settings or precedence tables
    """
    settings = validate_settings(settings or get_settings())
    validate_precedence_tables()
    init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)

    app = FastAPI(
        title="Report Cache API",
        description="""
        Cached Meta Ads and Google Ads performance reports.

        This API provides endpoints for:
        - Cache health monitoring and bulk refresh (admin)
        - Cached reports per client, provider and period
        - Year-over-year comparison
        - Stateless normalization of raw platform action rows
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto headers from load balancers
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    allowed_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    logger.info("[CORS] Allowed origins: %s", allowed_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Long-lived services, shared by all requests
    store = SqlCacheStore(SessionLocal)
    fetcher = PlatformFetcher(SessionLocal, settings)
    coalescer = RequestCoalescer()
    orchestrator = RefreshOrchestrator(
        fetcher=fetcher,
        store=store,
        coalescer=coalescer,
        max_workers=settings.REFRESH_MAX_WORKERS,
        offline_conversion_rate=settings.OFFLINE_CONVERSION_RATE,
    )
    app.state.cache_store = store
    app.state.fetcher = fetcher
    app.state.coalescer = coalescer
    app.state.orchestrator = orchestrator
    app.state.refresh_guard = build_refresh_guard(settings)
    app.state.report_service = ReportService(
        store,
        orchestrator,
        threshold_minutes=settings.CACHE_STALE_THRESHOLD_MINUTES,
    )

    app.include_router(cache_monitoring_router.router)
    app.include_router(reports_router.router)
    app.include_router(metrics_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()

"""
AuditChain: FastAPI application factory.

Application lifecycle:
  startup  → configure logging, run DB migrations, build the service
             graph, warm the cache, start the retention scheduler
  shutdown → stop the scheduler, drain post-commit work, close Redis,
             dispose the DB engine pool
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.asyncio import Redis
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from auditchain.api.v1.router import router as v1_router
from auditchain.config.logging_config import configure_logging
from auditchain.config.settings import Settings, get_settings
from auditchain.core.errors import AppError, PersistenceFailure
from auditchain.core.middleware import (
    RequestContextMiddleware,
    app_error_handler,
    rate_limit_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from auditchain.db.session import dispose_engine, get_session_factory
from auditchain.services.audit.service import build_audit_service
from auditchain.services.retention.scheduler import RetentionScheduler

_log = structlog.get_logger(__name__)

_ALEMBIC_INI = Path(__file__).resolve().parents[1] / "alembic.ini"


def _create_limiter(settings: Settings) -> Limiter:
    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit_default],
    )


def _run_migrations(settings: Settings) -> None:
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config(str(_ALEMBIC_INI))
    alembic_cfg.set_main_option("sqlalchemy.url", str(settings.database_url))
    alembic_cfg.attributes["configure_logger"] = False
    command.upgrade(alembic_cfg, "head")


async def _startup(app: FastAPI, settings: Settings) -> None:
    configure_logging(settings)
    _log.info(
        "auditchain_starting",
        version=settings.app_version,
        environment=settings.environment.value,
    )

    if settings.run_migrations_on_startup:
        try:
            await asyncio.to_thread(_run_migrations, settings)
            _log.info("migrations_applied")
        except Exception as exc:
            _log.warning("migration_failed", error=str(exc))

    # Tests may install a prebuilt service graph before startup
    if getattr(app.state, "audit_service", None) is None:
        redis: Redis | None = None
        if settings.cache_enabled or settings.streaming_enabled:
            redis = Redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=settings.redis_timeout_seconds,
                socket_connect_timeout=settings.redis_timeout_seconds,
            )
        app.state.redis = redis
        app.state.audit_service = build_audit_service(
            get_session_factory(settings), redis, settings
        )

    service = app.state.audit_service
    if service.cache.enabled:
        try:
            await service.warm_cache()
        except PersistenceFailure as exc:
            _log.warning("cache_warm_skipped", error=exc.message)

    scheduler = RetentionScheduler(service.retention, settings.retention_sweep_interval_seconds)
    scheduler.start()
    app.state.retention_scheduler = scheduler
    _log.info("auditchain_ready", host=settings.host, port=settings.port)


async def _shutdown(app: FastAPI) -> None:
    scheduler: RetentionScheduler | None = getattr(app.state, "retention_scheduler", None)
    if scheduler is not None:
        await scheduler.stop()

    service = getattr(app.state, "audit_service", None)
    if service is not None:
        await service.close()

    redis: Redis | None = getattr(app.state, "redis", None)
    if redis is not None:
        await redis.aclose()

    await dispose_engine()
    _log.info("auditchain_shutdown")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the AuditChain app; ``settings`` defaults to the process-wide instance."""
    settings = settings or get_settings()
    production = settings.environment.value == "production"

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Tamper-evident, hash-chained audit event log.",
        docs_url=None if production else "/docs",
        redoc_url=None if production else "/redoc",
        openapi_url=None if production else "/openapi.json",
    )

    # ── Startup / Shutdown ────────────────────────────────────────────── #
    @app.on_event("startup")
    async def on_startup() -> None:
        await _startup(app, settings)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await _shutdown(app)

    # ── Rate Limiting ─────────────────────────────────────────────────── #
    app.state.limiter = _create_limiter(settings)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)  # type: ignore[arg-type]
    app.add_middleware(SlowAPIMiddleware)

    # ── CORS ──────────────────────────────────────────────────────────── #
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID"],
    )

    # ── Custom Middleware ─────────────────────────────────────────────── #
    app.add_middleware(RequestContextMiddleware)

    # ── Exception Handlers ────────────────────────────────────────────── #
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ── Routes ────────────────────────────────────────────────────────── #
    app.include_router(v1_router)

    # ── Health ────────────────────────────────────────────────────────── #
    @app.get("/health", tags=["health"], summary="Health check")
    async def health(request: Request) -> dict[str, object]:
        """Chain activity, cache and streaming state, and DB reachability."""
        service = request.app.state.audit_service
        try:
            report: dict[str, object] = await service.health()
            report["database"] = "ok"
        except PersistenceFailure:
            report = {"status": "DEGRADED", "database": "unavailable"}
        report["version"] = settings.app_version
        return report

    # ── Metrics (Prometheus) ──────────────────────────────────────────── #
    @app.get("/metrics", tags=["observability"], summary="Prometheus metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


# Entry point for uvicorn
app = create_app()

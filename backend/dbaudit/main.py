"""
dbaudit: FastAPI application factory.

Application lifecycle:
  startup  → configure logging, build the AuditService unless one was injected
  shutdown → close the AuditService (audit log and notification registry)
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from dbaudit.api.v1.router import router as v1_router
from dbaudit.config.logging_config import configure_logging
from dbaudit.config.settings import Environment, Settings, get_settings
from dbaudit.core.errors import AppError
from dbaudit.core.middleware import (
    CorrelationIDMiddleware,
    SecurityHeadersMiddleware,
    app_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from dbaudit.services.audit.service import AuditService

_log = structlog.get_logger(__name__)


def _create_limiter(settings: Settings) -> Limiter:
    return Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit_default])


def create_app(settings: Settings | None = None, service: AuditService | None = None) -> FastAPI:
    """
    Application factory.

    ``service`` lets tests and embedding hosts supply a ready AuditService;
    otherwise one is built from ``settings`` at startup.
    """
    settings = settings or get_settings()
    expose_docs = settings.environment != Environment.PRODUCTION

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(
            log_level=settings.log_level.value,
            json_logs=settings.log_json,
            log_file=settings.log_file,
        )
        _log.info(
            "dbaudit_starting",
            version=settings.app_version,
            environment=settings.environment.value,
        )
        if getattr(app.state, "audit_service", None) is None:
            app.state.audit_service = AuditService.from_settings(settings)
        _log.info("dbaudit_ready", host=settings.host, port=settings.port)
        try:
            yield
        finally:
            app.state.audit_service.close()
            _log.info("dbaudit_shutdown")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Audit trail, security monitoring and notifications for database administration.",
        lifespan=lifespan,
        docs_url="/docs" if expose_docs else None,
        redoc_url="/redoc" if expose_docs else None,
        openapi_url="/openapi.json" if expose_docs else None,
    )
    app.state.settings = settings
    app.state.audit_service = service

    # ── Rate Limiting ─────────────────────────────────────────────────── #
    app.state.limiter = _create_limiter(settings)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]
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

    # ── Custom Middleware (applied in reverse order) ───────────────────── #
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationIDMiddleware)

    # ── Exception Handlers ────────────────────────────────────────────── #
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ── Routes ────────────────────────────────────────────────────────── #
    app.include_router(v1_router)

    # ── Health ────────────────────────────────────────────────────────── #
    @app.get("/health", tags=["health"], summary="Health check")
    def health(request: Request) -> dict[str, object]:
        audit_service: AuditService | None = request.app.state.audit_service
        log_ok = audit_service is not None and not audit_service.store.closed
        return {
            "status": "healthy" if log_ok else "degraded",
            "audit_log": "ok" if log_ok else "unavailable",
            "notifications": len(audit_service.bus) if audit_service else 0,
            "version": settings.app_version,
        }

    # ── Metrics (Prometheus) ──────────────────────────────────────────── #
    @app.get("/metrics", tags=["observability"], summary="Prometheus metrics")
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)

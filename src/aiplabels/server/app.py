"""
FastAPI application for the AIPLabels API service.

The app is built by ``create_app`` from an explicit ``Settings`` instance.
Startup loads the protection profile once for the process; if that fails
the application does not start.

Endpoints:
- /labels, /labels/set, /labels/remove, /labels/get
- /health (unversioned)
- /metrics (Prometheus)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from aiplabels import __version__
from aiplabels.auth.obo import OnBehalfOfBroker
from aiplabels.protection import EnginePool, LabelOperations, MipRuntime
from aiplabels.protection.base import ProtectionRuntime
from aiplabels.server.config import Settings, build_settings
from aiplabels.server.errors import register_exception_handlers
from aiplabels.server.logging import set_request_id, setup_logging
from aiplabels.server.metrics import (
    HTTP_ACTIVE_CONNECTIONS,
    metrics_router,
    record_http_request,
)
from aiplabels.server.routes import labels
from aiplabels.server.services import LabelService
from aiplabels.storage import StorageRouter

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    runtime: ProtectionRuntime | None = None,
    broker: OnBehalfOfBroker | None = None,
    storage: StorageRouter | None = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Configuration; loaded from YAML and environment when omitted.
        runtime: Protection SDK binding; the MIP SDK when omitted.
        broker: On-behalf-of broker; built from ``settings.auth`` when omitted.
        storage: Storage router; built from ``settings.storage`` when omitted.
    """
    settings = settings or build_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan - startup and shutdown handlers."""
        setup_logging(
            level=settings.logging.level,
            json_format=settings.use_json_logs,
            log_file=settings.logging.file,
        )

        protection_runtime = runtime or MipRuntime(settings)
        token_broker = broker or OnBehalfOfBroker(settings)
        storage_router = storage or StorageRouter(settings)

        # ProfileLoadError propagates and aborts startup
        profile = await asyncio.to_thread(protection_runtime.load_profile)
        app.state.profile_loaded = True

        pool = EnginePool(profile, token_broker, settings)
        app.state.engine_pool = pool
        app.state.label_service = LabelService(
            LabelOperations(pool, settings), storage_router, settings
        )
        logger.info("AIPLabels API v%s starting up", __version__)
        try:
            yield
        finally:
            app.state.label_service = None
            app.state.profile_loaded = False
            await pool.close()
            await storage_router.close()
            await asyncio.to_thread(protection_runtime.shutdown)
            logger.info("AIPLabels API shutting down")

    app = FastAPI(
        title="AIPLabels API",
        description="Sensitivity label operations on files in Azure storage",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.server.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.label_service = None
    app.state.profile_loaded = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors.allowed_origins,
        allow_credentials=settings.cors.allow_credentials,
        allow_methods=settings.cors.allow_methods,
        allow_headers=settings.cors.allow_headers,
    )

    # Security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        if settings.server.environment == "production":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        return response

    # Prometheus metrics middleware
    @app.middleware("http")
    async def track_metrics(request: Request, call_next):
        """Track HTTP request metrics for Prometheus."""
        if request.url.path == "/metrics":
            return await call_next(request)

        HTTP_ACTIVE_CONNECTIONS.inc()
        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            record_http_request(
                method=request.method,
                path=request.url.path,
                status=status_code,
                duration=time.perf_counter() - start_time,
            )
            HTTP_ACTIVE_CONNECTIONS.dec()

    # Request correlation ID middleware (outermost, added last)
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Add request correlation ID for tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        set_request_id(request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    register_exception_handlers(app)

    # Health check (unversioned)
    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "profile_loaded": bool(request.app.state.profile_loaded),
        }

    app.include_router(metrics_router)
    app.include_router(labels.router, prefix="/labels", tags=["Labels"])

    return app

"""
FastAPI application for the AIPLabels web client.

Serves the browser pages and forwards label actions to the API service
with the signed-in user's token. Sessions are signed cookies
(``itsdangerous`` through Starlette's ``SessionMiddleware``) holding only a
session id; token caches stay on the server.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from httpx import HTTPError, HTTPStatusError
from starlette.middleware.sessions import SessionMiddleware

from aiplabels import __version__
from aiplabels.exceptions import ReauthenticationRequired
from aiplabels.server.config import Settings, build_settings
from aiplabels.server.errors import create_error_response, register_exception_handlers
from aiplabels.server.logging import set_request_id, setup_logging
from aiplabels.storage import StorageRouter
from aiplabels.web import routes
from aiplabels.web.auth import WebAuthenticator
from aiplabels.web.client import LabelApiClient

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "aiplabels_session"
SESSION_COOKIE_MAX_AGE = 60 * 60 * 8  # 8 hours


async def reauthentication_handler(request: Request, exc: ReauthenticationRequired) -> JSONResponse:
    """Tell the page to send the browser through sign-in again."""
    logger.info("Re-authentication required on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"relogin": True})


async def api_error_handler(request: Request, exc: HTTPError) -> JSONResponse:
    """The API could not be reached or answered with an error."""
    if isinstance(exc, HTTPStatusError):
        logger.warning("API answered %d for %s", exc.response.status_code, request.url.path)
    else:
        logger.warning("API request failed for %s: %s", request.url.path, exc)
    return create_error_response(
        status_code=status.HTTP_502_BAD_GATEWAY,
        code="bad_gateway",
        message="The label service request failed",
    )


def create_web_app(
    settings: Settings | None = None,
    api: LabelApiClient | None = None,
    authenticator: WebAuthenticator | None = None,
    storage: StorageRouter | None = None,
) -> FastAPI:
    """
    Build the web client application.

    Args:
        settings: Configuration; loaded from YAML and environment when omitted.
        api: Client for the API service; built from ``settings.web`` when omitted.
        authenticator: MSAL sign-in; built from ``settings`` when omitted.
        storage: Storage router for uploads and downloads.
    """
    settings = settings or build_settings()
    api = api or LabelApiClient(
        settings.web.api_base_url,
        timeout=settings.timeouts.api_request,
        max_retries=settings.web.max_retries,
    )
    authenticator = authenticator or WebAuthenticator(settings)
    storage = storage or StorageRouter(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(
            level=settings.logging.level,
            json_format=settings.use_json_logs,
            log_file=settings.logging.file,
        )
        logger.info("AIPLabels web client v%s starting up", __version__)
        try:
            yield
        finally:
            await api.close()
            await storage.close()
            logger.info("AIPLabels web client shutting down")

    app = FastAPI(
        title="AIPLabels Web",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.api = api
    app.state.authenticator = authenticator
    app.state.storage = storage

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.web.session_secret,
        session_cookie=SESSION_COOKIE_NAME,
        max_age=SESSION_COOKIE_MAX_AGE,
        same_site="lax",
        https_only=settings.server.environment == "production",
    )

    # Request correlation ID middleware (outermost, added last)
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        set_request_id(request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    register_exception_handlers(app)
    app.add_exception_handler(ReauthenticationRequired, reauthentication_handler)
    app.add_exception_handler(HTTPError, api_error_handler)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": __version__}

    app.include_router(routes.router)
    app.add_api_route(settings.web.redirect_path, routes.auth_callback, methods=["GET"])

    return app

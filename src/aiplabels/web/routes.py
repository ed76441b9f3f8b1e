"""
Web client routes.

Pages are Jinja2 templates; the label and storage actions are small JSON
endpoints the pages call with ``fetch``. Every label action acquires an
API-scoped token silently for the signed-in session and forwards the call
to the API. When no token can be had silently the action answers
``401 {"relogin": true}`` and the page sends the browser to /login.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import HTMLResponse, RedirectResponse, StreamingResponse
from fastapi.templating import Jinja2Templates
from httpx import HTTPError
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from aiplabels.exceptions import ReauthenticationRequired
from aiplabels.web.auth import generate_session_id

logger = logging.getLogger(__name__)

router = APIRouter()

# Set up templates directory
templates_dir = Path(__file__).parent / "templates"
templates = Jinja2Templates(directory=str(templates_dir))

SESSION_ID_KEY = "sid"
SESSION_USER_KEY = "user"
SESSION_FLOW_KEY = "auth_flow"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LabelActionRequest(CamelModel):
    """Form posted by the index page; ``labelId`` falls back to the configured default."""

    blob_url: str = Field(min_length=1)
    label_id: Optional[str] = None
    justification_message: Optional[str] = None


# =============================================================================
# HELPERS
# =============================================================================


def _redirect_uri(request: Request) -> str:
    settings = request.app.state.settings
    return str(request.base_url).rstrip("/") + settings.web.redirect_path


async def _token(request: Request) -> str:
    """Silent API token for this browser session."""
    return await request.app.state.authenticator.acquire_token(
        request.session.get(SESSION_ID_KEY)
    )


def _label_id(requested: Optional[str], fallback: Optional[str]) -> str:
    label_id = requested or fallback
    if not label_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No label id given and none configured",
        )
    return label_id


# =============================================================================
# PAGES
# =============================================================================


@router.get("/", response_class=HTMLResponse)
async def index(request: Request):
    """Label tree and forms for set / remove / get."""
    settings = request.app.state.settings
    try:
        token = await _token(request)
    except ReauthenticationRequired:
        return RedirectResponse(url="/login", status_code=302)

    labels: list[dict] = []
    error = None
    try:
        labels = await request.app.state.api.list_labels(token)
    except ReauthenticationRequired:
        return RedirectResponse(url="/login", status_code=302)
    except HTTPError as e:
        logger.warning("Could not load labels from the API: %s", e)
        error = "The label service is not reachable."

    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "active_page": "labels",
            "user": request.session.get(SESSION_USER_KEY),
            "labels": labels,
            "error": error,
            "default_label_id": settings.web.default_label_id,
        },
    )


@router.get("/storage", response_class=HTMLResponse)
async def storage_page(request: Request):
    """Upload a local file to the source container."""
    try:
        await _token(request)
    except ReauthenticationRequired:
        return RedirectResponse(url="/login", status_code=302)
    return templates.TemplateResponse(
        request,
        "storage.html",
        {
            "active_page": "storage",
            "user": request.session.get(SESSION_USER_KEY),
            "source_container": request.app.state.settings.storage.source_container,
        },
    )


# =============================================================================
# SIGN-IN
# =============================================================================


@router.get("/login")
async def login(request: Request):
    authenticator = request.app.state.authenticator
    if not authenticator.enabled:
        return RedirectResponse(url="/", status_code=302)

    flow = await authenticator.begin_login(_redirect_uri(request))
    request.session[SESSION_FLOW_KEY] = flow
    return RedirectResponse(url=flow["auth_uri"], status_code=302)


async def auth_callback(request: Request):
    """
    Redeem the authorization code.

    Registered by the app factory at ``web.redirect_path``.
    """
    flow = request.session.pop(SESSION_FLOW_KEY, None)
    if not flow:
        return RedirectResponse(url="/login", status_code=302)

    authenticator = request.app.state.authenticator
    # Fresh session id on every sign-in
    authenticator.sign_out(request.session.get(SESSION_ID_KEY))
    session_id = generate_session_id()
    claims = await authenticator.complete_login(session_id, flow, dict(request.query_params))

    request.session[SESSION_ID_KEY] = session_id
    request.session[SESSION_USER_KEY] = claims.get("preferred_username") or claims.get("name")
    logger.info("User signed in: %s", request.session[SESSION_USER_KEY])
    return RedirectResponse(url="/", status_code=302)


@router.get("/logout")
async def logout(request: Request):
    authenticator = request.app.state.authenticator
    authenticator.sign_out(request.session.get(SESSION_ID_KEY))
    request.session.clear()
    return RedirectResponse(url=authenticator.logout_url(str(request.base_url)), status_code=302)


# =============================================================================
# LABEL ACTIONS
# =============================================================================


@router.get("/labels")
async def list_labels(request: Request, max_depth: Optional[int] = Query(None, alias="maxDepth", ge=0)):
    token = await _token(request)
    return await request.app.state.api.list_labels(token, max_depth=max_depth)


@router.post("/labels/set")
async def set_label(body: LabelActionRequest, request: Request):
    settings = request.app.state.settings
    label_id = _label_id(body.label_id, settings.web.default_label_id)
    token = await _token(request)
    return await request.app.state.api.set_label(
        token, body.blob_url, label_id, justification=body.justification_message
    )


@router.post("/labels/custom-permission")
async def set_custom_permission(body: LabelActionRequest, request: Request):
    """Apply a label with ad-hoc protection for the configured users and rights."""
    web = request.app.state.settings.web
    label_id = _label_id(body.label_id, web.custom_label_id)
    if not web.custom_permission_users or not web.custom_permission_rights:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No custom permission users or rights configured",
        )
    token = await _token(request)
    user_rights = [{"users": web.custom_permission_users, "rights": web.custom_permission_rights}]
    return await request.app.state.api.set_label(
        token,
        body.blob_url,
        label_id,
        justification=body.justification_message,
        user_rights=user_rights,
    )


@router.post("/labels/remove")
async def remove_label(body: LabelActionRequest, request: Request):
    token = await _token(request)
    return await request.app.state.api.remove_label(
        token, body.blob_url, justification=body.justification_message
    )


@router.post("/labels/get")
async def get_label(body: LabelActionRequest, request: Request):
    token = await _token(request)
    return await request.app.state.api.get_label(token, body.blob_url)


# =============================================================================
# STORAGE
# =============================================================================


@router.post("/storage/upload")
async def upload_file(request: Request, file: UploadFile = File(...)):
    """Upload a browser file to the source container and report its URL."""
    await _token(request)
    settings = request.app.state.settings
    storage = request.app.state.storage

    name = Path(file.filename or "").name
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A file name is required")

    data = await file.read()
    max_bytes = settings.storage.max_file_size_mb * 1024 * 1024
    if len(data) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large: {len(data)} bytes (max: {max_bytes} bytes)",
        )

    url = await storage.blob.upload(
        settings.storage.source_container,
        name,
        data,
        account_url=settings.storage.account_url,
    )
    return {"url": url, "fileName": name, "size": len(data)}


@router.get("/storage/download")
async def download_file(request: Request, url: str = Query(..., min_length=1)):
    """Stream a stored file (typically a labeled target) back to the browser."""
    await _token(request)
    locator = request.app.state.storage.parse(url)
    stream = request.app.state.storage.open_stream(locator)

    # Pull the first chunk so a missing file fails before the response starts
    try:
        first = await anext(stream)
    except StopAsyncIteration:
        first = b""

    async def body():
        try:
            yield first
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()

    return StreamingResponse(
        body(),
        media_type="application/octet-stream",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(locator.file_name)}"},
    )

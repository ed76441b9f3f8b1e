"""
FastAPI dependency injection for the AIPLabels API.

Everything a route needs is built once by the app factory and kept on
``app.state``; these providers hand it out.

Usage:
    from aiplabels.server.dependencies import CallerDep, LabelServiceDep

    @router.post("/labels/get")
    async def get_label(caller: CallerDep, service: LabelServiceDep):
        ...
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from aiplabels.auth.dependencies import get_caller
from aiplabels.auth.oauth import CallerIdentity
from aiplabels.server.config import Settings
from aiplabels.server.services import LabelService


# =============================================================================
# SETTINGS PROVIDER
# =============================================================================


def get_app_settings(request: Request) -> Settings:
    """Settings the application was built with."""
    return request.app.state.settings


SettingsDep = Annotated[Settings, Depends(get_app_settings)]


# =============================================================================
# AUTHENTICATION
# =============================================================================


CallerDep = Annotated[CallerIdentity, Depends(get_caller)]


# =============================================================================
# SERVICES
# =============================================================================


def get_label_service(request: Request) -> LabelService:
    """
    The label service, available once the protection profile is loaded.

    Raises:
        HTTPException: 503 when the service is not ready.
    """
    service = getattr(request.app.state, "label_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Label service is not available",
        )
    return service


LabelServiceDep = Annotated[LabelService, Depends(get_label_service)]

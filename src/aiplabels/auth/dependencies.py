"""
FastAPI dependencies for bearer authentication.

Supports Azure AD and dev-mode authentication.
"""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from aiplabels.auth.oauth import DEV_CLAIMS, CallerIdentity, validate_token
from aiplabels.exceptions import AuthError
from aiplabels.server.config import Settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CallerIdentity:
    """Validate the bearer token and return the caller with its assertion."""
    settings = _settings(request)

    if settings.auth.provider == "none":
        if not settings.server.debug:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Auth provider 'none' requires server.debug=True.",
            )
        token = credentials.credentials if credentials else ""
        return CallerIdentity(claims=DEV_CLAIMS, assertion=token)

    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    try:
        claims = await validate_token(token, settings)
    except (ValueError, AuthError) as e:
        # Log specific error server-side; return generic message to client
        logger.debug("Token validation failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    return CallerIdentity(claims=claims, assertion=token)

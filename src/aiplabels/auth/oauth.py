"""
OAuth 2.0 bearer token validation for the API service.

Supports:
- Azure AD via direct JWKS validation (provider="azure_ad")
- Dev mode bypass (provider="none" + debug=True)

Features:
- JWT token validation against the tenant's JWKS
- Thread-safe JWKS caching with asyncio.Lock
- Automatic JWKS refresh on key rotation
- Granular token error types (expired vs invalid)

The raw token is kept next to the validated claims: it is the user
assertion for the downstream on-behalf-of exchange.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx
import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidSignatureError, PyJWTError
from pydantic import BaseModel, model_validator

from aiplabels.exceptions import TokenExpiredError, TokenInvalidError
from aiplabels.server.config import Settings

logger = logging.getLogger(__name__)


class TokenClaims(BaseModel):
    """Claims extracted from a validated access token."""

    oid: str  # Azure AD object ID
    upn: str  # UPN / preferred_username; the protection engine identity
    name: str | None = None
    tenant_id: str
    scopes: list[str] = []
    roles: list[str] = []
    provider: str = "azure_ad"

    @model_validator(mode="before")
    @classmethod
    def validate_required_claims(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Validate identity claims are not empty."""
        if isinstance(data, dict):
            for field in ("oid", "upn", "tenant_id"):
                value = data.get(field, "")
                if not value or not str(value).strip():
                    raise ValueError(f"{field} cannot be empty")
        return data


class CallerIdentity(BaseModel):
    """Validated caller plus the token it presented."""

    claims: TokenClaims
    assertion: str

    @property
    def identity(self) -> str:
        return self.claims.upn


DEV_CLAIMS = TokenClaims(
    oid="dev-user-oid",
    upn="dev@localhost",
    name="Development User",
    tenant_id="dev-tenant",
    scopes=["user_impersonation"],
    provider="none",
)


# Maps tenant_id -> (jwks_data, fetched_at_monotonic)
_jwks_cache: dict[str, tuple[dict[str, Any], float]] = {}
_jwks_lock = asyncio.Lock()

# JWKS cache TTL in seconds (1 hour), so rotated keys are picked up
_JWKS_CACHE_TTL_SECONDS = 3600


async def get_jwks(settings: Settings, tenant_id: str) -> dict[str, Any]:
    """Fetch the tenant's JWKS with TTL-based caching.

    Uses double-checked locking so that concurrent requests waiting for the
    same tenant don't all fetch simultaneously.
    """
    now = time.monotonic()

    if tenant_id in _jwks_cache:
        cached_data, fetched_at = _jwks_cache[tenant_id]
        if now - fetched_at < _JWKS_CACHE_TTL_SECONDS:
            return cached_data

    async with _jwks_lock:
        now = time.monotonic()
        if tenant_id in _jwks_cache:
            cached_data, fetched_at = _jwks_cache[tenant_id]
            if now - fetched_at < _JWKS_CACHE_TTL_SECONDS:
                return cached_data

        jwks_uri = f"{settings.auth.instance.rstrip('/')}/{tenant_id}/discovery/v2.0/keys"
        async with httpx.AsyncClient(timeout=settings.timeouts.jwks_fetch) as client:
            response = await client.get(jwks_uri)
            response.raise_for_status()
            jwks_data: dict[str, Any] = response.json()
            _jwks_cache[tenant_id] = (jwks_data, time.monotonic())
            return jwks_data


async def _find_signing_key(settings: Settings, kid: str, tenant_id: str) -> dict[str, Any]:
    """Find the signing key matching *kid*, refreshing the cache if needed."""
    jwks = await get_jwks(settings, tenant_id)
    for k in jwks.get("keys", []):
        if k.get("kid") == kid:
            return k

    # Key not found: Azure AD may have rotated keys
    _jwks_cache.pop(tenant_id, None)
    jwks = await get_jwks(settings, tenant_id)
    for k in jwks.get("keys", []):
        if k.get("kid") == kid:
            return k

    raise TokenInvalidError("Unable to find signing key after cache refresh")


def _accepted_audiences(settings: Settings) -> list[str]:
    client_id = settings.auth.client_id or ""
    return [client_id, f"api://{client_id}"]


def _accepted_issuers(settings: Settings, tenant_id: str) -> list[str]:
    # v1 tokens come from sts.windows.net, v2 from the login instance
    return [
        f"{settings.auth.instance.rstrip('/')}/{tenant_id}/v2.0",
        f"https://sts.windows.net/{tenant_id}/",
    ]


def claims_from_payload(payload: dict[str, Any], default_tenant: str) -> TokenClaims:
    """Normalize a decoded Azure AD payload into ``TokenClaims``."""
    upn = payload.get("upn") or payload.get("preferred_username") or payload.get("unique_name")
    scopes = (payload.get("scp") or "").split()
    return TokenClaims(
        oid=payload.get("oid", ""),
        upn=upn or "",
        name=payload.get("name"),
        tenant_id=payload.get("tid", default_tenant),
        scopes=scopes,
        roles=payload.get("roles", []),
        provider="azure_ad",
    )


async def validate_token(token: str, settings: Settings) -> TokenClaims:
    """Validate a bearer token and extract claims.

    Raises:
        TokenExpiredError: If the token has expired.
        TokenInvalidError: If the token is malformed, has an invalid
            signature, or the signing key cannot be found.
        ValueError: If auth is misconfigured (provider "none" in prod).
    """
    if settings.auth.provider == "none":
        if not settings.server.debug:
            raise ValueError(
                "Auth provider 'none' is only allowed when server.debug is True. "
                "Refusing to bypass authentication in non-debug mode."
            )
        return DEV_CLAIMS

    tenant_id = settings.auth.tenant_id
    if not tenant_id:
        raise TokenInvalidError("auth.tenant_id is not configured")

    try:
        unverified_header = jwt.get_unverified_header(token)
        kid = unverified_header.get("kid")
        if not kid:
            raise TokenInvalidError("Token header missing 'kid' claim")

        key_data = await _find_signing_key(settings, kid, tenant_id)
        signing_key = jwt.PyJWK(key_data)

        payload = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=_accepted_audiences(settings),
            issuer=_accepted_issuers(settings, tenant_id),
        )
    except (TokenExpiredError, TokenInvalidError):
        raise
    except ExpiredSignatureError as e:
        raise TokenExpiredError(f"Token expired: {e}") from e
    except InvalidSignatureError as e:
        raise TokenInvalidError(f"Invalid signature: {e}") from e
    except PyJWTError as e:
        raise TokenInvalidError(f"Invalid token: {e}") from e

    try:
        return claims_from_payload(payload, tenant_id)
    except ValueError as e:
        raise TokenInvalidError(f"Token is missing identity claims: {e}") from e


def clear_jwks_cache() -> None:
    """Clear the JWKS cache (useful for testing or key rotation)."""
    _jwks_cache.clear()

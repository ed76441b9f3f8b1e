"""
On-behalf-of token broker.

Exchanges the caller's inbound access token (the user assertion) for a token
scoped to a downstream resource, using MSAL's confidential client. The
confidential client presents either a client secret or a client
certificate, depending on ``auth.use_certificate``.

The protection SDK asks for tokens from its own worker thread, so the broker
exposes a synchronous path (``acquire_token_sync``) next to the async one
used by request handlers.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any

import msal

from aiplabels.exceptions import (
    ConfigurationError,
    ConsentRequiredError,
    OperationTimeoutError,
    TokenExchangeError,
)
from aiplabels.server.config import Settings
from aiplabels.server.metrics import record_token_exchange

logger = logging.getLogger(__name__)

# MSAL error values that mean the user has to sign in (or consent) again
_CONSENT_ERRORS = frozenset({
    "invalid_grant",
    "interaction_required",
    "consent_required",
    "login_required",
})

# AADSTS codes: 65001 consent missing, 50076/50079 MFA required,
# 50013/500133 assertion invalid or expired
_CONSENT_ERROR_CODES = frozenset({65001, 50076, 50079, 50013, 500133})


def to_scope(resource: str) -> str:
    """Turn a resource URI into its ``.default`` scope.

    >>> to_scope("https://syncservice.o365syncservice.com/")
    'https://syncservice.o365syncservice.com/.default'
    >>> to_scope("https://aadrm.com")
    'https://aadrm.com/.default'
    """
    if resource.endswith("/"):
        return f"{resource}.default"
    return f"{resource}/.default"


def load_certificate_credential(path: str, thumbprint: str) -> dict[str, str]:
    """Build an MSAL certificate credential from a PEM file.

    The file must contain the private key; the public certificate is sent
    along (x5c) when present so subject-name/issuer auth also works.
    """
    pem_path = Path(path)
    if not pem_path.exists():
        raise ConfigurationError(
            "Client certificate not found",
            details={"certificate_path": path},
        )
    pem = pem_path.read_text(encoding="utf-8")
    credential = {
        "private_key": pem,
        "thumbprint": thumbprint.replace(":", "").replace(" ", "").upper(),
    }
    if "BEGIN CERTIFICATE" in pem:
        credential["public_certificate"] = pem
    return credential


def _is_consent_error(result: dict[str, Any]) -> bool:
    if result.get("error") in _CONSENT_ERRORS:
        return True
    if result.get("suberror") in {"consent_required", "basic_action", "additional_action"}:
        return True
    codes = set(result.get("error_codes") or [])
    return bool(codes & _CONSENT_ERROR_CODES)


class OnBehalfOfBroker:
    """Confidential-client token broker for delegated (on-behalf-of) exchange.

    One MSAL application is built per authority and reused, which also
    reuses MSAL's in-memory token cache across requests from the same user.
    """

    def __init__(self, settings: Settings):
        auth = settings.auth
        if not auth.client_id:
            raise ConfigurationError("auth.client_id is not configured")
        if not auth.authority:
            raise ConfigurationError("auth.tenant_id is not configured")

        self.client_id = auth.client_id
        self.default_authority = auth.authority
        self.timeout = settings.timeouts.identity_exchange
        self.credential_mode = "certificate" if auth.use_certificate else "secret"

        if auth.use_certificate:
            self._credential: Any = load_certificate_credential(
                auth.certificate_path or "", auth.certificate_thumbprint or ""
            )
        else:
            if not auth.client_secret:
                raise ConfigurationError("auth.client_secret is not configured")
            self._credential = auth.client_secret

        self._apps: dict[str, msal.ConfidentialClientApplication] = {}
        self._apps_lock = threading.Lock()

    def _get_app(self, authority: str | None) -> msal.ConfidentialClientApplication:
        authority = (authority or self.default_authority).rstrip("/")
        with self._apps_lock:
            app = self._apps.get(authority)
            if app is None:
                app = msal.ConfidentialClientApplication(
                    self.client_id,
                    authority=authority,
                    client_credential=self._credential,
                    timeout=self.timeout,
                )
                self._apps[authority] = app
        return app

    def acquire_token_sync(
        self,
        user_assertion: str,
        resource: str,
        authority: str | None = None,
        claims_challenge: str | None = None,
    ) -> str:
        """Exchange *user_assertion* for a token scoped to *resource*.

        Raises:
            ConsentRequiredError: the assertion is missing, invalid, expired or
                the user has not consented; the caller must re-authenticate.
            TokenExchangeError: any other identity provider failure.
        """
        if not user_assertion:
            record_token_exchange("consent_required")
            raise ConsentRequiredError("No user assertion available for on-behalf-of exchange")

        scopes = [to_scope(resource)]
        app = self._get_app(authority)

        try:
            result = app.acquire_token_on_behalf_of(
                user_assertion,
                scopes,
                claims_challenge=claims_challenge,
            )
        except (ValueError, OSError) as e:
            record_token_exchange("error")
            raise TokenExchangeError(
                f"Token exchange request failed: {e}", resource=resource
            ) from e

        if result and "access_token" in result:
            record_token_exchange("success")
            logger.debug("On-behalf-of token acquired for %s", scopes[0])
            return result["access_token"]

        result = result or {}
        error = result.get("error")
        description = result.get("error_description") or "Unknown error"

        if _is_consent_error(result):
            record_token_exchange("consent_required")
            logger.info("On-behalf-of exchange requires user interaction: %s", error)
            raise ConsentRequiredError(
                description,
                error_code=error,
                claims=result.get("claims"),
            )

        record_token_exchange("error")
        logger.warning("On-behalf-of exchange failed: %s", error)
        raise TokenExchangeError(description, error_code=error, resource=resource)

    async def acquire_token(
        self,
        user_assertion: str,
        resource: str,
        authority: str | None = None,
        claims_challenge: str | None = None,
    ) -> str:
        """Async form of ``acquire_token_sync`` bounded by the identity timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self.acquire_token_sync,
                    user_assertion,
                    resource,
                    authority,
                    claims_challenge,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            record_token_exchange("timeout")
            raise OperationTimeoutError("on-behalf-of exchange", self.timeout) from e

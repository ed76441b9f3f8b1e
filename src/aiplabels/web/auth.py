"""
Sign-in for the web client.

Azure AD authorization code flow through MSAL. The browser only carries a
signed session cookie holding a random session id; the MSAL token cache for
that session stays on the server in a ``TokenCacheStore``. Every call to
the API acquires an API-scoped token silently from that cache.

Flow:
1. User visits /login; the auth code flow is started and kept in the session
2. Redirected to the Microsoft sign-in page
3. Azure AD redirects to /auth/callback with the authorization code
4. The code is redeemed and the token cache stored under the session id
5. Later requests call ``acquire_token``; when MSAL cannot answer silently
   ``ReauthenticationRequired`` is raised and the browser signs in again

With ``auth.provider == "none"`` (debug only) the flow is skipped and a
fixed development token is used.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
import time
from collections import OrderedDict
from typing import Any, Callable
from urllib.parse import quote

import msal

from aiplabels.exceptions import (
    AuthError,
    ConfigurationError,
    OperationTimeoutError,
    ReauthenticationRequired,
)
from aiplabels.server.config import Settings

logger = logging.getLogger(__name__)

DEV_TOKEN = "dev-token"


def generate_session_id() -> str:
    """Generate secure session ID."""
    return secrets.token_urlsafe(32)


class TokenCacheStore:
    """
    Serialized MSAL token caches keyed by session id.

    Kept in process memory; a restart signs every user out. A cache not
    used for ``ttl_seconds`` is dropped, and once ``max_entries`` sessions
    are held the least recently used one is dropped first, so abandoned
    browser sessions do not keep refresh tokens around.
    """

    def __init__(
        self,
        ttl_seconds: float = 8 * 60 * 60,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._caches: OrderedDict[str, tuple[str, float]] = OrderedDict()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        expired = [sid for sid, (_, last_used) in self._caches.items() if now - last_used >= self.ttl]
        for sid in expired:
            del self._caches[sid]
        while len(self._caches) > self.max_entries:
            self._caches.popitem(last=False)
        if expired:
            logger.debug("Dropped %d idle token caches", len(expired))

    def load(self, session_id: str) -> msal.SerializableTokenCache:
        cache = msal.SerializableTokenCache()
        with self._lock:
            now = self._clock()
            self._evict(now)
            entry = self._caches.get(session_id)
            if entry is not None:
                state = entry[0]
                self._caches[session_id] = (state, now)
                self._caches.move_to_end(session_id)
            else:
                state = None
        if state:
            cache.deserialize(state)
        return cache

    def save(self, session_id: str, cache: msal.SerializableTokenCache) -> None:
        if cache.has_state_changed:
            with self._lock:
                now = self._clock()
                self._caches[session_id] = (cache.serialize(), now)
                self._caches.move_to_end(session_id)
                self._evict(now)

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._caches.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            self._evict(self._clock())
            return session_id in self._caches

    def __len__(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return len(self._caches)


class WebAuthenticator:
    """
    MSAL confidential client for the web client's own app registration.

    Example:
        auth = WebAuthenticator(settings)
        flow = await auth.begin_login("https://web.example.com/auth/callback")
        ...
        user = await auth.complete_login(session_id, flow, dict(request.query_params))
        token = await auth.acquire_token(session_id)
    """

    def __init__(self, settings: Settings, store: TokenCacheStore | None = None):
        self.settings = settings
        self.store = store or TokenCacheStore(
            ttl_seconds=settings.web.session_ttl_seconds,
            max_entries=settings.web.max_sessions,
        )
        self.timeout = settings.timeouts.identity_exchange

    @property
    def enabled(self) -> bool:
        return self.settings.auth.provider != "none"

    @property
    def scopes(self) -> list[str]:
        if not self.settings.web.api_scope:
            raise ConfigurationError("web.api_scope is required to call the API")
        return [self.settings.web.api_scope]

    def _get_app(
        self, cache: msal.SerializableTokenCache | None = None
    ) -> msal.ConfidentialClientApplication:
        web = self.settings.web
        authority = self.settings.auth.authority
        if not web.client_id or not web.client_secret or not authority:
            raise ConfigurationError(
                "web.client_id, web.client_secret and auth.tenant_id are required for sign-in"
            )
        return msal.ConfidentialClientApplication(
            client_id=web.client_id,
            client_credential=web.client_secret,
            authority=authority,
            token_cache=cache,
        )

    async def _run(self, func, *args, operation: str):
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(operation, self.timeout) from e

    async def begin_login(self, redirect_uri: str) -> dict[str, Any]:
        """Start the auth code flow; the returned flow goes into the session."""
        app = self._get_app()
        return await self._run(
            lambda: app.initiate_auth_code_flow(self.scopes, redirect_uri=redirect_uri),
            operation="sign-in",
        )

    def _redeem(self, session_id: str, flow: dict, auth_response: dict) -> dict[str, Any]:
        cache = self.store.load(session_id)
        app = self._get_app(cache)
        try:
            result = app.acquire_token_by_auth_code_flow(flow, auth_response)
        except ValueError as e:
            # MSAL raises on state mismatch or a replayed response
            raise AuthError("Invalid authentication response", context=str(e)) from e

        if "error" in result:
            raise AuthError(
                result.get("error_description") or "Sign-in failed",
                details={"error": result["error"]},
            )
        self.store.save(session_id, cache)
        return result.get("id_token_claims", {})

    async def complete_login(
        self, session_id: str, flow: dict, auth_response: dict
    ) -> dict[str, Any]:
        """
        Redeem the authorization code.

        Returns:
            The signed-in user's ID token claims.

        Raises:
            AuthError: The provider refused the code or the state did not match.
        """
        return await self._run(self._redeem, session_id, flow, auth_response, operation="sign-in")

    def _silent(self, session_id: str) -> str:
        cache = self.store.load(session_id)
        app = self._get_app(cache)
        accounts = app.get_accounts()
        if not accounts:
            raise ReauthenticationRequired("No signed-in account for this session")

        result = app.acquire_token_silent(self.scopes, account=accounts[0])
        if not result or "access_token" not in result:
            error = (result or {}).get("error", "no_token")
            raise ReauthenticationRequired(
                "A token could not be acquired silently", details={"error": error}
            )
        self.store.save(session_id, cache)
        return result["access_token"]

    async def acquire_token(self, session_id: str | None) -> str:
        """
        API-scoped access token for a signed-in session.

        Raises:
            ReauthenticationRequired: The user has to sign in again.
        """
        if not self.enabled:
            return DEV_TOKEN
        if not session_id or session_id not in self.store:
            raise ReauthenticationRequired("Not signed in")
        return await self._run(self._silent, session_id, operation="token acquisition")

    def sign_out(self, session_id: str | None) -> None:
        if session_id:
            self.store.remove(session_id)

    def logout_url(self, post_logout_redirect_uri: str) -> str:
        """Azure AD end-session URL."""
        authority = self.settings.auth.authority
        if not self.enabled or not authority:
            return post_logout_redirect_uri
        return (
            f"{authority}/oauth2/v2.0/logout"
            f"?post_logout_redirect_uri={quote(post_logout_redirect_uri, safe='')}"
        )

"""
Tests for web client sign-in and silent token acquisition.

MSAL's ConfidentialClientApplication is patched; the token cache store is real.
"""

from unittest.mock import MagicMock, patch

import pytest

from aiplabels.exceptions import AuthError, ConfigurationError, ReauthenticationRequired

SCOPE = "api://aiplabels/user_impersonation"


@pytest.fixture
def sso_settings(settings):
    sso = settings.model_copy(deep=True)
    sso.auth.provider = "azure_ad"
    sso.auth.tenant_id = "contoso"
    sso.web.client_id = "web-client"
    sso.web.client_secret = "web-secret"
    return sso


@pytest.fixture
def msal_app():
    """Patched MSAL app; ``caches`` collects the token cache of every construction."""
    app = MagicMock()
    caches = []

    def build(**kwargs):
        caches.append(kwargs.get("token_cache"))
        return app

    with patch("aiplabels.web.auth.msal.ConfidentialClientApplication", side_effect=build) as cls:
        app.cls = cls
        app.caches = caches
        yield app


def changed_cache(state="{}"):
    cache = MagicMock()
    cache.has_state_changed = True
    cache.serialize.return_value = state
    return cache


class TestTokenCacheStore:
    def test_save_and_load(self):
        from aiplabels.web.auth import TokenCacheStore

        store = TokenCacheStore()
        store.save("sid-1", changed_cache())

        assert "sid-1" in store
        assert len(store) == 1
        assert store.load("sid-1") is not None

    def test_unchanged_cache_not_saved(self):
        from aiplabels.web.auth import TokenCacheStore

        store = TokenCacheStore()
        store.save("sid-1", store.load("sid-1"))

        assert "sid-1" not in store

    def test_remove(self):
        from aiplabels.web.auth import TokenCacheStore

        store = TokenCacheStore()
        store.save("sid-1", changed_cache())
        store.remove("sid-1")
        store.remove("never-existed")

        assert len(store) == 0

    def test_idle_cache_expires(self):
        from aiplabels.web.auth import TokenCacheStore

        clock = MagicMock(return_value=1000.0)
        store = TokenCacheStore(ttl_seconds=60, clock=clock)
        store.save("sid-1", changed_cache())

        clock.return_value = 1059.0
        assert "sid-1" in store
        clock.return_value = 1120.0

        assert "sid-1" not in store
        assert len(store) == 0

    def test_use_keeps_cache_alive(self):
        from aiplabels.web.auth import TokenCacheStore

        clock = MagicMock(return_value=1000.0)
        store = TokenCacheStore(ttl_seconds=60, clock=clock)
        store.save("sid-1", changed_cache())

        clock.return_value = 1050.0
        store.load("sid-1")
        clock.return_value = 1100.0

        assert "sid-1" in store

    def test_least_recently_used_dropped_at_capacity(self):
        from aiplabels.web.auth import TokenCacheStore

        store = TokenCacheStore(max_entries=2)
        store.save("sid-1", changed_cache())
        store.save("sid-2", changed_cache())
        store.load("sid-1")
        store.save("sid-3", changed_cache())

        assert len(store) == 2
        assert "sid-1" in store
        assert "sid-2" not in store

    def test_session_ids_are_unique(self):
        from aiplabels.web.auth import generate_session_id

        assert generate_session_id() != generate_session_id()


class TestDevMode:
    @pytest.mark.asyncio
    async def test_fixed_token(self, settings):
        from aiplabels.web.auth import DEV_TOKEN, WebAuthenticator

        authenticator = WebAuthenticator(settings)

        assert not authenticator.enabled
        assert await authenticator.acquire_token(None) == DEV_TOKEN

    def test_logout_url_is_local(self, settings):
        from aiplabels.web.auth import WebAuthenticator

        assert WebAuthenticator(settings).logout_url("http://test/") == "http://test/"


class TestSignIn:
    @pytest.mark.asyncio
    async def test_begin_login(self, sso_settings, msal_app):
        from aiplabels.web.auth import WebAuthenticator

        msal_app.initiate_auth_code_flow.return_value = {"auth_uri": "https://login/authorize", "state": "s"}

        flow = await WebAuthenticator(sso_settings).begin_login("http://test/auth/callback")

        assert flow["auth_uri"] == "https://login/authorize"
        msal_app.initiate_auth_code_flow.assert_called_once_with(
            [SCOPE], redirect_uri="http://test/auth/callback"
        )
        msal_app.cls.assert_called_once_with(
            client_id="web-client",
            client_credential="web-secret",
            authority="https://login.microsoftonline.com/contoso",
            token_cache=None,
        )

    @pytest.mark.asyncio
    async def test_complete_login_stores_cache(self, sso_settings, msal_app):
        from aiplabels.web.auth import WebAuthenticator

        def redeem(flow, auth_response):
            msal_app.caches[-1].has_state_changed = True
            return {"access_token": "api-token", "id_token_claims": {"preferred_username": "alice@contoso.com"}}

        msal_app.acquire_token_by_auth_code_flow.side_effect = redeem
        authenticator = WebAuthenticator(sso_settings)

        claims = await authenticator.complete_login("sid-1", {"state": "s"}, {"code": "c", "state": "s"})

        assert claims["preferred_username"] == "alice@contoso.com"
        assert "sid-1" in authenticator.store

    @pytest.mark.asyncio
    async def test_complete_login_error(self, sso_settings, msal_app):
        from aiplabels.web.auth import WebAuthenticator

        msal_app.acquire_token_by_auth_code_flow.return_value = {
            "error": "invalid_grant",
            "error_description": "AADSTS70008: The authorization code has expired.",
        }
        authenticator = WebAuthenticator(sso_settings)

        with pytest.raises(AuthError, match="AADSTS70008") as exc_info:
            await authenticator.complete_login("sid-1", {}, {"code": "c"})
        assert exc_info.value.details["error"] == "invalid_grant"
        assert "sid-1" not in authenticator.store

    @pytest.mark.asyncio
    async def test_state_mismatch(self, sso_settings, msal_app):
        from aiplabels.web.auth import WebAuthenticator

        msal_app.acquire_token_by_auth_code_flow.side_effect = ValueError("state missing from auth_code_flow")

        with pytest.raises(AuthError, match="Invalid authentication response"):
            await WebAuthenticator(sso_settings).complete_login("sid-1", {}, {"code": "c"})

    @pytest.mark.asyncio
    async def test_missing_registration(self, sso_settings):
        from aiplabels.web.auth import WebAuthenticator

        sso_settings.web.client_secret = None

        with pytest.raises(ConfigurationError):
            await WebAuthenticator(sso_settings).begin_login("http://test/auth/callback")

    def test_missing_scope(self, sso_settings):
        from aiplabels.web.auth import WebAuthenticator

        sso_settings.web.api_scope = None

        with pytest.raises(ConfigurationError, match="api_scope"):
            WebAuthenticator(sso_settings).scopes


class TestAcquireToken:
    @pytest.fixture
    def signed_in(self, sso_settings):
        from aiplabels.web.auth import WebAuthenticator

        authenticator = WebAuthenticator(sso_settings)
        authenticator.store.save("sid-1", changed_cache())
        return authenticator

    @pytest.mark.asyncio
    async def test_silent_token(self, signed_in, msal_app):
        account = {"username": "alice@contoso.com"}
        msal_app.get_accounts.return_value = [account]
        msal_app.acquire_token_silent.return_value = {"access_token": "api-token"}

        assert await signed_in.acquire_token("sid-1") == "api-token"
        msal_app.acquire_token_silent.assert_called_once_with([SCOPE], account=account)

    @pytest.mark.asyncio
    async def test_not_signed_in(self, signed_in, msal_app):
        with pytest.raises(ReauthenticationRequired):
            await signed_in.acquire_token(None)
        with pytest.raises(ReauthenticationRequired):
            await signed_in.acquire_token("unknown-sid")
        msal_app.cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_account_in_cache(self, signed_in, msal_app):
        msal_app.get_accounts.return_value = []

        with pytest.raises(ReauthenticationRequired):
            await signed_in.acquire_token("sid-1")

    @pytest.mark.asyncio
    async def test_silent_refusal(self, signed_in, msal_app):
        msal_app.get_accounts.return_value = [{"username": "alice@contoso.com"}]
        msal_app.acquire_token_silent.return_value = {"error": "invalid_grant"}

        with pytest.raises(ReauthenticationRequired) as exc_info:
            await signed_in.acquire_token("sid-1")
        assert exc_info.value.details["error"] == "invalid_grant"

    @pytest.mark.asyncio
    async def test_silent_returns_nothing(self, signed_in, msal_app):
        msal_app.get_accounts.return_value = [{"username": "alice@contoso.com"}]
        msal_app.acquire_token_silent.return_value = None

        with pytest.raises(ReauthenticationRequired):
            await signed_in.acquire_token("sid-1")

    def test_sign_out(self, signed_in):
        signed_in.sign_out("sid-1")
        signed_in.sign_out(None)
        assert "sid-1" not in signed_in.store

    def test_logout_url(self, signed_in):
        url = signed_in.logout_url("http://test/")
        assert url == (
            "https://login.microsoftonline.com/contoso/oauth2/v2.0/logout"
            "?post_logout_redirect_uri=http%3A%2F%2Ftest%2F"
        )

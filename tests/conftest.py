"""
Shared test configuration for AIPLabels.

The protection SDK, the token broker and storage are replaced by in-memory
fakes implementing the same protocols. A fake "protected file" carries its
label in a one-line header so labels survive the upload / download round
trip through the fake store:

    AIPLABEL:<label id>:<1 if protected else 0>\\n<original bytes>
"""

import io
from pathlib import Path

import httpx
import pytest

from aiplabels.auth.oauth import DEV_CLAIMS, CallerIdentity, TokenClaims
from aiplabels.exceptions import ConsentRequiredError, ProfileLoadError, StorageError
from aiplabels.protection.models import ContentLabel, Label, find_label
from aiplabels.server.config import (
    AuthSettings,
    LoggingSettings,
    ServerSettings,
    SessionPoolSettings,
    Settings,
    WebClientSettings,
)

ACCOUNT_URL = "https://devstore.blob.core.windows.net"
SOURCE_URL = f"{ACCOUNT_URL}/source/sample.xlsx"
TARGET_URL = f"{ACCOUNT_URL}/target/sample.xlsx"

_MARKER = b"AIPLABEL:"

# Labels whose policy applies protection
PROTECTED_LABEL_IDS = {"conf", "conf-all", "conf-rec", "conf-rec-ext", "hc"}


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )


# =============================================================================
# LABEL POLICY
# =============================================================================


def make_labels() -> list[Label]:
    """Label tree in policy order, three levels deep under Confidential."""
    return [
        Label(id="pub", name="Public", sensitivity=0, color="#00A300"),
        Label(
            id="gen",
            name="General",
            sensitivity=1,
            children=[
                Label(id="gen-all", name="Anyone", sensitivity=1, parent_id="gen"),
                Label(id="gen-int", name="Internal Only", sensitivity=1, parent_id="gen"),
            ],
        ),
        Label(
            id="conf",
            name="Confidential",
            sensitivity=2,
            tooltip="Business data that requires protection",
            children=[
                Label(id="conf-all", name="All Employees", sensitivity=2, parent_id="conf"),
                Label(
                    id="conf-rec",
                    name="Recipients Only",
                    sensitivity=2,
                    parent_id="conf",
                    children=[
                        Label(id="conf-rec-ext", name="External", sensitivity=2, parent_id="conf-rec"),
                    ],
                ),
            ],
        ),
        Label(id="hc", name="Highly Confidential", sensitivity=3, color="#C00000"),
    ]


def encode_content(body: bytes, label_id: str | None = None, protected: bool = False) -> bytes:
    if label_id is None:
        return body
    return _MARKER + f"{label_id}:{int(protected)}\n".encode() + body


def decode_content(data: bytes) -> tuple[str | None, bool, bytes]:
    if not data.startswith(_MARKER):
        return None, False, data
    header, _, body = data.partition(b"\n")
    label_id, _, protected = header[len(_MARKER):].decode().partition(":")
    return label_id, protected == "1", body


# =============================================================================
# FAKE PROTECTION SDK
# =============================================================================


class FakeHandler:
    """In-memory content handler."""

    def __init__(self, engine, source):
        self.engine = engine
        self.file_name = source.file_name
        data = source.data if source.data is not None else Path(source.path).read_bytes()
        self.label_id, self.protected, self.body = decode_content(data)
        self.pending = None
        self.options = None
        self.descriptor = None
        self.notified: list[str] = []
        self.disposed = False

    def get_label(self):
        if self.label_id is None:
            return None
        label = find_label(self.engine.labels, self.label_id)
        return ContentLabel(label=label, is_protection_applied_from_label=self.protected)

    def _pending_protected(self) -> bool:
        if self.pending == "delete":
            return False
        if self.pending is not None:
            return self.pending.id in PROTECTED_LABEL_IDS or self.descriptor is not None
        return self.protected

    def is_protected(self):
        return self._pending_protected()

    def set_label(self, label, options, settings):
        self.pending = label
        self.options = options

    def delete_label(self, options):
        self.pending = "delete"
        self.options = options

    def set_protection(self, descriptor, settings):
        self.descriptor = descriptor

    def commit(self, output):
        if not self.engine.commit_ok:
            return False
        label_id = None if self.pending == "delete" else self.pending.id
        output.write(encode_content(self.body, label_id, self._pending_protected()))
        return True

    def notify_commit_successful(self, file_name):
        self.notified.append(file_name)

    def dispose(self):
        self.disposed = True


class FakeEngine:
    def __init__(self, identity: str, labels: list[Label] | None = None):
        self.identity = identity
        self.labels = labels if labels is not None else make_labels()
        self.handlers: list[FakeHandler] = []
        self.commit_ok = True
        self.fail_create = False

    def list_labels(self):
        return list(self.labels)

    def get_label(self, label_id):
        return find_label(self.labels, label_id)

    def create_handler(self, source):
        if self.fail_create:
            raise RuntimeError("The file format is not supported")
        handler = FakeHandler(self, source)
        self.handlers.append(handler)
        return handler


class FakeProfile:
    """Creates engines after asking the token source for a token, as the SDK does."""

    def __init__(self):
        self.engines: list[FakeEngine] = []
        self.unloaded: list[FakeEngine] = []
        self.tokens: list[str] = []

    def add_engine(self, identity, locale, token_source):
        token = token_source.acquire(
            "https://syncservice.o365syncservice.com/",
            "https://login.microsoftonline.com/common",
        )
        if not token:
            raise RuntimeError("NoAuthTokenError: no token returned by the auth delegate")
        self.tokens.append(token)
        engine = FakeEngine(identity)
        self.engines.append(engine)
        return engine

    def unload_engine(self, engine):
        self.unloaded.append(engine)


class FakeRuntime:
    def __init__(self, profile=None, fail: bool = False):
        self.profile = profile or FakeProfile()
        self.fail = fail
        self.loaded = False
        self.shut_down = False

    def load_profile(self):
        if self.fail:
            raise ProfileLoadError("MIP SDK assemblies not found")
        self.loaded = True
        return self.profile

    def shutdown(self):
        self.shut_down = True


class FakeBroker:
    """On-behalf-of broker answering from the assertion alone."""

    CONSENT_ASSERTION = "needs-consent"

    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    def acquire_token_sync(self, user_assertion, resource, authority=None, claims_challenge=None):
        self.calls.append((user_assertion, resource))
        if not user_assertion or user_assertion == self.CONSENT_ASSERTION:
            raise ConsentRequiredError(
                "AADSTS65001: The user has not consented",
                error_code="invalid_grant",
                claims='{"access_token":{"polids":{"essential":true}}}',
            )
        return f"downstream-{user_assertion}"


# =============================================================================
# FAKE STORAGE
# =============================================================================


class FakeStore:
    """Blob backend keyed by decoded URL."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.uploads: list[str] = []
        self.closed = False

    def put(self, url: str, data: bytes) -> None:
        self.objects[url] = data

    async def download(self, locator):
        try:
            return self.objects[locator.url]
        except KeyError:
            raise StorageError("Storage resource not found", url=locator.url, operation="download") from None

    async def upload(self, container, name, data, account_url=None):
        url = f"{account_url or ACCOUNT_URL}/{container}/{name}"
        self.objects[url] = data
        self.uploads.append(url)
        return url

    async def open_stream(self, locator):
        data = await self.download(locator)
        stream = io.BytesIO(data)
        while chunk := stream.read(4):
            yield chunk

    async def close(self):
        self.closed = True


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def settings():
    """Debug settings with authentication bypassed."""
    return Settings(
        server=ServerSettings(debug=True),
        auth=AuthSettings(provider="none"),
        logging=LoggingSettings(level="WARNING", json_format=False),
        session_pool=SessionPoolSettings(ttl_seconds=60, max_engines=2),
        web=WebClientSettings(
            api_scope="api://aiplabels/user_impersonation",
            default_label_id="gen",
            custom_label_id="conf",
            custom_permission_users=["alice@contoso.com"],
            custom_permission_rights=["VIEW", "EDIT"],
        ),
    )


@pytest.fixture
def caller():
    return CallerIdentity(claims=DEV_CLAIMS, assertion="user-token")


@pytest.fixture
def make_caller():
    def _make(upn: str, assertion: str = "user-token") -> CallerIdentity:
        claims = TokenClaims(oid=f"oid-{upn}", upn=upn, tenant_id="tenant")
        return CallerIdentity(claims=claims, assertion=assertion)

    return _make


@pytest.fixture
def engine():
    return FakeEngine("dev@localhost")


@pytest.fixture
def profile():
    return FakeProfile()


@pytest.fixture
def runtime(profile):
    return FakeRuntime(profile)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def store():
    store = FakeStore()
    store.put(SOURCE_URL, b"spreadsheet bytes")
    return store


@pytest.fixture
def storage_router(settings, store):
    from aiplabels.storage import StorageRouter

    return StorageRouter(settings, blob=store, share=store)


@pytest.fixture
def app(settings, runtime, broker, storage_router):
    from aiplabels.server.app import create_app

    return create_app(settings, runtime=runtime, broker=broker, storage=storage_router)


@pytest.fixture
async def client(app):
    """API client with the app's lifespan running."""
    async with app.router.lifespan_context(app):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://test",
            headers={"Authorization": "Bearer user-token"},
        ) as ac:
            yield ac

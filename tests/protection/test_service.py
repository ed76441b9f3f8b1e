"""
Tests for label operations against the in-memory engine.
"""

import asyncio
import threading

import pytest

from aiplabels.exceptions import ConsentRequiredError, ErrorKind, OperationTimeoutError
from aiplabels.protection import (
    NO_LABEL_MESSAGE,
    ContentSource,
    EnginePool,
    LabelOperations,
    ProtectionDescriptor,
    UserRights,
)


@pytest.fixture
def pool(profile, broker, settings):
    return EnginePool(profile, broker, settings)


@pytest.fixture
def operations(pool, settings):
    return LabelOperations(pool, settings)


@pytest.fixture
def plain():
    return ContentSource.from_bytes(b"spreadsheet bytes", "sample.xlsx")


def labeled(label_id: str, protected: bool = False) -> ContentSource:
    header = f"AIPLABEL:{label_id}:{int(protected)}\n".encode()
    return ContentSource.from_bytes(header + b"spreadsheet bytes", "sample.xlsx")


class TestListLabels:
    @pytest.mark.asyncio
    async def test_tree_in_policy_order(self, operations, caller):
        labels = await operations.list_labels(caller)

        assert [l.id for l in labels] == ["pub", "gen", "conf", "hc"]
        assert [c.id for c in labels[2].children] == ["conf-all", "conf-rec"]
        assert labels[2].children[1].children[0].id == "conf-rec-ext"

    @pytest.mark.asyncio
    async def test_consent_required_raised(self, operations, make_caller, broker):
        with pytest.raises(ConsentRequiredError):
            await operations.list_labels(make_caller("alice@contoso.com", broker.CONSENT_ASSERTION))


class TestGetLabel:
    @pytest.mark.asyncio
    async def test_unlabeled_file(self, operations, caller, plain):
        result = await operations.get_label(caller, plain)

        assert result.success
        assert result.message == NO_LABEL_MESSAGE
        assert result.label is None

    @pytest.mark.asyncio
    async def test_labeled_file(self, operations, caller):
        result = await operations.get_label(caller, labeled("conf-rec", protected=True))

        assert result.success
        assert result.label.id == "conf-rec"
        assert result.label.name == "Recipients Only"
        assert result.is_protected

    @pytest.mark.asyncio
    async def test_handler_failure_becomes_result(self, operations, pool, caller, plain):
        entry = await pool.acquire(caller)
        entry.engine.fail_create = True

        result = await operations.get_label(caller, plain)

        assert not result.success
        assert result.error_kind == ErrorKind.PROTECTION
        assert result.message == (
            "Failed to get file:sample.xlsx label information, Error: "
            "Failed to create content handler\nThe file format is not supported"
        )

    @pytest.mark.asyncio
    async def test_token_refused_during_operation(self, operations, pool, caller, broker, plain):
        entry = await pool.acquire(caller)

        def create_handler(source):
            if not entry.token_source.acquire("https://aadrm.com"):
                raise RuntimeError("NoAuthTokenError")

        entry.engine.create_handler = create_handler
        caller.assertion = broker.CONSENT_ASSERTION

        with pytest.raises(ConsentRequiredError):
            await operations.get_label(caller, plain)

    @pytest.mark.asyncio
    async def test_timeout_raised(self, operations, pool, caller, plain):
        entry = await pool.acquire(caller)
        release = threading.Event()
        entry.engine.create_handler = lambda source: release.wait(2)
        operations.call_timeout = 0.05

        try:
            with pytest.raises(OperationTimeoutError):
                await operations.get_label(caller, plain)
        finally:
            release.set()

    @pytest.mark.asyncio
    async def test_timed_out_engine_not_evicted_while_worker_runs(
        self, profile, broker, settings, make_caller, plain
    ):
        settings.session_pool.max_engines = 1
        pool = EnginePool(profile, broker, settings)
        operations = LabelOperations(pool, settings)
        operations.call_timeout = 0.05
        alice = make_caller("alice@contoso.com")
        entry = await pool.acquire(alice)
        release = threading.Event()
        open_handler = entry.engine.create_handler

        def slow_create_handler(source):
            release.wait(2)
            return open_handler(source)

        entry.engine.create_handler = slow_create_handler

        try:
            with pytest.raises(OperationTimeoutError):
                await operations.get_label(alice, plain)
            await pool.acquire(make_caller("bob@contoso.com"))

            assert "alice@contoso.com" in pool
            assert entry.engine not in profile.unloaded
        finally:
            release.set()

        for _ in range(200):
            if entry.leases == 0:
                break
            await asyncio.sleep(0.01)
        assert entry.leases == 0
        assert entry.engine.handlers[0].disposed

        await pool.acquire(make_caller("carol@contoso.com"))
        assert entry.engine in profile.unloaded

    @pytest.mark.asyncio
    async def test_token_failure_kept_per_request(self, operations, pool, make_caller, broker, plain):
        fresh_caller = make_caller("alice@contoso.com", "good-token")
        stale_caller = make_caller("alice@contoso.com", broker.CONSENT_ASSERTION)
        entry = await pool.acquire(fresh_caller)
        token_refused = threading.Event()
        resume = threading.Event()
        open_handler = entry.engine.create_handler

        def create_handler(source):
            if not entry.token_source.acquire("https://aadrm.com"):
                token_refused.set()
                resume.wait(2)
                raise RuntimeError("NoAuthTokenError")
            return open_handler(source)

        entry.engine.create_handler = create_handler

        stale = asyncio.ensure_future(operations.get_label(stale_caller, plain))
        try:
            assert await asyncio.to_thread(token_refused.wait, 2)
            fresh = await operations.get_label(fresh_caller, plain)
        finally:
            resume.set()

        assert fresh.success
        with pytest.raises(ConsentRequiredError):
            await stale


class TestApplyLabel:
    @pytest.mark.asyncio
    async def test_apply_returns_labeled_output(self, operations, pool, caller, plain):
        result = await operations.apply_label(caller, plain, "gen-int", justification="Reviewed")

        assert result.success
        assert result.label.id == "gen-int"
        assert not result.is_protected
        assert result.output == b"AIPLABEL:gen-int:0\nspreadsheet bytes"

        handler = (await pool.acquire(caller)).engine.handlers[0]
        assert handler.options.justification_message == "Reviewed"
        assert handler.notified == ["sample.xlsx"]
        assert handler.disposed

    @pytest.mark.asyncio
    async def test_protected_label(self, operations, caller, plain):
        result = await operations.apply_label(caller, plain, "hc")
        assert result.is_protected

    @pytest.mark.asyncio
    async def test_custom_protection_applied_first(self, operations, pool, caller, plain):
        descriptor = ProtectionDescriptor(
            user_rights=[UserRights(users=["alice@contoso.com"], rights=["VIEW", "EDIT"])]
        )
        result = await operations.apply_label(caller, plain, "gen", descriptor=descriptor)

        assert result.success
        assert result.is_protected
        handler = (await pool.acquire(caller)).engine.handlers[0]
        assert handler.descriptor is descriptor

    @pytest.mark.asyncio
    async def test_empty_descriptor_ignored(self, operations, pool, caller, plain):
        descriptor = ProtectionDescriptor(user_rights=[UserRights(users=[], rights=["VIEW"])])
        await operations.apply_label(caller, plain, "gen", descriptor=descriptor)

        handler = (await pool.acquire(caller)).engine.handlers[0]
        assert handler.descriptor is None

    @pytest.mark.asyncio
    async def test_unknown_label(self, operations, caller, plain):
        result = await operations.apply_label(caller, plain, "nope")

        assert not result.success
        assert result.error_kind == ErrorKind.LABEL_NOT_FOUND
        assert result.message == "Failed to apply label:nope\nLabel not found: nope"
        assert result.output is None

    @pytest.mark.asyncio
    async def test_rejected_commit(self, operations, pool, caller, plain):
        entry = await pool.acquire(caller)
        entry.engine.commit_ok = False

        result = await operations.apply_label(caller, plain, "gen")

        assert not result.success
        assert "Commit was not accepted" in result.message
        assert entry.engine.handlers[0].notified == []
        assert entry.engine.handlers[0].disposed


class TestRemoveLabel:
    @pytest.mark.asyncio
    async def test_remove_is_justified_downgrade(self, operations, pool, caller):
        result = await operations.remove_label(caller, labeled("conf", protected=True))

        assert result.success
        assert result.output == b"spreadsheet bytes"
        options = (await pool.acquire(caller)).engine.handlers[0].options
        assert options.is_downgrade_justified
        assert options.justification_message == "Label modified by App."

    @pytest.mark.asyncio
    async def test_explicit_justification(self, operations, pool, caller):
        await operations.remove_label(caller, labeled("gen"), justification="No longer sensitive")

        options = (await pool.acquire(caller)).engine.handlers[0].options
        assert options.justification_message == "No longer sensitive"

    @pytest.mark.asyncio
    async def test_failure_message(self, operations, pool, caller, plain):
        entry = await pool.acquire(caller)
        entry.engine.fail_create = True

        result = await operations.remove_label(caller, plain)

        assert not result.success
        assert result.message.startswith("Failed to remove label:Failed to create content handler")

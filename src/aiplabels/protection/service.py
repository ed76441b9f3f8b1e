"""
Label operations against a caller's protection engine.

Each operation leases the caller's engine from the pool, opens a single
handler in a worker thread, performs exactly one label change or read and
disposes the handler before returning. The blocking part of an operation
runs in one thread call so that the handler is disposed in that same
thread even when the awaiting request gives up on the timeout, and the
engine stays leased until that thread returns.

Failures that the caller can act on (re-authentication, timeouts) are
raised. Everything else is folded into an ``OperationResult`` with
``success=False`` and a message built by ``describe_error``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from aiplabels.auth.oauth import CallerIdentity
from aiplabels.exceptions import (
    ConsentRequiredError,
    ErrorKind,
    LabelNotFoundError,
    OperationTimeoutError,
    describe_error,
    error_kind,
)
from aiplabels.protection.models import (
    AssignmentMethod,
    ContentLabel,
    ContentSource,
    Label,
    LabelingOptions,
    ProtectionDescriptor,
    ProtectionSettings,
)
from aiplabels.protection.pool import EnginePool, PooledEngine
from aiplabels.protection.session import ProtectionSession
from aiplabels.server.config import Settings
from aiplabels.server.metrics import record_label_operation

logger = logging.getLogger(__name__)

T = TypeVar("T")

NO_LABEL_MESSAGE = "The file has no label."


@dataclass
class OperationResult:
    """Outcome of one label operation."""

    success: bool
    message: str = ""
    output: bytes | None = None
    label: Label | None = None
    is_protected: bool = False
    error_kind: ErrorKind | None = None
    target_url: str | None = None

    @classmethod
    def failed(cls, message: str, exc: BaseException) -> OperationResult:
        return cls(success=False, message=message, error_kind=error_kind(exc))


class LabelOperations:
    """List, read, apply and remove labels for the calling identity."""

    def __init__(self, pool: EnginePool, settings: Settings):
        self.pool = pool
        self.default_justification = settings.protection.default_justification
        self.call_timeout = settings.timeouts.protection_call
        self.commit_timeout = settings.timeouts.commit

    async def _run(
        self,
        caller: CallerIdentity,
        operation: str,
        work: Callable[[PooledEngine], T],
        timeout: float,
    ) -> T:
        """Lease the caller's engine and run *work* in a worker thread.

        On timeout the worker is left to finish on its own; the engine stays
        leased until it does.
        """
        start = time.perf_counter()
        outcome = "error"
        try:
            async with self.pool.lease(caller) as entry:
                worker = asyncio.ensure_future(
                    asyncio.to_thread(self._attempt, entry, caller.assertion, work)
                )
                self.pool.hold(entry, worker)
                try:
                    result = await asyncio.wait_for(asyncio.shield(worker), timeout=timeout)
                except asyncio.TimeoutError as e:
                    outcome = "timeout"
                    raise OperationTimeoutError(operation, timeout) from e
            outcome = "success"
            return result
        finally:
            record_label_operation(operation, outcome, time.perf_counter() - start)

    @staticmethod
    def _attempt(entry: PooledEngine, assertion: str, work: Callable[[PooledEngine], T]) -> T:
        with entry.token_source.attempt(assertion) as attempt:
            try:
                return work(entry)
            except Exception:
                # The SDK reports a refused token as its own failure
                attempt.raise_pending()
                raise

    def _session(self, entry: PooledEngine) -> ProtectionSession:
        return ProtectionSession(profile=self.pool.profile, engine=entry.engine)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_labels(self, caller: CallerIdentity) -> list[Label]:
        """Full label tree for the caller, in the order the policy defines."""

        def work(entry: PooledEngine) -> list[Label]:
            return list(entry.engine.list_labels())

        return await self._run(caller, "list", work, self.call_timeout)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_label(self, caller: CallerIdentity, source: ContentSource) -> OperationResult:
        """Read the label on *source*. A file without a label is a success."""

        def work(entry: PooledEngine) -> ContentLabel | None:
            session = self._session(entry)
            with session.open_handler(source) as s:
                return s.read_label()

        try:
            content_label = await self._run(caller, "get", work, self.call_timeout)
        except (ConsentRequiredError, OperationTimeoutError):
            raise
        except Exception as e:
            logger.warning("Failed to read label of %s: %s", source.file_name, e)
            return OperationResult.failed(
                f"Failed to get file:{source.file_name} label information, Error: {describe_error(e)}",
                e,
            )

        if content_label is None:
            return OperationResult(success=True, message=NO_LABEL_MESSAGE)
        return OperationResult(
            success=True,
            label=content_label.label,
            is_protected=content_label.is_protection_applied_from_label,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def apply_label(
        self,
        caller: CallerIdentity,
        source: ContentSource,
        label_id: str,
        justification: str | None = None,
        descriptor: ProtectionDescriptor | None = None,
    ) -> OperationResult:
        """Apply *label_id*, optionally after ad-hoc protection, and commit."""
        options = LabelingOptions(
            assignment_method=AssignmentMethod.STANDARD,
            justification_message=justification,
        )

        def work(entry: PooledEngine) -> tuple[bytes, Label, bool]:
            label = entry.engine.get_label(label_id)
            if label is None:
                raise LabelNotFoundError(label_id)
            session = self._session(entry)
            with session.open_handler(source) as s:
                if descriptor is not None and not descriptor.is_empty:
                    s.set_protection(descriptor, ProtectionSettings())
                s.set_label(label, options, ProtectionSettings())
                protected = s.handler.is_protected()
                return s.commit(), label, protected

        try:
            output, label, protected = await self._run(
                caller, "apply", work, self.call_timeout + self.commit_timeout
            )
        except (ConsentRequiredError, OperationTimeoutError):
            raise
        except Exception as e:
            logger.warning("Failed to apply label %s to %s: %s", label_id, source.file_name, e)
            return OperationResult.failed(
                f"Failed to apply label:{label_id}\n{describe_error(e)}", e
            )

        return OperationResult(success=True, output=output, label=label, is_protected=protected)

    async def remove_label(
        self,
        caller: CallerIdentity,
        source: ContentSource,
        justification: str | None = None,
    ) -> OperationResult:
        """Delete the label from *source* as a justified downgrade and commit."""
        options = LabelingOptions(
            assignment_method=AssignmentMethod.STANDARD,
            justification_message=justification or self.default_justification,
            is_downgrade_justified=True,
        )

        def work(entry: PooledEngine) -> bytes:
            session = self._session(entry)
            with session.open_handler(source) as s:
                s.delete_label(options)
                return s.commit()

        try:
            output = await self._run(
                caller, "remove", work, self.call_timeout + self.commit_timeout
            )
        except (ConsentRequiredError, OperationTimeoutError):
            raise
        except Exception as e:
            logger.warning("Failed to remove label from %s: %s", source.file_name, e)
            return OperationResult.failed(f"Failed to remove label:{describe_error(e)}", e)

        return OperationResult(success=True, output=output)


__all__ = [
    "LabelOperations",
    "NO_LABEL_MESSAGE",
    "OperationResult",
]

"""
Protection session lifecycle.

A session walks one identity's engine through handler operations:

    UNINITIALIZED -> PROFILE_LOADED -> ENGINE_BOUND -> HANDLER_OPEN
        -> COMMITTED | DISPOSED

Handlers are opened through ``open_handler`` only, which disposes them on
every exit path. Each handler performs exactly one label operation
(set, delete or read); ad-hoc protection may precede a set.
"""

from __future__ import annotations

import io
import logging
from contextlib import contextmanager
from enum import Enum
from typing import Iterator

from aiplabels.exceptions import CommitError, HandlerError, SessionStateError
from aiplabels.protection.base import ContentHandler, Engine, Profile
from aiplabels.protection.models import (
    ContentLabel,
    ContentSource,
    Label,
    LabelingOptions,
    ProtectionDescriptor,
    ProtectionSettings,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    PROFILE_LOADED = "profile_loaded"
    ENGINE_BOUND = "engine_bound"
    HANDLER_OPEN = "handler_open"
    COMMITTED = "committed"
    DISPOSED = "disposed"


# States from which a new handler may be opened
_REOPENABLE = frozenset({
    SessionState.ENGINE_BOUND,
    SessionState.COMMITTED,
    SessionState.DISPOSED,
})


class ProtectionSession:
    """Drives one engine through a sequence of single-operation handlers."""

    def __init__(self, profile: Profile | None = None, engine: Engine | None = None):
        self.state = SessionState.UNINITIALIZED
        self.profile: Profile | None = None
        self.engine: Engine | None = None
        self._handler: ContentHandler | None = None
        self._operation: str | None = None
        self._file_name: str | None = None
        if profile is not None:
            self.attach_profile(profile)
        if engine is not None:
            self.bind(engine)

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise SessionStateError(
                f"Invalid session state {self.state.value}; expected one of: {allowed}"
            )

    def attach_profile(self, profile: Profile) -> None:
        self._require(SessionState.UNINITIALIZED)
        self.profile = profile
        self.state = SessionState.PROFILE_LOADED

    def bind(self, engine: Engine) -> None:
        self._require(SessionState.PROFILE_LOADED)
        self.engine = engine
        self.state = SessionState.ENGINE_BOUND

    @contextmanager
    def open_handler(self, source: ContentSource) -> Iterator[ProtectionSession]:
        """Open a handler over *source*; it is disposed when the block exits."""
        self._require(*_REOPENABLE)
        assert self.engine is not None

        try:
            handler = self.engine.create_handler(source)
        except Exception as e:
            raise HandlerError(
                "Failed to create content handler", file_name=source.file_name
            ) from e

        self._handler = handler
        self._operation = None
        self._file_name = source.file_name
        self.state = SessionState.HANDLER_OPEN
        try:
            yield self
        finally:
            self._dispose()

    def _dispose(self) -> None:
        handler, self._handler = self._handler, None
        if handler is not None:
            try:
                handler.dispose()
            except Exception as e:
                logger.warning("Error disposing handler for %s: %s", self._file_name, e)
        if self.state == SessionState.HANDLER_OPEN:
            self.state = SessionState.DISPOSED

    def _start_operation(self, name: str) -> ContentHandler:
        self._require(SessionState.HANDLER_OPEN)
        if self._operation is not None:
            raise SessionStateError(
                f"Handler already used for {self._operation}; cannot {name}"
            )
        self._operation = name
        assert self._handler is not None
        return self._handler

    @property
    def handler(self) -> ContentHandler:
        self._require(SessionState.HANDLER_OPEN)
        assert self._handler is not None
        return self._handler

    def read_label(self) -> ContentLabel | None:
        return self._start_operation("read").get_label()

    def set_protection(self, descriptor: ProtectionDescriptor, settings: ProtectionSettings) -> None:
        self._require(SessionState.HANDLER_OPEN)
        if self._operation is not None:
            raise SessionStateError("Protection must be set before the label operation")
        self.handler.set_protection(descriptor, settings)

    def set_label(self, label: Label, options: LabelingOptions, settings: ProtectionSettings) -> None:
        self._start_operation("set").set_label(label, options, settings)

    def delete_label(self, options: LabelingOptions) -> None:
        self._start_operation("delete").delete_label(options)

    def commit(self) -> bytes:
        """Commit the pending change and return the written content.

        The audit notification is only sent when the SDK reports success.
        """
        handler = self.handler
        if self._operation not in ("set", "delete"):
            raise SessionStateError("Nothing to commit")

        output = io.BytesIO()
        if not handler.commit(output):
            raise CommitError("Commit was not accepted", file_name=self._file_name)

        handler.notify_commit_successful(self._file_name or handler.file_name)
        self.state = SessionState.COMMITTED
        return output.getvalue()

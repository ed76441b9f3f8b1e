"""
Interfaces between the label workflow and a protection SDK binding.

The pythonnet binding in ``aiplabels.protection.mip`` implements these for
the real SDK; tests use an in-memory implementation. All methods are
blocking; callers run them in worker threads.
"""

from __future__ import annotations

from typing import BinaryIO, Protocol

from aiplabels.protection.models import (
    ContentLabel,
    ContentSource,
    Label,
    LabelingOptions,
    ProtectionDescriptor,
    ProtectionSettings,
)


class TokenSource(Protocol):
    """Called by the SDK whenever an engine needs an access token."""

    def acquire(self, resource: str, authority: str | None = None, claims: str | None = None) -> str:
        ...


class ContentHandler(Protocol):
    """One open document. Used for a single operation, then disposed."""

    file_name: str

    def get_label(self) -> ContentLabel | None:
        ...

    def is_protected(self) -> bool:
        ...

    def set_label(self, label: Label, options: LabelingOptions, settings: ProtectionSettings) -> None:
        ...

    def delete_label(self, options: LabelingOptions) -> None:
        ...

    def set_protection(self, descriptor: ProtectionDescriptor, settings: ProtectionSettings) -> None:
        ...

    def commit(self, output: BinaryIO) -> bool:
        """Write the modified content to *output*; False when the SDK refused."""
        ...

    def notify_commit_successful(self, file_name: str) -> None:
        ...

    def dispose(self) -> None:
        ...


class Engine(Protocol):
    """Policy view of a single identity."""

    identity: str

    def list_labels(self) -> list[Label]:
        ...

    def get_label(self, label_id: str) -> Label | None:
        ...

    def create_handler(self, source: ContentSource) -> ContentHandler:
        ...


class Profile(Protocol):
    """Process-wide SDK profile; owns every engine."""

    def add_engine(self, identity: str, locale: str, token_source: TokenSource) -> Engine:
        ...

    def unload_engine(self, engine: Engine) -> None:
        ...


class ProtectionRuntime(Protocol):
    """Entry point of a binding: loads the profile once per process."""

    def load_profile(self) -> Profile:
        ...

    def shutdown(self) -> None:
        ...

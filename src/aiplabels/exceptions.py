"""
Unified exception hierarchy for AIPLabels.

All exception classes live here. No per-module exception files.

Hierarchy:
    AIPLabelsError (base)
    ├── ConfigurationError
    ├── AuthError
    │   ├── TokenExpiredError
    │   ├── TokenInvalidError
    │   ├── ConsentRequiredError
    │   ├── TokenExchangeError
    │   └── ReauthenticationRequired
    ├── StorageError
    │   └── InvalidLocatorError
    ├── ProtectionError
    │   ├── ProfileLoadError
    │   ├── EngineError
    │   ├── HandlerError
    │   ├── CommitError
    │   ├── LabelNotFoundError
    │   └── SessionStateError
    └── OperationTimeoutError

Every class carries an ``ErrorKind`` so the HTTP layer can report a
machine-readable failure category next to the boolean success flag.

Usage:
    from aiplabels.exceptions import ConsentRequiredError, ErrorKind
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Machine-readable failure category reported to API callers."""

    CONSENT_REQUIRED = "consent_required"
    TOKEN_EXCHANGE = "token_exchange"
    INVALID_TOKEN = "invalid_token"
    INVALID_LOCATOR = "invalid_locator"
    STORAGE = "storage"
    PROTECTION = "protection"
    LABEL_NOT_FOUND = "label_not_found"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


# =============================================================================
# ROOT
# =============================================================================


class AIPLabelsError(Exception):
    """
    Base exception for all AIPLabels errors.

    Attributes:
        message: Human-readable error description
        context: Additional context about what was being done
        details: Technical details (blob URL, label id, etc.)
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        context: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.context = context
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [self.message]
        if self.context:
            parts.append(f"Context: {self.context}")
        if self.details:
            detail_str = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
            parts.append(f"Details: {detail_str}")
        return ". ".join(parts)


class ConfigurationError(AIPLabelsError):
    """Settings are missing or inconsistent."""

    kind = ErrorKind.CONFIGURATION


# =============================================================================
# AUTH
# =============================================================================


class AuthError(AIPLabelsError):
    """Authentication or authorization error."""

    kind = ErrorKind.INVALID_TOKEN


class TokenExpiredError(AuthError):
    """JWT token has expired."""

    pass


class TokenInvalidError(AuthError):
    """JWT token is malformed or has invalid signature."""

    pass


class ConsentRequiredError(AuthError):
    """The identity provider refused the user assertion.

    The caller has to sign in again (and possibly consent) before the
    on-behalf-of exchange can succeed. ``claims`` holds the conditional
    access challenge returned by the provider, if any.
    """

    kind = ErrorKind.CONSENT_REQUIRED

    def __init__(
        self,
        message: str = "User interaction is required to continue",
        error_code: str | None = None,
        claims: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if error_code:
            details["error"] = error_code
        super().__init__(message, details=details, **kwargs)
        self.error_code = error_code
        self.claims = claims


class TokenExchangeError(AuthError):
    """On-behalf-of exchange failed for a reason other than consent."""

    kind = ErrorKind.TOKEN_EXCHANGE

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        resource: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if error_code:
            details["error"] = error_code
        if resource:
            details["resource"] = resource
        super().__init__(message, details=details, **kwargs)
        self.error_code = error_code
        self.resource = resource


class ReauthenticationRequired(AuthError):
    """The web client holds no token it can use silently for this user."""

    kind = ErrorKind.CONSENT_REQUIRED


# =============================================================================
# STORAGE
# =============================================================================


class StorageError(AIPLabelsError):
    """Raised when reading or writing the storage backend fails."""

    kind = ErrorKind.STORAGE

    def __init__(
        self,
        message: str,
        url: str | None = None,
        operation: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if url:
            details["url"] = url
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details, **kwargs)
        self.url = url
        self.operation = operation


class InvalidLocatorError(StorageError):
    """A storage URL could not be split into account, container and name."""

    kind = ErrorKind.INVALID_LOCATOR


# =============================================================================
# PROTECTION (MIP SDK)
# =============================================================================


class ProtectionError(AIPLabelsError):
    """Error raised by, or while driving, the protection SDK."""

    kind = ErrorKind.PROTECTION


class ProfileLoadError(ProtectionError):
    """The process-wide file profile could not be loaded."""

    pass


class EngineError(ProtectionError):
    """An engine could not be bound to the caller's identity."""

    def __init__(self, message: str, identity: str | None = None, **kwargs: Any):
        details = kwargs.pop("details", {})
        if identity:
            details["identity"] = identity
        super().__init__(message, details=details, **kwargs)
        self.identity = identity


class HandlerError(ProtectionError):
    """A content handler could not be created or used."""

    def __init__(self, message: str, file_name: str | None = None, **kwargs: Any):
        details = kwargs.pop("details", {})
        if file_name:
            details["file_name"] = file_name
        super().__init__(message, details=details, **kwargs)
        self.file_name = file_name


class CommitError(HandlerError):
    """Writing the modified content failed."""

    pass


class LabelNotFoundError(ProtectionError):
    """The requested label id is not part of the caller's policy."""

    kind = ErrorKind.LABEL_NOT_FOUND

    def __init__(self, label_id: str, **kwargs: Any):
        super().__init__(f"Label not found: {label_id}", details={"label_id": label_id}, **kwargs)
        self.label_id = label_id


class SessionStateError(ProtectionError):
    """A protection session was driven out of order."""

    kind = ErrorKind.INTERNAL


# =============================================================================
# TIMEOUTS
# =============================================================================


class OperationTimeoutError(AIPLabelsError):
    """An external call did not finish within its configured timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, operation: str, timeout: float, **kwargs: Any):
        super().__init__(
            f"{operation} timed out after {timeout:g}s",
            details={"operation": operation, "timeout": timeout},
            **kwargs,
        )
        self.operation = operation
        self.timeout = timeout


# =============================================================================
# HELPERS
# =============================================================================


def _inner(exc: BaseException) -> BaseException | None:
    """Return the nested cause of *exc*, or None when there is none."""
    # .NET exceptions surfaced through pythonnet expose InnerException
    inner = getattr(exc, "InnerException", None)
    if isinstance(inner, BaseException):
        return inner
    return exc.__cause__ or exc.__context__


def _text(exc: BaseException) -> str:
    if isinstance(exc, AIPLabelsError):
        return exc.message
    text = getattr(exc, "Message", None) or str(exc)
    return text or type(exc).__name__


def describe_error(exc: BaseException, max_depth: int = 5) -> str:
    """Join the messages of *exc* and its nested causes.

    Tolerates a missing inner exception at every level and skips repeated
    messages, so SDK faults without a nested cause still produce a message.
    """
    messages: list[str] = []
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and len(messages) < max_depth and id(current) not in seen:
        seen.add(id(current))
        text = _text(current)
        if text not in messages:
            messages.append(text)
        current = _inner(current)
    return "\n".join(messages)


def error_kind(exc: BaseException) -> ErrorKind:
    """Map any exception onto an ``ErrorKind``."""
    if isinstance(exc, AIPLabelsError):
        return exc.kind
    return ErrorKind.INTERNAL

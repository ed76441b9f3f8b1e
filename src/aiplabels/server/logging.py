"""
Logging for the labeling API and the web client.

Both apps log through the standard library with one of two formatters:
``JSONFormatter`` for deployed instances and ``DevelopmentFormatter`` when
``server.debug`` is on. Each line carries the request correlation ID set by
the request middleware.

Label operations pass caller and file details as ``extra`` fields::

    logger.info("Label applied", extra={"label_id": "conf", "blob": "sample.xlsx"})

Callers handle user assertions, downstream tokens, client secrets and
storage connection strings, so every extra field goes through ``redact``
before it is written: values under credential-like keys are replaced
outright, and bearer tokens, JWTs and storage keys found inside any other
string are masked.
"""

import json
import logging
import re
import sys
from collections.abc import Iterator
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

REDACTED = "***"

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# LogRecord attributes that are not extra fields
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

_SENSITIVE_KEY = re.compile(
    r"(token|assertion|secret|password|authorization|connection_string|account_key|credential)s?$",
    re.IGNORECASE,
)

_SECRET_PATTERNS = (
    re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9\-._~+/]+=*"),
    re.compile(r"\beyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"),
    re.compile(r"(?i)\b(AccountKey|SharedAccessSignature|sig)=[^;&\s]+"),
)

# Libraries that log request details at INFO or DEBUG
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "msal", "azure")


def get_request_id() -> str | None:
    return request_id_var.get()


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def redact_text(text: str) -> str:
    """Mask bearer tokens, JWTs and storage keys inside free text."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(_mask, text)
    return text


def _mask(match: re.Match) -> str:
    if match.lastindex:
        separator = " " if match.group(1).lower() == "bearer" else "="
        return f"{match.group(1)}{separator}{REDACTED}"
    return REDACTED


def redact(key: str, value: Any) -> Any:
    """Value of an extra field as it may appear in a log line."""
    if _SENSITIVE_KEY.search(key):
        return REDACTED if value else value
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {k: redact(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(key, v) for v in value]
    return value


def extra_fields(record: logging.LogRecord) -> Iterator[tuple[str, Any]]:
    """Redacted ``extra`` fields of *record*."""
    for key, value in record.__dict__.items():
        if key not in _RECORD_ATTRS and not key.startswith("_"):
            yield key, redact(key, value)


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line::

        {"timestamp": "...", "level": "INFO", "logger": "aiplabels.server.services.label_service",
         "message": "Label applied", "request_id": "3f2a9c1e", "label_id": "conf"}

    Warnings and errors also carry their source location.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_text(record.getMessage()),
        }

        request_id = get_request_id()
        if request_id:
            entry["request_id"] = request_id

        if record.levelno >= logging.WARNING:
            entry["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            entry["exception"] = redact_text(self.formatException(record.exc_info))

        for key, value in extra_fields(record):
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = redact_text(str(value))
            entry[key] = value

        return json.dumps(entry, default=str)


class DevelopmentFormatter(logging.Formatter):
    """
    Single readable line per record, extras appended as ``key=value``::

        2024-01-15 10:30:00 INFO     [3f2a9c1e] [aiplabels.protection.pool] Engine created identity=alice@contoso.com
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        if self.use_colors:
            level = f"{self.COLORS.get(level, '')}{level}{self.RESET}"

        request_id = get_request_id()
        parts = [datetime.now().strftime("%Y-%m-%d %H:%M:%S"), f"{level:8}"]
        if request_id:
            parts.append(f"[{request_id[:8]}]")
        parts.append(f"[{record.name}] {redact_text(record.getMessage())}")
        parts.extend(f"{key}={value}" for key, value in extra_fields(record))

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + redact_text(self.formatException(record.exc_info))
        return line


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: str | None = None,
) -> None:
    """
    Replace the root logger's handlers with a console handler and, when
    *log_file* is given, a JSON file handler.

    Args:
        level: Root log level (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON on the console instead of the readable format
        log_file: Optional path of an additional JSON log file
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = DevelopmentFormatter(use_colors=sys.stdout.isatty())

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

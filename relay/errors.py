"""Error types for the relay and the failure categories shown to users.

Validation, capacity and rate-limit refusals are ordinary outcomes and are
not modelled as exceptions. Exceptions here cover assistant invocations that
could not produce a reply, plus configuration problems.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import datetime
from enum import Enum
from pathlib import Path

logger = logging.getLogger("relay")


class Severity(str, Enum):
    """Error severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class FailureKind(str, Enum):
    """Category used to pick the diagnostic sent back to the user."""

    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    PROCESS_ERROR = "process_error"
    GENERIC = "generic"


class RelayError(Exception):
    """Base exception for all relay errors."""

    severity: Severity = Severity.ERROR

    def __init__(self, message: str, *, component: str = "relay", detail: str = ""):
        super().__init__(message)
        self.component = component
        self.detail = detail
        self.timestamp = datetime.now().isoformat()


class ConfigError(RelayError):
    """The config file could not be read as a YAML mapping."""

    severity = Severity.WARNING


class InvocationError(RelayError):
    """The assistant could not produce a reply."""

    kind: FailureKind = FailureKind.GENERIC


class InvocationTimeout(InvocationError):
    """An invocation path exceeded its deadline."""

    severity = Severity.WARNING
    kind = FailureKind.TIMEOUT

    def __init__(self, message: str, *, timeout: float, **kw):
        super().__init__(message, **kw)
        self.timeout = timeout


class InvocationFault(InvocationError):
    """Non-zero exit, spawn error, or output with no usable text."""

    kind = FailureKind.PROCESS_ERROR

    def __init__(self, message: str, *, returncode: int | None = None, **kw):
        super().__init__(message, **kw)
        self.returncode = returncode


class CommandNotFound(InvocationFault):
    """The assistant binary could not be spawned because it does not exist."""

    kind = FailureKind.NOT_FOUND


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception raised during invocation to a user-facing category."""
    if isinstance(exc, InvocationError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return FailureKind.TIMEOUT
    if isinstance(exc, FileNotFoundError):
        return FailureKind.NOT_FOUND
    return FailureKind.GENERIC


def log_error(
    error: RelayError | Exception,
    *,
    log_path: Path | None = None,
    component: str = "relay",
):
    """Log an error to the relay logger and, if given, a JSONL error log."""
    entry = {
        "timestamp": datetime.now().isoformat(),
        "component": getattr(error, "component", component),
        "severity": getattr(error, "severity", Severity.ERROR).value,
        "type": type(error).__name__,
        "message": str(error),
        "detail": getattr(error, "detail", ""),
        "traceback": "".join(traceback.format_exception(
            type(error), error, error.__traceback__,
        )) if error.__traceback__ else "",
    }
    if log_path is not None:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as exc:
            logger.warning("could not write error log %s: %s", log_path, exc)

    level = getattr(logging, entry["severity"].upper(), logging.ERROR)
    logger.log(level, "[%s] %s: %s", entry["component"], entry["type"], entry["message"])


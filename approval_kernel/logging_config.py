"""
approval_kernel.logging_config -- One JSON line per approval event.

Every logger under the ``approval_kernel`` namespace writes events such as::

    {"ts": "...", "level": "INFO", "logger": "approval_kernel.services.approval_service",
     "message": "approval_decision_recorded", "approval_id": "...", "actor_id": "cfo",
     "transition": "STEP_ADVANCED", "step_order": 1, "approvals_on_step": 2, "quorum": 2}

Fields are merged in this order, later sources winning:

    1. the approval scope bound with ``LogContext.bind`` (which request,
       which workflow, which document, who is acting);
    2. the ``extra`` mapping of the logging call;
    3. for logged exceptions, the error's type, message and, for errors
       that carry a machine-readable ``code``, that code and the error's
       public attributes as ``exc_<name>``.

Enums are written as their value, datetimes as ISO 8601 and UUIDs and
Decimals as strings, so payloads compare equal to what the stores hold.
"""

from __future__ import annotations

__all__ = [
    "SCOPE_FIELDS",
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, TextIO
from uuid import UUID

NAMESPACE = "approval_kernel"

SCOPE_FIELDS = ("approval_id", "workflow_id", "document_id", "actor_id")

_EMPTY: Mapping[str, str] = MappingProxyType({})
_scope: ContextVar[Mapping[str, str]] = ContextVar("approval_log_scope", default=_EMPTY)


class LogContext:
    """Approval scope stamped onto every log line emitted inside it.

    Scopes nest: an inner ``bind`` adds to or overrides the outer scope,
    which is restored on exit.  Each thread and asyncio task sees its own
    scope.
    """

    @staticmethod
    @contextmanager
    def bind(**fields: object) -> Iterator[Mapping[str, str]]:
        unknown = sorted(set(fields) - set(SCOPE_FIELDS))
        if unknown:
            raise TypeError(f"Unknown log scope field(s): {', '.join(unknown)}")
        merged = dict(_scope.get())
        merged.update((name, str(value)) for name, value in fields.items() if value is not None)
        token = _scope.set(MappingProxyType(merged))
        try:
            yield _scope.get()
        finally:
            _scope.reset(token)

    @staticmethod
    def current() -> dict[str, str]:
        return dict(_scope.get())

    @staticmethod
    def clear() -> None:
        _scope.set(_EMPTY)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

# Attributes every LogRecord has; anything else arrived through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return value


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {"exc_type": type(exc).__name__, "exc_message": str(exc)}
    code = getattr(exc, "code", None)
    if code is None:
        return fields
    fields["exc_code"] = code
    for name, value in vars(exc).items():
        if not name.startswith("_"):
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """Render a LogRecord as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_scope.get())
        payload.update(
            (name, value) for name, value in vars(record).items() if name not in _RECORD_ATTRS
        )
        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(_jsonable(payload), default=str)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name`` inside the approval_kernel namespace."""
    return logging.getLogger(f"{NAMESPACE}.{name}")


_installed: logging.Handler | None = None
_install_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> logging.Logger:
    """Install the JSON handler on the namespace logger.

    Only the first call installs anything.  Later calls, such as the one
    made when the database engine is initialised, leave an existing setup
    untouched.
    """
    global _installed
    namespace_logger = logging.getLogger(NAMESPACE)
    with _install_lock:
        if _installed is not None:
            return namespace_logger
        _installed = handler or logging.StreamHandler(stream or sys.stderr)
        _installed.setFormatter(StructuredFormatter())
        namespace_logger.addHandler(_installed)
        namespace_logger.setLevel(level)
        namespace_logger.propagate = False
    return namespace_logger


def reset_logging() -> None:
    """Remove the installed handler and restore logging defaults. For tests."""
    global _installed
    namespace_logger = logging.getLogger(NAMESPACE)
    with _install_lock:
        if _installed is not None:
            namespace_logger.removeHandler(_installed)
            _installed = None
        namespace_logger.setLevel(logging.NOTSET)
        namespace_logger.propagate = True

"""
Structured JSON logging for the billing kernel.

Every record leaves the process as one JSON object:

    {"ts": ..., "level": "INFO", "logger": "billing_kernel.modules.receivables.allocation",
     "message": "allocation_committed", "correlation_id": ..., "payment_id": ..., ...}

The envelope is followed by whatever request context is bound in
``LogContext``, then the record's ``extra`` fields, then (for records
logged with ``exc_info``) the exception's code and structured attributes.

Request context lives in context variables, so each worker thread and each
asyncio task carries its own correlation id, actor and entity ids.
"""

__all__ = [
    "CONTEXT_FIELDS",
    "LEVEL_ENV_VAR",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import os
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------

CONTEXT_FIELDS = (
    "correlation_id",
    "actor_id",
    "organization_id",
    "payment_id",
    "invoice_id",
)

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"billing_log_{name}", default=None) for name in CONTEXT_FIELDS
}


class LogContext:
    """
    Request-scoped fields stamped onto every record.

    Values are stored as strings; UUIDs can be passed directly.  Names
    outside ``CONTEXT_FIELDS`` and ``None`` values are ignored.
    """

    @staticmethod
    def set(**fields: Any) -> None:
        for name, value in fields.items():
            var = _context_vars.get(name)
            if var is not None and value is not None:
                var.set(str(value))

    @staticmethod
    def get_all() -> dict[str, str]:
        """Bound fields only."""
        bound = {}
        for name, var in _context_vars.items():
            value = var.get()
            if value is not None:
                bound[name] = value
        return bound

    @staticmethod
    def clear() -> None:
        for var in _context_vars.values():
            var.set(None)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Bind fields for the duration of the block, then restore what was there."""
        tokens = []
        for name, value in fields.items():
            var = _context_vars.get(name)
            if var is not None and value is not None:
                tokens.append((var, var.set(str(value))))
        try:
            yield
        finally:
            for var, token in reversed(tokens):
                var.reset(token)

    @classmethod
    @contextmanager
    def correlation(cls, correlation_id: str | None = None) -> Iterator[str]:
        """
        Ensure a correlation id is bound and yield it.

        An id already bound by an outer caller (an API request, a cron run)
        is kept; otherwise ``correlation_id`` or a fresh uuid4 is bound.
        """
        current = _context_vars["correlation_id"].get()
        if current is not None and correlation_id is None:
            yield current
            return
        correlation_id = correlation_id or str(uuid4())
        with cls.bind(correlation_id=correlation_id):
            yield correlation_id


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------

_RESERVED_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _to_json(obj: Any) -> Any:
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return str(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # BillingKernelError subclasses expose their amounts and ids
    log_fields = getattr(exc, "log_fields", None)
    if callable(log_fields):
        for key, value in log_fields().items():
            fields[f"exc_{key}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.get_all())

        for key, value in vars(record).items():
            if key not in _RESERVED_KEYS and key not in payload:
                payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_to_json)


# ---------------------------------------------------------------------------
# Logger factory and setup
# ---------------------------------------------------------------------------

_LOGGER_PREFIX = "billing_kernel"
LEVEL_ENV_VAR = "BILLING_LOG_LEVEL"


def get_logger(name: str) -> logging.Logger:
    """Logger under the billing_kernel namespace, e.g. ``get_logger("db.engine")``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def _resolve_level(level: int | str | None) -> int:
    if level is None:
        level = os.environ.get(LEVEL_ENV_VAR, "INFO")
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"unknown log level {level!r}")
        return resolved
    return level


def configure_logging(
    *,
    level: int | str | None = None,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach the JSON handler to the billing_kernel logger hierarchy.

    Idempotent: only the first call in a process takes effect.  ``level``
    accepts a number or a level name and defaults to ``$BILLING_LOG_LEVEL``
    (INFO when unset).
    """
    global _configured
    resolved = _resolve_level(level)
    with _lock:
        if _configured:
            return
        _configured = True

    root = logging.getLogger(_LOGGER_PREFIX)
    root.setLevel(resolved)
    root.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    root.addHandler(h)


def reset_logging() -> None:
    """Undo configure_logging(). FOR TESTING ONLY."""
    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(_LOGGER_PREFIX)
    root.handlers.clear()
    root.setLevel(logging.WARNING)

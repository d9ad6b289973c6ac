"""
Structured JSON logging for the billing kernel.

Every record under the ``billing_kernel`` logger is emitted as one JSON
object per line.  A record carries, in order of precedence:

    1. the operation context bound with ``LogContext.bind`` / ``correlate``
       (correlation id, actor, company, document, document type);
    2. the ``extra={...}`` fields passed at the call site;
    3. for records logged with ``exc_info``, the exception's type, message,
       ``code`` and public attributes, prefixed ``exc_``.

Kernel code logs event names (``document_created``) rather than sentences
and puts the facts in ``extra``.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Mapping
from uuid import UUID, uuid4

_ROOT = "billing_kernel"

_EMPTY: Mapping[str, str] = MappingProxyType({})
_context: ContextVar[Mapping[str, str]] = ContextVar("billing_log_context", default=_EMPTY)


class LogContext:
    """Operation-scoped log fields, carried in a single ContextVar.

    The bound mapping is immutable; ``bind`` swaps in an extended copy and
    puts the previous one back on exit, so nested binds unwind cleanly on
    any thread or task.
    """

    FIELDS = ("correlation_id", "actor_id", "company_id", "document_id", "document_type")

    @classmethod
    def current(cls) -> dict[str, str]:
        return dict(_context.get())

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[None]:
        """Bind fields for the duration of the block.

        None values and names outside FIELDS are ignored; values are
        stringified (UUIDs arrive from payloads).
        """
        merged = dict(_context.get())
        merged.update(
            (name, str(value))
            for name, value in fields.items()
            if name in cls.FIELDS and value is not None
        )
        token = _context.set(MappingProxyType(merged))
        try:
            yield
        finally:
            _context.reset(token)

    @classmethod
    @contextmanager
    def correlate(cls) -> Iterator[str]:
        """Give the block a correlation id, keeping one a caller already bound."""
        correlation_id = _context.get().get("correlation_id") or str(uuid4())
        with cls.bind(correlation_id=correlation_id):
            yield correlation_id


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------

_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # Kernel errors keep their facts (item_id, available, ...) as attributes.
    fields.update(
        (f"exc_{name}", value)
        for name, value in vars(exc).items()
        if not name.startswith("_") and name != "code"
    )
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context.get(),
        }
        for name, value in vars(record).items():
            if name not in _RESERVED:
                entry.setdefault(name, value)

        if record.exc_info and record.exc_info[1] is not None:
            entry.update(_exception_fields(record.exc_info[1]))
            entry["traceback"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=_jsonable)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``billing_kernel`` namespace."""
    return logging.getLogger(f"{_ROOT}.{name}")


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach a JSON handler to the ``billing_kernel`` logger.

    Idempotent: once a handler is attached, later calls change nothing.
    An explicit ``handler`` is used as given (tests pass one writing to a
    StringIO); otherwise records go to ``stream`` or stderr.
    """
    root = logging.getLogger(_ROOT)
    if root.handlers:
        return
    if handler is None:
        handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False


def reset_logging() -> None:
    """Detach every handler and restore the default level.  Tests only."""
    root = logging.getLogger(_ROOT)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.WARNING)
    root.propagate = True

"""
Structured JSON logging for the stock kernel.

Every record is written as one JSON object per line.  Request-scoped fields
(which store, which actor, which transfer) live in ``LogContext`` and are
merged into every record emitted while they are bound, so service code only
passes the fields specific to one event through ``extra=``.

Usage:
    logger = get_logger("services.adjustment")
    with LogContext.bind(store_id=store_id, actor_id=actor_id):
        logger.info("adjustment_completed", extra={"quantity_after": qty})
"""

__all__ = [
    "CONTEXT_FIELDS",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

LOGGER_ROOT = "stock_kernel"

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "actor_id",
    "store_id",
    "idempotency_key",
    "transfer_id",
    "trace_id",
)

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"stock_log_{name}", default=None) for name in CONTEXT_FIELDS
}


class LogContext:
    """Request-scoped log fields, safe across threads and asyncio tasks."""

    @staticmethod
    def set(**fields: Any) -> None:
        """Set context fields.  ``None`` values leave the field untouched."""
        unknown = set(fields) - set(CONTEXT_FIELDS)
        if unknown:
            raise TypeError(f"unknown log context fields: {sorted(unknown)}")
        for name, value in fields.items():
            if value is not None:
                _context_vars[name].set(str(value))

    @staticmethod
    def get_all() -> dict[str, str]:
        """Every field currently set."""
        return {
            name: value
            for name, var in _context_vars.items()
            if (value := var.get()) is not None
        }

    @staticmethod
    def clear() -> None:
        for var in _context_vars.values():
            var.set(None)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """
        Set fields for the duration of a ``with`` block, then restore them.

        Values are stringified, so UUIDs can be passed directly.  ``None``
        values and names outside ``CONTEXT_FIELDS`` are ignored.
        """
        tokens = [
            (_context_vars[name], _context_vars[name].set(str(value)))
            for name, value in fields.items()
            if value is not None and name in _context_vars
        ]
        try:
            yield
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------

# Attributes every LogRecord carries; anything else on a record came from extra=.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _encode(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # StockLedgerError subclasses carry their numbers as attributes.
    for key, value in vars(exc).items():
        if not key.startswith("_") and key not in ("args", "code"):
            fields[f"exc_{key}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON line per record: envelope, context, extras, exception."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }

        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and key not in payload:
                payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_encode)


# ---------------------------------------------------------------------------
# Logger factory and initialization
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """A logger under the ``stock_kernel`` namespace."""
    return logging.getLogger(f"{LOGGER_ROOT}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach one JSON handler to the ``stock_kernel`` logger.

    Only the first call has an effect; later calls (for example from
    ``init_engine_from_url``) leave an existing configuration alone.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root = logging.getLogger(LOGGER_ROOT)
    root.setLevel(level)
    root.propagate = False

    target = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())
    root.addHandler(target)


def reset_logging() -> None:
    """Drop handlers and allow ``configure_logging`` to run again.  Tests only."""
    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(LOGGER_ROOT)
    root.handlers.clear()
    root.setLevel(logging.WARNING)

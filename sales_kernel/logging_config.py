"""
Structured JSON logging for the sales kernel.

Every record is one JSON line carrying:
    - ts, level, logger, message
    - the bound context (correlation_id, sale_id, item_id, bundle_id)
    - whatever the call site passed in ``extra``
    - for SalesKernelError instances, the error code and its attributes
      prefixed with ``exc_``

Services bind the entity they are working on for the duration of a call:

    with LogContext.bind(sale_id=str(sale.id)):
        ledger.consume(...)   # stock_consumed carries sale_id
"""

import json
import logging
import sys
import threading
from collections.abc import Mapping
from contextvars import ContextVar
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from sales_kernel.domain.values import Money

LOGGER_NAMESPACE = "sales_kernel"

# ---------------------------------------------------------------------------
# Bound context
# ---------------------------------------------------------------------------

CONTEXT_FIELDS = ("correlation_id", "sale_id", "item_id", "bundle_id")

_context: ContextVar[Mapping[str, str]] = ContextVar("sales_kernel_log_context", default={})


def _checked(fields: dict[str, Any]) -> dict[str, str]:
    unknown = sorted(set(fields) - set(CONTEXT_FIELDS))
    if unknown:
        raise ValueError(f"unknown log context fields: {', '.join(unknown)}")
    return {key: str(value) for key, value in fields.items() if value is not None}


class LogContext:
    """
    Context fields copied onto every record, per thread and per task.

    Only the names in CONTEXT_FIELDS can be bound; None values are skipped.
    """

    @staticmethod
    def set(**fields: Any) -> None:
        _context.set({**_context.get(), **_checked(fields)})

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    def clear() -> None:
        _context.set({})

    @staticmethod
    def bind(**fields: Any) -> "_Binding":
        """Set ``fields`` for the duration of a with-block, then restore the previous context."""
        return _Binding(_checked(fields))


class _Binding:
    def __init__(self, fields: dict[str, str]):
        self._fields = fields
        self._token = None

    def __enter__(self) -> type[LogContext]:
        self._token = _context.set({**_context.get(), **self._fields})
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        _context.reset(self._token)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _to_json(value: Any) -> Any:
    if isinstance(value, Money):
        return {"amount": str(value.amount), "currency": value.currency.code}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    # UUID, Decimal and anything else
    return str(value)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        payload.update(
            (key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS
        )

        error = record.exc_info[1] if record.exc_info else None
        if error is not None:
            payload["exc_type"] = type(error).__name__
            payload["exc_message"] = str(error)
            code = getattr(error, "code", None)
            if code is not None:
                payload["exc_code"] = code
            for key, value in vars(error).items():
                if not key.startswith("_") and key != "code":
                    payload[f"exc_{key}"] = value
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_to_json)


def get_logger(name: str) -> logging.Logger:
    """Logger under the sales_kernel namespace, e.g. get_logger("services.stock_ledger")."""
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the sales_kernel logger.  Later calls are no-ops."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    kernel_logger = logging.getLogger(LOGGER_NAMESPACE)
    kernel_logger.setLevel(level)
    kernel_logger.propagate = False

    target = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())
    kernel_logger.addHandler(target)


def reset_logging() -> None:
    """Undo configure_logging().  Tests only."""
    global _configured
    with _lock:
        _configured = False
    kernel_logger = logging.getLogger(LOGGER_NAMESPACE)
    kernel_logger.handlers.clear()
    kernel_logger.setLevel(logging.WARNING)
    kernel_logger.propagate = True

"""
Structured JSON logging for the governance kernel.

Every record is one JSON object per line with ``ts``, ``level``, ``logger``
and ``message`` keys, followed by the request-scoped LogContext fields and
whatever the call site passed in ``extra``.  Messages are snake_case event
names (``milestone_transitioned``, ``payment_blocked``) so the stream can be
filtered without parsing prose.

The ``governance_kernel`` logger does not propagate to the root logger;
attach handlers through configure_logging().
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
import threading
from contextvars import ContextVar, Token
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

_LOGGER_PREFIX = "governance_kernel"

# ---------------------------------------------------------------------------
# Request-scoped context
# ---------------------------------------------------------------------------

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "operation",
    "actor_id",
    "project_id",
    "milestone_id",
    "trace_id",
)

_CONTEXT_VARS: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"governance_log_{name}", default=None) for name in CONTEXT_FIELDS
}


def _context_var(name: str) -> ContextVar[str | None]:
    try:
        return _CONTEXT_VARS[name]
    except KeyError:
        raise TypeError(
            f"Unknown log context field {name!r}; expected one of {', '.join(CONTEXT_FIELDS)}"
        ) from None


class LogContext:
    """
    Fields attached to every log line emitted in the current context.

    Backed by contextvars, so values follow threads and asyncio tasks
    rather than leaking between concurrent operations.  Values are stored
    as strings; UUIDs and enums are converted on the way in.
    """

    @staticmethod
    def set(**fields: Any) -> None:
        """Set the given fields; None values are ignored."""
        for name, value in fields.items():
            var = _context_var(name)
            if value is not None:
                var.set(_as_text(value))

    @staticmethod
    def get_all() -> dict[str, str]:
        return {
            name: value
            for name in CONTEXT_FIELDS
            if (value := _CONTEXT_VARS[name].get()) is not None
        }

    @staticmethod
    def clear() -> None:
        for var in _CONTEXT_VARS.values():
            var.set(None)

    @staticmethod
    def bind(**fields: Any) -> "_BoundContext":
        """Context manager: set fields on entry, restore previous values on exit."""
        return _BoundContext(fields)


class _BoundContext:

    def __init__(self, fields: dict[str, Any]):
        for name in fields:
            _context_var(name)
        self._fields = fields
        self._tokens: list[tuple[ContextVar[str | None], Token]] = []

    def __enter__(self) -> type[LogContext]:
        for name, value in self._fields.items():
            if value is not None:
                var = _CONTEXT_VARS[name]
                self._tokens.append((var, var.set(_as_text(value))))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


def _as_text(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return str(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    """exc_* keys for a logged exception, including kernel error attributes."""
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # Rejections carry the failure kind the orchestrator reports to callers
    kind = getattr(exc, "kind", None)
    if kind is not None:
        fields["exc_kind"] = kind
    for name, value in vars(exc).items():
        if not name.startswith("_") and name != "args":
            fields.setdefault(f"exc_{name}", value)
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
            if key not in _RECORD_ATTRS:
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``governance_kernel`` namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_handler: logging.Handler | None = None
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach a JSON handler to the ``governance_kernel`` logger.

    Only the first call has an effect; later calls return immediately so
    that library code (engine initialization) can call it unconditionally.
    ``level`` accepts a level number or a name such as ``"DEBUG"``.
    """
    global _configured, _handler
    with _lock:
        if _configured:
            return
        _configured = True

    root = logging.getLogger(_LOGGER_PREFIX)
    root.setLevel(logging.getLevelName(level.upper()) if isinstance(level, str) else level)
    root.propagate = False

    target = handler or logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())
    root.addHandler(target)
    _handler = target


def reset_logging() -> None:
    """Remove the JSON handler and allow configure_logging() to run again.  Tests only."""
    global _configured, _handler
    with _lock:
        _configured = False
    root = logging.getLogger(_LOGGER_PREFIX)
    if _handler is not None:
        root.removeHandler(_handler)
        _handler = None
    root.setLevel(logging.WARNING)

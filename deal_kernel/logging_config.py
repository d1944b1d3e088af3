"""
Structured logging for the deal kernel.

Every record leaves as one JSON object per line.  Event names are the log
message (``proposal_sent``, ``pdf_render_failed``); details travel in
``extra`` and land as top-level keys.  Request-scoped fields (who is acting,
on which entity, in which operation) come from ``LogContext`` so service
code binds them once per operation instead of repeating them in every call.

Kernel exceptions logged with ``exc_info`` contribute their error code and
public attributes as ``exc_*`` keys.
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
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

ROOT_LOGGER = "deal_kernel"

_CONTEXT_FIELDS = ("correlation_id", "actor_id", "entity_id", "operation")

_fields: ContextVar[dict[str, str]] = ContextVar("deal_log_fields", default={})


class LogContext:
    """Request-scoped log fields, carried per thread and per asyncio task."""

    @staticmethod
    def set(**fields: Any) -> None:
        """Merge ``fields`` into the current context; None values are skipped."""
        _fields.set({**_fields.get(), **_known(fields)})

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_fields.get())

    @staticmethod
    def clear() -> None:
        _fields.set({})

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Apply ``fields`` for the duration of the block."""
        token = _fields.set({**_fields.get(), **_known(fields)})
        try:
            yield
        finally:
            _fields.reset(token)


def _known(fields: dict[str, Any]) -> dict[str, str]:
    return {
        name: str(fields[name])
        for name in _CONTEXT_FIELDS
        if fields.get(name) is not None
    }


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    # UUID, Decimal and anything else without a JSON form
    return str(value)


# Attributes every LogRecord has; anything else on a record came from ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "taskName"}


class StructuredFormatter(logging.Formatter):
    """One JSON line per record: event, context, extras, exception."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                entry.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            entry.update(self._exception_fields(record.exc_info[1]))
            entry["traceback"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=_json_default)

    @staticmethod
    def _exception_fields(exc: BaseException) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        for name, value in vars(exc).items():
            if name != "code" and not name.startswith("_"):
                fields[f"exc_{name}"] = value
        if exc.__cause__ is not None:
            fields["exc_cause"] = repr(exc.__cause__)
        return fields


def get_logger(name: str) -> logging.Logger:
    """``deal_kernel.<name>``; configured once through the package root."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


_configure_lock = threading.Lock()
_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach a JSON handler to the ``deal_kernel`` logger.

    The first call wins; later calls are ignored until ``reset_logging``.
    Records do not propagate to the root logger.
    """
    global _handler
    with _configure_lock:
        if _handler is not None:
            return
        _handler = handler or logging.StreamHandler(stream or sys.stderr)
        _handler.setFormatter(StructuredFormatter())

        root = logging.getLogger(ROOT_LOGGER)
        root.setLevel(level)
        root.propagate = False
        root.addHandler(_handler)


def reset_logging() -> None:
    """Detach the configured handler. Test helper."""
    global _handler
    with _configure_lock:
        _handler = None
        root = logging.getLogger(ROOT_LOGGER)
        root.handlers.clear()
        root.setLevel(logging.WARNING)

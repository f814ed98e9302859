# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""
Structured logging with context injection.

Every record carries the active ContextData fields. Typed events are
logged through StructuredLogger.event and rendered as JSON or as a
single console line depending on the configured format.
"""

from __future__ import annotations

import json
import logging
import sys
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, MutableMapping, Optional, Union

from fleetsched.core.observability.context import ObservabilityContextManager
from fleetsched.core.observability.events import ExecutionEvent, LogLevel, ServiceEvent

Event = Union[ServiceEvent, ExecutionEvent]

_EVENT_ATTR = "event_data"

_LEVEL_MAP = {
    LogLevel.DEBUG.value: logging.DEBUG,
    LogLevel.INFO.value: logging.INFO,
    LogLevel.WARN.value: logging.WARNING,
    LogLevel.ERROR.value: logging.ERROR,
}

_CONTEXT_FIELDS = ("correlation_id", "job_id", "job_name", "execution_id", "vm_id")


class LogFormatter(logging.Formatter, ABC):
    """Base class for formatters that understand event records."""

    @staticmethod
    def event_payload(record: logging.LogRecord) -> Optional[dict[str, Any]]:
        """Return the serialized event attached to a record, if any."""
        return getattr(record, _EVENT_ATTR, None)

    @staticmethod
    def context_fields(record: logging.LogRecord) -> dict[str, Any]:
        """Return context fields that were injected into the record."""
        return {
            name: getattr(record, name)
            for name in _CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        }

    @abstractmethod
    def format(self, record: logging.LogRecord) -> str:
        """Render a record."""


class JSONFormatter(LogFormatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = self.event_payload(record)
        if payload is None:
            payload = {
                "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
            payload.update(self.context_fields(record))
        else:
            payload = {"logger": record.name, **payload}
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ConsoleFormatter(LogFormatter):
    """Human readable single-line output."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S"
        )
        payload = self.event_payload(record)
        if payload is None:
            message = record.getMessage()
            context = self.context_fields(record)
        else:
            message = payload.get("event", "")
            context = {
                k: v
                for k, v in payload.items()
                if k not in ("event", "timestamp", "stream", "level") and v is not None
            }
        suffix = " ".join(f"{k}={v}" for k, v in context.items())
        line = f"{timestamp} {record.levelname:<7} {record.name}: {message}"
        if suffix:
            line = f"{line} [{suffix}]"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class StructuredLogger(logging.LoggerAdapter):
    """
    Logger adapter that injects observability context into every record.
    """

    def __init__(self, logger: logging.Logger) -> None:
        super().__init__(logger, {})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = ObservabilityContextManager.instance().log_fields()
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def event(self, event: Event) -> None:
        """Log a typed event at the event's own level.

        :param event: ServiceEvent or ExecutionEvent
        """
        payload = event.model_dump(mode="json", exclude_none=True)
        level = _LEVEL_MAP.get(payload.get("level", LogLevel.INFO.value), logging.INFO)
        self.log(level, payload.get("event", ""), extra={_EVENT_ATTR: payload})


class LoggerFactory:
    """
    Configures the root handler once and hands out StructuredLoggers.
    """

    _initialized: bool = False
    _handler: Optional[logging.Handler] = None

    @classmethod
    def initialize(
        cls,
        level: int = logging.INFO,
        log_format: str = "console",
        stream: Any = None,
    ) -> None:
        """Configure root logging.

        :param level: Root log level
        :param log_format: "json" or "console"
        :param stream: Output stream, defaults to stderr
        """
        root = logging.getLogger()
        if cls._handler is not None:
            root.removeHandler(cls._handler)

        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(JSONFormatter() if log_format == "json" else ConsoleFormatter())
        root.addHandler(handler)
        root.setLevel(level)

        logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))

        cls._handler = handler
        cls._initialized = True

    @classmethod
    def is_initialized(cls) -> bool:
        """Check whether logging has been configured."""
        return cls._initialized

    @classmethod
    def get_logger(cls, name: str) -> StructuredLogger:
        """Create a StructuredLogger for a module."""
        return StructuredLogger(logging.getLogger(name))


def initialize_logging(level: Union[int, str] = logging.INFO, log_format: str = "console") -> None:
    """Initialize logging once at startup.

    :param level: Log level as int or name
    :param log_format: "json" or "console"
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    LoggerFactory.initialize(level=level, log_format=log_format)


def get_logger(name: str) -> StructuredLogger:
    """Get a context-aware logger."""
    return LoggerFactory.get_logger(name)


def clear_correlation_id() -> None:
    """Remove the correlation ID from the current context."""
    ObservabilityContextManager.instance().clear_correlation_id()

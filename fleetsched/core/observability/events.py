# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""
Typed events for the engine and for job executions.

Events are pydantic models so each stream has a fixed schema that log
queries can rely on.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fleetsched.core.observability.context import (
    get_correlation_id,
    get_execution_id,
    get_job_id,
    get_job_name,
    get_vm_id,
)

MAX_ERROR_LENGTH = 200


class LogStream(str, Enum):
    SERVICE = "service_logs"
    EXECUTION = "execution_logs"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


def truncate(text: Optional[str], max_length: int = MAX_ERROR_LENGTH) -> Optional[str]:
    """Shorten text to max_length, ending with an ellipsis when cut.

    :param text: Text to shorten
    :type text: Optional[str]
    :param max_length: Maximum length including the ellipsis
    :type max_length: int
    :returns: The text, shortened if needed
    :rtype: Optional[str]
    """
    if text is None or len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


class _Event(BaseModel):
    """Fields shared by every stream."""

    model_config = ConfigDict(use_enum_values=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = None
    level: LogLevel = LogLevel.INFO
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    job_id: Optional[int] = None
    job_name: Optional[str] = None

    @field_validator("error")
    @classmethod
    def _shorten_error(cls, value: Optional[str]) -> Optional[str]:
        return truncate(value)


ServiceEventType = Literal[
    "engine_start",
    "engine_stop",
    "reconcile",
    "job_create",
    "job_update",
    "job_delete",
    "schedule_trigger",
    "retention_sweep",
    "recovery",
    "error",
]


class ServiceEvent(_Event):
    """Engine lifecycle and job management."""

    stream: Literal[LogStream.SERVICE] = LogStream.SERVICE
    event: ServiceEventType
    status: Optional[Literal["success", "failed", "error"]] = None
    trigger_id: Optional[str] = None
    job_count: Optional[int] = None
    execution_count: Optional[int] = None


ExecutionEventType = Literal[
    "execution_start",
    "execution_end",
    "execution_skip",
    "vm_start",
    "vm_end",
    "error",
]


class ExecutionEvent(_Event):
    """One fire of a job and the VMs it touched."""

    stream: Literal[LogStream.EXECUTION] = LogStream.EXECUTION
    event: ExecutionEventType
    status: Optional[Literal["success", "failed", "skipped", "cancelled", "error"]] = None
    execution_id: Optional[str] = None
    task_type: Optional[str] = None
    vm_id: Optional[int] = None
    vm_name: Optional[str] = None
    processed_vms: Optional[int] = None
    successful_vms: Optional[int] = None
    failed_vms: Optional[int] = None


def create_service_event(
    event: ServiceEventType,
    level: LogLevel = LogLevel.INFO,
    **fields: Any,
) -> ServiceEvent:
    """Build a service event, taking the correlation id from the context.

    :param event: Event type
    :type event: ServiceEventType
    :param level: Log level
    :type level: LogLevel
    :param fields: Additional event fields
    :returns: The event
    :rtype: ServiceEvent
    """
    fields.setdefault("correlation_id", get_correlation_id())
    return ServiceEvent(event=event, level=level, **fields)


def create_execution_event(
    event: ExecutionEventType,
    level: LogLevel = LogLevel.INFO,
    **fields: Any,
) -> ExecutionEvent:
    """Build an execution event, filling unset ids from the bound context."""
    fields.setdefault("correlation_id", get_correlation_id())
    fields.setdefault("execution_id", get_execution_id())
    fields.setdefault("job_id", get_job_id())
    fields.setdefault("job_name", get_job_name())
    fields.setdefault("vm_id", get_vm_id())
    return ExecutionEvent(event=event, level=level, **fields)

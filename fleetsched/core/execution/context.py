# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Context handed to a task for one execution, and the result it returns."""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from fleetsched.core.models.execution import JobExecution
from fleetsched.core.models.job import ScheduledJob
from fleetsched.core.services.selector import VMSelectorResolver
from fleetsched.core.storage.execution_store import ExecutionStore

_TRUE_VALUES = frozenset({"true", "yes", "on", "1"})
_FALSE_VALUES = frozenset({"false", "no", "off", "0"})


def _never_cancelled() -> bool:
    return False


@dataclass
class TaskContext:
    """Everything a task needs to run one execution of a job."""

    job: ScheduledJob
    execution: JobExecution
    resolver: VMSelectorResolver
    execution_store: ExecutionStore
    manual_trigger: bool = False
    parameters: Dict[str, str] = field(default_factory=dict)
    deadline: Optional[float] = None
    is_cancelled: Callable[[], bool] = _never_cancelled
    cancel_event: Optional[threading.Event] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_execution(
        cls,
        job: ScheduledJob,
        execution: JobExecution,
        resolver: VMSelectorResolver,
        execution_store: ExecutionStore,
        manual_trigger: bool = False,
        is_cancelled: Optional[Callable[[], bool]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> "TaskContext":
        """Build a context whose deadline starts now.

        :param job: Job being executed
        :param execution: Execution row, already persisted
        :param resolver: Selector resolver for target VMs
        :param execution_store: Store for per-VM rows and progress
        :param manual_trigger: Whether the fire was manual
        :param is_cancelled: Callable reporting external cancellation,
            defaults to the state of cancel_event
        :param cancel_event: Event set when the execution is cancelled
        :returns: TaskContext
        """
        if is_cancelled is None:
            is_cancelled = cancel_event.is_set if cancel_event is not None else _never_cancelled
        return cls(
            job=job,
            execution=execution,
            resolver=resolver,
            execution_store=execution_store,
            manual_trigger=manual_trigger,
            parameters=dict(job.parameters),
            deadline=time.monotonic() + job.timeout_seconds,
            is_cancelled=is_cancelled,
            cancel_event=cancel_event,
        )

    def get_parameter(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.parameters.get(key, default)

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        """Integer parameter; malformed values fall back to the default."""
        value = self.parameters.get(key)
        if value is None:
            return default
        try:
            return int(value.strip())
        except ValueError:
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Boolean parameter accepting true/false, yes/no, on/off and 1/0."""
        value = self.parameters.get(key)
        if value is None:
            return default
        normalized = value.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
        return default

    def deadline_exceeded(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def should_stop(self) -> bool:
        return self.is_cancelled() or self.deadline_exceeded()

    def wait(self, seconds: float) -> bool:
        """Pause between attempts, waking early on cancellation.

        The pause never extends past the deadline.

        :param seconds: Requested pause
        :returns: False if the execution was cancelled or ran out of time
        """
        if self.deadline is not None:
            seconds = min(seconds, max(self.deadline - time.monotonic(), 0.0))
        if seconds > 0 and not self.should_stop():
            if self.cancel_event is not None:
                self.cancel_event.wait(seconds)
            else:
                time.sleep(seconds)
        return not self.should_stop()


@dataclass
class TaskResult:
    """Aggregate outcome of a task run."""

    success: bool
    error_message: Optional[str] = None
    processed_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **details: Any) -> "TaskResult":
        return cls(success=True, details=dict(details))

    @classmethod
    def failure(cls, error_message: str, **details: Any) -> "TaskResult":
        return cls(success=False, error_message=error_message, details=dict(details))

    def with_counts(self, processed: int, succeeded: int, failed: int) -> "TaskResult":
        self.processed_count = processed
        self.success_count = succeeded
        self.failed_count = failed
        return self

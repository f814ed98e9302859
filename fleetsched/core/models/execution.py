# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Job execution models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from fleetsched.core.exceptions import ExecutionStateError


def _utcnow() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Status of one firing of a job."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
)


class VMExecutionStatus(str, Enum):
    """Outcome of processing a single VM."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class JobExecution(BaseModel):
    """One firing of a scheduled job."""

    model_config = ConfigDict(use_enum_values=True)

    id: Optional[int] = None
    job_id: int
    job_name: Optional[str] = None
    execution_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    processed_vms: int = 0
    successful_vms: int = 0
    failed_vms: int = 0
    error_message: Optional[str] = None
    execution_details: Dict[str, Any] = Field(default_factory=dict)

    def _finish(self, target: ExecutionStatus) -> None:
        if self.is_terminal:
            raise ExecutionStateError(self.execution_id, str(self.status), target.value)
        self.status = target.value
        self.completed_at = _utcnow()

    def complete(self) -> None:
        """Mark execution as completed."""
        self._finish(ExecutionStatus.COMPLETED)

    def fail(self, error_message: str) -> None:
        """Mark execution as failed.

        :param error_message: Job-level failure reason.
        :raises ExecutionStateError: If the execution already finished.
        """
        self._finish(ExecutionStatus.FAILED)
        self.error_message = error_message

    def cancel(self, reason: str = "Cancelled by user") -> None:
        """Mark execution as cancelled.

        :param reason: Cancellation reason.
        :raises ExecutionStateError: If the execution already finished.
        """
        self._finish(ExecutionStatus.CANCELLED)
        self.error_message = reason

    @property
    def is_terminal(self) -> bool:
        """Check if execution is in a terminal state."""
        return self.status in TERMINAL_STATUSES

    @property
    def manual_trigger(self) -> bool:
        """Whether this execution was started by a manual trigger."""
        return bool(self.execution_details.get("manualTrigger", False))

    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate execution duration in seconds."""
        end_time = self.completed_at or _utcnow()
        return (end_time - self.started_at).total_seconds()


class JobVMExecution(BaseModel):
    """Outcome of running a task against one VM within an execution."""

    model_config = ConfigDict(use_enum_values=True)

    id: Optional[int] = None
    execution_pk: int
    vm_id: int
    vm_name: Optional[str] = None
    node_name: Optional[str] = None
    status: VMExecutionStatus = VMExecutionStatus.SUCCESS
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result_data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        """Whether the outcome of this VM has been recorded."""
        return self.completed_at is not None

    def _finish(self, target: VMExecutionStatus) -> None:
        if self.is_finalized:
            raise ExecutionStateError(
                f"{self.execution_pk}/vm-{self.vm_id}", str(self.status), target.value
            )
        self.status = target.value
        self.completed_at = _utcnow()

    def succeed(self, result_data: Optional[Dict[str, Any]] = None) -> None:
        """Record a successful outcome."""
        self._finish(VMExecutionStatus.SUCCESS)
        self.result_data = result_data or {}

    def fail(self, error_message: str) -> None:
        """Record a failed outcome."""
        self._finish(VMExecutionStatus.FAILED)
        self.error_message = error_message
        self.result_data = {"error": error_message}

    def skip(self, reason: str) -> None:
        """Record that the VM was not processed."""
        self._finish(VMExecutionStatus.SKIPPED)
        self.error_message = reason

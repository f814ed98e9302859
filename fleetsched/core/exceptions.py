# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Scheduler exceptions.
"""

from typing import Optional


class SchedulerError(Exception):
    """
    Base exception for all scheduler errors.
    """

    pass


class ParseError(SchedulerError, ValueError):
    """
    Raised when a tag expression cannot be parsed.
    """

    def __init__(
        self,
        message: str,
        expression: Optional[str] = None,
        token: Optional[str] = None,
    ) -> None:
        self.expression = expression
        self.token = token
        super().__init__(message)


class ValidationError(SchedulerError, ValueError):
    """
    Raised when a job definition is invalid. Identifies the offending field.
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"Invalid {field}: {message}")


class SchedulingError(SchedulerError):
    """
    Raised when the trigger runtime rejects a schedule operation.
    """

    def __init__(self, trigger_id: str, reason: str) -> None:
        self.trigger_id = trigger_id
        self.reason = reason
        super().__init__(f"Scheduling failed for {trigger_id}: {reason}")


class JobNotFoundError(SchedulerError):
    """
    Raised when a scheduled job is not found.
    """

    def __init__(self, job_id: object) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobDisabledError(SchedulerError):
    """
    Raised when a manual trigger targets a disabled job.
    """

    def __init__(self, job_name: str) -> None:
        self.job_name = job_name
        super().__init__(f"Job '{job_name}' is disabled. Enable it before triggering.")


class ExecutionError(SchedulerError):
    """
    Base exception for errors raised while a job executes.
    """

    pass


class TaskValidationError(ExecutionError):
    """
    Raised when a task's preconditions are not met.
    """

    def __init__(self, task_type: str, message: str) -> None:
        self.task_type = task_type
        self.message = message
        super().__init__(message)


class PerVMError(ExecutionError):
    """
    Raised (and recorded) when processing a single VM fails.
    """

    def __init__(self, vm_id: int, vm_name: Optional[str], cause: BaseException) -> None:
        self.vm_id = vm_id
        self.vm_name = vm_name
        self.cause = cause
        super().__init__(f"VM {vm_id} ({vm_name}): {cause}")


class UnknownTaskTypeError(ExecutionError):
    """
    Raised when no task implementation is registered for a type name.
    """

    def __init__(self, task_type: str) -> None:
        self.task_type = task_type
        super().__init__(f"No task registered for type '{task_type}'")


class ExecutionStateError(ExecutionError):
    """
    Raised on an illegal execution status transition.
    """

    def __init__(self, execution_id: str, current: str, target: str) -> None:
        self.execution_id = execution_id
        self.current = current
        self.target = target
        super().__init__(
            f"Execution {execution_id} cannot transition from {current} to {target}"
        )

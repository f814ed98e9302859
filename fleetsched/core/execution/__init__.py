# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Task execution framework."""

from fleetsched.core.execution.context import TaskContext, TaskResult
from fleetsched.core.execution.executor import JobExecutor
from fleetsched.core.execution.task import ScheduledTask, TaskRegistry, VMTask

__all__ = [
    "TaskContext",
    "TaskResult",
    "JobExecutor",
    "ScheduledTask",
    "TaskRegistry",
    "VMTask",
]

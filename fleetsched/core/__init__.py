# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Fleet scheduler core - scheduled task orchestration for VM fleets.

This package provides:
- Tag expression language for VM targeting
- Job, execution and inventory models
- SQLite-based storage for persistence
- Per-VM task execution framework
- Cron-based scheduler engine
"""

from fleetsched.core.execution.executor import JobExecutor
from fleetsched.core.execution.task import ScheduledTask, TaskRegistry, VMTask
from fleetsched.core.models.execution import ExecutionStatus, JobExecution, JobVMExecution
from fleetsched.core.models.job import JobDefinition, JobUpdate, ScheduledJob, VMSelector
from fleetsched.core.services.scheduler import SchedulerEngine
from fleetsched.core.services.selector import SelectionResult, VMSelectorResolver
from fleetsched.core.storage.execution_store import ExecutionStore
from fleetsched.core.storage.job_store import JobStore

__all__ = [
    "JobExecutor",
    "ScheduledTask",
    "TaskRegistry",
    "VMTask",
    "ExecutionStatus",
    "JobExecution",
    "JobVMExecution",
    "JobDefinition",
    "JobUpdate",
    "ScheduledJob",
    "VMSelector",
    "SchedulerEngine",
    "SelectionResult",
    "VMSelectorResolver",
    "ExecutionStore",
    "JobStore",
]

# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Pydantic models for the scheduler."""

from fleetsched.core.models.execution import (
    ExecutionStatus,
    JobExecution,
    JobVMExecution,
    VMExecutionStatus,
)
from fleetsched.core.models.job import (
    JobDefinition,
    JobUpdate,
    ScheduledJob,
    SelectorType,
    VMSelector,
    build_job_definition,
    build_scheduled_job,
    trigger_id_for,
)
from fleetsched.core.models.vm import Snapshot, VirtualMachine

__all__ = [
    "ExecutionStatus",
    "JobExecution",
    "JobVMExecution",
    "VMExecutionStatus",
    "JobDefinition",
    "JobUpdate",
    "ScheduledJob",
    "SelectorType",
    "VMSelector",
    "build_job_definition",
    "build_scheduled_job",
    "trigger_id_for",
    "Snapshot",
    "VirtualMachine",
]

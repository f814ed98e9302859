# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Storage layer for the scheduler."""

from fleetsched.core.storage.execution_store import ExecutionStore
from fleetsched.core.storage.job_store import JobStore

__all__ = ["ExecutionStore", "JobStore"]

# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Built-in VM tasks."""

from fleetsched.core.execution.task import TaskRegistry
from fleetsched.core.services.inventory import SnapshotService
from fleetsched.core.tasks.snapshot_create import SnapshotCreateTask
from fleetsched.core.tasks.snapshot_delete import SnapshotDeleteTask


def register_builtin_tasks(registry: TaskRegistry, snapshot_service: SnapshotService) -> None:
    """Register the snapshot tasks against a snapshot service.

    :param registry: Registry to populate
    :param snapshot_service: Service the tasks act through
    """
    registry.register(
        SnapshotCreateTask.task_type, lambda: SnapshotCreateTask(snapshot_service)
    )
    registry.register(
        SnapshotDeleteTask.task_type, lambda: SnapshotDeleteTask(snapshot_service)
    )


__all__ = ["SnapshotCreateTask", "SnapshotDeleteTask", "register_builtin_tasks"]

# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Scheduled snapshot creation with optional rotation."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fleetsched.core.exceptions import TaskValidationError
from fleetsched.core.execution.context import TaskContext
from fleetsched.core.execution.task import VMTask
from fleetsched.core.models.vm import Snapshot, VirtualMachine
from fleetsched.core.observability import get_logger
from fleetsched.core.services.inventory import SnapshotService

logger = get_logger(__name__)

DEFAULT_NAME_PATTERN = "scheduled-{vm}-{datetime}"
DEFAULT_DESCRIPTION = "Scheduled snapshot"
ROTATION_PREFIX = "scheduled-"
PLACEHOLDERS = ("{vm}", "{date}", "{time}", "{datetime}")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def generate_snapshot_name(pattern: str, vm_label: str, now: Optional[datetime] = None) -> str:
    """Expand the placeholders of a snapshot name pattern.

    :param pattern: Pattern with {vm}, {date}, {time} and/or {datetime}
    :param vm_label: Value for {vm}
    :param now: Timestamp to use, defaults to the current UTC time
    :returns: Snapshot name
    """
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return (
        pattern.replace("{vm}", vm_label)
        .replace("{datetime}", now.strftime("%Y%m%d-%H%M%S"))
        .replace("{date}", now.strftime("%Y%m%d"))
        .replace("{time}", now.strftime("%H%M%S"))
    )


def _created_at(snapshot: Snapshot) -> datetime:
    created = snapshot.created_at
    if created is None:
        return _EPOCH
    if created.tzinfo is None:
        return created.replace(tzinfo=timezone.utc)
    return created


class SnapshotCreateTask(VMTask):
    """Creates one snapshot per selected VM.

    Parameters:

    - ``snapshotNamePattern``: name pattern, default ``scheduled-{vm}-{datetime}``
    - ``description``: snapshot description, default ``Scheduled snapshot``
    - ``includeVmState``: also save RAM state
    - ``maxSnapshots``: keep at most this many ``scheduled-`` snapshots per VM
    - ``snapshotTTL``: hours, recorded in the description for later pruning
    """

    task_type = "snapshot_create"
    description = "Create VM snapshots"

    def __init__(self, snapshot_service: SnapshotService) -> None:
        self.snapshot_service = snapshot_service

    def validate(self, context: TaskContext) -> None:
        pattern = context.get_parameter("snapshotNamePattern")
        if pattern is not None and not any(p in pattern for p in PLACEHOLDERS):
            raise TaskValidationError(
                self.task_type,
                "snapshotNamePattern should contain at least one placeholder: "
                "{vm}, {date}, {time}, or {datetime}",
            )

        max_snapshots = context.get_int("maxSnapshots")
        if max_snapshots is not None and max_snapshots < 1:
            raise TaskValidationError(self.task_type, "maxSnapshots must be at least 1")

        ttl = context.get_int("snapshotTTL")
        if ttl is not None and ttl < 1:
            raise TaskValidationError(self.task_type, "snapshotTTL must be at least 1 hour")

    def process_vm(self, context: TaskContext, vm: VirtualMachine) -> Dict[str, Any]:
        pattern = context.get_parameter("snapshotNamePattern", DEFAULT_NAME_PATTERN)
        description = context.get_parameter("description", DEFAULT_DESCRIPTION)
        include_vm_state = context.get_bool("includeVmState", False)
        max_snapshots = context.get_int("maxSnapshots")
        ttl = context.get_int("snapshotTTL")

        name = generate_snapshot_name(pattern, vm.label)
        if ttl:
            description = f"{description} (TTL: {ttl}h)"

        logger.info(f"Creating snapshot '{name}' for VM {vm.id} ({vm.name})")
        task_id = self.snapshot_service.create_snapshot(
            vm, name, description, include_vm_state=include_vm_state
        )

        message = f"Created snapshot '{name}' (task: {task_id})"
        result: Dict[str, Any] = {"snapshotName": name, "taskId": task_id}
        if ttl:
            message += f" - TTL: {ttl} hours"
            result["ttlHours"] = ttl
        result["message"] = message

        if max_snapshots:
            deleted = self.rotate(vm, max_snapshots, keep=name)
            if deleted:
                result["rotated"] = len(deleted)
                result["rotatedSnapshots"] = deleted
                result["rotationMessage"] = f"Deleted {len(deleted)} old snapshots"
        return result

    def rotate(
        self, vm: VirtualMachine, max_snapshots: int, keep: Optional[str] = None
    ) -> List[str]:
        """Delete the oldest scheduled snapshots beyond the limit.

        The count includes the snapshot just created. Failures are logged
        and never propagate.

        :param vm: Target VM
        :param max_snapshots: Number of scheduled snapshots to keep
        :param keep: Name of the snapshot just created, never deleted
        :returns: Names of deleted snapshots
        """
        deleted: List[str] = []
        try:
            scheduled = sorted(
                (
                    s
                    for s in self.snapshot_service.list_snapshots(vm)
                    if s.name.startswith(ROTATION_PREFIX) and s.name != keep
                ),
                key=_created_at,
            )
            excess = len(scheduled) - max_snapshots + 1
            for snapshot in scheduled[: max(excess, 0)]:
                try:
                    logger.info(
                        f"Deleting old snapshot '{snapshot.name}' for VM {vm.id} (rotation)"
                    )
                    self.snapshot_service.delete_snapshot(vm, snapshot.name)
                    deleted.append(snapshot.name)
                except Exception as e:
                    logger.warning(
                        f"Failed to delete old snapshot '{snapshot.name}' for VM {vm.id}: {e}"
                    )
        except Exception as e:
            logger.warning(f"Failed to rotate snapshots for VM {vm.id}: {e}")
        return deleted

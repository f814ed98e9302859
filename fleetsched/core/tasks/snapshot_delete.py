# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Pruning of old snapshots by age, name pattern or TTL."""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from fleetsched.core.exceptions import TaskValidationError
from fleetsched.core.execution.context import TaskContext
from fleetsched.core.execution.task import VMTask
from fleetsched.core.models.vm import Snapshot, VirtualMachine
from fleetsched.core.observability import get_logger
from fleetsched.core.services.inventory import SnapshotService
from fleetsched.core.services.selector import glob_to_regex

logger = get_logger(__name__)

TTL_PATTERN = re.compile(r"TTL:\s*(\d+)h")
CURRENT_SNAPSHOT = "current"
SAFE_NAME_PREFIXES = ("scheduled-", "auto-", "pre-update-")
SAFE_DESCRIPTION_MARKERS = ("Scheduled snapshot", "TTL:")


def extract_ttl_hours(description: Optional[str]) -> Optional[int]:
    """Read ``TTL: <N>h`` from a snapshot description."""
    if not description:
        return None
    match = TTL_PATTERN.search(description)
    return int(match.group(1)) if match else None


def is_scheduler_snapshot(snapshot: Snapshot) -> bool:
    """Whether a snapshot looks like one this scheduler created."""
    if snapshot.name.startswith(SAFE_NAME_PREFIXES):
        return True
    description = snapshot.description or ""
    return any(marker in description for marker in SAFE_DESCRIPTION_MARKERS)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class SnapshotDeleteTask(VMTask):
    """Deletes snapshots matching age, name and TTL criteria.

    Parameters:

    - ``ageThresholdHours``: delete snapshots older than this
    - ``namePattern``: only consider names matching this ``*``/``?`` glob
    - ``checkDescription``: delete snapshots whose ``TTL: Nh`` has expired
    - ``safeMode``: only touch scheduler-created snapshots (default true)
    - ``dryRun``: report what would be deleted without deleting
    """

    task_type = "snapshot_delete"
    description = "Delete old VM snapshots"

    def __init__(self, snapshot_service: SnapshotService) -> None:
        self.snapshot_service = snapshot_service

    def validate(self, context: TaskContext) -> None:
        age_hours = context.get_int("ageThresholdHours")
        name_pattern = context.get_parameter("namePattern")
        check_description = context.get_bool("checkDescription", False)

        if age_hours is None and name_pattern is None and not check_description:
            raise TaskValidationError(
                self.task_type,
                "At least one deletion criteria must be specified: "
                "ageThresholdHours, namePattern, or checkDescription",
            )
        if age_hours is not None and age_hours < 1:
            raise TaskValidationError(self.task_type, "ageThresholdHours must be at least 1")

    def _deletion_reason(
        self,
        snapshot: Snapshot,
        now: datetime,
        age_hours: Optional[int],
        check_description: bool,
    ) -> Optional[str]:
        # A name pattern on its own selects what it matches.
        if age_hours is None and not check_description:
            return "matches name pattern"
        if snapshot.created_at is None:
            return None

        reason = None
        created = _as_utc(snapshot.created_at)
        if age_hours is not None and created < now - timedelta(hours=age_hours):
            reason = f"older than {age_hours} hours"
        if check_description:
            ttl = extract_ttl_hours(snapshot.description)
            if ttl is not None and now > created + timedelta(hours=ttl):
                reason = f"TTL expired ({ttl}h)"
        return reason

    def process_vm(self, context: TaskContext, vm: VirtualMachine) -> Dict[str, Any]:
        age_hours = context.get_int("ageThresholdHours")
        name_pattern = context.get_parameter("namePattern")
        check_description = context.get_bool("checkDescription", False)
        safe_mode = context.get_bool("safeMode", True)
        dry_run = context.get_bool("dryRun", False)

        name_regex = glob_to_regex(name_pattern, ignore_case=False) if name_pattern else None
        now = datetime.now(timezone.utc)

        snapshots = self.snapshot_service.list_snapshots(vm)
        logger.info(f"Found {len(snapshots)} snapshots for VM {vm.id} ({vm.name})")

        deleted: List[str] = []
        skipped: List[str] = []
        error_count = 0
        for snapshot in snapshots:
            try:
                outcome = self._handle_snapshot(
                    vm, snapshot, now, name_regex, age_hours, check_description, safe_mode, dry_run
                )
            except Exception as e:
                logger.error(f"Failed to process snapshot '{snapshot.name}' for VM {vm.id}: {e}")
                error_count += 1
                continue
            if outcome is None:
                continue
            kind, entry = outcome
            (deleted if kind == "deleted" else skipped).append(entry)

        if dry_run:
            message = f"[DRY RUN] Would delete {len(deleted)} snapshots"
        else:
            message = f"Deleted {len(deleted)} snapshots"

        return {
            "vmId": vm.id,
            "vmName": vm.name,
            "totalSnapshots": len(snapshots),
            "deletedCount": len(deleted),
            "deletedSnapshots": deleted,
            "skippedCount": len(skipped),
            "skippedSnapshots": skipped,
            "errorCount": error_count,
            "dryRun": dry_run,
            "message": message,
        }

    def _handle_snapshot(
        self,
        vm: VirtualMachine,
        snapshot: Snapshot,
        now: datetime,
        name_regex: Optional["re.Pattern[str]"],
        age_hours: Optional[int],
        check_description: bool,
        safe_mode: bool,
        dry_run: bool,
    ) -> Optional[Tuple[str, str]]:
        """Decide on and apply the fate of one snapshot.

        :returns: ("deleted" | "skipped", entry) or None when left untouched
        """
        if snapshot.name == CURRENT_SNAPSHOT:
            return None
        if name_regex is not None and not name_regex.match(snapshot.name):
            logger.debug(f"Snapshot '{snapshot.name}' does not match name pattern")
            return None
        if safe_mode and not is_scheduler_snapshot(snapshot):
            return "skipped", f"{snapshot.name} (not scheduler-created)"

        reason = self._deletion_reason(snapshot, now, age_hours, check_description)
        if reason is None:
            logger.debug(f"Keeping snapshot '{snapshot.name}' for VM {vm.id}")
            return None

        if dry_run:
            logger.info(
                f"[DRY RUN] Would delete snapshot '{snapshot.name}' for VM {vm.id} - {reason}"
            )
            return "deleted", f"{snapshot.name} (dry run: {reason})"

        logger.info(f"Deleting snapshot '{snapshot.name}' for VM {vm.id} - {reason}")
        self.snapshot_service.delete_snapshot(vm, snapshot.name)
        return "deleted", f"{snapshot.name} ({reason})"

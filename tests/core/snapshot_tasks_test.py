# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Tests for the snapshot_create and snapshot_delete tasks."""

from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from fleetsched.core.exceptions import TaskValidationError
from fleetsched.core.execution.context import TaskContext
from fleetsched.core.models.vm import Snapshot, VirtualMachine
from fleetsched.core.tasks.snapshot_create import SnapshotCreateTask, generate_snapshot_name
from fleetsched.core.tasks.snapshot_delete import (
    SnapshotDeleteTask,
    extract_ttl_hours,
    is_scheduler_snapshot,
)

WEB_01 = VirtualMachine(id=101, name="web-01", node="pve1", tags=["env-prod", "web"])
NOW = datetime.now(timezone.utc)


def _snapshot(name: str, hours_ago: float, description: str = "") -> Snapshot:
    return Snapshot(name=name, description=description, created_at=NOW - timedelta(hours=hours_ago))


class TestSnapshotNaming:
    def test_placeholders(self) -> None:
        when = datetime(2024, 3, 9, 4, 5, 6, tzinfo=timezone.utc)
        assert (
            generate_snapshot_name("scheduled-{vm}-{datetime}", "web-01", when)
            == "scheduled-web-01-20240309-040506"
        )
        assert generate_snapshot_name("{vm}_{date}_{time}", "db", when) == "db_20240309_040506"

    def test_converted_to_utc(self) -> None:
        when = datetime(2024, 3, 9, 1, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert generate_snapshot_name("{datetime}", "x", when) == "20240308-230000"


class TestSnapshotCreateTask:
    """Unit tests for snapshot creation and rotation."""

    def test_creates_one_snapshot_per_vm(
        self, make_context: Callable[..., TaskContext], snapshot_service
    ) -> None:
        context = make_context(
            parameters={"description": "Nightly", "includeVmState": "true", "snapshotTTL": "48"}
        )
        task = SnapshotCreateTask(snapshot_service)
        result = task.run(context)

        assert result.success
        assert result.processed_count == 2
        assert [c[0] for c in snapshot_service.created] == [101, 102]
        vm_id, name, description, include_state = snapshot_service.created[0]
        assert name.startswith("scheduled-web-01-")
        assert description == "Nightly (TTL: 48h)"
        assert include_state

        rows = context.execution_store.list_vm_executions(context.execution.id)
        assert rows[0].result_data["snapshotName"] == name
        assert rows[0].result_data["ttlHours"] == 48
        assert rows[0].result_data["taskId"].startswith("UPID:")

    @pytest.mark.parametrize(
        "parameters",
        [
            {"snapshotNamePattern": "static-name"},
            {"maxSnapshots": "0"},
            {"snapshotTTL": "0"},
        ],
    )
    def test_validate_rejects(
        self, make_context: Callable[..., TaskContext], snapshot_service, parameters: dict
    ) -> None:
        with pytest.raises(TaskValidationError):
            SnapshotCreateTask(snapshot_service).validate(make_context(parameters=parameters))

    def test_validate_accepts_defaults(
        self, make_context: Callable[..., TaskContext], snapshot_service
    ) -> None:
        SnapshotCreateTask(snapshot_service).validate(make_context())

    def test_rotation_keeps_newest(
        self, make_context: Callable[..., TaskContext], snapshot_service
    ) -> None:
        """
        With maxSnapshots=2 and two older scheduled snapshots, the oldest is
        deleted; manual snapshots are never rotated.
        """
        snapshot_service.add(101, _snapshot("scheduled-web-01-old", 72))
        snapshot_service.add(101, _snapshot("scheduled-web-01-mid", 24))
        snapshot_service.add(101, _snapshot("manual-before-upgrade", 100))

        context = make_context(
            parameters={"maxSnapshots": "2"}, vm_selectors=[{"type": "VM_LIST", "value": "101"}]
        )
        result = SnapshotCreateTask(snapshot_service).run(context)

        assert result.success
        assert snapshot_service.deleted == [(101, "scheduled-web-01-old")]
        remaining = {s.name for s in snapshot_service.snapshots[101]}
        assert "scheduled-web-01-mid" in remaining
        assert "manual-before-upgrade" in remaining
        assert len(remaining) == 3

        row = context.execution_store.list_vm_executions(context.execution.id)[0]
        assert row.result_data["rotated"] == 1
        assert row.result_data["rotatedSnapshots"] == ["scheduled-web-01-old"]

    def test_rotation_failure_does_not_fail_vm(self, snapshot_service) -> None:
        snapshot_service.add(101, _snapshot("scheduled-a", 10))
        snapshot_service.add(101, _snapshot("scheduled-b", 5))
        snapshot_service.fail_delete_names.add("scheduled-a")
        deleted = SnapshotCreateTask(snapshot_service).rotate(WEB_01, max_snapshots=1)
        assert deleted == ["scheduled-b"]

    def test_create_failure_recorded(
        self, make_context: Callable[..., TaskContext], snapshot_service
    ) -> None:
        snapshot_service.fail_vm_ids.add(102)
        result = SnapshotCreateTask(snapshot_service).run(make_context())
        assert not result.success
        assert (result.success_count, result.failed_count) == (1, 1)


class TestSnapshotHelpers:
    def test_extract_ttl(self) -> None:
        assert extract_ttl_hours("Scheduled snapshot (TTL: 48h)") == 48
        assert extract_ttl_hours("TTL:12h") == 12
        assert extract_ttl_hours("no ttl here") is None
        assert extract_ttl_hours(None) is None

    @pytest.mark.parametrize(
        "name, description, expected",
        [
            ("scheduled-web", "", True),
            ("auto-daily", "", True),
            ("pre-update-kernel", "", True),
            ("manual", "Scheduled snapshot", True),
            ("manual", "keep (TTL: 4h)", True),
            ("before-upgrade", "taken by hand", False),
        ],
    )
    def test_is_scheduler_snapshot(self, name: str, description: str, expected: bool) -> None:
        assert is_scheduler_snapshot(Snapshot(name=name, description=description)) is expected


class TestSnapshotDeleteTask:
    """Unit tests for snapshot pruning."""

    def _run(self, make_context, snapshot_service, **parameters):
        context = make_context(
            task_type="snapshot_delete",
            parameters=parameters,
            vm_selectors=[{"type": "VM_LIST", "value": "101"}],
        )
        task = SnapshotDeleteTask(snapshot_service)
        task.validate(context)
        result = task.run(context)
        row = context.execution_store.list_vm_executions(context.execution.id)[0]
        return result, row.result_data

    def test_requires_a_criterion(
        self, make_context: Callable[..., TaskContext], snapshot_service
    ) -> None:
        with pytest.raises(TaskValidationError):
            SnapshotDeleteTask(snapshot_service).validate(
                make_context(parameters={"dryRun": "true"})
            )

    def test_rejects_zero_age(
        self, make_context: Callable[..., TaskContext], snapshot_service
    ) -> None:
        with pytest.raises(TaskValidationError):
            SnapshotDeleteTask(snapshot_service).validate(
                make_context(parameters={"ageThresholdHours": "0"})
            )

    def test_deletes_by_age(self, make_context, snapshot_service) -> None:
        snapshot_service.add(101, _snapshot("scheduled-old", 30))
        snapshot_service.add(101, _snapshot("scheduled-new", 2))
        snapshot_service.add(101, Snapshot(name="current"))

        result, data = self._run(make_context, snapshot_service, ageThresholdHours="24")

        assert result.success
        assert snapshot_service.deleted == [(101, "scheduled-old")]
        assert data["deletedCount"] == 1
        assert data["totalSnapshots"] == 3
        assert data["deletedSnapshots"] == ["scheduled-old (older than 24 hours)"]

    def test_safe_mode_skips_foreign_snapshots(self, make_context, snapshot_service) -> None:
        snapshot_service.add(101, _snapshot("before-upgrade", 100, "taken by hand"))
        snapshot_service.add(101, _snapshot("scheduled-old", 100))

        _, data = self._run(make_context, snapshot_service, ageThresholdHours="24")

        assert snapshot_service.deleted == [(101, "scheduled-old")]
        assert data["skippedCount"] == 1
        assert data["skippedSnapshots"] == ["before-upgrade (not scheduler-created)"]

    def test_safe_mode_off(self, make_context, snapshot_service) -> None:
        snapshot_service.add(101, _snapshot("before-upgrade", 100, "taken by hand"))
        _, data = self._run(
            make_context, snapshot_service, ageThresholdHours="24", safeMode="false"
        )
        assert data["deletedCount"] == 1

    def test_ttl_expiry(self, make_context, snapshot_service) -> None:
        snapshot_service.add(101, _snapshot("keep-me", 10, "Scheduled snapshot (TTL: 48h)"))
        snapshot_service.add(101, _snapshot("expired", 50, "Scheduled snapshot (TTL: 48h)"))

        _, data = self._run(make_context, snapshot_service, checkDescription="true")

        assert snapshot_service.deleted == [(101, "expired")]
        assert data["deletedSnapshots"] == ["expired (TTL expired (48h))"]

    def test_name_pattern_restricts_age_match(self, make_context, snapshot_service) -> None:
        snapshot_service.add(101, _snapshot("auto-daily-1", 100))
        snapshot_service.add(101, _snapshot("scheduled-web-1", 100))

        _, data = self._run(
            make_context, snapshot_service, ageThresholdHours="24", namePattern="auto-*"
        )

        assert snapshot_service.deleted == [(101, "auto-daily-1")]
        assert data["deletedCount"] == 1

    def test_name_pattern_alone_deletes_matches(self, make_context, snapshot_service) -> None:
        snapshot_service.add(101, _snapshot("auto-daily-1", 1))
        snapshot_service.add(101, _snapshot("scheduled-web-1", 1))

        _, data = self._run(make_context, snapshot_service, namePattern="auto-*")

        assert snapshot_service.deleted == [(101, "auto-daily-1")]

    def test_dry_run_deletes_nothing(self, make_context, snapshot_service) -> None:
        snapshot_service.add(101, _snapshot("scheduled-old", 30))

        result, data = self._run(
            make_context, snapshot_service, ageThresholdHours="24", dryRun="true"
        )

        assert result.success
        assert snapshot_service.deleted == []
        assert data["dryRun"] is True
        assert data["deletedCount"] == 1
        assert data["message"] == "[DRY RUN] Would delete 1 snapshots"

    def test_error_on_one_snapshot_is_counted(self, make_context, snapshot_service) -> None:
        snapshot_service.add(101, _snapshot("scheduled-a", 30))
        snapshot_service.add(101, _snapshot("scheduled-b", 30))
        snapshot_service.fail_delete_names.add("scheduled-a")

        result, data = self._run(make_context, snapshot_service, ageThresholdHours="24")

        assert result.success
        assert data["errorCount"] == 1
        assert snapshot_service.deleted == [(101, "scheduled-b")]

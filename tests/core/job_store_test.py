# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Tests for JobStore."""

from pathlib import Path
from typing import Any, Callable, Dict

import pytest

from fleetsched.core.exceptions import ValidationError
from fleetsched.core.models.job import ScheduledJob, VMSelector, build_scheduled_job
from fleetsched.core.storage.job_store import JobStore


def _job(job_fields: Callable[..., Dict[str, Any]], **overrides: Any) -> ScheduledJob:
    return build_scheduled_job(**job_fields(**overrides))


class TestJobStore:
    """Unit tests for JobStore CRUD operations."""

    def test_creates_directories(self, temp_dir: Path) -> None:
        """
        Verify JobStore creates parent directory and DB file on init.
        """
        store = JobStore(db_path=temp_dir / "sub" / "test.db")
        assert (temp_dir / "sub" / "test.db").exists()
        store.close()

    def test_create_and_get(
        self, job_store: JobStore, job_fields: Callable[..., Dict[str, Any]]
    ) -> None:
        """
        Verify create() assigns an id and get() returns the job with its children.
        """
        created = job_store.create(
            _job(
                job_fields,
                parameters={"maxSnapshots": "3", "snapshotTTL": "48"},
                vm_selectors=[
                    {
                        "type": "TAG_EXPRESSION",
                        "value": "env-prod",
                        "exclude_expression": "always-on",
                    },
                    {"type": "VM_LIST", "value": "101,103"},
                ],
            )
        )
        assert created.id is not None

        retrieved = job_store.get(created.id)
        assert retrieved is not None
        assert retrieved.name == "nightly-snapshots"
        assert retrieved.parameters == {"maxSnapshots": "3", "snapshotTTL": "48"}
        assert retrieved.vm_selectors == [
            VMSelector(type="TAG_EXPRESSION", value="env-prod", exclude_expression="always-on"),
            VMSelector(type="VM_LIST", value="101,103"),
        ]
        assert retrieved.created_at == created.created_at

    def test_get_nonexistent(self, job_store: JobStore) -> None:
        assert job_store.get(999) is None
        assert job_store.get_by_name("missing") is None

    def test_get_by_name(
        self, job_store: JobStore, job_fields: Callable[..., Dict[str, Any]]
    ) -> None:
        created = job_store.create(_job(job_fields, name="weekly"))
        found = job_store.get_by_name("weekly")
        assert found is not None
        assert found.id == created.id

    def test_duplicate_name_rejected(
        self, job_store: JobStore, job_fields: Callable[..., Dict[str, Any]]
    ) -> None:
        job_store.create(_job(job_fields))
        with pytest.raises(ValidationError) as exc_info:
            job_store.create(_job(job_fields))
        assert exc_info.value.field == "name"
        assert len(job_store.list()) == 1

    def test_list_filters(
        self, job_store: JobStore, job_fields: Callable[..., Dict[str, Any]]
    ) -> None:
        job_store.create(_job(job_fields, name="a"))
        job_store.create(_job(job_fields, name="b", enabled=False))
        job_store.create(
            _job(
                job_fields,
                name="c",
                task_type="snapshot_delete",
                parameters={"ageThresholdHours": "24"},
            )
        )
        assert [j.name for j in job_store.list()] == ["a", "b", "c"]
        assert [j.name for j in job_store.list_enabled()] == ["a", "c"]
        assert [j.name for j in job_store.list(enabled=False)] == ["b"]
        assert [j.name for j in job_store.list(task_type="snapshot_delete")] == ["c"]

    def test_update_replaces_children(
        self, job_store: JobStore, job_fields: Callable[..., Dict[str, Any]]
    ) -> None:
        """
        Verify update() replaces the parameter and selector sets as a whole.
        """
        created = job_store.create(
            _job(job_fields, parameters={"maxSnapshots": "3", "snapshotTTL": "48"})
        )
        updated = created.model_copy(
            update={
                "cron_expression": "15 3 * * *",
                "parameters": {"description": "changed"},
                "vm_selectors": [VMSelector(type="ALL")],
            }
        )
        assert job_store.update(updated)

        retrieved = job_store.get(created.id)
        assert retrieved is not None
        assert retrieved.cron_expression == "15 3 * * *"
        assert retrieved.parameters == {"description": "changed"}
        assert retrieved.vm_selectors == [VMSelector(type="ALL")]

    def test_update_missing_job(
        self, job_store: JobStore, job_fields: Callable[..., Dict[str, Any]]
    ) -> None:
        assert not job_store.update(build_scheduled_job(id=404, **job_fields()))

    def test_update_name_collision(
        self, job_store: JobStore, job_fields: Callable[..., Dict[str, Any]]
    ) -> None:
        job_store.create(_job(job_fields, name="first"))
        second = job_store.create(_job(job_fields, name="second"))
        with pytest.raises(ValidationError):
            job_store.update(second.model_copy(update={"name": "first"}))

    def test_delete_removes_children(
        self, job_store: JobStore, job_fields: Callable[..., Dict[str, Any]]
    ) -> None:
        """
        Verify delete() leaves no parameter or selector rows behind.
        """
        created = job_store.create(_job(job_fields, parameters={"maxSnapshots": "2"}))
        assert job_store.delete(created.id)
        assert job_store.get(created.id) is None
        assert not job_store.delete(created.id)

        conn = job_store._conn
        assert conn.execute("SELECT COUNT(*) FROM job_parameters").fetchone()[0] == 0
        assert conn.execute("SELECT COUNT(*) FROM job_vm_selectors").fetchone()[0] == 0

    def test_persists_across_instances(
        self, db_path: Path, job_fields: Callable[..., Dict[str, Any]]
    ) -> None:
        store = JobStore(db_path=db_path)
        created = store.create(_job(job_fields))
        store.close()

        reopened = JobStore(db_path=db_path)
        retrieved = reopened.get(created.id)
        reopened.close()
        assert retrieved is not None
        assert retrieved.vm_selectors == created.vm_selectors

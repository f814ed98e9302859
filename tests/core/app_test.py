# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Tests for application wiring."""

from pathlib import Path
from typing import Any, Callable, Dict

import pytest

from fleetsched.app import build_engine, lifespan
from fleetsched.core.models.execution import ExecutionStatus
from fleetsched.core.services.inventory import StaticInventory
from fleetsched.core.services.runtime import APSchedulerRuntime


class TestApp:
    """Tests for build_engine and lifespan."""

    def test_build_engine_defaults(
        self, temp_dir: Path, inventory: StaticInventory, snapshot_service: Any
    ) -> None:
        engine = build_engine(inventory, snapshot_service, db_path=temp_dir / "app.db")
        assert isinstance(engine.runtime, APSchedulerRuntime)
        assert engine.task_types() == ["snapshot_create", "snapshot_delete"]
        assert (temp_dir / "app.db").exists()
        engine.job_store.close()
        engine.execution_store.close()

    @pytest.mark.asyncio
    async def test_lifespan_runs_jobs_and_shuts_down(
        self,
        temp_dir: Path,
        inventory: StaticInventory,
        snapshot_service: Any,
        runtime: Any,
        job_fields: Callable[..., Dict[str, Any]],
    ) -> None:
        """
        Jobs created inside the lifespan are scheduled, fire, and the
        runtime is stopped on exit.
        """
        engine = build_engine(
            inventory, snapshot_service, db_path=temp_dir / "app.db", runtime=runtime
        )
        async with lifespan(engine) as started:
            assert started.running
            job = started.create_job(job_fields())
            execution = runtime.fire(job.trigger_id)
            assert execution.status == ExecutionStatus.COMPLETED

        assert not engine.running
        assert not runtime.started
        assert len(snapshot_service.created) == 2

    @pytest.mark.asyncio
    async def test_lifespan_reschedules_persisted_jobs(
        self,
        temp_dir: Path,
        inventory: StaticInventory,
        snapshot_service: Any,
        runtime: Any,
        job_fields: Callable[..., Dict[str, Any]],
    ) -> None:
        """
        A restart schedules the jobs persisted by the previous process.
        """
        db_path = temp_dir / "app.db"
        first = build_engine(inventory, snapshot_service, db_path=db_path, runtime=runtime)
        async with lifespan(first):
            job = first.create_job(job_fields())

        restarted_runtime = type(runtime)()
        second = build_engine(
            inventory, snapshot_service, db_path=db_path, runtime=restarted_runtime
        )
        async with lifespan(second):
            assert restarted_runtime.list_triggers() == [job.trigger_id]
            assert second.get_job(job.id).name == job.name

# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Shared fixtures for core module tests."""

import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Set, Tuple

import pytest

from fleetsched.core.execution.context import TaskContext
from fleetsched.core.execution.task import TaskRegistry
from fleetsched.core.models.execution import JobExecution
from fleetsched.core.models.job import build_scheduled_job
from fleetsched.core.models.vm import Snapshot, VirtualMachine
from fleetsched.core.observability import ObservabilityContextManager
from fleetsched.core.services.inventory import StaticInventory
from fleetsched.core.services.runtime import MANUAL_TRIGGER_MARKER
from fleetsched.core.services.scheduler import SchedulerEngine
from fleetsched.core.services.selector import VMSelectorResolver
from fleetsched.core.storage.execution_store import ExecutionStore
from fleetsched.core.storage.job_store import JobStore
from fleetsched.core.tasks import register_builtin_tasks


class FakeSnapshotService:
    """In-memory snapshot service with injectable failures."""

    def __init__(self) -> None:
        self.snapshots: Dict[int, List[Snapshot]] = {}
        self.created: List[Tuple[int, str, str, bool]] = []
        self.deleted: List[Tuple[int, str]] = []
        self.fail_vm_ids: Set[int] = set()
        self.transient_failures: Dict[int, int] = {}
        self.fail_delete_names: Set[str] = set()

    def add(self, vm_id: int, snapshot: Snapshot) -> None:
        self.snapshots.setdefault(vm_id, []).append(snapshot)

    def create_snapshot(
        self,
        vm: VirtualMachine,
        name: str,
        description: str,
        include_vm_state: bool = False,
    ) -> Optional[str]:
        if vm.id in self.fail_vm_ids:
            raise RuntimeError(f"storage unavailable for VM {vm.id}")
        if self.transient_failures.get(vm.id, 0) > 0:
            self.transient_failures[vm.id] -= 1
            raise RuntimeError(f"transient error on VM {vm.id}")
        self.created.append((vm.id, name, description, include_vm_state))
        self.add(
            vm.id,
            Snapshot(
                name=name,
                description=description,
                created_at=datetime.now(timezone.utc),
                vm_state=include_vm_state,
            ),
        )
        return f"UPID:{vm.node}:{vm.id}:{len(self.created)}"

    def list_snapshots(self, vm: VirtualMachine) -> List[Snapshot]:
        return list(self.snapshots.get(vm.id, []))

    def delete_snapshot(self, vm: VirtualMachine, name: str) -> None:
        if name in self.fail_delete_names:
            raise RuntimeError(f"snapshot {name} is locked")
        self.deleted.append((vm.id, name))
        self.snapshots[vm.id] = [s for s in self.snapshots.get(vm.id, []) if s.name != name]


class FakeTriggerRuntime:
    """Trigger runtime that only fires when a test asks it to."""

    def __init__(self) -> None:
        self.triggers: Dict[str, Dict[str, Any]] = {}
        self.paused: Set[str] = set()
        self.pending: List[Tuple[str, Dict[str, Any]]] = []
        self.handler: Optional[Callable[[str, Dict[str, Any]], Any]] = None
        self.started = False
        self.schedule_calls = 0

    def start(self, handler: Callable[[str, Dict[str, Any]], Any]) -> None:
        self.handler = handler
        self.started = True

    def shutdown(self, wait: bool = True) -> None:
        self.started = False

    def schedule(
        self,
        trigger_id: str,
        cron_expression: str,
        payload: Dict[str, Any],
        tz: str = "UTC",
    ) -> None:
        self.schedule_calls += 1
        self.triggers[trigger_id] = {"cron": cron_expression, "payload": dict(payload), "tz": tz}

    def unschedule(self, trigger_id: str) -> bool:
        self.paused.discard(trigger_id)
        return self.triggers.pop(trigger_id, None) is not None

    def pause(self, trigger_id: str) -> None:
        self.paused.add(trigger_id)

    def resume(self, trigger_id: str) -> None:
        self.paused.discard(trigger_id)

    def fire_now(self, trigger_id: str, payload: Dict[str, Any]) -> str:
        token = payload.get("execution_id") or str(uuid.uuid4())
        self.pending.append(
            (f"{trigger_id}{MANUAL_TRIGGER_MARKER}{token}", {**payload, "execution_id": token})
        )
        return token

    def next_fire_time(self, trigger_id: str) -> Optional[datetime]:
        if trigger_id not in self.triggers:
            return None
        return datetime(2030, 1, 1, tzinfo=timezone.utc)

    def exists(self, trigger_id: str) -> bool:
        return trigger_id in self.triggers

    def list_triggers(self) -> List[str]:
        return list(self.triggers)

    def fire(self, trigger_id: str) -> Any:
        """Simulate a cron fire of a recurring trigger."""
        assert self.handler is not None, "runtime not started"
        return self.handler(trigger_id, dict(self.triggers[trigger_id]["payload"]))

    def run_pending(self) -> List[Any]:
        """Run queued manual fires in order."""
        assert self.handler is not None, "runtime not started"
        pending, self.pending = self.pending, []
        return [self.handler(trigger_id, payload) for trigger_id, payload in pending]


@pytest.fixture(autouse=True)
def reset_observability_context() -> Generator[None, None, None]:
    ObservabilityContextManager.instance().clear()
    yield
    ObservabilityContextManager.instance().clear()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(temp_dir: Path) -> Path:
    return temp_dir / "scheduler.db"


@pytest.fixture
def job_store(db_path: Path) -> Generator[JobStore, None, None]:
    store = JobStore(db_path=db_path)
    yield store
    store.close()


@pytest.fixture
def execution_store(db_path: Path) -> Generator[ExecutionStore, None, None]:
    store = ExecutionStore(db_path=db_path)
    yield store
    store.close()


@pytest.fixture
def vms() -> List[VirtualMachine]:
    return [
        VirtualMachine(
            id=101, name="web-01", node="pve1", status="running", tags=["env-prod", "web"]
        ),
        VirtualMachine(
            id=102,
            name="db-01",
            node="pve1",
            status="running",
            tags=["env-prod", "db", "always-on"],
        ),
        VirtualMachine(
            id=103, name="web-02", node="pve2", status="stopped", tags=["env-staging", "web"]
        ),
    ]


@pytest.fixture
def inventory(vms: List[VirtualMachine]) -> StaticInventory:
    return StaticInventory(vms)


@pytest.fixture
def resolver(inventory: StaticInventory) -> VMSelectorResolver:
    return VMSelectorResolver(inventory, inventory)


@pytest.fixture
def snapshot_service() -> FakeSnapshotService:
    return FakeSnapshotService()


@pytest.fixture
def registry(snapshot_service: FakeSnapshotService) -> TaskRegistry:
    registry = TaskRegistry()
    register_builtin_tasks(registry, snapshot_service)
    return registry


@pytest.fixture
def runtime() -> FakeTriggerRuntime:
    return FakeTriggerRuntime()


@pytest.fixture
def engine(
    job_store: JobStore,
    execution_store: ExecutionStore,
    registry: TaskRegistry,
    runtime: FakeTriggerRuntime,
    resolver: VMSelectorResolver,
) -> SchedulerEngine:
    return SchedulerEngine(
        job_store=job_store,
        execution_store=execution_store,
        registry=registry,
        runtime=runtime,
        resolver=resolver,
        retention_interval_seconds=3600,
    )


@pytest.fixture
def job_fields() -> Callable[..., Dict[str, Any]]:
    """Factory for valid job definition fields."""

    def _make(**overrides: Any) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "name": "nightly-snapshots",
            "description": "Nightly snapshots of production",
            "task_type": "snapshot_create",
            "cron_expression": "0 2 * * *",
            "timezone": "UTC",
            "enabled": True,
            "max_retries": 0,
            "retry_delay_seconds": 0,
            "timeout_seconds": 600,
            "parameters": {},
            "vm_selectors": [{"type": "TAG_EXPRESSION", "value": "env-prod"}],
        }
        fields.update(overrides)
        return fields

    return _make


@pytest.fixture
def make_context(
    execution_store: ExecutionStore,
    resolver: VMSelectorResolver,
    job_fields: Callable[..., Dict[str, Any]],
) -> Callable[..., TaskContext]:
    """Factory for a TaskContext backed by a persisted execution row."""

    def _make(
        parameters: Optional[Dict[str, str]] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
        cancel_event: Optional[threading.Event] = None,
        **overrides: Any,
    ) -> TaskContext:
        job = build_scheduled_job(id=1, **job_fields(parameters=parameters or {}, **overrides))
        execution = execution_store.create(
            JobExecution(job_id=job.id, job_name=job.name, execution_id=str(uuid.uuid4()))
        )
        return TaskContext.for_execution(
            job=job,
            execution=execution,
            resolver=resolver,
            execution_store=execution_store,
            is_cancelled=is_cancelled,
            cancel_event=cancel_event,
        )

    return _make

# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Cron-based scheduler engine for recurring VM maintenance jobs."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from fleetsched.core.exceptions import (
    JobDisabledError,
    JobNotFoundError,
    SchedulingError,
    ValidationError,
)
from fleetsched.core.execution.executor import JobExecutor
from fleetsched.core.execution.task import TaskRegistry
from fleetsched.core.models.execution import ExecutionStatus, JobExecution, JobVMExecution
from fleetsched.core.models.job import (
    JobDefinition,
    JobUpdate,
    ScheduledJob,
    build_job_definition,
    build_scheduled_job,
    trigger_id_for,
)
from fleetsched.core.observability import LogLevel, create_service_event, get_logger
from fleetsched.core.services.runtime import TriggerRuntime
from fleetsched.core.services.selector import VMSelectorResolver
from fleetsched.core.storage.execution_store import ExecutionStore
from fleetsched.core.storage.job_store import JobStore

logger = get_logger(__name__)

DEFAULT_RETENTION_DAYS = 30
DEFAULT_RETENTION_INTERVAL_SECONDS = 86400


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerEngine:
    """Turns job definitions into scheduled triggers and triggered executions.

    The backing store is the source of truth. On start every enabled job is
    (re)scheduled in the trigger runtime, and every mutation persists first
    and then adjusts the runtime.
    """

    def __init__(
        self,
        job_store: JobStore,
        execution_store: ExecutionStore,
        registry: TaskRegistry,
        runtime: TriggerRuntime,
        resolver: VMSelectorResolver,
        allow_overlap: bool = False,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        retention_interval_seconds: int = DEFAULT_RETENTION_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the scheduler engine.

        :param job_store: Store for job definitions
        :param execution_store: Store for execution history
        :param registry: Registered task types
        :param runtime: Trigger runtime firing the schedules
        :param resolver: VM selector resolver used by tasks
        :param allow_overlap: Let a job fire while a previous fire still runs
        :param retention_days: Age after which finished executions are deleted
        :param retention_interval_seconds: Interval between retention sweeps
        """
        self.job_store = job_store
        self.execution_store = execution_store
        self.registry = registry
        self.runtime = runtime
        self.executor = JobExecutor(
            job_store=job_store,
            execution_store=execution_store,
            registry=registry,
            resolver=resolver,
            allow_overlap=allow_overlap,
        )
        self.retention_days = retention_days
        self._retention_interval = retention_interval_seconds
        self._running = False
        self._retention_task: Optional[asyncio.Task] = None

        logger.info(
            f"SchedulerEngine initialized (retention={retention_days}d, "
            f"allow_overlap={allow_overlap}, task_types={registry.names()})"
        )

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> int:
        """Start the runtime, recover, reconcile and launch the retention loop.

        :returns: Number of jobs scheduled.
        """
        if self._running:
            logger.warning("SchedulerEngine already running")
            return 0

        self.runtime.start(self.handle_fire)
        recovered = self.executor.recover_interrupted()
        scheduled = self.reconcile()

        self._running = True
        self._retention_task = asyncio.create_task(self._retention_loop())
        self._retention_task.add_done_callback(self._on_task_done)

        logger.event(
            create_service_event(
                "engine_start",
                status="success",
                job_count=scheduled,
                execution_count=recovered,
            )
        )
        return scheduled

    async def stop(self) -> None:
        """Stop the retention loop and shut down the runtime."""
        if not self._running:
            return

        self._running = False
        if self._retention_task:
            self._retention_task.cancel()
            try:
                await self._retention_task
            except asyncio.CancelledError:
                pass
            self._retention_task = None

        await asyncio.to_thread(self.runtime.shutdown)
        logger.event(create_service_event("engine_stop", status="success"))

    def _on_task_done(self, task: asyncio.Task) -> None:
        """Callback invoked when the retention task finishes.

        Logs unexpected crashes so they are not silently swallowed.
        """
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Retention loop crashed unexpectedly, old executions will "
                f"accumulate until restart: {exc}",
                exc_info=exc,
            )

    async def _retention_loop(self) -> None:
        """Sweep expired executions periodically."""
        while self._running:
            try:
                await asyncio.to_thread(self.sweep_retention)
            except Exception as e:
                logger.error(f"Error in retention loop: {e}", exc_info=True)
            await asyncio.sleep(self._retention_interval)

    def reconcile(self) -> int:
        """Schedule every enabled job and drop triggers of jobs that are gone.

        A failure for one job is logged and does not stop the others.

        :returns: Number of jobs scheduled.
        """
        enabled = self.job_store.list_enabled()
        expected = {job.trigger_id for job in enabled}

        for trigger_id in self.runtime.list_triggers():
            if trigger_id not in expected:
                self.runtime.unschedule(trigger_id)
                logger.info(f"Removed stale trigger {trigger_id}")

        scheduled = 0
        for job in enabled:
            try:
                self._schedule(job)
                scheduled += 1
            except SchedulingError as e:
                logger.error(f"Failed to schedule job '{job.name}' during reconcile: {e}")

        logger.event(create_service_event("reconcile", job_count=scheduled))
        logger.info(f"Reconciled {scheduled}/{len(enabled)} enabled job(s)")
        return scheduled

    def _schedule(self, job: ScheduledJob) -> None:
        payload = {"job_id": job.id, "manual_trigger": False}
        try:
            self.runtime.schedule(job.trigger_id, job.cron_expression, payload, job.timezone)
        except SchedulingError:
            raise
        except Exception as e:
            raise SchedulingError(job.trigger_id, str(e)) from e

    def _unschedule(self, job: ScheduledJob) -> bool:
        try:
            return self.runtime.unschedule(job.trigger_id)
        except Exception as e:
            raise SchedulingError(job.trigger_id, str(e)) from e

    def _require_job(self, job_id: int) -> ScheduledJob:
        job = self.job_store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _check_task_type(self, task_type: str) -> None:
        if task_type not in self.registry:
            raise ValidationError(
                "task_type",
                f"unknown task type '{task_type}', expected one of {self.registry.names()}",
            )

    def create_job(
        self,
        definition: Union[JobDefinition, Dict[str, Any]],
        created_by: Optional[str] = None,
    ) -> ScheduledJob:
        """Validate, persist and schedule a new job.

        :param definition: Job definition or its fields
        :param created_by: Audit user
        :returns: The persisted job
        :raises ValidationError: If the definition is invalid or the name is taken
        :raises SchedulingError: If the job was saved but could not be scheduled
        """
        if isinstance(definition, dict):
            definition = build_job_definition(**definition)
        self._check_task_type(definition.task_type)

        now = _utcnow()
        job = build_scheduled_job(
            **definition.model_dump(),
            created_at=now,
            created_by=created_by,
            updated_at=now,
            updated_by=created_by,
        )
        job = self.job_store.create(job)

        logger.event(create_service_event("job_create", job_id=job.id, job_name=job.name))
        if job.enabled:
            self._schedule(job)
        return job

    def update_job(
        self,
        job_id: int,
        update: Union[JobUpdate, Dict[str, Any]],
        updated_by: Optional[str] = None,
    ) -> ScheduledJob:
        """Apply a partial update and adjust the trigger.

        :param job_id: Job to update
        :param update: Fields to change. Parameters and selectors replace the whole set.
        :param updated_by: Audit user
        :returns: The updated job
        :raises JobNotFoundError: If the job does not exist
        :raises ValidationError: If the result is invalid
        :raises SchedulingError: If the trigger could not be adjusted
        """
        current = self._require_job(job_id)
        if isinstance(update, dict):
            try:
                update = JobUpdate.model_validate(update)
            except PydanticValidationError as e:
                error = e.errors()[0]
                field = str(error["loc"][0]) if error.get("loc") else "job"
                raise ValidationError(field, error.get("msg", str(e))) from e

        changes = {k: v for k, v in update.model_dump(exclude_unset=True).items() if v is not None}
        if "task_type" in changes:
            self._check_task_type(changes["task_type"])

        merged = current.model_dump()
        merged.update(changes)
        merged["updated_at"] = _utcnow()
        merged["updated_by"] = updated_by
        job = build_scheduled_job(**merged)
        self.job_store.update(job)
        logger.event(create_service_event("job_update", job_id=job.id, job_name=job.name))

        schedule_changed = (
            job.cron_expression != current.cron_expression or job.timezone != current.timezone
        )
        if current.enabled and not job.enabled:
            self._unschedule(job)
        elif job.enabled and (schedule_changed or not current.enabled):
            self._unschedule(job)
            self._schedule(job)
        return job

    def enable_job(self, job_id: int, updated_by: Optional[str] = None) -> ScheduledJob:
        """Enable a job and make sure exactly one trigger exists for it."""
        job = self._require_job(job_id)
        if not job.enabled:
            job = job.model_copy(
                update={"enabled": True, "updated_at": _utcnow(), "updated_by": updated_by}
            )
            self.job_store.update(job)
        self._schedule(job)
        logger.info(f"Enabled job '{job.name}'")
        return job

    def disable_job(self, job_id: int, updated_by: Optional[str] = None) -> ScheduledJob:
        """Disable a job and remove its trigger if there is one."""
        job = self._require_job(job_id)
        if job.enabled:
            job = job.model_copy(
                update={"enabled": False, "updated_at": _utcnow(), "updated_by": updated_by}
            )
            self.job_store.update(job)
        self._unschedule(job)
        logger.info(f"Disabled job '{job.name}'")
        return job

    def trigger_now(self, job_id: int) -> str:
        """Fire a job immediately without waiting for it.

        :param job_id: Job to fire
        :returns: Execution token of the queued fire
        :raises JobNotFoundError: If the job does not exist
        :raises JobDisabledError: If the job is disabled
        """
        job = self._require_job(job_id)
        if not job.enabled:
            raise JobDisabledError(job.name)

        token = str(uuid.uuid4())
        payload = {"job_id": job.id, "execution_id": token, "manual_trigger": True}
        try:
            token = self.runtime.fire_now(job.trigger_id, payload)
        except SchedulingError:
            raise
        except Exception as e:
            raise SchedulingError(job.trigger_id, str(e)) from e

        logger.event(
            create_service_event(
                "schedule_trigger",
                job_id=job.id,
                job_name=job.name,
                trigger_id=job.trigger_id,
            )
        )
        return token

    def delete_job(self, job_id: int) -> None:
        """Unschedule and delete a job with its parameters and selectors.

        Execution history is kept until the retention sweep removes it.

        :raises JobNotFoundError: If the job does not exist
        """
        job = self._require_job(job_id)
        self._unschedule(job)
        self.job_store.delete(job_id)
        logger.event(create_service_event("job_delete", job_id=job.id, job_name=job.name))

    def get_job(self, job_id: int) -> Optional[ScheduledJob]:
        return self.job_store.get(job_id)

    def get_job_by_name(self, name: str) -> Optional[ScheduledJob]:
        return self.job_store.get_by_name(name)

    def list_jobs(
        self,
        enabled: Optional[bool] = None,
        task_type: Optional[str] = None,
    ) -> List[ScheduledJob]:
        return self.job_store.list(enabled=enabled, task_type=task_type)

    def next_fire_time(self, job_id: int) -> Optional[datetime]:
        """Next fire time of a job's trigger, None if it is not scheduled."""
        return self.runtime.next_fire_time(trigger_id_for(job_id))

    def task_types(self) -> List[str]:
        return self.registry.names()

    def list_executions(
        self,
        job_id: Optional[int] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[JobExecution]:
        return self.execution_store.list(job_id=job_id, status=status, limit=limit, offset=offset)

    def get_execution(self, execution_pk: int) -> Optional[JobExecution]:
        return self.execution_store.get(execution_pk)

    def get_execution_by_token(self, execution_id: str) -> Optional[JobExecution]:
        return self.execution_store.get_by_execution_id(execution_id)

    def list_vm_executions(self, execution_pk: int) -> List[JobVMExecution]:
        return self.execution_store.list_vm_executions(execution_pk)

    def cancel_execution(self, execution_id: str, reason: str = "Cancelled by user") -> bool:
        """Cancel a running execution.

        :param execution_id: Execution token
        :param reason: Cancellation reason stored on the execution
        :returns: False if the execution is unknown or already finished
        """
        return self.executor.cancel(execution_id, reason)

    def sweep_retention(self, now: Optional[datetime] = None) -> int:
        """Delete finished executions older than the retention period.

        :param now: Reference time, defaults to the current UTC time
        :returns: Number of executions deleted
        """
        cutoff = (now or _utcnow()) - timedelta(days=self.retention_days)
        deleted = self.execution_store.delete_completed_before(cutoff)
        logger.event(
            create_service_event(
                "retention_sweep",
                level=LogLevel.INFO if deleted else LogLevel.DEBUG,
                execution_count=deleted,
            )
        )
        return deleted

    def status(self) -> Dict[str, Any]:
        """Health summary of the engine."""
        return {
            "running": self._running,
            "scheduled_triggers": len(self.runtime.list_triggers()),
            "running_executions": len(self.execution_store.get_running()),
            "task_types": self.registry.names(),
            "retention_days": self.retention_days,
            "retention_interval_seconds": self._retention_interval,
            "allow_overlap": self.executor.allow_overlap,
        }

    def handle_fire(self, trigger_id: str, payload: Dict[str, Any]) -> Optional[JobExecution]:
        """Entry point for the trigger runtime. Never raises.

        :param trigger_id: Trigger that fired
        :param payload: {job_id, execution_id?, manual_trigger}
        :returns: The finalized execution, or None if nothing ran
        """
        try:
            job_id = payload.get("job_id")
            if job_id is None:
                job_id = int(trigger_id.rsplit("-", 1)[-1])
            return self.executor.execute(
                int(job_id),
                execution_id=payload.get("execution_id"),
                manual_trigger=bool(payload.get("manual_trigger", False)),
            )
        except Exception as e:
            logger.error(f"Fire of trigger {trigger_id} failed: {e}", exc_info=True)
            return None

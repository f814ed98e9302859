# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Runs one fire of a scheduled job end to end."""

import threading
import time
import uuid
from typing import Dict, Optional

from fleetsched.core.exceptions import TaskValidationError
from fleetsched.core.execution.context import TaskContext, TaskResult
from fleetsched.core.execution.task import TaskRegistry
from fleetsched.core.models.execution import ExecutionStatus, JobExecution
from fleetsched.core.models.job import ScheduledJob
from fleetsched.core.observability import (
    ExecutionScope,
    LogLevel,
    create_execution_event,
    get_logger,
)
from fleetsched.core.services.selector import VMSelectorResolver
from fleetsched.core.storage.execution_store import ExecutionStore
from fleetsched.core.storage.job_store import JobStore

logger = get_logger(__name__)

RECOVERY_MESSAGE = "Recovered after restart (was running)"


class JobExecutor:
    """Creates the execution record, runs the task and finalizes the record.

    Nothing raised inside a fire escapes ``execute``: failures are written
    to the execution row instead.
    """

    def __init__(
        self,
        job_store: JobStore,
        execution_store: ExecutionStore,
        registry: TaskRegistry,
        resolver: VMSelectorResolver,
        allow_overlap: bool = False,
    ) -> None:
        """Initialize the executor.

        :param job_store: Store the job definitions are read from
        :param execution_store: Store execution rows are written to
        :param registry: Task registry
        :param resolver: VM selector resolver passed to tasks
        :param allow_overlap: Run a fire even if the job is still running
        """
        self.job_store = job_store
        self.execution_store = execution_store
        self.registry = registry
        self.resolver = resolver
        self.allow_overlap = allow_overlap
        self._admission_lock = threading.Lock()
        self._cancel_events: Dict[str, threading.Event] = {}

        logger.info(f"JobExecutor initialized (allow_overlap={allow_overlap})")

    def recover_interrupted(self) -> int:
        """
        Fail executions left running by a previous process.

        :returns: Number of recovered executions.
        """
        recovered = 0
        for execution in self.execution_store.get_running():
            execution.fail(RECOVERY_MESSAGE)
            if self.execution_store.update(execution, expected_status=ExecutionStatus.RUNNING):
                recovered += 1

        if recovered:
            logger.info(f"Startup recovery: {recovered} interrupted execution(s) marked as failed")
        return recovered

    @property
    def running_tokens(self) -> list[str]:
        return list(self._cancel_events)

    def cancel(self, execution_id: str, reason: str = "Cancelled by user") -> bool:
        """Cancel a running execution.

        The fan-out loop notices before its next VM. A pending retry
        delay is woken.

        :param execution_id: Execution token
        :param reason: Stored as the execution's error message
        :returns: False if the execution is unknown or already finished
        """
        execution = self.execution_store.get_by_execution_id(execution_id)
        if execution is None or execution.is_terminal:
            return False

        execution.cancel(reason)
        if not self.execution_store.update(execution, expected_status=ExecutionStatus.RUNNING):
            return False

        event = self._cancel_events.get(execution_id)
        if event is not None:
            event.set()
        logger.event(
            create_execution_event(
                "execution_end",
                level=LogLevel.WARN,
                status="cancelled",
                job_id=execution.job_id,
                job_name=execution.job_name,
                execution_id=execution_id,
                error=reason,
            )
        )
        return True

    def _admit(
        self, job: ScheduledJob, execution_id: str, manual_trigger: bool
    ) -> Optional[JobExecution]:
        """Apply the overlap policy and create the execution row."""
        with self._admission_lock:
            if not self.allow_overlap:
                running = self.execution_store.get_running(job.id)
                if running:
                    logger.warning(
                        f"Skipping fire of job '{job.name}': execution "
                        f"{running[0].execution_id} is still running"
                    )
                    logger.event(
                        create_execution_event(
                            "execution_skip",
                            level=LogLevel.WARN,
                            status="skipped",
                            job_id=job.id,
                            job_name=job.name,
                            execution_id=execution_id,
                        )
                    )
                    return None

            execution = self.execution_store.create(
                JobExecution(
                    job_id=job.id,
                    job_name=job.name,
                    execution_id=execution_id,
                    execution_details={
                        "manualTrigger": manual_trigger,
                        "taskType": job.task_type,
                    },
                )
            )
            self._cancel_events[execution_id] = threading.Event()
            return execution

    def execute(
        self,
        job_id: int,
        execution_id: Optional[str] = None,
        manual_trigger: bool = False,
    ) -> Optional[JobExecution]:
        """Run one fire of a job.

        :param job_id: Job to run
        :param execution_id: Token to use, generated if None
        :param manual_trigger: Whether the fire was manual
        :returns: The finalized execution, or None if nothing was run
        """
        job = self.job_store.get(job_id)
        if job is None:
            logger.warning(f"Job {job_id} no longer exists, ignoring fire")
            return None
        if not job.enabled and not manual_trigger:
            logger.info(f"Job '{job.name}' was disabled before trigger, ignoring fire")
            return None

        token = execution_id or str(uuid.uuid4())
        execution = self._admit(job, token, manual_trigger)
        if execution is None:
            return None

        start_time = time.perf_counter()
        with ExecutionScope(execution_id=token, job_name=job.name, job_id=job.id):
            try:
                logger.event(
                    create_execution_event(
                        "execution_start",
                        job_id=job.id,
                        task_type=job.task_type,
                    )
                )
                task = self.registry.create(job.task_type)
                context = TaskContext.for_execution(
                    job=job,
                    execution=execution,
                    resolver=self.resolver,
                    execution_store=self.execution_store,
                    manual_trigger=manual_trigger,
                    cancel_event=self._cancel_events[token],
                )
                try:
                    task.validate(context)
                except TaskValidationError as e:
                    self._finalize(execution, error=f"Task validation failed: {e.message}")
                else:
                    result = task.run(context)
                    self._apply_result(execution, result)
                    error = None if result.success else result.error_message
                    self._finalize(execution, error=error)

            except Exception as e:
                logger.error(f"Execution {token} of job '{job.name}' failed: {e}", exc_info=True)
                self._fail_if_running(execution, f"Execution failed: {e}")

            finally:
                self._cancel_events.pop(token, None)

            final = self._reload(execution)
            duration_ms = (time.perf_counter() - start_time) * 1000
            status = getattr(final.status, "value", final.status)
            if status == ExecutionStatus.COMPLETED.value:
                event_status = "success"
            elif final.is_terminal:
                event_status = status
            else:
                event_status = "error"
            logger.event(
                create_execution_event(
                    "execution_end",
                    level=LogLevel.INFO if event_status == "success" else LogLevel.ERROR,
                    status=event_status,
                    job_id=job.id,
                    error=final.error_message,
                    processed_vms=final.processed_vms,
                    successful_vms=final.successful_vms,
                    failed_vms=final.failed_vms,
                    duration_ms=duration_ms,
                )
            )
        return final

    @staticmethod
    def _apply_result(execution: JobExecution, result: TaskResult) -> None:
        execution.processed_vms = result.processed_count
        execution.successful_vms = result.success_count
        execution.failed_vms = result.failed_count
        execution.execution_details.update(result.details)

    def _fail_if_running(self, execution: JobExecution, error: str) -> None:
        """Record a failure unless the stored row already finished.

        A second store error is logged; the row is then left for startup
        recovery.
        """
        try:
            stored = self.execution_store.get(execution.id)
            if stored is None or stored.is_terminal or execution.is_terminal:
                return
            self._finalize(execution, error=error)
        except Exception as e:
            logger.error(
                f"Could not record failure of execution {execution.execution_id}: {e}",
                exc_info=True,
            )

    def _reload(self, execution: JobExecution) -> JobExecution:
        try:
            return self.execution_store.get(execution.id) or execution
        except Exception as e:
            logger.error(f"Could not reload execution {execution.execution_id}: {e}")
            return execution

    def _finalize(self, execution: JobExecution, error: Optional[str]) -> None:
        """Move the execution to its terminal state.

        A concurrent cancel wins: the cancelled row keeps its status and
        only receives the counters and details.
        """
        finished = execution.model_copy(deep=True)
        if error is None:
            finished.complete()
        else:
            finished.fail(error)

        # The in-memory row only turns terminal once the store has accepted it.
        if self.execution_store.update(finished, expected_status=ExecutionStatus.RUNNING):
            execution.status = finished.status
            execution.completed_at = finished.completed_at
            execution.error_message = finished.error_message
            return

        current = self.execution_store.get(execution.id)
        if current is None:
            return
        current.processed_vms = execution.processed_vms
        current.successful_vms = execution.successful_vms
        current.failed_vms = execution.failed_vms
        current.execution_details.update(execution.execution_details)
        self.execution_store.update(current)

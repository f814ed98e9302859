# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Task abstractions: the task contract, the per-VM fan-out template and the registry."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence

from fleetsched.core.exceptions import PerVMError, UnknownTaskTypeError
from fleetsched.core.execution.context import TaskContext, TaskResult
from fleetsched.core.models.execution import JobVMExecution
from fleetsched.core.models.vm import VirtualMachine
from fleetsched.core.observability import LogLevel, VMScope, create_execution_event, get_logger

logger = get_logger(__name__)

NO_MATCH_MESSAGE = "No VMs matched selection criteria"


class ScheduledTask(ABC):
    """A pluggable unit of work run when a job fires."""

    task_type: str = ""
    description: str = ""

    def validate(self, context: TaskContext) -> None:
        """Check preconditions before anything is touched.

        :param context: Task context
        :raises TaskValidationError: If the job is misconfigured
        """

    @abstractmethod
    def run(self, context: TaskContext) -> TaskResult:
        """Execute the task.

        :param context: Task context
        :returns: Aggregate result
        """


class VMTask(ScheduledTask):
    """Runs ``process_vm`` once for every VM selected by the job.

    VMs are processed sequentially. A failing VM is recorded and the loop
    moves on. Timeout and cancellation are checked between VMs; VMs not
    reached are recorded as skipped.
    """

    @abstractmethod
    def process_vm(self, context: TaskContext, vm: VirtualMachine) -> Dict[str, Any]:
        """Process one VM.

        :param context: Task context
        :param vm: Target VM
        :returns: Result data stored on the per-VM row
        """

    def run(self, context: TaskContext) -> TaskResult:
        logger.info(f"Starting {self.task_type} task for job {context.job.name}")

        selection = context.resolver.resolve(context.job.vm_selectors)
        details: Dict[str, Any] = {}
        if selection.matched_all_by_default:
            details["selectionWarning"] = selection.warnings[0]
        elif selection.warnings:
            details["selectionWarnings"] = list(selection.warnings)

        vms = selection.vms
        logger.info(f"Selected {len(vms)} VM(s) to process")
        if not vms:
            details["message"] = NO_MATCH_MESSAGE
            return TaskResult.ok(**details).with_counts(0, 0, 0)

        processed = succeeded = failed = 0
        errors: List[str] = []
        stop_reason: Optional[str] = None

        for index, vm in enumerate(vms):
            stop_reason = self._stop_reason(context)
            if stop_reason:
                skipped = self._skip_remaining(context, vms[index:], stop_reason)
                details["skippedCount"] = skipped
                break

            processed += 1
            with VMScope(vm.id):
                vm_row = context.execution_store.create_vm_execution(
                    JobVMExecution(
                        execution_pk=context.execution.id,
                        vm_id=vm.id,
                        vm_name=vm.name,
                        node_name=vm.node,
                    )
                )
                logger.event(
                    create_execution_event("vm_start", level=LogLevel.DEBUG, vm_name=vm.name)
                )
                try:
                    result = self._process_with_retry(context, vm)
                    vm_row.succeed(result)
                    succeeded += 1
                except Exception as e:
                    error = PerVMError(vm.id, vm.name, e)
                    logger.error(f"Failed to process {error}", exc_info=True)
                    errors.append(str(error))
                    vm_row.fail(str(e))
                    failed += 1

                context.execution_store.update_vm_execution(vm_row)
                context.execution_store.update_progress(
                    context.execution.id, processed, succeeded, failed
                )
                ok = vm_row.error_message is None
                logger.event(
                    create_execution_event(
                        "vm_end",
                        level=LogLevel.INFO if ok else LogLevel.ERROR,
                        status="success" if ok else "failed",
                        vm_name=vm.name,
                        error=vm_row.error_message,
                    )
                )

        details["errors"] = errors
        if stop_reason:
            details["stopReason"] = stop_reason
            result = TaskResult.failure(stop_reason, **details)
        elif failed:
            result = TaskResult.failure(f"Task completed with {failed} failures", **details)
        else:
            result = TaskResult.ok(**details)
        return result.with_counts(processed, succeeded, failed)

    @staticmethod
    def _stop_reason(context: TaskContext) -> Optional[str]:
        if context.is_cancelled():
            return "Execution cancelled"
        if context.deadline_exceeded():
            return f"Execution timed out after {context.job.timeout_seconds}s"
        return None

    @staticmethod
    def _skip_remaining(
        context: TaskContext, remaining: Sequence[VirtualMachine], reason: str
    ) -> int:
        logger.warning(f"{reason}; skipping {len(remaining)} remaining VM(s)")
        for vm in remaining:
            vm_row = JobVMExecution(
                execution_pk=context.execution.id,
                vm_id=vm.id,
                vm_name=vm.name,
                node_name=vm.node,
            )
            vm_row.skip(reason)
            context.execution_store.create_vm_execution(vm_row)
        return len(remaining)

    def _process_with_retry(self, context: TaskContext, vm: VirtualMachine) -> Dict[str, Any]:
        """Call process_vm, retrying up to the job's max_retries.

        Retries stop early once the execution is cancelled or past its deadline.
        """
        attempts = context.job.max_retries + 1
        attempt = 1
        while True:
            try:
                return self.process_vm(context, vm)
            except Exception as e:
                if attempt >= attempts or self._stop_reason(context):
                    raise
                logger.warning(
                    f"Attempt {attempt}/{attempts} failed for VM {vm.id} ({vm.name}): {e}; "
                    f"retrying in {context.job.retry_delay_seconds}s"
                )
                if not context.wait(context.job.retry_delay_seconds):
                    logger.warning(
                        f"Giving up on VM {vm.id} ({vm.name}): {self._stop_reason(context)}"
                    )
                    raise
            attempt += 1


TaskFactory = Callable[[], ScheduledTask]


class TaskRegistry:
    """Maps task type names to factories. Populated at startup."""

    def __init__(self) -> None:
        self._factories: Dict[str, TaskFactory] = {}

    def register(self, name: str, factory: TaskFactory) -> None:
        """Register a factory under a task type name. Re-registering replaces it."""
        if name in self._factories:
            logger.warning(f"Replacing task factory for '{name}'")
        self._factories[name] = factory
        logger.debug(f"Registered task type '{name}'")

    def create(self, name: str) -> ScheduledTask:
        """Instantiate a task.

        :param name: Task type name
        :returns: New task instance
        :raises UnknownTaskTypeError: If nothing is registered under the name
        """
        factory = self._factories.get(name)
        if factory is None:
            raise UnknownTaskTypeError(name)
        return factory()

    def names(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def __len__(self) -> int:
        return len(self._factories)

# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Trigger runtime: fires cron schedules and manual runs."""

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from fleetsched.core.exceptions import SchedulingError
from fleetsched.core.observability import get_logger

logger = get_logger(__name__)

FireHandler = Callable[[str, Dict[str, Any]], Any]

MANUAL_TRIGGER_MARKER = "-manual-"


class TriggerRuntime(Protocol):
    """Recurring-trigger capability driven by the scheduler engine."""

    def start(self, handler: FireHandler) -> None:
        """Start firing. Every fire calls ``handler(trigger_id, payload)``."""
        ...

    def shutdown(self, wait: bool = True) -> None:
        """Stop firing."""
        ...

    def schedule(
        self,
        trigger_id: str,
        cron_expression: str,
        payload: Dict[str, Any],
        tz: str = "UTC",
    ) -> None:
        """Create or replace a recurring trigger."""
        ...

    def unschedule(self, trigger_id: str) -> bool:
        """Remove a trigger. Returns False if it did not exist."""
        ...

    def pause(self, trigger_id: str) -> None:
        """Stop a trigger from firing until resumed."""
        ...

    def resume(self, trigger_id: str) -> None:
        """Resume a paused trigger."""
        ...

    def fire_now(self, trigger_id: str, payload: Dict[str, Any]) -> str:
        """Fire once, as soon as possible, without waiting. Returns the token."""
        ...

    def next_fire_time(self, trigger_id: str) -> Optional[datetime]:
        """Next scheduled fire time, or None."""
        ...

    def exists(self, trigger_id: str) -> bool:
        """Check whether a recurring trigger is scheduled."""
        ...

    def list_triggers(self) -> List[str]:
        """Ids of all recurring triggers."""
        ...


class APSchedulerRuntime:
    """TriggerRuntime backed by an APScheduler BackgroundScheduler.

    Fires run on the scheduler's thread pool. Missed fires are coalesced
    into one and dropped after the misfire grace period.
    """

    def __init__(
        self,
        max_workers: int = 4,
        misfire_grace_time: int = 60,
    ) -> None:
        """Initialize the runtime.

        :param max_workers: Size of the thread pool running fires
        :param misfire_grace_time: Seconds a late fire is still run
        """
        executors = {"default": ThreadPoolExecutor(max_workers)}
        # Overlap of one job's fires is decided by the engine, not here.
        job_defaults = {
            "coalesce": True,
            "max_instances": max_workers,
            "misfire_grace_time": misfire_grace_time,
        }
        self._scheduler = BackgroundScheduler(
            executors=executors,
            job_defaults=job_defaults,
            timezone="UTC",
        )
        self._handler: Optional[FireHandler] = None

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def start(self, handler: FireHandler) -> None:
        self._handler = handler
        if self._scheduler.running:
            logger.warning("Trigger runtime already running")
            return
        self._scheduler.start()
        logger.info("Trigger runtime started")

    def shutdown(self, wait: bool = True) -> None:
        if not self._scheduler.running:
            return
        self._scheduler.shutdown(wait=wait)
        logger.info("Trigger runtime stopped")

    def _dispatch(self, trigger_id: str, payload: Dict[str, Any]) -> None:
        """Entry point APScheduler calls on its worker threads."""
        if self._handler is None:
            logger.error(f"Trigger {trigger_id} fired before a handler was bound")
            return
        try:
            self._handler(trigger_id, dict(payload))
        except Exception as e:
            logger.error(f"Fire handler failed for trigger {trigger_id}: {e}", exc_info=True)

    def schedule(
        self,
        trigger_id: str,
        cron_expression: str,
        payload: Dict[str, Any],
        tz: str = "UTC",
    ) -> None:
        try:
            trigger = CronTrigger.from_crontab(cron_expression, timezone=tz)
            self._scheduler.add_job(
                self._dispatch,
                trigger=trigger,
                args=[trigger_id, dict(payload)],
                id=trigger_id,
                name=trigger_id,
                replace_existing=True,
            )
        except Exception as e:
            raise SchedulingError(trigger_id, str(e)) from e
        logger.info(
            f"Scheduled trigger {trigger_id} with cron '{cron_expression}' ({tz}), "
            f"next fire: {self.next_fire_time(trigger_id)}"
        )

    def unschedule(self, trigger_id: str) -> bool:
        try:
            self._scheduler.remove_job(trigger_id)
        except JobLookupError:
            return False
        logger.info(f"Unscheduled trigger {trigger_id}")
        return True

    def pause(self, trigger_id: str) -> None:
        try:
            self._scheduler.pause_job(trigger_id)
        except JobLookupError as e:
            raise SchedulingError(trigger_id, "trigger not found") from e

    def resume(self, trigger_id: str) -> None:
        try:
            self._scheduler.resume_job(trigger_id)
        except JobLookupError as e:
            raise SchedulingError(trigger_id, "trigger not found") from e

    def fire_now(self, trigger_id: str, payload: Dict[str, Any]) -> str:
        token = payload.get("execution_id") or str(uuid.uuid4())
        fire_payload = {**payload, "execution_id": token}
        try:
            self._scheduler.add_job(
                self._dispatch,
                trigger="date",
                run_date=datetime.now(timezone.utc),
                args=[trigger_id, fire_payload],
                id=f"{trigger_id}{MANUAL_TRIGGER_MARKER}{token}",
                name=f"{trigger_id} (manual)",
            )
        except Exception as e:
            raise SchedulingError(trigger_id, str(e)) from e
        logger.info(f"Queued manual fire of {trigger_id} (execution {token})")
        return token

    def next_fire_time(self, trigger_id: str) -> Optional[datetime]:
        job = self._scheduler.get_job(trigger_id)
        return getattr(job, "next_run_time", None)

    def exists(self, trigger_id: str) -> bool:
        return self._scheduler.get_job(trigger_id) is not None

    def list_triggers(self) -> List[str]:
        return [
            job.id
            for job in self._scheduler.get_jobs()
            if MANUAL_TRIGGER_MARKER not in job.id
        ]

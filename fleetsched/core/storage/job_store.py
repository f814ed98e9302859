# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""SQLite-based storage for scheduled jobs."""

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from fleetsched.core.exceptions import ValidationError
from fleetsched.core.models.job import ScheduledJob, VMSelector
from fleetsched.core.observability import get_logger

logger = get_logger(__name__)

_JOBS_SCHEMA = """
CREATE TABLE IF NOT EXISTS scheduled_jobs (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    name                TEXT NOT NULL UNIQUE,
    description         TEXT NOT NULL DEFAULT '',
    task_type           TEXT NOT NULL,
    cron_expression     TEXT NOT NULL,
    timezone            TEXT NOT NULL DEFAULT 'UTC',
    enabled             INTEGER NOT NULL DEFAULT 1,
    max_retries         INTEGER NOT NULL DEFAULT 3,
    retry_delay_seconds INTEGER NOT NULL DEFAULT 300,
    timeout_seconds     INTEGER NOT NULL DEFAULT 3600,
    created_at          TEXT NOT NULL,
    created_by          TEXT,
    updated_at          TEXT NOT NULL,
    updated_by          TEXT
);

CREATE TABLE IF NOT EXISTS job_parameters (
    job_id      INTEGER NOT NULL,
    param_key   TEXT NOT NULL,
    param_value TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (job_id, param_key)
);

CREATE TABLE IF NOT EXISTS job_vm_selectors (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id             INTEGER NOT NULL,
    position           INTEGER NOT NULL,
    selector_type      TEXT NOT NULL,
    selector_value     TEXT NOT NULL DEFAULT '',
    exclude_expression TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_enabled
    ON scheduled_jobs(enabled);
CREATE INDEX IF NOT EXISTS idx_jobs_task_type
    ON scheduled_jobs(task_type);
CREATE INDEX IF NOT EXISTS idx_selectors_job
    ON job_vm_selectors(job_id);
"""


def _dt_to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO-8601 string for SQLite storage.

    :param dt: Datetime to convert.
    :returns: ISO string or None.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _iso_to_dt(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string written by _dt_to_iso."""
    return datetime.fromisoformat(value) if value else None


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a store connection with the pragmas every store relies on.

    :param db_path: Path to SQLite database file.
    :returns: Configured connection.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        str(db_path),
        isolation_level="DEFERRED",
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


class JobStore:
    """SQLite-backed storage for scheduled jobs.

    A job row owns its parameter and selector rows. Writes that touch
    children run in the same transaction as the parent row so a reader
    never observes a half-written job.
    """

    def __init__(
        self,
        db_path: Path | str = "data/scheduler.db",
    ) -> None:
        """Initialize the job store.

        :param db_path: Path to SQLite database file.
        """
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._conn = connect(self.db_path)
        self._conn.executescript(_JOBS_SCHEMA)

        logger.info(f"Initialized job storage at {self.db_path}")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    @staticmethod
    def _job_to_row(job: ScheduledJob) -> dict:
        """Convert a ScheduledJob to a flat dict for the parent table."""
        return {
            "id": job.id,
            "name": job.name,
            "description": job.description,
            "task_type": job.task_type,
            "cron_expression": job.cron_expression,
            "timezone": job.timezone,
            "enabled": 1 if job.enabled else 0,
            "max_retries": job.max_retries,
            "retry_delay_seconds": job.retry_delay_seconds,
            "timeout_seconds": job.timeout_seconds,
            "created_at": _dt_to_iso(job.created_at),
            "created_by": job.created_by,
            "updated_at": _dt_to_iso(job.updated_at),
            "updated_by": job.updated_by,
        }

    def _row_to_job(self, row: sqlite3.Row) -> ScheduledJob:
        """Reconstruct a ScheduledJob, loading its children."""
        data = dict(row)
        data["enabled"] = bool(data["enabled"])
        data["created_at"] = _iso_to_dt(data["created_at"])
        data["updated_at"] = _iso_to_dt(data["updated_at"])
        data["parameters"] = self._load_parameters(data["id"])
        data["vm_selectors"] = self._load_selectors(data["id"])
        return ScheduledJob.model_validate(data)

    def _load_parameters(self, job_id: int) -> Dict[str, str]:
        cur = self._conn.execute(
            "SELECT param_key, param_value FROM job_parameters "
            "WHERE job_id = ? ORDER BY param_key",
            (job_id,),
        )
        return {r["param_key"]: r["param_value"] for r in cur.fetchall()}

    def _load_selectors(self, job_id: int) -> List[VMSelector]:
        cur = self._conn.execute(
            "SELECT selector_type, selector_value, exclude_expression "
            "FROM job_vm_selectors WHERE job_id = ? ORDER BY position",
            (job_id,),
        )
        return [
            VMSelector(
                type=r["selector_type"],
                value=r["selector_value"],
                exclude_expression=r["exclude_expression"],
            )
            for r in cur.fetchall()
        ]

    def _write_children(self, job: ScheduledJob) -> None:
        """Replace the parameter and selector sets of a job.

        Must be called inside an open transaction.
        """
        self._conn.execute("DELETE FROM job_parameters WHERE job_id = ?", (job.id,))
        self._conn.execute("DELETE FROM job_vm_selectors WHERE job_id = ?", (job.id,))
        self._conn.executemany(
            "INSERT INTO job_parameters (job_id, param_key, param_value) VALUES (?, ?, ?)",
            [(job.id, key, value) for key, value in job.parameters.items()],
        )
        self._conn.executemany(
            """INSERT INTO job_vm_selectors
               (job_id, position, selector_type, selector_value, exclude_expression)
               VALUES (?, ?, ?, ?, ?)
            """,
            [
                (
                    job.id,
                    position,
                    getattr(sel.type, "value", sel.type),
                    sel.value,
                    sel.exclude_expression,
                )
                for position, sel in enumerate(job.vm_selectors)
            ],
        )

    def create(self, job: ScheduledJob) -> ScheduledJob:
        """Create a new job with its parameters and selectors.

        The transaction has committed when this returns.

        :param job: Job to create. Its id is ignored.
        :returns: Copy of the job carrying the assigned id.
        :raises ValidationError: If a job with the same name exists.
        """
        row = self._job_to_row(job)
        del row["id"]
        with self._lock:
            try:
                with self._conn:
                    cur = self._conn.execute(
                        """INSERT INTO scheduled_jobs
                           (name, description, task_type, cron_expression,
                            timezone, enabled, max_retries,
                            retry_delay_seconds, timeout_seconds,
                            created_at, created_by, updated_at, updated_by)
                           VALUES
                           (:name, :description, :task_type, :cron_expression,
                            :timezone, :enabled, :max_retries,
                            :retry_delay_seconds, :timeout_seconds,
                            :created_at, :created_by, :updated_at, :updated_by)
                        """,
                        row,
                    )
                    created = job.model_copy(update={"id": cur.lastrowid})
                    self._write_children(created)
            except sqlite3.IntegrityError as e:
                raise ValidationError("name", f"a job named '{job.name}' already exists") from e
        logger.info(f"Created job {created.id} ({created.name})")
        return created

    def get(self, job_id: int) -> Optional[ScheduledJob]:
        """Get a job by ID.

        :param job_id: Job ID.
        :returns: Job if found, None otherwise.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM scheduled_jobs WHERE id = ?", (job_id,)
            ).fetchone()
            return self._row_to_job(row) if row else None

    def get_by_name(self, name: str) -> Optional[ScheduledJob]:
        """Get a job by its unique name.

        :param name: Job name.
        :returns: Job if found, None otherwise.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM scheduled_jobs WHERE name = ?", (name,)
            ).fetchone()
            return self._row_to_job(row) if row else None

    def list(
        self,
        enabled: Optional[bool] = None,
        task_type: Optional[str] = None,
    ) -> List[ScheduledJob]:
        """List jobs, optionally filtered.

        :param enabled: Filter by enabled flag.
        :param task_type: Filter by task type.
        :returns: Jobs ordered by id.
        """
        clauses: list = []
        params: list = []
        if enabled is not None:
            clauses.append("enabled = ?")
            params.append(1 if enabled else 0)
        if task_type:
            clauses.append("task_type = ?")
            params.append(task_type)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        with self._lock:
            cur = self._conn.execute(
                f"SELECT * FROM scheduled_jobs {where}ORDER BY id",
                params,
            )
            return [self._row_to_job(r) for r in cur.fetchall()]

    def list_enabled(self) -> List[ScheduledJob]:
        """Get all enabled jobs."""
        return self.list(enabled=True)

    def update(self, job: ScheduledJob) -> bool:
        """Update an existing job, replacing its parameters and selectors.

        :param job: Job with updated fields.
        :returns: True if a row was updated.
        :raises ValidationError: If the new name collides with another job.
        """
        row = self._job_to_row(job)
        with self._lock:
            try:
                with self._conn:
                    cur = self._conn.execute(
                        """UPDATE scheduled_jobs SET
                               name                = :name,
                               description         = :description,
                               task_type           = :task_type,
                               cron_expression     = :cron_expression,
                               timezone            = :timezone,
                               enabled             = :enabled,
                               max_retries         = :max_retries,
                               retry_delay_seconds = :retry_delay_seconds,
                               timeout_seconds     = :timeout_seconds,
                               updated_at          = :updated_at,
                               updated_by          = :updated_by
                           WHERE id = :id
                        """,
                        row,
                    )
                    if cur.rowcount:
                        self._write_children(job)
            except sqlite3.IntegrityError as e:
                raise ValidationError("name", f"a job named '{job.name}' already exists") from e
        if cur.rowcount:
            logger.debug(f"Updated job {job.id} (enabled={job.enabled})")
        return bool(cur.rowcount)

    def delete(self, job_id: int) -> bool:
        """Delete a job together with its parameters and selectors.

        :param job_id: Job ID.
        :returns: True if deleted.
        """
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM job_parameters WHERE job_id = ?", (job_id,))
                self._conn.execute("DELETE FROM job_vm_selectors WHERE job_id = ?", (job_id,))
                cur = self._conn.execute("DELETE FROM scheduled_jobs WHERE id = ?", (job_id,))
        if cur.rowcount:
            logger.info(f"Deleted job {job_id}")
        return bool(cur.rowcount)

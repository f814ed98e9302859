# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""SQLite-based storage for job executions and their per-VM outcomes."""

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from fleetsched.core.models.execution import (
    ExecutionStatus,
    JobExecution,
    JobVMExecution,
)
from fleetsched.core.observability import get_logger
from fleetsched.core.storage.job_store import _dt_to_iso, _iso_to_dt, connect

logger = get_logger(__name__)

_EXECUTIONS_SCHEMA = """
CREATE TABLE IF NOT EXISTS job_executions (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id            INTEGER NOT NULL,
    job_name          TEXT,
    execution_id      TEXT NOT NULL UNIQUE,
    status            TEXT NOT NULL DEFAULT 'running',
    started_at        TEXT NOT NULL,
    completed_at      TEXT,
    processed_vms     INTEGER NOT NULL DEFAULT 0,
    successful_vms    INTEGER NOT NULL DEFAULT 0,
    failed_vms        INTEGER NOT NULL DEFAULT 0,
    error_message     TEXT,
    execution_details TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS job_vm_executions (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    execution_pk  INTEGER NOT NULL,
    vm_id         INTEGER NOT NULL,
    vm_name       TEXT,
    node_name     TEXT,
    status        TEXT NOT NULL,
    started_at    TEXT NOT NULL,
    completed_at  TEXT,
    error_message TEXT,
    result_data   TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_executions_job
    ON job_executions(job_id);
CREATE INDEX IF NOT EXISTS idx_executions_status
    ON job_executions(status);
CREATE INDEX IF NOT EXISTS idx_executions_completed
    ON job_executions(completed_at);
CREATE INDEX IF NOT EXISTS idx_vm_executions_execution
    ON job_vm_executions(execution_pk);
"""


class ExecutionStore:
    """SQLite-backed storage for execution history.

    An execution row owns its per-VM rows. The job id column is a plain
    reference so history survives the deletion of its job.
    """

    def __init__(
        self,
        db_path: Path | str = "data/scheduler.db",
    ) -> None:
        """Initialize the execution store.

        :param db_path: Path to SQLite database file.
        """
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._conn = connect(self.db_path)
        self._conn.executescript(_EXECUTIONS_SCHEMA)

        logger.info(f"Initialized execution storage at {self.db_path}")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    @staticmethod
    def _execution_to_row(execution: JobExecution) -> dict:
        """Convert a JobExecution to a flat dict for SQLite storage."""
        return {
            "id": execution.id,
            "job_id": execution.job_id,
            "job_name": execution.job_name,
            "execution_id": execution.execution_id,
            "status": getattr(execution.status, "value", execution.status),
            "started_at": _dt_to_iso(execution.started_at),
            "completed_at": _dt_to_iso(execution.completed_at),
            "processed_vms": execution.processed_vms,
            "successful_vms": execution.successful_vms,
            "failed_vms": execution.failed_vms,
            "error_message": execution.error_message,
            "execution_details": json.dumps(execution.execution_details, default=str),
        }

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> JobExecution:
        """Reconstruct a JobExecution from a database row."""
        data = dict(row)
        data["execution_details"] = json.loads(data["execution_details"])
        data["started_at"] = _iso_to_dt(data["started_at"])
        data["completed_at"] = _iso_to_dt(data["completed_at"])
        return JobExecution.model_validate(data)

    @staticmethod
    def _vm_execution_to_row(vm_execution: JobVMExecution) -> dict:
        return {
            "id": vm_execution.id,
            "execution_pk": vm_execution.execution_pk,
            "vm_id": vm_execution.vm_id,
            "vm_name": vm_execution.vm_name,
            "node_name": vm_execution.node_name,
            "status": getattr(vm_execution.status, "value", vm_execution.status),
            "started_at": _dt_to_iso(vm_execution.started_at),
            "completed_at": _dt_to_iso(vm_execution.completed_at),
            "error_message": vm_execution.error_message,
            "result_data": json.dumps(vm_execution.result_data, default=str),
        }

    @staticmethod
    def _row_to_vm_execution(row: sqlite3.Row) -> JobVMExecution:
        data = dict(row)
        data["result_data"] = json.loads(data["result_data"])
        data["started_at"] = _iso_to_dt(data["started_at"])
        data["completed_at"] = _iso_to_dt(data["completed_at"])
        return JobVMExecution.model_validate(data)

    def create(self, execution: JobExecution) -> JobExecution:
        """Create a new execution.

        :param execution: Execution to create. Its id is ignored.
        :returns: Copy of the execution carrying the assigned id.
        """
        row = self._execution_to_row(execution)
        del row["id"]
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    """INSERT INTO job_executions
                       (job_id, job_name, execution_id, status,
                        started_at, completed_at, processed_vms,
                        successful_vms, failed_vms, error_message,
                        execution_details)
                       VALUES
                       (:job_id, :job_name, :execution_id, :status,
                        :started_at, :completed_at, :processed_vms,
                        :successful_vms, :failed_vms, :error_message,
                        :execution_details)
                    """,
                    row,
                )
        logger.debug(f"Created execution {execution.execution_id} for job {execution.job_id}")
        return execution.model_copy(update={"id": cur.lastrowid})

    def update(
        self,
        execution: JobExecution,
        expected_status: Optional[ExecutionStatus] = None,
    ) -> bool:
        """Update an existing execution.

        :param execution: Execution with updated fields.
        :param expected_status: Only update if the stored status still
            equals this value. Used to make terminal transitions race-free.
        :returns: True if a row was updated.
        """
        row = self._execution_to_row(execution)
        query = """UPDATE job_executions SET
                       status            = :status,
                       completed_at      = :completed_at,
                       processed_vms     = :processed_vms,
                       successful_vms    = :successful_vms,
                       failed_vms        = :failed_vms,
                       error_message     = :error_message,
                       execution_details = :execution_details
                   WHERE id = :id"""
        if expected_status is not None:
            query += " AND status = :expected_status"
            row["expected_status"] = getattr(expected_status, "value", expected_status)
        with self._lock:
            with self._conn:
                cur = self._conn.execute(query, row)
        return bool(cur.rowcount)

    def update_progress(
        self,
        execution_pk: int,
        processed_vms: int,
        successful_vms: int,
        failed_vms: int,
    ) -> None:
        """Write the running VM counters without touching the status."""
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """UPDATE job_executions SET
                           processed_vms  = ?,
                           successful_vms = ?,
                           failed_vms     = ?
                       WHERE id = ?
                    """,
                    (processed_vms, successful_vms, failed_vms, execution_pk),
                )

    def get(self, execution_pk: int) -> Optional[JobExecution]:
        """Get an execution by store id."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM job_executions WHERE id = ?", (execution_pk,)
            ).fetchone()
        return self._row_to_execution(row) if row else None

    def get_by_execution_id(self, execution_id: str) -> Optional[JobExecution]:
        """Get an execution by its correlation token."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM job_executions WHERE execution_id = ?", (execution_id,)
            ).fetchone()
        return self._row_to_execution(row) if row else None

    def list(
        self,
        job_id: Optional[int] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[JobExecution]:
        """List executions, most recent first.

        :param job_id: Optional filter by job.
        :param status: Optional filter by status.
        :param limit: Maximum number of executions to return.
        :param offset: Number of executions to skip.
        :returns: List of executions.
        """
        clauses: list = []
        params: list = []
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        if status:
            clauses.append("status = ?")
            params.append(getattr(status, "value", status))
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        params.extend([limit, offset])
        with self._lock:
            cur = self._conn.execute(
                f"SELECT * FROM job_executions {where}"
                "ORDER BY started_at DESC, id DESC LIMIT ? OFFSET ?",
                params,
            )
            rows = cur.fetchall()
        return [self._row_to_execution(r) for r in rows]

    def get_running(self, job_id: Optional[int] = None) -> List[JobExecution]:
        """Get executions still marked running.

        :param job_id: Optional filter by job.
        :returns: Running executions.
        """
        params: list = [ExecutionStatus.RUNNING.value]
        query = "SELECT * FROM job_executions WHERE status = ?"
        if job_id is not None:
            query += " AND job_id = ?"
            params.append(job_id)
        with self._lock:
            rows = self._conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._row_to_execution(r) for r in rows]

    def create_vm_execution(self, vm_execution: JobVMExecution) -> JobVMExecution:
        """Create a per-VM row.

        :param vm_execution: Row to create. Its id is ignored.
        :returns: Copy carrying the assigned id.
        """
        row = self._vm_execution_to_row(vm_execution)
        del row["id"]
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    """INSERT INTO job_vm_executions
                       (execution_pk, vm_id, vm_name, node_name, status,
                        started_at, completed_at, error_message, result_data)
                       VALUES
                       (:execution_pk, :vm_id, :vm_name, :node_name, :status,
                        :started_at, :completed_at, :error_message, :result_data)
                    """,
                    row,
                )
        return vm_execution.model_copy(update={"id": cur.lastrowid})

    def update_vm_execution(self, vm_execution: JobVMExecution) -> bool:
        """Persist the final state of a per-VM row."""
        row = self._vm_execution_to_row(vm_execution)
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    """UPDATE job_vm_executions SET
                           status        = :status,
                           completed_at  = :completed_at,
                           error_message = :error_message,
                           result_data   = :result_data
                       WHERE id = :id
                    """,
                    row,
                )
        return bool(cur.rowcount)

    def list_vm_executions(self, execution_pk: int) -> List[JobVMExecution]:
        """Get the per-VM rows of an execution in processing order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM job_vm_executions WHERE execution_pk = ? ORDER BY id",
                (execution_pk,),
            ).fetchall()
        return [self._row_to_vm_execution(r) for r in rows]

    def delete_completed_before(self, cutoff: datetime) -> int:
        """Delete finished executions, and their per-VM rows, older than a cutoff.

        :param cutoff: Executions with completed_at before this are removed.
        :returns: Number of executions deleted.
        """
        cutoff_iso = _dt_to_iso(cutoff)
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """DELETE FROM job_vm_executions WHERE execution_pk IN (
                           SELECT id FROM job_executions
                           WHERE completed_at IS NOT NULL AND completed_at < ?
                       )
                    """,
                    (cutoff_iso,),
                )
                cur = self._conn.execute(
                    "DELETE FROM job_executions "
                    "WHERE completed_at IS NOT NULL AND completed_at < ?",
                    (cutoff_iso,),
                )
        if cur.rowcount:
            logger.info(f"Deleted {cur.rowcount} execution(s) completed before {cutoff_iso}")
        return cur.rowcount

# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Application wiring for the fleet scheduler.

An embedding service builds the engine with its inventory and snapshot
service, then runs it inside ``lifespan``::

    engine = build_engine(inventory, snapshot_service)
    async with lifespan(engine):
        ...
"""

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from fleetsched.core.execution.task import TaskRegistry
from fleetsched.core.observability import get_logger, initialize_logging
from fleetsched.core.services.inventory import (
    InventoryTagLookup,
    SnapshotService,
    TagLookup,
    VMInventory,
)
from fleetsched.core.services.runtime import APSchedulerRuntime, TriggerRuntime
from fleetsched.core.services.scheduler import SchedulerEngine
from fleetsched.core.services.selector import VMSelectorResolver
from fleetsched.core.storage.execution_store import ExecutionStore
from fleetsched.core.storage.job_store import JobStore
from fleetsched.core.tasks import register_builtin_tasks

LOG_FORMAT = os.environ.get("LOG_FORMAT", "console")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
DATA_DIR = Path(os.environ.get("DATA_DIR", "data"))
SCHEDULER_MAX_WORKERS = int(os.environ.get("SCHEDULER_MAX_WORKERS", "4"))
EXECUTION_RETENTION_DAYS = int(os.environ.get("EXECUTION_RETENTION_DAYS", "30"))
RETENTION_INTERVAL_SECONDS = int(os.environ.get("RETENTION_INTERVAL_SECONDS", "86400"))
ALLOW_OVERLAPPING_EXECUTIONS = os.environ.get(
    "ALLOW_OVERLAPPING_EXECUTIONS", "false"
).strip().lower() in ("1", "true", "yes", "on")

initialize_logging(level=LOG_LEVEL, log_format=LOG_FORMAT)
logger = get_logger(__name__)


def build_engine(
    inventory: VMInventory,
    snapshot_service: SnapshotService,
    tag_lookup: Optional[TagLookup] = None,
    db_path: Optional[Path | str] = None,
    runtime: Optional[TriggerRuntime] = None,
) -> SchedulerEngine:
    """Wire stores, registry, runtime and engine.

    :param inventory: VM inventory capability
    :param snapshot_service: Snapshot action capability
    :param tag_lookup: Tag lookup, defaults to reading inventory tags
    :param db_path: SQLite file, defaults to DATA_DIR/scheduler.db
    :param runtime: Trigger runtime, defaults to an APScheduler runtime
    :returns: A stopped SchedulerEngine
    """
    db_path = Path(db_path) if db_path else DATA_DIR / "scheduler.db"
    job_store = JobStore(db_path=db_path)
    execution_store = ExecutionStore(db_path=db_path)

    registry = TaskRegistry()
    register_builtin_tasks(registry, snapshot_service)

    resolver = VMSelectorResolver(inventory, tag_lookup or InventoryTagLookup(inventory))
    return SchedulerEngine(
        job_store=job_store,
        execution_store=execution_store,
        registry=registry,
        runtime=runtime or APSchedulerRuntime(max_workers=SCHEDULER_MAX_WORKERS),
        resolver=resolver,
        allow_overlap=ALLOW_OVERLAPPING_EXECUTIONS,
        retention_days=EXECUTION_RETENTION_DAYS,
        retention_interval_seconds=RETENTION_INTERVAL_SECONDS,
    )


@asynccontextmanager
async def lifespan(engine: SchedulerEngine) -> AsyncGenerator[SchedulerEngine, None]:
    """Run the engine for the duration of the block.

    Starts the engine on entry and ensures graceful shutdown.

    :param engine: Engine from build_engine
    :yields: The started engine
    """
    try:
        logger.info("Starting fleet scheduler...")
        scheduled = await engine.start()
        logger.info(f"Fleet scheduler started with {scheduled} scheduled job(s)")
        yield engine

    except Exception as e:
        logger.error(f"Fleet scheduler failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("Shutting down fleet scheduler...")
        await engine.stop()
        engine.job_store.close()
        engine.execution_store.close()
        logger.info("Fleet scheduler shutdown complete")

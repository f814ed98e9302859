# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""
Observability module for the fleet scheduler.

Classes:
- ObservabilityContextManager: Singleton for context management
- StructuredLogger: Logger with context injection
- LoggerFactory: Factory for creating loggers
- JSONFormatter/ConsoleFormatter: Log formatters

Events:
- ServiceEvent: engine lifecycle and job management events
- ExecutionEvent: fire and per-VM events

Usage:
    from fleetsched.core.observability import (
        initialize_logging,
        get_logger,
    )

    # Initialize once at startup
    initialize_logging(level=logging.INFO, log_format="json")

    # Get logger
    logger = get_logger(__name__)

"""

from fleetsched.core.observability.context import (
    ContextData,
    ExecutionScope,
    ObservabilityContextManager,
    ObservabilityScope,
    VMScope,
    clear_context,
    get_correlation_id,
    get_execution_id,
    get_job_id,
    get_job_name,
    get_vm_id,
    set_correlation_id,
)
from fleetsched.core.observability.events import (
    ExecutionEvent,
    LogLevel,
    LogStream,
    ServiceEvent,
    create_execution_event,
    create_service_event,
)
from fleetsched.core.observability.logger import (
    ConsoleFormatter,
    JSONFormatter,
    LogFormatter,
    LoggerFactory,
    StructuredLogger,
    clear_correlation_id,
    get_logger,
    initialize_logging,
)

__all__ = [
    "ContextData",
    "ObservabilityContextManager",
    "ObservabilityScope",
    "ExecutionScope",
    "VMScope",
    "get_correlation_id",
    "set_correlation_id",
    "get_execution_id",
    "get_job_id",
    "get_job_name",
    "get_vm_id",
    "clear_context",
    "clear_correlation_id",
    "LogStream",
    "LogLevel",
    "ServiceEvent",
    "ExecutionEvent",
    "create_service_event",
    "create_execution_event",
    "LogFormatter",
    "JSONFormatter",
    "ConsoleFormatter",
    "StructuredLogger",
    "LoggerFactory",
    "initialize_logging",
    "get_logger",
]

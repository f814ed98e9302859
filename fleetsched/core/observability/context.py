# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""
Log context propagated through ContextVars.

A fire runs on a scheduler worker thread. The execution token, job and the
VM being processed are bound here so every log line written along the way
can be joined back to the execution and per-VM rows.
"""

from __future__ import annotations

import uuid
from contextvars import ContextVar, Token
from dataclasses import asdict, dataclass, replace
from typing import Any, Optional


@dataclass(frozen=True)
class ContextData:
    """
    Snapshot of the fields attached to log records.
    """

    correlation_id: Optional[str] = None
    job_id: Optional[int] = None
    job_name: Optional[str] = None
    execution_id: Optional[str] = None
    vm_id: Optional[int] = None

    def merged(self, **fields: Any) -> "ContextData":
        """Copy with the given fields replaced."""
        return replace(self, **fields)

    def log_fields(self) -> dict[str, Any]:
        """Fields that are set, keyed by their record attribute name."""
        return {k: v for k, v in asdict(self).items() if v is not None}


class ObservabilityContextManager:
    """
    Process-wide holder of the context variable.
    """

    _instance: Optional["ObservabilityContextManager"] = None
    _var: ContextVar[ContextData] = ContextVar("fleetsched_log_context", default=ContextData())

    def __new__(cls) -> "ObservabilityContextManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @classmethod
    def instance(cls) -> "ObservabilityContextManager":
        """Get the shared manager.

        :returns: The singleton manager
        :rtype: ObservabilityContextManager
        """
        return cls()

    def current(self) -> ContextData:
        return self._var.get()

    def push(self, **fields: Any) -> Token:
        """Bind fields on top of the current context.

        :param fields: ContextData fields to replace
        :returns: Token restoring the previous context
        :rtype: Token
        """
        return self._var.set(self.current().merged(**fields))

    def pop(self, token: Token) -> None:
        self._var.reset(token)

    def log_fields(self) -> dict[str, Any]:
        return self.current().log_fields()

    def set_correlation_id(self, value: Optional[str] = None) -> str:
        """Set the correlation ID, generating one when value is None."""
        correlation_id = value or str(uuid.uuid4())
        self.push(correlation_id=correlation_id)
        return correlation_id

    def clear_correlation_id(self) -> None:
        self.push(correlation_id=None)

    def clear(self) -> None:
        self._var.set(ContextData())


class ObservabilityScope:
    """
    ``with`` block that binds context fields and restores the previous ones on exit.
    """

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        job_name: Optional[str] = None,
        execution_id: Optional[str] = None,
        auto_correlation_id: bool = False,
        job_id: Optional[int] = None,
        vm_id: Optional[int] = None,
    ) -> None:
        """Collect the fields to bind.

        :param correlation_id: Correlation ID to bind
        :param job_name: Job name to bind
        :param execution_id: Execution token to bind
        :param auto_correlation_id: Generate a correlation ID when none is given
        :param job_id: Job id to bind
        :param vm_id: VM id to bind
        """
        if correlation_id is None and auto_correlation_id:
            correlation_id = str(uuid.uuid4())
        candidates = {
            "correlation_id": correlation_id,
            "job_id": job_id,
            "job_name": job_name,
            "execution_id": execution_id,
            "vm_id": vm_id,
        }
        self._fields = {k: v for k, v in candidates.items() if v is not None}
        self._token: Optional[Token] = None

    def __enter__(self) -> "ObservabilityScope":
        if self._fields:
            self._token = ObservabilityContextManager.instance().push(**self._fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            ObservabilityContextManager.instance().pop(self._token)
            self._token = None


class ExecutionScope(ObservabilityScope):
    """
    Scope bound to one fire of a job.

    The execution token doubles as the correlation id.
    """

    def __init__(
        self,
        execution_id: str,
        job_name: Optional[str] = None,
        job_id: Optional[int] = None,
    ) -> None:
        super().__init__(
            correlation_id=execution_id,
            job_name=job_name,
            execution_id=execution_id,
            job_id=job_id,
        )


class VMScope(ObservabilityScope):
    """Scope bound to the VM currently being processed inside a fire."""

    def __init__(self, vm_id: int) -> None:
        super().__init__(vm_id=vm_id)


def get_correlation_id() -> Optional[str]:
    return ObservabilityContextManager.instance().current().correlation_id


def set_correlation_id(value: Optional[str] = None) -> str:
    """Set the correlation ID for the current context."""
    return ObservabilityContextManager.instance().set_correlation_id(value)


def get_job_id() -> Optional[int]:
    return ObservabilityContextManager.instance().current().job_id


def get_job_name() -> Optional[str]:
    return ObservabilityContextManager.instance().current().job_name


def get_execution_id() -> Optional[str]:
    return ObservabilityContextManager.instance().current().execution_id


def get_vm_id() -> Optional[int]:
    return ObservabilityContextManager.instance().current().vm_id


def clear_context() -> None:
    """Drop every bound field."""
    ObservabilityContextManager.instance().clear()

# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Scheduled job definition models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from fleetsched.core.exceptions import ValidationError

MAX_NAME_LENGTH = 200
MAX_CRON_LENGTH = 120

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 300
DEFAULT_TIMEOUT_SECONDS = 3600


def _utcnow() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class SelectorType(str, Enum):
    """How a selector's value is interpreted."""

    ALL = "ALL"
    VM_LIST = "VM_LIST"
    TAG_EXPRESSION = "TAG_EXPRESSION"
    NAME_PATTERN = "NAME_PATTERN"

    @classmethod
    def _missing_(cls, value: object) -> Optional["SelectorType"]:
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized == "VM_IDS":
                return cls.VM_LIST
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class VMSelector(BaseModel):
    """Rule that resolves to a set of VMs when a job fires."""

    model_config = ConfigDict(use_enum_values=True, frozen=True)

    type: SelectorType
    value: str = ""
    exclude_expression: Optional[str] = None

    @model_validator(mode="after")
    def _check_value(self) -> "VMSelector":
        if self.type != SelectorType.ALL and not self.value.strip():
            raise ValueError(f"selector value is required for type {self.type}")
        return self

    def sort_key(self) -> tuple:
        """Stable ordering key, used when comparing selector sets."""
        return (str(self.type), self.value, self.exclude_expression or "")


def validate_cron_expression(cron_expression: str, tz: str = "UTC") -> str:
    """Check that a crontab expression parses.

    :param cron_expression: Standard 5-field crontab expression.
    :param tz: IANA timezone the expression is evaluated in.
    :returns: The stripped expression.
    :raises ValueError: If the expression is invalid.
    """
    expression = cron_expression.strip()
    if not expression:
        raise ValueError("cron expression cannot be empty")
    if len(expression) > MAX_CRON_LENGTH:
        raise ValueError(f"cron expression exceeds {MAX_CRON_LENGTH} characters")
    try:
        CronTrigger.from_crontab(expression, timezone=tz)
    except Exception as e:
        raise ValueError(f"invalid cron expression '{expression}': {e}") from e
    return expression


class JobDefinition(BaseModel):
    """Everything needed to create a scheduled job."""

    model_config = ConfigDict(use_enum_values=True)

    name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)
    description: str = ""
    task_type: str = Field(min_length=1)
    timezone: str = "UTC"
    cron_expression: str = Field(min_length=1, max_length=MAX_CRON_LENGTH)
    enabled: bool = True
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    retry_delay_seconds: int = Field(default=DEFAULT_RETRY_DELAY_SECONDS, ge=0)
    timeout_seconds: int = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    parameters: Dict[str, str] = Field(default_factory=dict)
    vm_selectors: List[VMSelector] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name cannot be blank")
        return value.strip()

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone '{value}'") from e
        return value

    @field_validator("parameters")
    @classmethod
    def _check_parameters(cls, value: Dict[str, str]) -> Dict[str, str]:
        for key in value:
            if not key.strip():
                raise ValueError("parameter keys cannot be blank")
        return value

    @field_validator("cron_expression")
    @classmethod
    def _check_cron(cls, value: str, info: ValidationInfo) -> str:
        return validate_cron_expression(value, info.data.get("timezone", "UTC"))


class ScheduledJob(JobDefinition):
    """A persisted job definition."""

    id: Optional[int] = None
    created_at: datetime = Field(default_factory=_utcnow)
    created_by: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)
    updated_by: Optional[str] = None

    @property
    def trigger_id(self) -> str:
        """Identifier of this job's trigger in the trigger runtime."""
        return trigger_id_for(self.id)


class JobUpdate(BaseModel):
    """Partial update of a job. Collections are replaced as a whole."""

    name: Optional[str] = None
    description: Optional[str] = None
    task_type: Optional[str] = None
    cron_expression: Optional[str] = None
    timezone: Optional[str] = None
    enabled: Optional[bool] = None
    max_retries: Optional[int] = None
    retry_delay_seconds: Optional[int] = None
    timeout_seconds: Optional[int] = None
    parameters: Optional[Dict[str, str]] = None
    vm_selectors: Optional[List[VMSelector]] = None


def trigger_id_for(job_id: Optional[int]) -> str:
    """Trigger runtime identifier for a job id."""
    return f"job-{job_id}"


def _raise_first_error(exc: PydanticValidationError) -> None:
    """Translate a pydantic error into a field-identifying ValidationError."""
    error = exc.errors()[0]
    location = [str(part) for part in error.get("loc", ())]
    field = location[0] if location else "job"
    message = error.get("msg", str(exc))
    if message.startswith("Value error, "):
        message = message[len("Value error, ") :]
    raise ValidationError(field, message) from exc


def build_job_definition(**fields: Any) -> JobDefinition:
    """Build a validated job definition.

    :param fields: JobDefinition fields.
    :returns: Validated JobDefinition.
    :raises ValidationError: Identifying the first offending field.
    """
    try:
        return JobDefinition(**fields)
    except PydanticValidationError as e:
        _raise_first_error(e)
        raise


def build_scheduled_job(**fields: Any) -> ScheduledJob:
    """Build a validated ScheduledJob.

    :param fields: ScheduledJob fields.
    :returns: Validated ScheduledJob.
    :raises ValidationError: Identifying the first offending field.
    """
    try:
        return ScheduledJob(**fields)
    except PydanticValidationError as e:
        _raise_first_error(e)
        raise

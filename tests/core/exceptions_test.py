# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Tests for scheduler exceptions."""

from fleetsched.core.exceptions import (
    ExecutionError,
    ExecutionStateError,
    JobDisabledError,
    JobNotFoundError,
    ParseError,
    PerVMError,
    SchedulerError,
    SchedulingError,
    TaskValidationError,
    UnknownTaskTypeError,
    ValidationError,
)


class TestSchedulerExceptions:
    """
    Tests for the scheduler exception hierarchy.
    """

    def test_parse_error_attributes(self) -> None:
        """
        ParseError stores the expression and offending token.
        """
        err = ParseError("Unexpected token: 'b'", expression="a b", token="b")
        assert err.expression == "a b"
        assert err.token == "b"
        assert isinstance(err, SchedulerError)
        assert isinstance(err, ValueError)

    def test_validation_error_names_field(self) -> None:
        """
        ValidationError identifies the field in its message.
        """
        err = ValidationError("cron_expression", "invalid cron expression")
        assert err.field == "cron_expression"
        assert err.message == "invalid cron expression"
        assert str(err) == "Invalid cron_expression: invalid cron expression"

    def test_scheduling_error_attributes(self) -> None:
        err = SchedulingError("job-3", "runtime stopped")
        assert err.trigger_id == "job-3"
        assert err.reason == "runtime stopped"
        assert "job-3" in str(err)

    def test_job_errors(self) -> None:
        assert str(JobNotFoundError(7)) == "Job 7 not found"
        assert JobNotFoundError(7).job_id == 7
        disabled = JobDisabledError("nightly")
        assert disabled.job_name == "nightly"
        assert "disabled" in str(disabled)

    def test_execution_errors_share_base(self) -> None:
        """
        Errors raised while a job executes derive from ExecutionError.
        """
        cause = RuntimeError("timeout")
        per_vm = PerVMError(101, "web-01", cause)
        assert per_vm.cause is cause
        assert str(per_vm) == "VM 101 (web-01): timeout"

        for err in (
            per_vm,
            TaskValidationError("snapshot_create", "bad pattern"),
            UnknownTaskTypeError("backup"),
            ExecutionStateError("e-1", "completed", "failed"),
        ):
            assert isinstance(err, ExecutionError)
            assert isinstance(err, SchedulerError)

    def test_execution_state_error_message(self) -> None:
        err = ExecutionStateError("e-1", "completed", "failed")
        assert (err.current, err.target) == ("completed", "failed")
        assert "completed" in str(err) and "failed" in str(err)

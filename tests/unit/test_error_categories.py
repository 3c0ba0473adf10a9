"""Tests for error categories and exception classification."""

import errno

import pytest
from pydantic import BaseModel, ValidationError

from autoflow.errors import (
    ActionFailedError,
    CircuitOpenError,
    ConcurrencyLimitError,
    ErrorCategory,
    ExecutionCancelledError,
    PluginError,
    RateLimitedError,
    WorkflowValidationError,
    classify_exception,
)


class _Strict(BaseModel):
    count: int


def _pydantic_error():
    try:
        _Strict(count="many")
    except ValidationError as e:
        return e


class TestRetryable:
    @pytest.mark.parametrize("category,expected", [
        (ErrorCategory.TRANSIENT, True),
        (ErrorCategory.RESOURCE, True),
        (ErrorCategory.TIMEOUT, True),
        (ErrorCategory.PLUGIN, True),
        (ErrorCategory.PERMANENT, False),
        (ErrorCategory.CANCELLED, False),
    ])
    def test_retryable(self, category, expected):
        assert category.retryable is expected


class TestClassifyException:
    def test_engine_errors_keep_their_category(self):
        assert classify_exception(CircuitOpenError("x")) == ErrorCategory.TRANSIENT
        assert classify_exception(ConcurrencyLimitError("full")) == ErrorCategory.RESOURCE
        assert classify_exception(RateLimitedError("slow down")) == ErrorCategory.RESOURCE
        assert classify_exception(ExecutionCancelledError("stop")) == ErrorCategory.CANCELLED
        assert classify_exception(PluginError("crash")) == ErrorCategory.PLUGIN
        assert classify_exception(ActionFailedError("bad", ErrorCategory.PERMANENT)) == ErrorCategory.PERMANENT

    def test_builtin_exceptions(self):
        assert classify_exception(_pydantic_error()) == ErrorCategory.PERMANENT
        assert classify_exception(MemoryError()) == ErrorCategory.RESOURCE
        assert classify_exception(TimeoutError()) == ErrorCategory.TIMEOUT
        assert classify_exception(PermissionError("denied")) == ErrorCategory.PERMANENT
        assert classify_exception(OSError(errno.ENOSPC, "disk full")) == ErrorCategory.RESOURCE
        assert classify_exception(ConnectionResetError()) == ErrorCategory.TRANSIENT
        assert classify_exception(KeyError("oops")) == ErrorCategory.PLUGIN


class TestWorkflowValidationError:
    def test_summarises_first_five(self):
        error = WorkflowValidationError([f"problem {i}" for i in range(7)])
        assert error.errors[-1] == "problem 6"
        assert "problem 4" in str(error)
        assert "problem 5" not in str(error)
        assert "(+2 more)" in str(error)

    def test_action_failed_carries_output(self):
        error = ActionFailedError("exit 1", output={"stderr": "nope"})
        assert error.output == {"stderr": "nope"}
        assert error.category == ErrorCategory.TRANSIENT

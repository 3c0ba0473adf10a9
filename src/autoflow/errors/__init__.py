"""Engine error categories and exception hierarchy."""

from .exceptions import (
    ActionFailedError,
    ActionInputError,
    ActionTimeoutError,
    CircuitOpenError,
    ConcurrencyLimitError,
    ConditionError,
    ConditionTimeoutError,
    EngineError,
    ErrorCategory,
    ExecutionCancelledError,
    JobNotFoundError,
    PluginError,
    RateLimitedError,
    RunNotFoundError,
    RunStateError,
    RunTimeoutError,
    TriggerNotFoundError,
    UnknownActionError,
    WorkflowNotFoundError,
    WorkflowValidationError,
    classify_exception,
)

__all__ = [
    "ActionFailedError",
    "ActionInputError",
    "ActionTimeoutError",
    "CircuitOpenError",
    "ConcurrencyLimitError",
    "ConditionError",
    "ConditionTimeoutError",
    "EngineError",
    "ErrorCategory",
    "ExecutionCancelledError",
    "JobNotFoundError",
    "PluginError",
    "RateLimitedError",
    "RunNotFoundError",
    "RunStateError",
    "RunTimeoutError",
    "TriggerNotFoundError",
    "UnknownActionError",
    "WorkflowNotFoundError",
    "WorkflowValidationError",
    "classify_exception",
]

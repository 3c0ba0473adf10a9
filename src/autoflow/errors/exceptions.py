"""Error taxonomy shared by the engine, the action pipeline and the queue."""

import errno
from enum import Enum
from typing import Any, List, Optional

from pydantic import ValidationError as PydanticValidationError


class ErrorCategory(str, Enum):
    """Failure categories that drive retry decisions."""
    TRANSIENT = "transient"  # network blips, open circuits
    PERMANENT = "permanent"  # validation, auth, unknown action types
    RESOURCE = "resource"  # memory/disk pressure, concurrency caps
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    PLUGIN = "plugin"  # plugin code crashed; retryable after reload

    @property
    def retryable(self) -> bool:
        return self not in (ErrorCategory.PERMANENT, ErrorCategory.CANCELLED)


class EngineError(Exception):
    """Base class for every error raised by the engine."""

    category: ErrorCategory = ErrorCategory.PERMANENT

    def __init__(self, message: str, category: Optional[ErrorCategory] = None):
        super().__init__(message)
        if category is not None:
            self.category = category


class WorkflowValidationError(EngineError):
    """Workflow definition rejected at save time."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        summary = "; ".join(self.errors[:5])
        if len(self.errors) > 5:
            summary += f" (+{len(self.errors) - 5} more)"
        super().__init__(f"Invalid workflow: {summary}")


class WorkflowNotFoundError(EngineError):
    pass


class RunNotFoundError(EngineError):
    pass


class JobNotFoundError(EngineError):
    pass


class RunStateError(EngineError):
    """Attempted to mutate or re-run a run that is already terminal."""


class ConcurrencyLimitError(EngineError):
    category = ErrorCategory.RESOURCE


class TriggerNotFoundError(EngineError):
    pass


class ConditionError(EngineError):
    """Malformed condition tree or unknown custom evaluator."""


class ConditionTimeoutError(ConditionError):
    category = ErrorCategory.TIMEOUT


class UnknownActionError(EngineError):
    pass


class ActionInputError(EngineError):
    """Resolved node config does not match the action's input schema."""


class ActionFailedError(EngineError):
    """Executor reported success=False or raised."""

    category = ErrorCategory.TRANSIENT

    def __init__(self, message: str, category: Optional[ErrorCategory] = None, output: Any = None):
        super().__init__(message, category)
        self.output = output


class ActionTimeoutError(EngineError):
    category = ErrorCategory.TIMEOUT


class ExecutionCancelledError(EngineError):
    category = ErrorCategory.CANCELLED


class RunTimeoutError(EngineError):
    category = ErrorCategory.TIMEOUT


class CircuitOpenError(EngineError):
    category = ErrorCategory.TRANSIENT

    def __init__(self, target: str, retry_after: float = 0.0):
        self.target = target
        self.retry_after = retry_after
        super().__init__(
            f"Circuit open for target '{target}' (retry in {retry_after:.1f}s)"
        )


class RateLimitedError(EngineError):
    category = ErrorCategory.RESOURCE


class PluginError(EngineError):
    category = ErrorCategory.PLUGIN


def classify_exception(exc: BaseException) -> ErrorCategory:
    """Map an arbitrary exception onto an ErrorCategory.

    Engine errors carry their own category. Anything else that escapes an
    executor is treated as a plugin crash unless it is a recognisable I/O or
    resource failure.
    """
    if isinstance(exc, EngineError):
        return exc.category
    if isinstance(exc, PydanticValidationError):
        return ErrorCategory.PERMANENT
    if isinstance(exc, MemoryError):
        return ErrorCategory.RESOURCE
    if isinstance(exc, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, PermissionError):
        return ErrorCategory.PERMANENT
    if isinstance(exc, OSError) and exc.errno == errno.ENOSPC:
        return ErrorCategory.RESOURCE
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.PLUGIN

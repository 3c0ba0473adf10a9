"""Logging helpers for errors that background loops must survive."""

import logging
from typing import Optional, Tuple, Type

logger = logging.getLogger(__name__)


def log_and_ignore(
    error: Exception,
    message: str,
    *,
    logger_instance: Optional[logging.Logger] = None,
    level: int = logging.WARNING,
) -> None:
    """Log ``error`` under ``message`` and carry on (failing subscriber, one bad fire)."""
    log = logger_instance or logger
    log.log(level, f"{message}: {error}")


class ErrorContext:
    """
    Context manager that logs a failed operation and optionally suppresses it.

    Worker loops, the maintenance sweep and bulk cancellation use it so one
    failure is logged with the operation name instead of killing the loop::

        with ErrorContext("maintenance sweep", raise_on_error=False):
            engine.maintenance()

    Exceptions listed in ``expected`` are races the caller already tolerates
    (a run that finished before it could be cancelled, say). They are always
    suppressed and logged at DEBUG only.
    """

    def __init__(
        self,
        operation: str,
        *,
        raise_on_error: bool = True,
        expected: Tuple[Type[Exception], ...] = (),
        logger_instance: Optional[logging.Logger] = None,
        log_level: int = logging.ERROR,
    ):
        self.operation = operation
        self.raise_on_error = raise_on_error
        self.expected = expected
        self.logger = logger_instance or logger
        self.log_level = log_level
        self.error: Optional[Exception] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None or not issubclass(exc_type, Exception):
            # KeyboardInterrupt / SystemExit always propagate
            return False

        self.error = exc_val
        if self.expected and issubclass(exc_type, self.expected):
            self.logger.debug(f"{self.operation}: {exc_val}")
            return True

        self.logger.log(
            self.log_level,
            f"Error during {self.operation}: {exc_val}",
            exc_info=self.log_level >= logging.CRITICAL,
        )
        return not self.raise_on_error

    @property
    def failed(self) -> bool:
        return self.error is not None

"""Shared utility functions for the workflow engine."""

from .atomic_io import atomic_write_text
from .error_handling import (
    log_and_ignore,
    ErrorContext,
)
from .rich_logging import EngineLogFormatter, ContextLogger, setup_rich_logging

__all__ = [
    # Atomic I/O
    "atomic_write_text",
    # Error handling
    "log_and_ignore",
    "ErrorContext",
    # Logging
    "EngineLogFormatter",
    "ContextLogger",
    "setup_rich_logging",
]

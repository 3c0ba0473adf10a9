"""Embedded SQLite store and repositories."""

from .database import Database
from .run_store import RunStore
from .trigger_store import TriggerStore
from .workflow_store import WorkflowStore

__all__ = [
    "Database",
    "RunStore",
    "TriggerStore",
    "WorkflowStore",
]

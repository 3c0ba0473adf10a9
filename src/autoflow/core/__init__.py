"""Core models, events and cancellation primitives."""

from .cancellation import CancellationToken, Deadline
from .events import EngineEvent, EventBus
from .models import (
    Job,
    JobStatus,
    NodeRun,
    NodeRunStatus,
    RunStatus,
    RunStatusReport,
    TriggerEvent,
    TriggerState,
    TriggerStatus,
    WorkflowRun,
)

__all__ = [
    "CancellationToken",
    "Deadline",
    "EngineEvent",
    "EventBus",
    "Job",
    "JobStatus",
    "NodeRun",
    "NodeRunStatus",
    "RunStatus",
    "RunStatusReport",
    "TriggerEvent",
    "TriggerState",
    "TriggerStatus",
    "WorkflowRun",
]

"""Persistent records: runs, node attempts, jobs, triggers and versions."""

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ErrorCategory


def now() -> float:
    return time.time()


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.TIMED_OUT}
)
ACTIVE_RUN_STATUSES = frozenset({RunStatus.PENDING, RunStatus.RUNNING})


class NodeRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # every inbound edge rejected, or skipped by error policy
    FILTERED = "filtered"  # rejected by a filter condition


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


class DeadJobResolution(str, Enum):
    REQUEUED = "requeued"
    DISCARDED = "discarded"


class TriggerState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class WorkflowVersion(BaseModel):
    """Immutable snapshot of a workflow definition."""
    workflow_id: str
    version: int
    definition: Dict[str, Any]
    schema_version: int = 1
    created_at: float = Field(default_factory=now)


class WorkflowRun(BaseModel):
    """One execution of a workflow version.

    ``context`` is shaped ``{"trigger": {...}, "payload": {...}, "nodes":
    {node_id: {"status": ..., "output": ...}}}`` and is what conditions and
    templates resolve paths against.
    """
    id: str
    workflow_id: str
    workflow_version: int
    status: RunStatus = RunStatus.PENDING
    trigger_event_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    cancel_requested: bool = False
    created_at: float = Field(default_factory=now)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def payload(self) -> Dict[str, Any]:
        return self.context.get("payload", {})


class NodeRun(BaseModel):
    """A single attempt at executing one node. Append-only."""
    id: Optional[int] = None
    run_id: str
    node_id: str
    attempt: int = 1
    status: NodeRunStatus = NodeRunStatus.RUNNING
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    started_at: float = Field(default_factory=now)
    finished_at: Optional[float] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at) * 1000)


class JobAttemptError(BaseModel):
    """One entry of a job's per-attempt error history."""
    attempt: int
    error: str
    category: Optional[ErrorCategory] = None
    worker_id: Optional[str] = None
    at: float = Field(default_factory=now)


class Job(BaseModel):
    """Queue entry: "execute this run"."""
    id: str
    run_id: str
    priority: int = 0
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    next_retry_at: Optional[float] = None
    locked_by: Optional[str] = None
    locked_at: Optional[float] = None
    last_error: Optional[str] = None
    error_history: List[JobAttemptError] = Field(default_factory=list)
    resolution: Optional[DeadJobResolution] = None
    resolved_at: Optional[float] = None
    created_at: float = Field(default_factory=now)
    updated_at: float = Field(default_factory=now)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


class TriggerEvent(BaseModel):
    """Immutable record of an accepted trigger fire."""
    model_config = ConfigDict(frozen=True)

    id: str
    trigger_id: str
    workflow_id: str
    dedup_key: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    fired_at: float = Field(default_factory=now)


class TriggerRecord(BaseModel):
    """Runtime state of one trigger instance."""
    id: str
    workflow_id: str
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    state: TriggerState = TriggerState.ACTIVE
    last_fired_at: Optional[float] = None
    next_fire_at: Optional[float] = None
    fire_count: int = 0
    dropped_count: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    created_at: float = Field(default_factory=now)


class TriggerStatus(BaseModel):
    """Read-only view of a trigger for status queries."""
    trigger_id: str
    workflow_id: str
    type: str
    state: TriggerState
    last_fired_at: Optional[float] = None
    next_fire_at: Optional[float] = None
    fire_count: int = 0
    dropped_count: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    @classmethod
    def from_record(cls, record: TriggerRecord, next_fire_at: Optional[float] = None) -> "TriggerStatus":
        return cls(
            trigger_id=record.id,
            workflow_id=record.workflow_id,
            type=record.type,
            state=record.state,
            last_fired_at=record.last_fired_at,
            next_fire_at=next_fire_at if next_fire_at is not None else record.next_fire_at,
            fire_count=record.fire_count,
            dropped_count=record.dropped_count,
            consecutive_failures=record.consecutive_failures,
            last_error=record.last_error,
        )


class RunStatusReport(BaseModel):
    """A run plus its node attempt timeline and queue entry."""
    run: WorkflowRun
    node_runs: List[NodeRun] = Field(default_factory=list)
    job: Optional[Job] = None

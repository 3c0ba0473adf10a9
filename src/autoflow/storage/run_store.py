"""Workflow runs and their append-only node attempt records."""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from ..core.models import (
    ACTIVE_RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    NodeRun,
    NodeRunStatus,
    RunStatus,
    WorkflowRun,
    now,
)
from ..errors import ErrorCategory, RunNotFoundError
from .database import Database, dumps, loads

logger = logging.getLogger(__name__)

_TERMINAL_SQL = ", ".join(f"'{s.value}'" for s in sorted(TERMINAL_RUN_STATUSES, key=lambda s: s.value))
_ACTIVE_SQL = ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_RUN_STATUSES, key=lambda s: s.value))


def _row_to_run(row: sqlite3.Row) -> WorkflowRun:
    return WorkflowRun(
        id=row["id"],
        workflow_id=row["workflow_id"],
        workflow_version=row["workflow_version"],
        status=RunStatus(row["status"]),
        trigger_event_id=row["trigger_event_id"],
        context=loads(row["context_json"], {}),
        error=row["error"],
        error_category=ErrorCategory(row["error_category"]) if row["error_category"] else None,
        cancel_requested=bool(row["cancel_requested"]),
        created_at=row["created_at"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
    )


def _row_to_node_run(row: sqlite3.Row) -> NodeRun:
    return NodeRun(
        id=row["id"],
        run_id=row["run_id"],
        node_id=row["node_id"],
        attempt=row["attempt"],
        status=NodeRunStatus(row["status"]),
        input=loads(row["input_json"]),
        output=loads(row["output_json"]),
        error=row["error"],
        error_category=ErrorCategory(row["error_category"]) if row["error_category"] else None,
        started_at=row["started_at"],
        finished_at=row["finished_at"],
    )


class RunStore:
    """Persistence for WorkflowRun and NodeRun rows.

    Every run mutation is guarded by ``status NOT IN (terminal)`` so a run
    that reached a terminal state can never be changed again.
    """

    def __init__(self, db: Database):
        self.db = db

    # Runs

    def insert(self, run: WorkflowRun) -> None:
        self.db.execute(
            """
            INSERT INTO runs (id, workflow_id, workflow_version, status, trigger_event_id,
                              context_json, error, error_category, cancel_requested,
                              created_at, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.id,
                run.workflow_id,
                run.workflow_version,
                run.status.value,
                run.trigger_event_id,
                dumps(run.context),
                run.error,
                run.error_category.value if run.error_category else None,
                int(run.cancel_requested),
                run.created_at,
                run.started_at,
                run.finished_at,
            ),
        )

    def get(self, run_id: str) -> WorkflowRun:
        row = self.db.fetchone("SELECT * FROM runs WHERE id = ?", (run_id,))
        if row is None:
            raise RunNotFoundError(f"Run '{run_id}' not found")
        return _row_to_run(row)

    def find(self, run_id: str) -> Optional[WorkflowRun]:
        row = self.db.fetchone("SELECT * FROM runs WHERE id = ?", (run_id,))
        return _row_to_run(row) if row is not None else None

    def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> List[WorkflowRun]:
        clauses, params = [], []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.fetchall(
            f"SELECT * FROM runs {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
            tuple(params) + (limit,),
        )
        return [_row_to_run(r) for r in rows]

    def count_active(self, workflow_id: str) -> int:
        row = self.db.fetchone(
            f"SELECT COUNT(*) FROM runs WHERE workflow_id = ? AND status IN ({_ACTIVE_SQL})",
            (workflow_id,),
        )
        return int(row[0])

    def active_run_ids(self, workflow_id: str) -> List[str]:
        rows = self.db.fetchall(
            f"SELECT id FROM runs WHERE workflow_id = ? AND status IN ({_ACTIVE_SQL})",
            (workflow_id,),
        )
        return [r["id"] for r in rows]

    def mark_running(self, run_id: str) -> bool:
        """pending -> running (also accepted for a run being resumed)."""
        cursor = self.db.execute(
            f"""
            UPDATE runs SET status = ?, started_at = COALESCE(started_at, ?)
            WHERE id = ? AND status NOT IN ({_TERMINAL_SQL})
            """,
            (RunStatus.RUNNING.value, now(), run_id),
        )
        return cursor.rowcount > 0

    def mark_pending(self, run_id: str) -> bool:
        """Put a non-terminal run back to pending (re-enqueue for resume)."""
        cursor = self.db.execute(
            f"UPDATE runs SET status = ? WHERE id = ? AND status NOT IN ({_TERMINAL_SQL})",
            (RunStatus.PENDING.value, run_id),
        )
        return cursor.rowcount > 0

    def update_context(self, run_id: str, context: Dict[str, Any]) -> bool:
        cursor = self.db.execute(
            f"UPDATE runs SET context_json = ? WHERE id = ? AND status NOT IN ({_TERMINAL_SQL})",
            (dumps(context), run_id),
        )
        return cursor.rowcount > 0

    def finish(
        self,
        run_id: str,
        status: RunStatus,
        error: Optional[str] = None,
        error_category: Optional[ErrorCategory] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move a run to a terminal status. Returns False if it was already terminal."""
        if status not in TERMINAL_RUN_STATUSES:
            raise ValueError(f"{status.value} is not a terminal run status")
        if context is not None:
            sql = f"""
                UPDATE runs SET status = ?, error = ?, error_category = ?, finished_at = ?,
                                context_json = ?
                WHERE id = ? AND status NOT IN ({_TERMINAL_SQL})
            """
            params = (
                status.value,
                error,
                error_category.value if error_category else None,
                now(),
                dumps(context),
                run_id,
            )
        else:
            sql = f"""
                UPDATE runs SET status = ?, error = ?, error_category = ?, finished_at = ?
                WHERE id = ? AND status NOT IN ({_TERMINAL_SQL})
            """
            params = (
                status.value,
                error,
                error_category.value if error_category else None,
                now(),
                run_id,
            )
        cursor = self.db.execute(sql, params)
        return cursor.rowcount > 0

    def request_cancel(self, run_id: str) -> bool:
        cursor = self.db.execute(
            f"UPDATE runs SET cancel_requested = 1 WHERE id = ? AND status NOT IN ({_TERMINAL_SQL})",
            (run_id,),
        )
        return cursor.rowcount > 0

    def is_cancel_requested(self, run_id: str) -> bool:
        row = self.db.fetchone("SELECT cancel_requested FROM runs WHERE id = ?", (run_id,))
        return bool(row and row["cancel_requested"])

    # Node runs

    def start_node_run(self, node_run: NodeRun) -> NodeRun:
        """Insert an attempt record in ``running`` state and return it with its id."""
        cursor = self.db.execute(
            """
            INSERT INTO node_runs (run_id, node_id, attempt, status, input_json, output_json,
                                   error, error_category, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                node_run.run_id,
                node_run.node_id,
                node_run.attempt,
                node_run.status.value,
                dumps(node_run.input) if node_run.input is not None else None,
                dumps(node_run.output) if node_run.output is not None else None,
                node_run.error,
                node_run.error_category.value if node_run.error_category else None,
                node_run.started_at,
                node_run.finished_at,
            ),
        )
        return node_run.model_copy(update={"id": cursor.lastrowid})

    def finish_node_run(
        self,
        node_run_id: int,
        status: NodeRunStatus,
        output: Any = None,
        error: Optional[str] = None,
        error_category: Optional[ErrorCategory] = None,
        input: Any = None,
    ) -> None:
        self.db.execute(
            """
            UPDATE node_runs
            SET status = ?, output_json = ?, error = ?, error_category = ?, finished_at = ?,
                input_json = COALESCE(?, input_json)
            WHERE id = ? AND status = 'running'
            """,
            (
                status.value,
                dumps(output) if output is not None else None,
                error,
                error_category.value if error_category else None,
                now(),
                dumps(input) if input is not None else None,
                node_run_id,
            ),
        )

    def record_node_outcome(self, node_run: NodeRun) -> NodeRun:
        """Insert an already-finished record (skipped/filtered nodes)."""
        if node_run.finished_at is None:
            node_run = node_run.model_copy(update={"finished_at": node_run.started_at})
        return self.start_node_run(node_run)

    def list_node_runs(self, run_id: str) -> List[NodeRun]:
        rows = self.db.fetchall(
            "SELECT * FROM node_runs WHERE run_id = ? ORDER BY id",
            (run_id,),
        )
        return [_row_to_node_run(r) for r in rows]

    def latest_node_runs(self, run_id: str) -> Dict[str, NodeRun]:
        """Most recent attempt per node."""
        latest: Dict[str, NodeRun] = {}
        for node_run in self.list_node_runs(run_id):
            latest[node_run.node_id] = node_run
        return latest

    def attempt_counts(self, run_id: str) -> Dict[str, int]:
        rows = self.db.fetchall(
            "SELECT node_id, MAX(attempt) AS attempts FROM node_runs WHERE run_id = ? GROUP BY node_id",
            (run_id,),
        )
        return {r["node_id"]: int(r["attempts"]) for r in rows}

    def abandon_running_node_runs(self, run_id: str, reason: str) -> int:
        """Close out attempts left ``running`` by a crashed worker."""
        cursor = self.db.execute(
            """
            UPDATE node_runs SET status = ?, error = ?, error_category = ?, finished_at = ?
            WHERE run_id = ? AND status = 'running'
            """,
            (
                NodeRunStatus.FAILED.value,
                reason,
                ErrorCategory.TRANSIENT.value,
                now(),
                run_id,
            ),
        )
        return cursor.rowcount

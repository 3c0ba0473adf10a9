"""Durable priority job queue on the ``jobs`` table.

The claim transaction is the only thing that makes delivery exactly-once
within the process: the pending job is selected and stamped inside one
``BEGIN IMMEDIATE`` transaction, so two workers can never both move the
same row to ``processing``.
"""

import logging
import sqlite3
import time
import uuid
from typing import Callable, Dict, List, Optional

from ..core.models import DeadJobResolution, Job, JobAttemptError, JobStatus
from ..errors import ErrorCategory, JobNotFoundError
from ..storage.database import Database, dumps, loads

logger = logging.getLogger(__name__)


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        run_id=row["run_id"],
        priority=row["priority"],
        status=JobStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        next_retry_at=row["next_retry_at"],
        locked_by=row["locked_by"],
        locked_at=row["locked_at"],
        last_error=row["last_error"],
        error_history=[JobAttemptError(**e) for e in loads(row["error_history_json"], [])],
        resolution=DeadJobResolution(row["resolution"]) if row["resolution"] else None,
        resolved_at=row["resolved_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class JobQueue:
    """
    Transactional job queue backed by the embedded store.

    - claim order: priority desc, created_at asc, insertion order
    - jobs whose ``next_retry_at`` lies in the future are invisible to claim
    - stale locks (no heartbeat within the timeout) are swept back to pending
    - jobs out of attempts become ``dead`` and wait for manual retry/discard
    """

    def __init__(self, db: Database, clock: Callable[[], float] = time.time):
        self.db = db
        self._clock = clock

    def enqueue(
        self,
        run_id: str,
        priority: int = 0,
        max_attempts: int = 3,
        delay: float = 0.0,
    ) -> Job:
        ts = self._clock()
        job = Job(
            id=uuid.uuid4().hex,
            run_id=run_id,
            priority=priority,
            max_attempts=max_attempts,
            next_retry_at=ts + delay if delay > 0 else None,
            created_at=ts,
            updated_at=ts,
        )
        self.db.execute(
            """
            INSERT INTO jobs (id, run_id, priority, status, attempts, max_attempts, next_retry_at,
                              error_history_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, 0, ?, ?, '[]', ?, ?)
            """,
            (
                job.id,
                job.run_id,
                job.priority,
                job.status.value,
                job.max_attempts,
                job.next_retry_at,
                job.created_at,
                job.updated_at,
            ),
        )
        logger.debug(f"Enqueued job {job.id} for run {run_id} (priority {priority})")
        return job

    def claim(self, worker_id: str) -> Optional[Job]:
        """Atomically take the next eligible pending job, or None if there is none."""
        with self.db.transaction() as conn:
            ts = self._clock()
            row = conn.execute(
                """
                SELECT id FROM jobs
                WHERE status = 'pending' AND (next_retry_at IS NULL OR next_retry_at <= ?)
                ORDER BY priority DESC, created_at ASC, rowid ASC
                LIMIT 1
                """,
                (ts,),
            ).fetchone()
            if row is None:
                return None
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'processing', locked_by = ?, locked_at = ?,
                    attempts = attempts + 1, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (worker_id, ts, ts, row["id"]),
            )
            if cursor.rowcount != 1:
                return None
            job = _row_to_job(conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],)).fetchone())
        logger.debug(f"Worker {worker_id} claimed job {job.id} (attempt {job.attempts})")
        return job

    def get(self, job_id: str) -> Job:
        row = self.db.fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
        if row is None:
            raise JobNotFoundError(f"Job '{job_id}' not found")
        return _row_to_job(row)

    def latest_for_run(self, run_id: str) -> Optional[Job]:
        row = self.db.fetchone(
            "SELECT * FROM jobs WHERE run_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (run_id,),
        )
        return _row_to_job(row) if row is not None else None

    def heartbeat(self, job_id: str, worker_id: str) -> bool:
        """Refresh the lock timestamp. False means the lock was lost."""
        ts = self._clock()
        cursor = self.db.execute(
            """
            UPDATE jobs SET locked_at = ?, updated_at = ?
            WHERE id = ? AND status = 'processing' AND locked_by = ?
            """,
            (ts, ts, job_id, worker_id),
        )
        return cursor.rowcount > 0

    def complete(self, job_id: str, worker_id: str) -> bool:
        return self._finish(job_id, worker_id, JobStatus.COMPLETED)

    def mark_failed(
        self,
        job_id: str,
        worker_id: str,
        error: str,
        category: Optional[ErrorCategory] = None,
    ) -> bool:
        """Terminal, non-retryable failure (permanent error or timed-out run)."""
        return self._finish(job_id, worker_id, JobStatus.FAILED, error, category)

    def mark_dead(
        self,
        job_id: str,
        worker_id: str,
        error: str,
        category: Optional[ErrorCategory] = None,
    ) -> bool:
        """Move to the dead-letter set, keeping the error history."""
        moved = self._finish(job_id, worker_id, JobStatus.DEAD, error, category)
        if moved:
            logger.warning(f"Job {job_id} moved to dead letters: {error}")
        return moved

    def retry(
        self,
        job_id: str,
        worker_id: str,
        delay: float,
        error: str,
        category: Optional[ErrorCategory] = None,
    ) -> JobStatus:
        """Put the job back to pending after ``delay`` seconds, or dead if out of attempts."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id = ? AND status = 'processing' AND locked_by = ?",
                (job_id, worker_id),
            ).fetchone()
            if row is None:
                logger.warning(f"Job {job_id} not held by {worker_id}; retry ignored")
                return JobStatus(self.get(job_id).status)
            job = _row_to_job(row)
            if job.exhausted:
                self._finish(job_id, worker_id, JobStatus.DEAD, error, category)
                logger.warning(f"Job {job_id} exhausted {job.max_attempts} attempts, now dead")
                return JobStatus.DEAD

            ts = self._clock()
            history = self._append_history(job, error, category, worker_id)
            conn.execute(
                """
                UPDATE jobs
                SET status = 'pending', locked_by = NULL, locked_at = NULL, next_retry_at = ?,
                    last_error = ?, error_history_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (ts + delay, error, history, ts, job_id),
            )
        logger.info(f"Job {job_id} re-queued, retry in {delay:.1f}s")
        return JobStatus.PENDING

    def _append_history(
        self,
        job: Job,
        error: Optional[str],
        category: Optional[ErrorCategory],
        worker_id: Optional[str],
    ) -> str:
        history = [e.model_dump(mode="json") for e in job.error_history]
        if error is not None:
            history.append(
                JobAttemptError(
                    attempt=job.attempts,
                    error=error,
                    category=category,
                    worker_id=worker_id,
                    at=self._clock(),
                ).model_dump(mode="json")
            )
        return dumps(history)

    def _finish(
        self,
        job_id: str,
        worker_id: str,
        status: JobStatus,
        error: Optional[str] = None,
        category: Optional[ErrorCategory] = None,
    ) -> bool:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id = ? AND status = 'processing' AND locked_by = ?",
                (job_id, worker_id),
            ).fetchone()
            if row is None:
                logger.warning(f"Job {job_id} not held by {worker_id}; cannot mark {status.value}")
                return False
            job = _row_to_job(row)
            conn.execute(
                """
                UPDATE jobs
                SET status = ?, locked_by = NULL, locked_at = NULL, last_error = COALESCE(?, last_error),
                    error_history_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    error,
                    self._append_history(job, error, category, worker_id),
                    self._clock(),
                    job_id,
                ),
            )
        return True

    def reset_stale_locks(self, timeout: float) -> int:
        """Release jobs whose lock is older than ``timeout`` seconds.

        Jobs that still have attempts left go back to pending; the rest are
        moved to dead. Returns the number of jobs released.
        """
        released = 0
        with self.db.transaction() as conn:
            ts = self._clock()
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status = 'processing' AND locked_at < ?",
                (ts - timeout,),
            ).fetchall()
            for row in rows:
                job = _row_to_job(row)
                error = f"Lock held by {job.locked_by} went stale"
                history = self._append_history(job, error, ErrorCategory.TRANSIENT, job.locked_by)
                status = JobStatus.DEAD if job.exhausted else JobStatus.PENDING
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, locked_by = NULL, locked_at = NULL, next_retry_at = NULL,
                        last_error = ?, error_history_json = ?, updated_at = ?
                    WHERE id = ? AND status = 'processing'
                    """,
                    (status.value, error, history, ts, job.id),
                )
                released += 1
                logger.warning(
                    f"Reclaimed stale job {job.id} from {job.locked_by} -> {status.value}"
                )
        return released

    def remove_pending_for_run(self, run_id: str) -> int:
        """Delete queued-but-unstarted jobs of a run."""
        cursor = self.db.execute(
            "DELETE FROM jobs WHERE run_id = ? AND status = 'pending'", (run_id,)
        )
        return cursor.rowcount

    def list(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[Job]:
        if status is None:
            rows = self.db.fetchall(
                "SELECT * FROM jobs ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
            )
        else:
            rows = self.db.fetchall(
                "SELECT * FROM jobs WHERE status = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (status.value, limit),
            )
        return [_row_to_job(r) for r in rows]

    def list_dead(self, include_resolved: bool = False) -> List[Job]:
        """Dead letters awaiting a decision (oldest first)."""
        sql = "SELECT * FROM jobs WHERE status = 'dead'"
        if not include_resolved:
            sql += " AND resolution IS NULL"
        rows = self.db.fetchall(sql + " ORDER BY updated_at ASC, rowid ASC")
        return [_row_to_job(r) for r in rows]

    def resolve_dead(self, job_id: str, resolution: DeadJobResolution) -> bool:
        cursor = self.db.execute(
            """
            UPDATE jobs SET resolution = ?, resolved_at = ?, updated_at = ?
            WHERE id = ? AND status = 'dead' AND resolution IS NULL
            """,
            (resolution.value, self._clock(), self._clock(), job_id),
        )
        return cursor.rowcount > 0

    def counts(self) -> Dict[str, int]:
        rows = self.db.fetchall("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status")
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = int(row["n"])
        return counts

"""Elastic pool of worker threads that claim and execute jobs."""

import logging
import socket
import threading
import time
import uuid
from typing import Dict, Optional, TYPE_CHECKING

from ..utils.error_handling import ErrorContext

if TYPE_CHECKING:
    from ..core.config import WorkerConfig
    from ..core.engine import EngineCore

logger = logging.getLogger(__name__)


class _Worker:
    def __init__(self, worker_id: str):
        self.id = worker_id
        self.thread: Optional[threading.Thread] = None
        self.job_id: Optional[str] = None
        self.idle_since = time.monotonic()

    @property
    def busy(self) -> bool:
        return self.job_id is not None


class WorkerPool:
    """
    Runs ``min_workers`` to ``max_workers`` worker threads.

    Each worker loops claim -> ``EngineCore.execute_job`` -> claim again.
    When every live worker is busy after a claim, one more is started (up to
    ``max_workers``); workers above ``min_workers`` exit after ``idle_timeout``
    seconds without work.

    A maintenance thread heartbeats the jobs currently held by this pool and
    periodically runs ``EngineCore.maintenance`` (stale-lock sweep).
    """

    def __init__(
        self,
        engine: "EngineCore",
        settings: Optional["WorkerConfig"] = None,
        sweep_interval: Optional[float] = None,
    ):
        self.engine = engine
        self.settings = settings or engine.config.workers
        self.sweep_interval = sweep_interval or engine.config.queue.sweep_interval
        self._prefix = f"{socket.gethostname()}-{uuid.uuid4().hex[:6]}"
        self._workers: Dict[str, _Worker] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._maintenance_thread: Optional[threading.Thread] = None
        self._counter = 0
        self.jobs_processed = 0

    @property
    def running(self) -> bool:
        return self._maintenance_thread is not None and not self._stop.is_set()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._workers)

    @property
    def busy_count(self) -> int:
        with self._lock:
            return sum(1 for w in self._workers.values() if w.busy)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        with self._lock:
            for _ in range(self.settings.min_workers):
                self._spawn_locked()
        self._maintenance_thread = threading.Thread(
            target=self._maintenance_loop, name="autoflow-maintenance", daemon=True
        )
        self._maintenance_thread.start()
        logger.info(
            f"Worker pool started ({self.settings.min_workers}-{self.settings.max_workers} workers)"
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Stop claiming and wait up to ``timeout`` seconds for in-flight jobs."""
        self._stop.set()
        deadline = time.monotonic() + timeout
        with self._lock:
            threads = [w.thread for w in self._workers.values() if w.thread is not None]
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        if self._maintenance_thread is not None:
            self._maintenance_thread.join(timeout=max(0.1, deadline - time.monotonic()))
            self._maintenance_thread = None
        still_busy = self.busy_count
        if still_busy:
            logger.warning(f"{still_busy} worker(s) still busy at shutdown; their jobs will be reclaimed")
        logger.info(f"Worker pool stopped after {self.jobs_processed} job(s)")

    def _spawn_locked(self) -> _Worker:
        self._counter += 1
        worker = _Worker(f"{self._prefix}-w{self._counter}")
        worker.thread = threading.Thread(
            target=self._worker_loop, args=(worker,), name=f"autoflow-{worker.id}", daemon=True
        )
        self._workers[worker.id] = worker
        worker.thread.start()
        logger.debug(f"Worker {worker.id} started")
        return worker

    def _maybe_grow(self) -> None:
        with self._lock:
            if self._stop.is_set() or len(self._workers) >= self.settings.max_workers:
                return
            if all(w.busy for w in self._workers.values()):
                worker = self._spawn_locked()
                logger.info(f"All workers busy, added {worker.id} ({len(self._workers)} total)")

    def _should_retire(self, worker: _Worker) -> bool:
        with self._lock:
            if len(self._workers) <= self.settings.min_workers:
                return False
            if time.monotonic() - worker.idle_since < self.settings.idle_timeout:
                return False
            del self._workers[worker.id]
        logger.debug(f"Worker {worker.id} retired after {self.settings.idle_timeout:.0f}s idle")
        return True

    def _worker_loop(self, worker: _Worker) -> None:
        while not self._stop.is_set():
            job = None
            with ErrorContext("claim job", raise_on_error=False, logger_instance=logger) as claim:
                job = self.engine.queue.claim(worker.id)
            if claim.failed:
                # A store error is not idleness; keep the worker and back off
                self._stop.wait(self.settings.poll_interval)
                continue

            if job is None:
                if self._should_retire(worker):
                    return
                self._stop.wait(self.settings.poll_interval)
                continue

            with self._lock:
                worker.job_id = job.id
            self._maybe_grow()
            try:
                self.engine.execute_job(job, worker.id)
            finally:
                with self._lock:
                    worker.job_id = None
                    worker.idle_since = time.monotonic()
                    self.jobs_processed += 1

        with self._lock:
            self._workers.pop(worker.id, None)

    def _maintenance_loop(self) -> None:
        last_sweep = 0.0
        interval = min(self.settings.heartbeat_interval, self.sweep_interval)
        while not self._stop.wait(interval):
            with self._lock:
                held = [(w.job_id, w.id) for w in self._workers.values() if w.job_id is not None]
            for job_id, worker_id in held:
                with ErrorContext(f"heartbeat job {job_id}", raise_on_error=False, logger_instance=logger):
                    self.engine.heartbeat(job_id, worker_id)

            if time.monotonic() - last_sweep >= self.sweep_interval:
                last_sweep = time.monotonic()
                with ErrorContext("maintenance sweep", raise_on_error=False, logger_instance=logger):
                    released = self.engine.maintenance()
                    if released:
                        logger.info(f"Maintenance released {released} stale job(s)")

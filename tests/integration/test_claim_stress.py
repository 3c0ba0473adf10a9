"""Concurrent claim stress test: N workers against M jobs, each job claimed exactly once."""

import threading
from collections import Counter

import pytest

from autoflow.actions.registry import ActionDefinition
from autoflow.core.models import JobStatus, RunStatus, WorkflowRun
from autoflow.queue.job_queue import JobQueue
from autoflow.storage.run_store import RunStore
from autoflow.storage.workflow_store import WorkflowStore
from tests.workflow_fixtures import action, drain, workflow

WORKERS = 8
JOBS = 500


@pytest.fixture
def queue(db):
    WorkflowStore(db).save_version("wf", "wf", {"id": "wf"}, 1)
    return JobQueue(db)


def test_every_job_claimed_exactly_once(queue):
    runs = RunStore(queue.db)
    for i in range(JOBS):
        runs.insert(WorkflowRun(id=f"run-{i}", workflow_id="wf", workflow_version=1))
        queue.enqueue(f"run-{i}", priority=i % 3)

    claims = Counter()
    lock = threading.Lock()
    start = threading.Barrier(WORKERS)
    errors = []

    def worker(worker_id):
        start.wait()
        try:
            while True:
                job = queue.claim(worker_id)
                if job is None:
                    return
                with lock:
                    claims[job.id] += 1
                assert queue.complete(job.id, worker_id)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(f"worker-{n}",)) for n in range(WORKERS)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=120)

    assert errors == []
    assert len(claims) == JOBS
    assert set(claims.values()) == {1}
    assert queue.counts()[JobStatus.COMPLETED.value] == JOBS
    assert queue.claim("late-worker") is None


def test_concurrent_workers_execute_each_run_once(engine):
    calls = Counter()
    lock = threading.Lock()

    def count(params, ctx):
        with lock:
            calls[ctx.run_id] += 1
        return {"seen": True}

    engine.actions.register(ActionDefinition("test.count", count))
    engine.register_workflow(workflow(nodes=[action("only", "test.count")]))
    run_ids = [engine.trigger_workflow("wf", {"n": i}) for i in range(120)]

    threads = [threading.Thread(target=drain, args=(engine, f"worker-{n}", JOBS)) for n in range(WORKERS)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=120)

    assert sorted(calls) == sorted(run_ids)
    assert set(calls.values()) == {1}
    assert all(engine.runs.get(r).status == RunStatus.COMPLETED for r in run_ids)

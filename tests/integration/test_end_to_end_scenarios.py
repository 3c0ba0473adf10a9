"""End-to-end scenarios through the engine: triggers, queue, executor and maintenance.

Each scenario drives a real EngineCore over a SQLite file, the same way a
worker process would, and checks the persisted run, attempt and job records.
"""

import pytest

from autoflow.core.models import JobStatus, NodeRunStatus, RunStatus, TriggerState
from autoflow.errors import ErrorCategory, RunStateError
from autoflow.safeguards.circuit_breaker import CircuitState
from tests.workflow_fixtures import RecordingAction, action, compare, condition, drain, edge, linear, workflow


class TestEntryConditions:
    """A payload that fails the entry condition never becomes a run."""

    def test_low_priority_payload_creates_no_run(self, engine):
        engine.register_workflow(linear(entryConditions=[compare("payload.priority", "high")]))

        assert engine.trigger_workflow("wf", {"priority": "low"}) is None
        assert engine.triggers.fire("wf", {"priority": "low"}) is None
        assert engine.list_runs("wf") == []
        assert engine.queue.counts().get("pending", 0) == 0

    def test_matching_payload_runs(self, engine):
        engine.register_workflow(linear(entryConditions=[compare("payload.priority", "high")]))

        run_id = engine.triggers.fire("wf", {"priority": "high"})
        drain(engine)

        assert engine.get_run_status(run_id).run.status == RunStatus.COMPLETED


class TestFalseGuardWithSkipPolicy:
    def test_final_node_skipped_and_run_completes(self, engine):
        engine.register_workflow(workflow(
            nodes=[
                action("fetch", config={"values": {"priority": "{{ payload.priority }}"}}),
                condition("is_urgent", compare("nodes.fetch.output.priority", "high")),
                action("page_oncall"),
            ],
            edges=[edge("fetch", "is_urgent"), edge("is_urgent", "page_oncall")],
            settings={"errorHandling": "skip"},
        ))
        run_id = engine.trigger_workflow("wf", {"priority": "low"})

        drain(engine)

        report = engine.get_run_status(run_id)
        statuses = {n.node_id: n.status for n in report.node_runs}
        assert statuses == {
            "fetch": NodeRunStatus.COMPLETED,
            "is_urgent": NodeRunStatus.COMPLETED,
            "page_oncall": NodeRunStatus.SKIPPED,
        }
        assert report.run.context["nodes"]["is_urgent"]["output"] == {"result": False}
        assert report.run.status == RunStatus.COMPLETED
        assert report.job.status == JobStatus.COMPLETED


class TestRetriesExhausted:
    def test_three_attempts_then_dead_letter(self, engine):
        always_failing = RecordingAction(failures=1000, category=ErrorCategory.TRANSIENT)
        engine.actions.register(always_failing.definition())
        engine.register_workflow(workflow(nodes=[action(
            "call_api",
            "test.record",
            retry={"maxAttempts": 3, "strategy": "fixed", "baseDelayMs": 100},
        )]))
        run_id = engine.trigger_workflow("wf")

        drain(engine)

        report = engine.get_run_status(run_id)
        attempts = [n for n in report.node_runs if n.node_id == "call_api"]
        assert [n.attempt for n in attempts] == [1, 2, 3]
        assert all(n.status == NodeRunStatus.FAILED for n in attempts)
        assert [n.error for n in attempts] == [f"planned failure {i}" for i in (1, 2, 3)]
        assert attempts[1].started_at - attempts[0].finished_at >= 0.09
        assert len(always_failing.calls) == 3

        assert report.run.status == RunStatus.FAILED
        assert report.job.status == JobStatus.DEAD
        assert report.job.error_history[-1].category == ErrorCategory.TRANSIENT
        assert [j.id for j in engine.list_dead_jobs()] == [report.job.id]


class TestStaleLockReclaimed:
    def test_crashed_worker_job_finished_by_another_worker(self, engine):
        engine.register_workflow(linear())
        run_id = engine.trigger_workflow("wf")
        lost = engine.queue.claim("worker-crashed")
        assert lost.locked_by == "worker-crashed"

        # Nothing is stale yet
        assert engine.maintenance() == 0
        assert engine.queue.claim("worker-2") is None

        engine.config.queue.stale_lock_timeout = -1.0
        assert engine.maintenance() == 1

        reclaimed = engine.queue.claim("worker-2")
        assert reclaimed.id == lost.id
        assert reclaimed.locked_by == "worker-2"
        engine.execute_job(reclaimed, "worker-2")

        report = engine.get_run_status(run_id)
        assert report.run.status == RunStatus.COMPLETED
        assert report.job.status == JobStatus.COMPLETED
        assert report.job.attempts == 2
        assert not engine.queue.complete(lost.id, "worker-crashed")


class TestDeduplication:
    def test_identical_fires_create_one_run(self, engine):
        engine.register_workflow(linear())

        run_ids = [engine.triggers.fire("wf", {"order": 17}) for _ in range(5)]

        assert run_ids[0] is not None
        assert run_ids[1:] == [None] * 4
        assert len(engine.list_runs("wf")) == 1
        assert engine.triggers.get_status("wf").dropped_count == 4

    def test_trigger_stays_active_at_concurrency_cap(self, engine):
        engine.register_workflow(linear(settings={"maxConcurrentRuns": 1}))

        assert engine.triggers.fire("wf", {"n": 0}) is not None
        assert [engine.triggers.fire("wf", {"n": n}) for n in range(1, 6)] == [None] * 5

        status = engine.triggers.get_status("wf")
        assert (status.state, status.consecutive_failures, status.dropped_count) == (TriggerState.ACTIVE, 0, 5)
        drain(engine)
        assert engine.triggers.fire("wf", {"n": 6}) is not None


class TestShellFailureIsolation:
    """Failing commands in one workflow leave shell nodes elsewhere runnable."""

    def test_unrelated_shell_node_still_runs(self, engine):
        engine.register_workflow(workflow("grepper", nodes=[
            action("search", "shell.exec", config={"command": "exit 1"}, retry={"maxAttempts": 1}),
        ]))
        engine.register_workflow(workflow("other", nodes=[
            action("greet", "shell.exec", config={"command": "echo hi"}),
        ]))
        for n in range(5):
            engine.trigger_workflow("grepper", {"n": n})
        drain(engine)

        run_id = engine.trigger_workflow("other")
        drain(engine)

        report = engine.get_run_status(run_id)
        assert report.run.status == RunStatus.COMPLETED
        assert report.run.context["nodes"]["greet"]["output"]["stdout"].strip() == "hi"
        assert engine.pipeline.breakers.get("shell.exec:grepper/search").state == CircuitState.OPEN


def test_completed_run_cannot_be_rerun(engine):
    engine.register_workflow(linear())
    run_id = engine.trigger_workflow("wf")
    drain(engine)

    with pytest.raises(RunStateError):
        engine.retry_run(run_id)
    with pytest.raises(RunStateError):
        engine.cancel_run(run_id)

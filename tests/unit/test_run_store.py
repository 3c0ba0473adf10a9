"""Tests for run and node attempt persistence."""

import pytest

from autoflow.core.models import NodeRun, NodeRunStatus, RunStatus, WorkflowRun
from autoflow.errors import ErrorCategory, RunNotFoundError
from autoflow.storage.run_store import RunStore
from autoflow.storage.workflow_store import WorkflowStore


@pytest.fixture
def runs(db):
    WorkflowStore(db).save_version("wf", "wf", {"id": "wf"}, 1)
    return RunStore(db)


def _make_run(runs, run_id="r1", **kwargs):
    run = WorkflowRun(id=run_id, workflow_id="wf", workflow_version=1, context={"payload": {"n": 1}}, **kwargs)
    runs.insert(run)
    return run


class TestRunLifecycle:
    def test_insert_and_get(self, runs):
        _make_run(runs)

        run = runs.get("r1")

        assert run.status == RunStatus.PENDING
        assert run.payload == {"n": 1}
        assert runs.find("missing") is None
        with pytest.raises(RunNotFoundError):
            runs.get("missing")

    def test_mark_running_keeps_first_start(self, runs):
        _make_run(runs)
        runs.mark_running("r1")
        started = runs.get("r1").started_at

        runs.mark_pending("r1")
        runs.mark_running("r1")

        assert runs.get("r1").started_at == started
        assert runs.get("r1").status == RunStatus.RUNNING

    def test_finish(self, runs):
        _make_run(runs)

        assert runs.finish("r1", RunStatus.FAILED, "boom", ErrorCategory.TRANSIENT, context={"x": 1})

        run = runs.get("r1")
        assert run.status == RunStatus.FAILED
        assert run.error == "boom"
        assert run.error_category == ErrorCategory.TRANSIENT
        assert run.context == {"x": 1}
        assert run.finished_at is not None

    def test_terminal_run_is_immutable(self, runs):
        _make_run(runs)
        runs.finish("r1", RunStatus.COMPLETED)

        assert not runs.finish("r1", RunStatus.FAILED, "late")
        assert not runs.mark_running("r1")
        assert not runs.mark_pending("r1")
        assert not runs.update_context("r1", {"changed": True})
        assert not runs.request_cancel("r1")

        run = runs.get("r1")
        assert run.status == RunStatus.COMPLETED
        assert run.error is None
        assert run.context == {"payload": {"n": 1}}

    def test_finish_requires_terminal_status(self, runs):
        _make_run(runs)
        with pytest.raises(ValueError):
            runs.finish("r1", RunStatus.RUNNING)

    def test_cancel_flag(self, runs):
        _make_run(runs)
        assert not runs.is_cancel_requested("r1")
        runs.request_cancel("r1")
        assert runs.is_cancel_requested("r1")

    def test_active_counts_and_listing(self, runs):
        _make_run(runs, "r1")
        _make_run(runs, "r2")
        _make_run(runs, "r3")
        runs.mark_running("r2")
        runs.finish("r3", RunStatus.COMPLETED)

        assert runs.count_active("wf") == 2
        assert sorted(runs.active_run_ids("wf")) == ["r1", "r2"]
        assert [r.id for r in runs.list(status=RunStatus.COMPLETED)] == ["r3"]
        assert [r.id for r in runs.list(workflow_id="wf", limit=2)] == ["r3", "r2"]


class TestNodeRuns:
    def test_attempts_are_append_only(self, runs):
        _make_run(runs)
        first = runs.start_node_run(NodeRun(run_id="r1", node_id="a", attempt=1, input={"x": 1}))
        runs.finish_node_run(first.id, NodeRunStatus.FAILED, error="nope", error_category=ErrorCategory.TRANSIENT)
        second = runs.start_node_run(NodeRun(run_id="r1", node_id="a", attempt=2))
        runs.finish_node_run(second.id, NodeRunStatus.COMPLETED, output={"ok": True})

        history = runs.list_node_runs("r1")

        assert [(n.attempt, n.status) for n in history] == [
            (1, NodeRunStatus.FAILED),
            (2, NodeRunStatus.COMPLETED),
        ]
        assert history[0].input == {"x": 1}
        assert history[0].error_category == ErrorCategory.TRANSIENT
        assert runs.latest_node_runs("r1")["a"].output == {"ok": True}
        assert runs.attempt_counts("r1") == {"a": 2}

    def test_finished_attempt_cannot_change(self, runs):
        _make_run(runs)
        node_run = runs.start_node_run(NodeRun(run_id="r1", node_id="a"))
        runs.finish_node_run(node_run.id, NodeRunStatus.COMPLETED, output=1)
        runs.finish_node_run(node_run.id, NodeRunStatus.FAILED, error="late")

        assert runs.list_node_runs("r1")[0].status == NodeRunStatus.COMPLETED

    def test_record_outcome(self, runs):
        _make_run(runs)
        recorded = runs.record_node_outcome(
            NodeRun(run_id="r1", node_id="b", status=NodeRunStatus.SKIPPED, started_at=5.0)
        )
        assert recorded.id is not None
        assert runs.list_node_runs("r1")[0].finished_at == 5.0
        assert runs.list_node_runs("r1")[0].duration_ms == 0

    def test_abandon_running(self, runs):
        _make_run(runs)
        runs.start_node_run(NodeRun(run_id="r1", node_id="a"))

        assert runs.abandon_running_node_runs("r1", "worker lost") == 1

        node_run = runs.list_node_runs("r1")[0]
        assert node_run.status == NodeRunStatus.FAILED
        assert node_run.error == "worker lost"

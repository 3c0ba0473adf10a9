"""Tests for DAG execution: ordering, branching, joins, retries and error policies."""

import threading

import pytest

from autoflow.actions.registry import ActionDefinition
from autoflow.core.events import NODE_COMPLETED, NODE_STARTED, RUN_COMPLETED, RUN_STARTED, WILDCARD
from autoflow.core.models import JobStatus, NodeRunStatus, RunStatus
from autoflow.errors import ErrorCategory
from tests.workflow_fixtures import (
    RecordingAction,
    action,
    compare,
    condition,
    drain,
    edge,
    junction,
    linear,
    workflow,
)

FAST_RETRY = {"maxAttempts": 3, "strategy": "fixed", "baseDelayMs": 0}


def _run(engine, definition, payload=None):
    engine.register_workflow(definition)
    run_id = engine.trigger_workflow(definition["id"], payload or {})
    drain(engine)
    return engine.get_run_status(run_id)


def _statuses(report):
    return {n.node_id: n.status for n in report.node_runs}


class TestOrdering:
    def test_linear_workflow_completes(self, engine):
        report = _run(engine, linear(length=3))

        assert report.run.status == RunStatus.COMPLETED
        assert [n.node_id for n in report.node_runs] == ["n1", "n2", "n3"]
        assert report.run.context["nodes"]["n3"] == {"status": "completed", "output": {"step": 3}}
        assert report.job.status == JobStatus.COMPLETED

    def test_diamond_runs_each_node_once_in_order(self, engine):
        calls = []

        def record(params, ctx):
            calls.append(ctx.node_id)
            return {"node": ctx.node_id}

        engine.actions.register(ActionDefinition("test.order", record))
        report = _run(engine, workflow(
            nodes=[action(n, "test.order") for n in ("top", "left", "right", "bottom")],
            edges=[edge("top", "left"), edge("top", "right"), edge("left", "bottom"), edge("right", "bottom")],
        ))

        assert report.run.status == RunStatus.COMPLETED
        assert calls == ["top", "left", "right", "bottom"]

    def test_outputs_flow_through_templates(self, engine):
        report = _run(engine, workflow(
            nodes=[
                action("a", config={"values": {"x": "{{ payload.base }}"}}),
                action("b", config={"values": {"y": "{{ nodes.a.output.x * 2 }}", "who": "{{ trigger.type }}"}}),
            ],
            edges=[edge("a", "b")],
        ), payload={"base": 21})

        assert report.run.context["nodes"]["b"]["output"] == {"y": 42, "who": "manual"}
        assert report.node_runs[1].input == {"values": {"y": 42, "who": "manual"}}

    def test_parallel_mode_runs_independent_nodes(self, engine):
        release = threading.Event()
        started = []
        lock = threading.Lock()

        def wait_for_peer(params, ctx):
            with lock:
                started.append(ctx.node_id)
                if len(started) == 2:
                    release.set()
            # Only returns once the sibling has started as well
            assert release.wait(5)
            return {"ok": True}

        engine.actions.register(ActionDefinition("test.pair", wait_for_peer))
        report = _run(engine, workflow(
            nodes=[action("a", "test.pair"), action("b", "test.pair"), action("c")],
            edges=[edge("a", "c"), edge("b", "c")],
            settings={"executionMode": "parallel", "maxParallelNodes": 2},
        ))

        assert report.run.status == RunStatus.COMPLETED
        assert sorted(started) == ["a", "b"]
        assert _statuses(report)["c"] == NodeRunStatus.COMPLETED


class TestBranching:
    def _branch_workflow(self, **condition_extra):
        return workflow(
            nodes=[
                condition("check", compare("payload.priority", "high"), **condition_extra),
                action("urgent"),
                action("normal"),
                action("after_urgent"),
            ],
            edges=[
                edge("check", "urgent", branch="true"),
                edge("check", "normal", branch="false"),
                edge("urgent", "after_urgent"),
            ],
        )

    def test_true_branch(self, engine):
        report = _run(engine, self._branch_workflow(), {"priority": "high"})

        statuses = _statuses(report)
        assert statuses["urgent"] == NodeRunStatus.COMPLETED
        assert statuses["normal"] == NodeRunStatus.SKIPPED
        assert report.run.context["nodes"]["check"]["output"] == {"result": True}
        assert report.run.status == RunStatus.COMPLETED

    def test_false_branch_skips_downstream(self, engine):
        report = _run(engine, self._branch_workflow(), {"priority": "low"})

        statuses = _statuses(report)
        assert statuses["normal"] == NodeRunStatus.COMPLETED
        assert statuses["urgent"] == NodeRunStatus.SKIPPED
        assert statuses["after_urgent"] == NodeRunStatus.SKIPPED

    def test_filter_condition_marks_filtered(self, engine):
        report = _run(engine, self._branch_workflow(filter=True), {"priority": "low"})

        statuses = _statuses(report)
        assert statuses["urgent"] == NodeRunStatus.FILTERED
        assert statuses["after_urgent"] == NodeRunStatus.FILTERED
        assert statuses["normal"] == NodeRunStatus.COMPLETED

    def test_edge_guard(self, engine):
        report = _run(engine, workflow(
            nodes=[action("a", config={"values": {"n": 1}}), action("b"), action("c")],
            edges=[
                edge("a", "b", guard=compare("nodes.a.output.n", 1)),
                edge("a", "c", guard=compare("nodes.a.output.n", 2)),
            ],
        ))

        statuses = _statuses(report)
        assert statuses["b"] == NodeRunStatus.COMPLETED
        assert statuses["c"] == NodeRunStatus.SKIPPED

    def test_failing_guard_fails_target(self, engine):
        engine.conditions.register("explode", lambda params, context: 1 / 0)
        report = _run(engine, workflow(
            nodes=[action("a"), action("b")],
            edges=[edge("a", "b", guard={"type": "custom", "evaluator": "explode"})],
        ))

        assert report.run.status == RunStatus.FAILED
        failed = [n for n in report.node_runs if n.node_id == "b"][0]
        assert failed.status == NodeRunStatus.FAILED
        assert failed.error.startswith("Edge guard failed")


class TestJunctions:
    def _join_workflow(self, join):
        return workflow(
            nodes=[
                action("start"),
                action("left"),
                action("right"),
                junction("join", join),
                action("end"),
            ],
            edges=[
                edge("start", "left"),
                edge("start", "right", guard=compare("payload.go_right", True)),
                edge("left", "join"),
                edge("right", "join"),
                edge("join", "end"),
            ],
        )

    def test_join_all_waits_for_every_branch(self, engine):
        report = _run(engine, self._join_workflow("all"), {"go_right": True})

        assert report.run.context["nodes"]["join"]["output"] == {"joined": ["left", "right"]}
        assert _statuses(report)["end"] == NodeRunStatus.COMPLETED

    def test_join_all_skips_when_a_branch_is_skipped(self, engine):
        report = _run(engine, self._join_workflow("all"), {"go_right": False})

        statuses = _statuses(report)
        assert statuses["join"] == NodeRunStatus.SKIPPED
        assert statuses["end"] == NodeRunStatus.SKIPPED
        assert report.run.status == RunStatus.COMPLETED

    def test_join_any_runs_with_one_branch(self, engine):
        report = _run(engine, self._join_workflow("any"), {"go_right": False})

        assert report.run.context["nodes"]["join"]["output"] == {"joined": ["left"]}
        assert _statuses(report)["end"] == NodeRunStatus.COMPLETED


class TestNodeRetries:
    def test_retries_until_success(self, engine):
        flaky = RecordingAction(failures=2)
        engine.actions.register(flaky.definition())

        report = _run(engine, workflow(nodes=[action("only", "test.record", retry=FAST_RETRY)]))

        assert report.run.status == RunStatus.COMPLETED
        assert [(n.attempt, n.status) for n in report.node_runs] == [
            (1, NodeRunStatus.FAILED),
            (2, NodeRunStatus.FAILED),
            (3, NodeRunStatus.COMPLETED),
        ]
        assert report.run.context["nodes"]["only"]["output"]["call"] == 3

    def test_permanent_failure_is_not_retried(self, engine):
        broken = RecordingAction(failures=5, category=ErrorCategory.PERMANENT)
        engine.actions.register(broken.definition())

        report = _run(engine, workflow(nodes=[action("only", "test.record", retry=FAST_RETRY)]))

        assert len(broken.calls) == 1
        assert report.run.status == RunStatus.FAILED
        assert report.run.error_category == ErrorCategory.PERMANENT
        assert report.job.status == JobStatus.FAILED

    def test_plugin_failure_reloads_action(self, engine):
        crashing = RecordingAction(failures=1, raises=RuntimeError("segfault-ish"))
        engine.actions.register(crashing.definition())

        report = _run(engine, workflow(nodes=[action("only", "test.record", retry=FAST_RETRY)]))

        assert report.run.status == RunStatus.COMPLETED
        assert crashing.reloads == 1
        assert report.node_runs[0].error_category == ErrorCategory.PLUGIN


class TestErrorHandling:
    def _failing_middle(self, policy, engine, **kwargs):
        bad = RecordingAction(**kwargs)
        engine.actions.register(bad.definition())
        definition = workflow(
            nodes=[
                action("first"),
                action("bad", "test.record"),
                action("last", config={"values": {"upstream": "{{ nodes.bad.status }}"}}),
            ],
            edges=[edge("first", "bad"), edge("bad", "last")],
            settings={"errorHandling": policy},
        )
        return bad, definition

    def test_stop(self, engine):
        _, definition = self._failing_middle("stop", engine, failures=9, category=ErrorCategory.PERMANENT)

        report = _run(engine, definition)

        assert report.run.status == RunStatus.FAILED
        assert report.run.error.startswith("Node 'bad' failed")
        assert "last" not in _statuses(report)

    def test_skip_continues_past_failed_node(self, engine):
        _, definition = self._failing_middle("skip", engine, failures=9, category=ErrorCategory.PERMANENT)

        report = _run(engine, definition)

        assert report.run.status == RunStatus.COMPLETED
        latest = {n.node_id: n for n in report.node_runs}
        assert latest["bad"].status == NodeRunStatus.SKIPPED
        assert latest["bad"].error is not None
        assert report.run.context["nodes"]["last"]["output"] == {"upstream": "skipped"}

    def test_retry_re_enqueues_the_run(self, engine):
        bad, definition = self._failing_middle("retry", engine, failures=1)

        report = _run(engine, definition)

        assert report.run.status == RunStatus.COMPLETED
        assert report.job.attempts == 2
        assert len(bad.calls) == 2
        first_runs = [n for n in report.node_runs if n.node_id == "first"]
        assert len(first_runs) == 1


class TestInterrupts:
    def test_run_timeout(self, engine):
        blocked = RecordingAction(block=threading.Event())
        engine.actions.register(blocked.definition())

        report = _run(engine, workflow(
            nodes=[action("slow", "test.record")],
            settings={"timeoutMs": 100},
        ))

        assert report.run.status == RunStatus.TIMED_OUT
        assert report.run.error_category == ErrorCategory.TIMEOUT
        assert report.job.status == JobStatus.FAILED


class TestEvents:
    def test_lifecycle_events(self, engine):
        seen = []
        engine.events.subscribe(WILDCARD, lambda event: seen.append((event.type, event.node_id)))

        _run(engine, linear(length=2))

        assert seen == [
            (RUN_STARTED, None),
            (NODE_STARTED, "n1"),
            (NODE_COMPLETED, "n1"),
            (NODE_STARTED, "n2"),
            (NODE_COMPLETED, "n2"),
            (RUN_COMPLETED, None),
        ]


@pytest.mark.parametrize("length", [1, 5, 20])
def test_every_node_executes_exactly_once(engine, length):
    report = _run(engine, linear(length=length))
    assert sorted(n.node_id for n in report.node_runs) == sorted(f"n{i}" for i in range(1, length + 1))

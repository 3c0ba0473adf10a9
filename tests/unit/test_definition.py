"""Tests for workflow definition parsing and save-time validation."""

import pytest

from autoflow.errors import WorkflowValidationError
from autoflow.workflow.definition import (
    ErrorHandling,
    NodeType,
    ensure_valid,
    parse_workflow,
    validate_workflow,
)
from tests.workflow_fixtures import action, compare, condition, edge, junction, linear, workflow


class TestParseWorkflow:
    def test_camel_and_snake_keys(self):
        definition = parse_workflow({
            "id": "wf",
            "nodes": [
                {"id": "a", "actionType": "data.set", "timeoutMs": 500},
                {"id": "b", "action_type": "data.set", "retry": {"maxAttempts": 3, "strategy": "fixed"}},
            ],
            "settings": {"errorHandling": "skip", "max_concurrent_runs": 2},
        })

        assert definition.nodes[0].action_type == "data.set"
        assert definition.nodes[0].timeout_ms == 500
        assert definition.nodes[1].retry.max_attempts == 3
        assert definition.settings.error_handling == ErrorHandling.SKIP
        assert definition.settings.max_concurrent_runs == 2

    def test_defaults(self):
        definition = parse_workflow({"id": "wf", "nodes": [{"id": "a", "actionType": "x"}]})

        node = definition.nodes[0]
        assert node.type == NodeType.ACTION
        assert node.retry.max_attempts == 1
        assert definition.trigger.type == "manual"
        assert definition.settings.priority == 0

    def test_schema_errors_are_collected(self):
        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_workflow({"nodes": [{"id": "a", "type": "teleport"}], "settings": {"maxConcurrentRuns": 0}})

        joined = "\n".join(exc_info.value.errors)
        assert "id" in joined
        assert "nodes.0.type" in joined
        assert "settings.maxConcurrentRuns" in joined

    def test_branch_normalized(self):
        definition = parse_workflow(workflow(
            nodes=[condition("c", compare("payload.x", 1)), action("a")],
            edges=[edge("c", "a", branch=True)],
        ))
        assert definition.edges[0].branch == "true"

    def test_invalid_branch(self):
        with pytest.raises(WorkflowValidationError):
            parse_workflow(workflow(
                nodes=[condition("c", compare("payload.x", 1)), action("a")],
                edges=[edge("c", "a", branch="maybe")],
            ))

    def test_round_trip_uses_camel_keys(self):
        definition = parse_workflow(linear(length=2))
        data = definition.to_dict()
        assert data["nodes"][0]["actionType"] == "data.set"
        assert parse_workflow(data) == definition


class TestValidateWorkflow:
    def test_valid_linear_workflow(self):
        assert validate_workflow(parse_workflow(linear()), action_types=["data.set"]) == []

    def test_empty_workflow(self):
        assert validate_workflow(parse_workflow({"id": "wf", "nodes": []})) == ["Workflow has no nodes"]

    def test_cycle_reported_with_path(self):
        errors = validate_workflow(parse_workflow(workflow(
            nodes=[action("a"), action("b"), action("c")],
            edges=[edge("a", "b"), edge("b", "c"), edge("c", "a")],
        )))
        assert errors == ["Workflow contains a cycle: a -> b -> c -> a"]

    def test_collects_all_problems(self):
        errors = validate_workflow(
            parse_workflow(workflow(
                nodes=[
                    action("a", "http.request"),
                    action("a", "data.set"),
                    {"id": "bare", "type": "action"},
                    condition("c", {"type": "compare", "left": 1, "operator": "about", "right": 1}),
                    {"id": "empty-cond", "type": "condition"},
                    junction("j"),
                    action("slow", timeoutMs=0),
                ],
                edges=[edge("a", "ghost"), edge("a", "bare", branch="true")],
                entryConditions=[{"type": "custom", "evaluator": "nope"}],
            )),
            action_types=["data.set"],
            condition_evaluators=[],
        )

        joined = "\n".join(errors)
        assert "node 'a': duplicate node id" in joined
        assert "unknown node 'ghost'" in joined
        assert "branch is only valid on edges leaving a condition node" in joined
        assert "node 'a': unknown action type 'http.request'" in joined
        assert "node 'bare': action node 'bare' has no action type" in joined
        assert "node 'c': condition: unknown comparison operator 'about'" in joined
        assert "node 'empty-cond': condition node has no condition" in joined
        assert "node 'j': junction has no inbound edges" in joined
        assert "node 'slow': timeout_ms must be positive" in joined
        assert "entry condition 0: condition: unknown condition evaluator 'nope'" in joined

    def test_guard_validated(self):
        errors = validate_workflow(parse_workflow(workflow(
            nodes=[action("a"), action("b")],
            edges=[edge("a", "b", guard={"type": "matches", "value": "x"})],
        )))
        assert errors == ["edge 0 (a -> b) guard: condition: matches requires a string 'pattern'"]

    def test_unknown_action_types_ignored_without_registry(self):
        assert validate_workflow(parse_workflow(workflow(nodes=[action("a", "anything")]))) == []


class TestEnsureValid:
    def test_raises_with_every_error(self):
        definition = parse_workflow(workflow(
            nodes=[action("a"), junction("j")],
            edges=[edge("a", "missing")],
        ))
        with pytest.raises(WorkflowValidationError) as exc_info:
            ensure_valid(definition)
        assert len(exc_info.value.errors) == 2

    def test_returns_definition(self):
        definition = parse_workflow(linear())
        assert ensure_valid(definition) is definition

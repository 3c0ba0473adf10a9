"""Workflow definitions, DAG execution, conditions and templates."""

from .conditions import UNDEFINED, ConditionEngine, ConditionEvaluator, validate_condition
from .dag import WorkflowGraph
from .definition import (
    NodeDefinition,
    EdgeDefinition,
    WorkflowDefinition,
    ensure_valid,
    parse_workflow,
    validate_workflow,
)
from .executor import DagExecutor, ExecutionResult
from .templates import TemplateCache, TemplateCompiler

__all__ = [
    "UNDEFINED",
    "ConditionEngine",
    "ConditionEvaluator",
    "validate_condition",
    "WorkflowGraph",
    "NodeDefinition",
    "EdgeDefinition",
    "WorkflowDefinition",
    "ensure_valid",
    "parse_workflow",
    "validate_workflow",
    "DagExecutor",
    "ExecutionResult",
    "TemplateCache",
    "TemplateCompiler",
]

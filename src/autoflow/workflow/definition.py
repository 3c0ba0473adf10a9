"""Workflow definition models and save-time validation."""

import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from ..errors import WorkflowValidationError
from ..safeguards.retry_handler import RetryPolicy
from .conditions import validate_condition
from .dag import WorkflowGraph

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class NodeType(str, Enum):
    ACTION = "action"
    CONDITION = "condition"
    JUNCTION = "junction"


class JoinMode(str, Enum):
    ALL = "all"
    ANY = "any"


class ErrorHandling(str, Enum):
    """What the run does once a node has exhausted its retries."""
    STOP = "stop"
    SKIP = "skip"
    RETRY = "retry"


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class _DefinitionModel(BaseModel):
    # Definitions arrive from YAML files and UIs in either key style
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NodeDefinition(_DefinitionModel):
    id: str
    type: NodeType = NodeType.ACTION
    label: Optional[str] = None
    action_type: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    condition: Optional[Dict[str, Any]] = None
    filter: bool = False
    join: JoinMode = JoinMode.ALL
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout_ms: Optional[int] = None
    # Circuit breaker key; defaults to whatever the action derives (e.g. hostname)
    target: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.label or self.id


class EdgeDefinition(_DefinitionModel):
    source: str
    target: str
    guard: Optional[Dict[str, Any]] = None
    branch: Optional[str] = None

    @field_validator("branch", mode="before")
    @classmethod
    def normalize_branch(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        if isinstance(v, bool):
            return "true" if v else "false"
        v = str(v).lower()
        if v not in ("true", "false"):
            raise ValueError(f"branch must be 'true' or 'false', got '{v}'")
        return v


class WorkflowSettings(_DefinitionModel):
    timeout_ms: Optional[int] = None
    error_handling: ErrorHandling = ErrorHandling.STOP
    max_concurrent_runs: Optional[int] = None
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    max_parallel_nodes: Optional[int] = None
    max_job_attempts: Optional[int] = None
    priority: int = 0

    @field_validator("max_concurrent_runs", "max_parallel_nodes", "max_job_attempts")
    @classmethod
    def validate_positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v


class TriggerDefinition(_DefinitionModel):
    type: str = "manual"
    config: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class WorkflowDefinition(_DefinitionModel):
    """Declarative workflow: a DAG of nodes plus trigger and run settings."""
    id: str
    name: str = ""
    description: str = ""
    nodes: List[NodeDefinition] = Field(default_factory=list)
    edges: List[EdgeDefinition] = Field(default_factory=list)
    entry_conditions: List[Dict[str, Any]] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    trigger: TriggerDefinition = Field(default_factory=TriggerDefinition)

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def parse_workflow(data: Dict[str, Any]) -> WorkflowDefinition:
    """Build a definition from raw data, turning schema errors into one WorkflowValidationError."""
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        errors = []
        for err in e.errors():
            location = ".".join(str(part) for part in err["loc"])
            errors.append(f"{location}: {err['msg']}")
        raise WorkflowValidationError(errors) from e


def validate_workflow(
    definition: WorkflowDefinition,
    action_types: Optional[Iterable[str]] = None,
    condition_evaluators: Optional[Iterable[str]] = None,
) -> List[str]:
    """
    Check a definition before it is stored.

    Returns every problem found (empty list means valid). When ``action_types``
    is given, action nodes must reference one of them; likewise
    ``condition_evaluators`` for custom conditions.
    """
    errors: List[str] = []
    known_actions = set(action_types) if action_types is not None else None
    known_evaluators = set(condition_evaluators) if condition_evaluators is not None else None

    if not definition.id.strip():
        errors.append("Workflow id must not be empty")

    if not definition.nodes:
        errors.append("Workflow has no nodes")
        return errors

    seen = set()
    for node in definition.nodes:
        if node.id in seen:
            errors.append(f"node '{node.id}': duplicate node id")
        seen.add(node.id)

    node_types = {node.id: node.type for node in definition.nodes}
    valid_edges = []
    for i, edge in enumerate(definition.edges):
        edge_ok = True
        for end in (edge.source, edge.target):
            if end not in node_types:
                errors.append(f"edge {i} ({edge.source} -> {edge.target}): unknown node '{end}'")
                edge_ok = False
        if edge.branch is not None and node_types.get(edge.source) != NodeType.CONDITION:
            errors.append(
                f"edge {i} ({edge.source} -> {edge.target}): branch is only valid on edges "
                f"leaving a condition node"
            )
        if edge.guard is not None:
            for msg in validate_condition(edge.guard, known_evaluators):
                errors.append(f"edge {i} ({edge.source} -> {edge.target}) guard: {msg}")
        if edge_ok:
            valid_edges.append(edge)

    inbound_counts: Dict[str, int] = {}
    for edge in valid_edges:
        inbound_counts[edge.target] = inbound_counts.get(edge.target, 0) + 1

    for node in definition.nodes:
        prefix = f"node '{node.id}'"
        if node.type == NodeType.ACTION:
            if not node.action_type:
                errors.append(f"{prefix}: action node '{node.display_name}' has no action type")
            elif known_actions is not None and node.action_type not in known_actions:
                errors.append(f"{prefix}: unknown action type '{node.action_type}'")
        elif node.type == NodeType.CONDITION:
            if node.condition is None:
                errors.append(f"{prefix}: condition node has no condition")
            else:
                for msg in validate_condition(node.condition, known_evaluators):
                    errors.append(f"{prefix}: {msg}")
        elif node.type == NodeType.JUNCTION:
            if inbound_counts.get(node.id, 0) == 0:
                errors.append(f"{prefix}: junction has no inbound edges")
        if node.timeout_ms is not None and node.timeout_ms <= 0:
            errors.append(f"{prefix}: timeout_ms must be positive")

    for i, expr in enumerate(definition.entry_conditions):
        for msg in validate_condition(expr, known_evaluators):
            errors.append(f"entry condition {i}: {msg}")

    if len(seen) == len(definition.nodes):
        graph = WorkflowGraph.build(
            [node.id for node in definition.nodes],
            [(edge.source, edge.target) for edge in valid_edges],
        )
        cycle = graph.find_cycle()
        if cycle:
            errors.append(f"Workflow contains a cycle: {' -> '.join(cycle)}")

    return errors


def ensure_valid(
    definition: WorkflowDefinition,
    action_types: Optional[Iterable[str]] = None,
    condition_evaluators: Optional[Iterable[str]] = None,
) -> WorkflowDefinition:
    """Raise WorkflowValidationError unless the definition is valid."""
    errors = validate_workflow(definition, action_types, condition_evaluators)
    if errors:
        logger.warning(f"Workflow '{definition.id}' rejected with {len(errors)} error(s)")
        raise WorkflowValidationError(errors)
    return definition

"""DAG executor: drives one run of a workflow version node by node."""

import heapq
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..actions.pipeline import ActionPipeline, AttemptRequest
from ..core.cancellation import CancellationToken, Deadline
from ..core.events import NODE_COMPLETED, NODE_STARTED, EngineEvent, EventBus
from ..core.models import NodeRun, NodeRunStatus, RunStatus, WorkflowRun, now
from ..errors import (
    EngineError,
    ErrorCategory,
    ExecutionCancelledError,
    RunTimeoutError,
)
from ..storage.run_store import RunStore
from ..utils.error_handling import log_and_ignore
from ..utils.rich_logging import ContextLogger
from .conditions import ConditionEngine
from .dag import WorkflowGraph
from .definition import (
    ErrorHandling,
    ExecutionMode,
    JoinMode,
    NodeDefinition,
    NodeType,
    WorkflowDefinition,
)
from .templates import TemplateCache

logger = logging.getLogger(__name__)

# Statuses that settle a node for good; a resumed run never re-executes these
_DECIDED_STATUSES = (NodeRunStatus.COMPLETED, NodeRunStatus.SKIPPED, NodeRunStatus.FILTERED)


@dataclass
class NodeOutcome:
    """Result of executing one node (after its own retries)."""
    status: NodeRunStatus
    output: Any = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    attempts: int = 0
    duration_ms: int = 0


@dataclass
class ExecutionResult:
    """What the executor hands back to the engine core."""
    status: RunStatus
    context: Dict[str, Any]
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    failed_node: Optional[str] = None
    # error_handling: retry asked for the whole run to be re-enqueued
    retry_requested: bool = False


@dataclass
class _RunState:
    """Mutable bookkeeping for one invocation; only touched by the driving thread."""
    graph: WorkflowGraph
    context: Dict[str, Any]
    edge_accepted: List[Optional[bool]]
    edge_filtered: List[bool]
    decided: Dict[int, NodeRunStatus] = field(default_factory=dict)
    scheduled: set = field(default_factory=set)
    attempts: Dict[str, int] = field(default_factory=dict)
    guard_errors: Dict[int, EngineError] = field(default_factory=dict)

    def accept(self, edge_index: int) -> None:
        self.edge_accepted[edge_index] = True

    def reject(self, edge_index: int, filtered: bool = False) -> None:
        self.edge_accepted[edge_index] = False
        self.edge_filtered[edge_index] = filtered

    def inbound_resolved(self, index: int) -> bool:
        return all(self.edge_accepted[e] is not None for e in self.graph.nodes[index].inbound)

    def snapshot(self) -> Dict[str, Any]:
        # Shallow copy is enough: node entries are replaced, never mutated
        return {**self.context, "nodes": dict(self.context.get("nodes", {}))}


class DagExecutor:
    """
    Executes a workflow DAG for a run.

    Nodes are visited in deterministic topological order. A node is decided
    once all of its inbound edges are resolved; it runs, or is recorded as
    skipped/filtered. Node output lands in ``context["nodes"][id]`` before any
    successor evaluates. Every attempt is persisted as a NodeRun, so a run
    interrupted mid-way resumes from the first undecided node.
    """

    def __init__(
        self,
        pipeline: ActionPipeline,
        conditions: ConditionEngine,
        templates: TemplateCache,
        runs: RunStore,
        events: EventBus,
        max_parallel_nodes: int = 4,
    ):
        self.pipeline = pipeline
        self.conditions = conditions
        self.templates = templates
        self.runs = runs
        self.events = events
        self.max_parallel_nodes = max_parallel_nodes
        self._graphs: Dict[Tuple[str, int], WorkflowGraph] = {}
        self._lock = threading.Lock()

    def graph_for(self, definition: WorkflowDefinition, version: int) -> WorkflowGraph:
        key = (definition.id, version)
        with self._lock:
            graph = self._graphs.get(key)
            if graph is None:
                graph = WorkflowGraph.from_definition(definition)
                self._graphs[key] = graph
            return graph

    def evict(self, workflow_id: str) -> None:
        with self._lock:
            for key in [k for k in self._graphs if k[0] == workflow_id]:
                del self._graphs[key]
        self.templates.evict(workflow_id)

    def execute(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        cancel_token: CancellationToken,
        log: Optional[ContextLogger] = None,
    ) -> ExecutionResult:
        """Run (or resume) ``run`` to a result. Persistence of the run row itself is the caller's job."""
        log = log or ContextLogger(logger, run_id=run.id)
        graph = self.graph_for(definition, run.workflow_version)
        context = dict(run.context)
        context.setdefault("nodes", {})
        state = _RunState(
            graph=graph,
            context=context,
            edge_accepted=[None] * len(graph.edges),
            edge_filtered=[False] * len(graph.edges),
        )
        self._restore(run, definition, state, log)

        deadline = self._run_deadline(run, definition)
        run_token = cancel_token.child()
        try:
            return self._drive(run, definition, state, run_token, deadline, log)
        except ExecutionCancelledError as e:
            log.info(f"Run cancelled: {e}")
            return ExecutionResult(
                RunStatus.CANCELLED, state.context, str(e), ErrorCategory.CANCELLED
            )
        except RunTimeoutError as e:
            log.warning(f"Run timed out: {e}")
            return ExecutionResult(
                RunStatus.TIMED_OUT, state.context, str(e), ErrorCategory.TIMEOUT
            )
        finally:
            # Stops any straggling action of this invocation
            run_token.cancel("run finished")

    @staticmethod
    def _run_deadline(run: WorkflowRun, definition: WorkflowDefinition) -> Deadline:
        timeout_ms = definition.settings.timeout_ms
        if timeout_ms is None:
            return Deadline(None)
        elapsed = now() - run.started_at if run.started_at else 0.0
        return Deadline(max(0.0, timeout_ms / 1000.0 - elapsed))

    def _restore(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        state: _RunState,
        log: ContextLogger,
    ) -> None:
        """Re-apply decided nodes from a previous invocation of this run."""
        abandoned = self.runs.abandon_running_node_runs(
            run.id, "Attempt interrupted before it finished"
        )
        if abandoned:
            log.warning(f"Closed {abandoned} attempt(s) left running by a previous worker")

        state.attempts = self.runs.attempt_counts(run.id)
        latest = self.runs.latest_node_runs(run.id)
        if not latest:
            return

        restored = 0
        for index in state.graph.topological_order():
            node = state.graph.nodes[index]
            node_run = latest.get(node.id)
            if node_run is None or node_run.status not in _DECIDED_STATUSES:
                continue
            state.decided[index] = node_run.status
            state.context["nodes"][node.id] = {
                "status": node_run.status.value,
                "output": node_run.output,
            }
            # A skip recorded by error policy carries the error and passes through
            pass_through = node_run.status == NodeRunStatus.SKIPPED and node_run.error is not None
            self._resolve_outbound(state, index, node_run.status, node_run.output, pass_through)
            restored += 1
        if restored:
            log.info(f"Resuming run with {restored}/{len(state.graph)} node(s) already decided")

    def _resolve_outbound(
        self,
        state: _RunState,
        index: int,
        status: NodeRunStatus,
        output: Any,
        pass_through: bool = False,
    ) -> None:
        graph = state.graph
        node_def: NodeDefinition = graph.nodes[index].data
        for edge_index in graph.nodes[index].outbound:
            edge = graph.edges[edge_index]
            if status in (NodeRunStatus.SKIPPED, NodeRunStatus.FILTERED) and not pass_through:
                state.reject(edge_index, filtered=status == NodeRunStatus.FILTERED)
                continue

            if node_def.type == NodeType.CONDITION and not pass_through:
                result = bool((output or {}).get("result"))
                branch = edge.data.branch or "true"
                if (branch == "true") != result:
                    state.reject(edge_index, filtered=node_def.filter and not result)
                    continue

            if edge.data.guard is not None:
                try:
                    allowed = self.conditions.evaluate(edge.data.guard, state.context)
                except EngineError as e:
                    state.guard_errors[edge.target] = e
                    state.reject(edge_index)
                    continue
                if not allowed:
                    state.reject(edge_index)
                    continue
            state.accept(edge_index)

    @staticmethod
    def _decide(state: _RunState, index: int) -> Optional[NodeRunStatus]:
        """None if the node should run, otherwise the status it settles with."""
        node = state.graph.nodes[index]
        if not node.inbound:
            return None
        node_def: NodeDefinition = node.data
        accepted = [state.edge_accepted[e] for e in node.inbound]
        if node_def.type == NodeType.JUNCTION and node_def.join == JoinMode.ALL:
            runs = all(accepted)
        else:
            runs = any(accepted)
        if runs:
            return None
        rejected = [e for e in node.inbound if not state.edge_accepted[e]]
        if rejected and all(state.edge_filtered[e] for e in rejected):
            return NodeRunStatus.FILTERED
        return NodeRunStatus.SKIPPED

    def _check_interrupt(self, run_id: str, token: CancellationToken, deadline: Deadline) -> None:
        if not token.cancelled and self.runs.is_cancel_requested(run_id):
            token.cancel("cancel requested")
        token.raise_if_cancelled()
        if deadline.expired:
            token.cancel("run timeout")
            raise RunTimeoutError("Run exceeded its timeout")

    def _drive(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        state: _RunState,
        token: CancellationToken,
        deadline: Deadline,
        log: ContextLogger,
    ) -> ExecutionResult:
        graph = state.graph
        order = graph.topological_order()
        position = {index: pos for pos, index in enumerate(order)}
        ready: List[Tuple[int, int]] = []

        def push_ready(index: int) -> None:
            if index not in state.decided and index not in state.scheduled and state.inbound_resolved(index):
                state.scheduled.add(index)
                heapq.heappush(ready, (position[index], index))

        for index in order:
            push_ready(index)

        parallel = definition.settings.execution_mode == ExecutionMode.PARALLEL
        slots = (definition.settings.max_parallel_nodes or self.max_parallel_nodes) if parallel else 1
        pool = ThreadPoolExecutor(max_workers=slots, thread_name_prefix=f"run-{run.id[:8]}") if parallel else None
        in_flight: Dict[Future, int] = {}
        failure: Optional[ExecutionResult] = None

        def settle(index: int, outcome: NodeOutcome) -> Optional[ExecutionResult]:
            result = self._settle(run, definition, state, index, outcome, token, deadline, log)
            for succ in graph.successors(index):
                push_ready(succ)
            return result

        try:
            while True:
                self._check_interrupt(run.id, token, deadline)
                while ready and failure is None and len(in_flight) < slots:
                    _, index = heapq.heappop(ready)
                    outcome = self._prepare(run, state, index, log)
                    if outcome is not None:
                        failure = settle(index, outcome)
                        continue
                    node_def = graph.nodes[index].data
                    first_attempt = state.attempts.get(node_def.id, 0) + 1
                    if pool is None:
                        outcome = self._run_node(
                            run, definition, node_def, state.snapshot(), first_attempt, token, deadline, log
                        )
                        failure = settle(index, outcome)
                        self._check_interrupt(run.id, token, deadline)
                    else:
                        future = pool.submit(
                            self._run_node,
                            run, definition, node_def, state.snapshot(), first_attempt, token, deadline, log,
                        )
                        in_flight[future] = index

                if not in_flight:
                    break
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    index = in_flight.pop(future)
                    result = settle(index, future.result())
                    failure = failure or result
        finally:
            if pool is not None:
                if in_flight:
                    token.cancel(token.reason or "run stopping")
                pool.shutdown(wait=True)

        if failure is not None:
            return failure

        undecided = [graph.nodes[i].id for i in order if i not in state.decided]
        if undecided:
            # Unreachable for a validated acyclic graph
            raise EngineError(f"Nodes never became ready: {', '.join(undecided)}")
        return ExecutionResult(RunStatus.COMPLETED, state.context)

    def _prepare(
        self,
        run: WorkflowRun,
        state: _RunState,
        index: int,
        log: ContextLogger,
    ) -> Optional[NodeOutcome]:
        """Settle nodes that don't need a worker thread; None means execute it."""
        node = state.graph.nodes[index]
        node_def: NodeDefinition = node.data

        guard_error = state.guard_errors.get(index)
        if guard_error is not None:
            attempt = state.attempts.get(node_def.id, 0) + 1
            self.runs.record_node_outcome(NodeRun(
                run_id=run.id,
                node_id=node_def.id,
                attempt=attempt,
                status=NodeRunStatus.FAILED,
                error=f"Edge guard failed: {guard_error}",
                error_category=guard_error.category,
            ))
            return NodeOutcome(
                NodeRunStatus.FAILED,
                error=f"Edge guard failed: {guard_error}",
                error_category=guard_error.category,
                attempts=attempt,
            )

        decision = self._decide(state, index)
        if decision is not None:
            self.runs.record_node_outcome(NodeRun(
                run_id=run.id,
                node_id=node_def.id,
                attempt=state.attempts.get(node_def.id, 0) + 1,
                status=decision,
            ))
            log.bind(node_id=node_def.id).debug(f"Node {decision.value}: no accepted inbound edge")
            return NodeOutcome(decision)

        if node_def.type == NodeType.JUNCTION:
            joined = [
                state.graph.nodes[state.graph.edges[e].source].id
                for e in node.inbound
                if state.edge_accepted[e]
            ]
            output = {"joined": joined}
            self.runs.record_node_outcome(NodeRun(
                run_id=run.id,
                node_id=node_def.id,
                attempt=state.attempts.get(node_def.id, 0) + 1,
                status=NodeRunStatus.COMPLETED,
                output=output,
            ))
            return NodeOutcome(NodeRunStatus.COMPLETED, output=output, attempts=1)
        return None

    def _settle(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        state: _RunState,
        index: int,
        outcome: NodeOutcome,
        token: CancellationToken,
        deadline: Deadline,
        log: ContextLogger,
    ) -> Optional[ExecutionResult]:
        """Apply a node outcome to the run state. Returns a result if the run must stop."""
        node_def: NodeDefinition = state.graph.nodes[index].data
        node_log = log.bind(node_id=node_def.id)
        state.attempts[node_def.id] = max(state.attempts.get(node_def.id, 0), outcome.attempts)

        if outcome.status == NodeRunStatus.FAILED:
            if token.cancelled or deadline.expired:
                # The interrupt check turns this into cancelled / timed_out
                state.scheduled.discard(index)
                return None

            policy = definition.settings.error_handling
            if policy == ErrorHandling.SKIP:
                node_log.warning(f"Node failed, skipping per error policy: {outcome.error}")
                self.runs.record_node_outcome(NodeRun(
                    run_id=run.id,
                    node_id=node_def.id,
                    attempt=max(outcome.attempts, 1),
                    status=NodeRunStatus.SKIPPED,
                    error=outcome.error,
                    error_category=outcome.error_category,
                ))
                state.decided[index] = NodeRunStatus.SKIPPED
                state.context["nodes"][node_def.id] = {"status": NodeRunStatus.SKIPPED.value, "output": None}
                self._resolve_outbound(state, index, NodeRunStatus.SKIPPED, None, pass_through=True)
                self.runs.update_context(run.id, state.context)
                self._emit_node_completed(run, node_def, outcome, NodeRunStatus.SKIPPED)
                return None

            state.context["nodes"][node_def.id] = {"status": NodeRunStatus.FAILED.value, "output": None}
            self.runs.update_context(run.id, state.context)
            self._emit_node_completed(run, node_def, outcome, NodeRunStatus.FAILED)
            return ExecutionResult(
                RunStatus.FAILED,
                state.context,
                error=f"Node '{node_def.id}' failed: {outcome.error}",
                error_category=outcome.error_category,
                failed_node=node_def.id,
                retry_requested=policy == ErrorHandling.RETRY,
            )

        state.decided[index] = outcome.status
        state.context["nodes"][node_def.id] = {"status": outcome.status.value, "output": outcome.output}
        self._resolve_outbound(state, index, outcome.status, outcome.output)
        self.runs.update_context(run.id, state.context)
        self._emit_node_completed(run, node_def, outcome, outcome.status)
        return None

    def _emit_node_completed(
        self,
        run: WorkflowRun,
        node_def: NodeDefinition,
        outcome: NodeOutcome,
        status: NodeRunStatus,
    ) -> None:
        self.events.emit(EngineEvent(
            type=NODE_COMPLETED,
            run_id=run.id,
            workflow_id=run.workflow_id,
            node_id=node_def.id,
            status=status.value,
            output=outcome.output,
            error=outcome.error,
            duration_ms=outcome.duration_ms,
        ))

    def _run_node(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        node_def: NodeDefinition,
        context: Dict[str, Any],
        first_attempt: int,
        token: CancellationToken,
        deadline: Deadline,
        log: ContextLogger,
    ) -> NodeOutcome:
        """Execute an action or condition node, retrying per its RetryPolicy."""
        node_log = log.bind(node_id=node_def.id)
        policy = node_def.retry
        started = time.monotonic()
        self.events.emit(EngineEvent(
            type=NODE_STARTED,
            run_id=run.id,
            workflow_id=run.workflow_id,
            node_id=node_def.id,
        ))

        tries = 0
        while True:
            tries += 1
            attempt = first_attempt + tries - 1
            node_run = self.runs.start_node_run(
                NodeRun(run_id=run.id, node_id=node_def.id, attempt=attempt)
            )
            request: Optional[AttemptRequest] = None
            try:
                if node_def.type == NodeType.CONDITION:
                    attempt_input: Any = node_def.condition
                    output: Any = {"result": self.conditions.evaluate(node_def.condition, context)}
                else:
                    request = AttemptRequest(
                        run_id=run.id,
                        workflow_id=run.workflow_id,
                        node_id=node_def.id,
                        attempt=attempt,
                        action_type=node_def.action_type,
                        config=self.templates.get(
                            definition.id, run.workflow_version, node_def.id, node_def.config
                        ),
                        run_context=context,
                        timeout_ms=node_def.timeout_ms,
                        target=node_def.target,
                    )
                    result = self.pipeline.execute(request, token, deadline, node_log)
                    attempt_input, output = result.input, result.output
            except EngineError as e:
                self.runs.finish_node_run(
                    node_run.id,
                    NodeRunStatus.FAILED,
                    output=getattr(e, "output", None),
                    error=str(e),
                    error_category=e.category,
                    input=request.resolved_input if request is not None else node_def.condition,
                )
                node_log.node_failed(str(e), attempt)
                failed = NodeOutcome(
                    NodeRunStatus.FAILED,
                    error=str(e),
                    error_category=e.category,
                    attempts=attempt,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
                if e.category == ErrorCategory.CANCELLED or deadline.expired:
                    return failed
                if not policy.should_retry(tries, e.category):
                    return failed
                if e.category == ErrorCategory.PLUGIN:
                    self._reload(node_def, node_log)
                delay = deadline.cap(policy.calculate_delay(tries))
                node_log.info(f"Retrying in {delay:.2f}s ({tries}/{policy.max_attempts})")
                if token.wait(delay):
                    return NodeOutcome(
                        NodeRunStatus.FAILED,
                        error=token.reason or "cancelled",
                        error_category=ErrorCategory.CANCELLED,
                        attempts=attempt,
                    )
                continue

            self.runs.finish_node_run(node_run.id, NodeRunStatus.COMPLETED, output=output, input=attempt_input)
            duration_ms = int((time.monotonic() - started) * 1000)
            node_log.node_completed(NodeRunStatus.COMPLETED.value, duration_ms)
            return NodeOutcome(
                NodeRunStatus.COMPLETED,
                output=output,
                attempts=attempt,
                duration_ms=duration_ms,
            )

    def _reload(self, node_def: NodeDefinition, log: ContextLogger) -> None:
        """Give a crashed plugin action a chance to reinitialise before the retry."""
        if node_def.type != NodeType.ACTION or not node_def.action_type:
            return
        try:
            reloader = self.pipeline.registry.get(node_def.action_type).reloader
        except EngineError:
            return
        if reloader is None:
            return
        try:
            reloader()
            log.info(f"Reloaded action '{node_def.action_type}' after plugin failure")
        except Exception as e:
            log_and_ignore(e, f"Reloading action '{node_def.action_type}' failed", logger_instance=logger)

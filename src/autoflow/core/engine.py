"""Engine core: owns the stores and registries and orchestrates runs."""

import dataclasses
import logging
import threading
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

import requests

from ..actions.builtin import register_builtin_actions
from ..actions.pipeline import ActionPipeline
from ..actions.registry import ActionRegistry, SecretAccessor
from ..errors import (
    ConcurrencyLimitError,
    ErrorCategory,
    RunStateError,
    WorkflowNotFoundError,
    WorkflowValidationError,
    classify_exception,
)
from ..queue.job_queue import JobQueue
from ..safeguards.circuit_breaker import CircuitBreakerRegistry
from ..safeguards.rate_limiter import RateLimiter
from ..storage.database import Database
from ..storage.run_store import RunStore
from ..storage.trigger_store import TriggerStore
from ..storage.workflow_store import WorkflowStore
from ..triggers.manager import TriggerManager
from ..utils.error_handling import ErrorContext
from ..utils.rich_logging import ContextLogger
from ..workflow.conditions import UNDEFINED, ConditionEngine
from ..workflow.definition import (
    SCHEMA_VERSION,
    WorkflowDefinition,
    parse_workflow,
    validate_workflow,
)
from ..workflow.executor import DagExecutor, ExecutionResult
from ..workflow.templates import TemplateCache
from .cancellation import CancellationToken
from .config import EngineConfig
from .events import (
    ENGINE_ERROR,
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_STARTED,
    EngineEvent,
    EventBus,
)
from .models import (
    DeadJobResolution,
    Job,
    JobStatus,
    RunStatus,
    RunStatusReport,
    TriggerEvent,
    WorkflowRun,
    WorkflowVersion,
)
from .plugins import Plugin

logger = logging.getLogger(__name__)

DefinitionInput = Union[WorkflowDefinition, Dict[str, Any]]


class EngineCore:
    """
    The orchestrator.

    Constructed once per process and handed to the worker pool, the trigger
    manager and the CLI. Registries (actions, condition evaluators, trigger
    types) are owned here; plugins add entries through :meth:`install_plugin`.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        db: Optional[Database] = None,
        http_session: Optional[requests.Session] = None,
    ):
        self.config = config or EngineConfig()
        self.db = db or Database(self.config.store.path, self.config.store.busy_timeout_ms)
        self.db.initialize()

        self.workflows = WorkflowStore(self.db)
        self.runs = RunStore(self.db)
        self.queue = JobQueue(self.db)
        self.events = EventBus()
        self.secrets = SecretAccessor(self.config.secrets)

        self.actions = ActionRegistry()
        register_builtin_actions(self.actions)
        self.conditions = ConditionEngine(
            timeout=self.config.conditions.evaluation_timeout_ms / 1000.0,
            secrets=self.secrets,
        )
        self.templates = TemplateCache()
        self.pipeline = ActionPipeline(
            registry=self.actions,
            rate_limiter=RateLimiter(self.config.actions.rate_limits),
            breakers=CircuitBreakerRegistry(
                failure_threshold=self.config.circuit_breaker.failure_threshold,
                window=self.config.circuit_breaker.window_seconds,
                reset_timeout=self.config.circuit_breaker.reset_timeout_seconds,
            ),
            secrets=self.secrets,
            settings=self.config.actions,
            resolve_ref=self._resolve_ref,
            http_session=http_session,
        )
        self.executor = DagExecutor(
            pipeline=self.pipeline,
            conditions=self.conditions,
            templates=self.templates,
            runs=self.runs,
            events=self.events,
            max_parallel_nodes=self.config.actions.max_parallel_nodes,
        )
        self.triggers = TriggerManager(
            TriggerStore(self.db),
            self.config.triggers,
            events=self.events,
            handler=self.handle_trigger_event,
        )

        self.plugins: Dict[str, Plugin] = {}
        self._definitions: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._lock = threading.Lock()
        self._started = False

    # Lifecycle

    def start(self) -> None:
        """Start runtime triggers. Workers are started by the WorkerPool."""
        if self._started:
            return
        self._started = True
        self.triggers.start()
        logger.info(f"Engine started (store {self.db.path})")

    def stop(self) -> None:
        """Stop triggers and release executors. In-flight runs are left for the stale-lock sweep to resume."""
        self.triggers.stop()
        self.pipeline.shutdown()
        self.conditions.shutdown()
        self._started = False
        logger.info("Engine stopped")

    def close(self) -> None:
        self.stop()
        self.db.close()

    # Plugins

    def install_plugin(self, plugin: Plugin) -> None:
        """
        Add a plugin's actions, condition evaluators and trigger types.

        Registration is all-or-nothing: on a conflict everything the plugin
        added so far is removed again.

        Raises:
            ValueError: plugin already installed, or an entry conflicts
        """
        if plugin.plugin_id in self.plugins:
            raise ValueError(f"Plugin '{plugin.plugin_id}' is already installed")
        added_conditions: List[str] = []
        added_triggers: List[str] = []
        try:
            for action in plugin.actions:
                self.actions.register(dataclasses.replace(action, plugin_id=plugin.plugin_id))
            for name, evaluator in plugin.conditions.items():
                if name in self.conditions.evaluator_names():
                    raise ValueError(f"Condition evaluator '{name}' already registered")
                self.conditions.register(name, evaluator)
                added_conditions.append(name)
            for type_name, factory in plugin.triggers.items():
                self.triggers.register_type(type_name, factory)
                added_triggers.append(type_name)
        except ValueError:
            self.actions.unregister_plugin(plugin.plugin_id)
            for name in added_conditions:
                self.conditions.unregister(name)
            for type_name in added_triggers:
                self.triggers.unregister_type(type_name)
            raise
        self.plugins[plugin.plugin_id] = plugin
        logger.info(
            f"Installed plugin {plugin.plugin_id} v{plugin.version}: "
            f"{len(plugin.actions)} action(s), {len(plugin.conditions)} condition(s), "
            f"{len(plugin.triggers)} trigger type(s)"
        )

    def uninstall_plugin(self, plugin_id: str) -> bool:
        plugin = self.plugins.pop(plugin_id, None)
        if plugin is None:
            return False
        self.actions.unregister_plugin(plugin_id)
        for name in plugin.conditions:
            self.conditions.unregister(name)
        for type_name in plugin.triggers:
            self.triggers.unregister_type(type_name)
        logger.info(f"Uninstalled plugin {plugin_id}")
        return True

    # Workflows

    def validate_workflow(self, definition: DefinitionInput) -> List[str]:
        """Every problem with ``definition`` against the current registries."""
        if not isinstance(definition, WorkflowDefinition):
            try:
                definition = parse_workflow(definition)
            except WorkflowValidationError as e:
                return e.errors
        errors = validate_workflow(
            definition,
            action_types=self.actions.types(),
            condition_evaluators=self.conditions.evaluator_names(),
        )
        for node in definition.nodes:
            errors.extend(f"node '{node.id}': {msg}" for msg in self.templates.compiler.check(node.config))
        errors.extend(self.triggers.validate(definition.trigger))
        return errors

    def _ensure_valid(self, definition: DefinitionInput) -> WorkflowDefinition:
        if not isinstance(definition, WorkflowDefinition):
            definition = parse_workflow(definition)
        errors = self.validate_workflow(definition)
        if errors:
            logger.warning(f"Workflow '{definition.id}' rejected with {len(errors)} error(s)")
            raise WorkflowValidationError(errors)
        return definition

    def register_workflow(self, definition: DefinitionInput) -> WorkflowVersion:
        """
        Store a new workflow (version 1) and register its trigger.

        Raises:
            WorkflowValidationError: invalid definition or id already taken
        """
        definition = self._ensure_valid(definition)
        if self.workflows.exists(definition.id):
            raise WorkflowValidationError(
                [f"Workflow '{definition.id}' already exists; update it instead"]
            )
        return self._save(definition)

    def update_workflow(self, workflow_id: str, definition: DefinitionInput) -> WorkflowVersion:
        """
        Store a new version. Runs already created keep the version they started with.

        Raises:
            WorkflowNotFoundError: no such workflow
            WorkflowValidationError: invalid definition or mismatched id
        """
        if not self.workflows.exists(workflow_id):
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")
        definition = self._ensure_valid(definition)
        if definition.id != workflow_id:
            raise WorkflowValidationError(
                [f"Definition id '{definition.id}' does not match workflow '{workflow_id}'"]
            )
        return self._save(definition)

    def _save(self, definition: WorkflowDefinition) -> WorkflowVersion:
        version = self.workflows.save_version(
            definition.id, definition.name or definition.id, definition.to_dict(), SCHEMA_VERSION
        )
        with self._lock:
            self._definitions[(definition.id, version.version)] = definition
        self.triggers.register(definition.id, definition.trigger)
        return version

    def delete_workflow(self, workflow_id: str, wait_timeout: float = 10.0) -> bool:
        """
        Cancel active runs, unregister the trigger and remove every row of the workflow.

        Raises:
            WorkflowNotFoundError: no such workflow
        """
        if not self.workflows.exists(workflow_id):
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")

        active = self.runs.active_run_ids(workflow_id)
        for run_id in active:
            with ErrorContext(
                f"cancel run {run_id}", raise_on_error=False, expected=(RunStateError,), logger_instance=logger
            ):
                self.cancel_run(run_id)
        self._wait_for_runs(active, wait_timeout)

        self.triggers.unregister(workflow_id)
        deleted = self.workflows.delete(workflow_id)
        self.executor.evict(workflow_id)
        with self._lock:
            for key in [k for k in self._definitions if k[0] == workflow_id]:
                del self._definitions[key]
        logger.info(f"Deleted workflow {workflow_id} ({len(active)} active run(s) cancelled)")
        return deleted

    def _wait_for_runs(self, run_ids: List[str], timeout: float) -> None:
        """Give in-process workers a moment to observe cancellation."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                busy = [run_id for run_id in run_ids if run_id in self._tokens]
            if not busy:
                return
            time.sleep(0.05)
        logger.warning(f"{len(busy)} run(s) still executing after {timeout:.0f}s")

    def get_workflow(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        stored = self.workflows.get(workflow_id, version)
        return self._definition(stored)

    def list_workflows(self) -> List[WorkflowVersion]:
        return self.workflows.list()

    def _definition(self, stored: WorkflowVersion) -> WorkflowDefinition:
        key = (stored.workflow_id, stored.version)
        with self._lock:
            definition = self._definitions.get(key)
        if definition is None:
            definition = WorkflowDefinition.model_validate(stored.definition)
            with self._lock:
                self._definitions[key] = definition
        return definition

    # Runs

    def trigger_workflow(self, workflow_id: str, payload: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """
        Start a run directly (no trigger dedup).

        Returns the run id, or None when the entry conditions do not hold.

        Raises:
            WorkflowNotFoundError: no such workflow
            ConcurrencyLimitError: ``max_concurrent_runs`` reached
        """
        return self._create_run(
            workflow_id,
            payload or {},
            trigger={"type": "manual", "fired_at": time.time()},
        )

    def handle_trigger_event(self, event: TriggerEvent) -> Optional[str]:
        """Entry point for the trigger manager: one accepted event -> at most one run."""
        return self._create_run(
            event.workflow_id,
            event.payload,
            trigger={
                "id": event.trigger_id,
                "event_id": event.id,
                "fired_at": event.fired_at,
            },
            event_id=event.id,
        )

    def _create_run(
        self,
        workflow_id: str,
        payload: Dict[str, Any],
        trigger: Dict[str, Any],
        event_id: Optional[str] = None,
        check_entry: bool = True,
    ) -> Optional[str]:
        stored = self.workflows.get(workflow_id)
        definition = self._definition(stored)
        context: Dict[str, Any] = {"trigger": trigger, "payload": payload, "nodes": {}}

        if check_entry:
            for i, condition in enumerate(definition.entry_conditions):
                if not self.conditions.evaluate(condition, context):
                    logger.info(f"Workflow {workflow_id}: entry condition {i} not met, no run created")
                    return None

        settings = definition.settings
        run = WorkflowRun(
            id=uuid.uuid4().hex,
            workflow_id=workflow_id,
            workflow_version=stored.version,
            trigger_event_id=event_id,
            context=context,
        )
        with self.db.transaction():
            if settings.max_concurrent_runs is not None:
                active = self.runs.count_active(workflow_id)
                if active >= settings.max_concurrent_runs:
                    raise ConcurrencyLimitError(
                        f"Workflow '{workflow_id}' already has {active} active run(s) "
                        f"(max {settings.max_concurrent_runs})"
                    )
            self.runs.insert(run)
            job = self.queue.enqueue(
                run.id,
                priority=settings.priority,
                max_attempts=settings.max_job_attempts or self.config.queue.max_attempts,
            )
        logger.info(f"Run {run.id[:8]} created for {workflow_id} v{stored.version} (job {job.id[:8]})")
        return run.id

    def cancel_run(self, run_id: str) -> bool:
        """
        Cancel a run. A pending run is finished immediately; a running one is
        signalled and stops at its next cancellation check.

        Raises:
            RunNotFoundError: unknown run
            RunStateError: run already terminal
        """
        run = self.runs.get(run_id)
        if run.is_terminal:
            raise RunStateError(f"Run {run_id} is already {run.status.value}")

        if run.status == RunStatus.PENDING:
            with self.db.transaction():
                removed = self.queue.remove_pending_for_run(run_id)
                finished = self.runs.finish(run_id, RunStatus.CANCELLED, "Cancelled before start", ErrorCategory.CANCELLED)
            if finished:
                logger.info(f"Run {run_id[:8]} cancelled before start ({removed} job(s) removed)")
                self._emit_run_event(RUN_CANCELLED, run, RunStatus.CANCELLED, error="Cancelled before start")
                return True

        # Running, or claimed between our read and the update
        self.runs.request_cancel(run_id)
        with self._lock:
            token = self._tokens.get(run_id)
        if token is not None:
            token.cancel("cancel requested")
        logger.info(f"Cancellation requested for run {run_id[:8]}")
        return True

    def retry_run(self, run_id: str) -> str:
        """
        Re-enqueue a non-terminal run; it resumes from its first undecided node.

        Returns the id of the job that will execute it.

        Raises:
            RunStateError: run is terminal
        """
        run = self.runs.get(run_id)
        if run.is_terminal:
            raise RunStateError(f"Run {run_id} is {run.status.value}; terminal runs cannot be retried")
        job = self.queue.latest_for_run(run_id)
        if job is not None and job.status in (JobStatus.PENDING, JobStatus.PROCESSING):
            logger.info(f"Run {run_id[:8]} already has an active job {job.id[:8]}")
            return job.id
        definition = self.get_workflow(run.workflow_id, run.workflow_version)
        with self.db.transaction():
            self.runs.mark_pending(run_id)
            job = self.queue.enqueue(
                run_id,
                priority=definition.settings.priority,
                max_attempts=definition.settings.max_job_attempts or self.config.queue.max_attempts,
            )
        logger.info(f"Run {run_id[:8]} re-enqueued as job {job.id[:8]}")
        return job.id

    def get_run_status(self, run_id: str) -> RunStatusReport:
        run = self.runs.get(run_id)
        return RunStatusReport(
            run=run,
            node_runs=self.runs.list_node_runs(run_id),
            job=self.queue.latest_for_run(run_id),
        )

    def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> List[WorkflowRun]:
        return self.runs.list(workflow_id, status, limit)

    # Dead letters

    def list_dead_jobs(self) -> List[Job]:
        return self.queue.list_dead()

    def retry_dead_job(self, job_id: str) -> str:
        """
        Start a fresh run with the dead job's original payload.

        Raises:
            JobNotFoundError: unknown job
            RunStateError: job is not an unresolved dead letter
        """
        job = self.queue.get(job_id)
        if job.status != JobStatus.DEAD or job.resolution is not None:
            raise RunStateError(f"Job {job_id} is not an unresolved dead letter")
        old_run = self.runs.get(job.run_id)
        with self.db.transaction():
            self.queue.resolve_dead(job_id, DeadJobResolution.REQUEUED)
            run_id = self._create_run(
                old_run.workflow_id,
                old_run.payload,
                trigger={**old_run.context.get("trigger", {}), "retry_of": old_run.id},
                check_entry=False,
            )
        logger.info(f"Dead job {job_id[:8]} requeued as run {run_id[:8]}")
        return run_id

    def discard_dead_job(self, job_id: str) -> bool:
        job = self.queue.get(job_id)
        if job.status != JobStatus.DEAD:
            raise RunStateError(f"Job {job_id} is {job.status.value}, not dead")
        discarded = self.queue.resolve_dead(job_id, DeadJobResolution.DISCARDED)
        if discarded:
            logger.info(f"Dead job {job_id[:8]} discarded")
        return discarded

    # Execution (worker entry point)

    def execute_job(self, job: Job, worker_id: str) -> None:
        """
        Drive the run behind a claimed job to a result and settle the job.

        Never raises: orchestrator failures are logged at CRITICAL, the run is
        failed, the job moved to dead letters and ``engine:error`` emitted.
        """
        log = ContextLogger(logger, run_id=job.run_id, worker_id=worker_id)
        try:
            self._execute_job(job, worker_id, log)
        except Exception as e:
            log.critical(f"Engine failure while executing job {job.id}: {e}", exc_info=True)
            category = classify_exception(e)
            message = f"Engine error: {type(e).__name__}: {e}"
            with ErrorContext(f"fail run {job.run_id}", raise_on_error=False, logger_instance=logger):
                self.runs.finish(job.run_id, RunStatus.FAILED, message, category)
            with ErrorContext(f"dead-letter job {job.id}", raise_on_error=False, logger_instance=logger):
                self.queue.mark_dead(job.id, worker_id, message, category)
            self.events.emit(EngineEvent(type=ENGINE_ERROR, run_id=job.run_id, error=message))
        finally:
            with self._lock:
                self._tokens.pop(job.run_id, None)

    def _execute_job(self, job: Job, worker_id: str, log: ContextLogger) -> None:
        run = self.runs.find(job.run_id)
        if run is None:
            log.warning(f"Job {job.id} points at a run that no longer exists")
            self.queue.mark_failed(job.id, worker_id, "Run no longer exists", ErrorCategory.PERMANENT)
            return
        if run.is_terminal:
            log.info(f"Run already {run.status.value}; settling job {job.id}")
            if run.status == RunStatus.COMPLETED:
                self.queue.complete(job.id, worker_id)
            else:
                self.queue.mark_failed(job.id, worker_id, f"Run already {run.status.value}", run.error_category)
            return

        token = CancellationToken()
        with self._lock:
            self._tokens[run.id] = token
        if run.cancel_requested:
            token.cancel("cancel requested")

        definition = self.get_workflow(run.workflow_id, run.workflow_version)
        resumed = run.status == RunStatus.RUNNING or job.attempts > 1
        if not self.runs.mark_running(run.id):
            log.info("Run became terminal before it started")
            self.queue.mark_failed(job.id, worker_id, "Run finished before it started", ErrorCategory.CANCELLED)
            return
        run = self.runs.get(run.id)
        log.run_started(run.workflow_id, run.workflow_version)
        self._emit_run_event(RUN_STARTED, run, RunStatus.RUNNING, output={"resumed": resumed})

        result = self.executor.execute(run, definition, token, log)
        self._settle(run, job, worker_id, result, log)

    def _settle(
        self,
        run: WorkflowRun,
        job: Job,
        worker_id: str,
        result: ExecutionResult,
        log: ContextLogger,
    ) -> None:
        """Persist the run result and map it onto the job outcome."""
        if result.status == RunStatus.FAILED and result.retry_requested:
            delay = self.config.queue.retry.calculate_delay(job.attempts)
            with self.db.transaction():
                self.runs.update_context(run.id, result.context)
                self.runs.mark_pending(run.id)
                job_status = self.queue.retry(job.id, worker_id, delay, result.error, result.error_category)
            if job_status == JobStatus.PENDING:
                log.info(f"Run re-queued after failure at '{result.failed_node}', retry in {delay:.1f}s")
                return
            # Out of job attempts: the retry policy gives up
            self.runs.finish(run.id, RunStatus.FAILED, result.error, result.error_category, result.context)
            self._emit_run_event(RUN_FAILED, run, RunStatus.FAILED, error=result.error)
            return

        finished = self.runs.finish(
            run.id, result.status, result.error, result.error_category, result.context
        )
        if not finished:
            log.warning("Run was already terminal; result not recorded")

        if result.status == RunStatus.COMPLETED:
            self.queue.complete(job.id, worker_id)
            log.info("Run completed")
            self._emit_run_event(RUN_COMPLETED, run, RunStatus.COMPLETED, output=result.context.get("nodes"))
        elif result.status == RunStatus.CANCELLED:
            self.queue.mark_failed(job.id, worker_id, result.error or "cancelled", ErrorCategory.CANCELLED)
            self._emit_run_event(RUN_CANCELLED, run, RunStatus.CANCELLED, error=result.error)
        elif result.status == RunStatus.TIMED_OUT:
            self.queue.mark_failed(job.id, worker_id, result.error or "timed out", ErrorCategory.TIMEOUT)
            self._emit_run_event(RUN_FAILED, run, RunStatus.TIMED_OUT, error=result.error)
        else:
            category = result.error_category or ErrorCategory.PERMANENT
            if category.retryable:
                self.queue.mark_dead(job.id, worker_id, result.error, category)
            else:
                self.queue.mark_failed(job.id, worker_id, result.error, category)
            log.warning(f"Run failed: {result.error}")
            self._emit_run_event(RUN_FAILED, run, RunStatus.FAILED, error=result.error)

    def _emit_run_event(
        self,
        event_type: str,
        run: WorkflowRun,
        status: RunStatus,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        self.events.emit(EngineEvent(
            type=event_type,
            run_id=run.id,
            workflow_id=run.workflow_id,
            status=status.value,
            output=output,
            error=error,
        ))

    # Maintenance

    def heartbeat(self, job_id: str, worker_id: str) -> bool:
        return self.queue.heartbeat(job_id, worker_id)

    def maintenance(self) -> int:
        """Stale-lock sweep plus cleanup of runs orphaned by it and of expired dedup entries."""
        released = self.queue.reset_stale_locks(self.config.queue.stale_lock_timeout)
        if released:
            self._fail_orphaned_runs()
        with ErrorContext("prune trigger events", raise_on_error=False, logger_instance=logger):
            self.triggers.prune_events()
        return released

    def _fail_orphaned_runs(self) -> None:
        for job in self.queue.list_dead():
            run = self.runs.find(job.run_id)
            if run is None or run.is_terminal:
                continue
            error = job.last_error or "Worker lost"
            if self.runs.finish(run.id, RunStatus.FAILED, error, ErrorCategory.TRANSIENT):
                logger.warning(f"Run {run.id[:8]} failed after its job ran out of attempts")
                self._emit_run_event(RUN_FAILED, run, RunStatus.FAILED, error=error)

    # Helpers

    def _resolve_ref(self, ref: Any, context: Dict[str, Any]) -> Any:
        value = self.conditions.resolve_value(ref, context)
        return None if value is UNDEFINED else value


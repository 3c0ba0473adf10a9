"""Execution pipeline applied to every action attempt.

resolve config -> validate input -> rate limit -> circuit breaker ->
invoke under deadline + cancellation -> validate output (log only).
Recording the attempt and retrying are the DAG executor's job.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, TYPE_CHECKING

import requests
from pydantic import BaseModel, ValidationError

from ..core.cancellation import CancellationToken, Deadline
from ..errors import (
    ActionFailedError,
    ActionInputError,
    ActionTimeoutError,
    CircuitOpenError,
    EngineError,
    ErrorCategory,
    ExecutionCancelledError,
    classify_exception,
)
from ..safeguards.circuit_breaker import CircuitBreakerRegistry
from ..safeguards.rate_limiter import RateLimiter
from ..utils.rich_logging import ContextLogger
from .registry import ActionContext, ActionDefinition, ActionRegistry, ActionResult, SecretAccessor

if TYPE_CHECKING:
    from ..core.config import ActionsConfig
    from ..workflow.templates import CompiledConfig

logger = logging.getLogger(__name__)

# Categories that count against a target's circuit breaker
_BREAKER_CATEGORIES = (ErrorCategory.TRANSIENT, ErrorCategory.TIMEOUT, ErrorCategory.PLUGIN)


@dataclass
class AttemptRequest:
    """One attempt at one action node."""
    run_id: str
    workflow_id: str
    node_id: str
    attempt: int
    action_type: str
    config: "CompiledConfig"
    run_context: Dict[str, Any]
    timeout_ms: Optional[int] = None
    target: Optional[str] = None
    # Filled in once templates are resolved, so failed attempts can record it
    resolved_input: Any = None


@dataclass
class AttemptResult:
    input: Any
    output: Any


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


class ActionPipeline:
    def __init__(
        self,
        registry: ActionRegistry,
        rate_limiter: RateLimiter,
        breakers: CircuitBreakerRegistry,
        secrets: SecretAccessor,
        settings: "ActionsConfig",
        resolve_ref: Optional[Callable[[Any, Dict[str, Any]], Any]] = None,
        http_session: Optional[requests.Session] = None,
        max_workers: int = 32,
    ):
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.breakers = breakers
        self.secrets = secrets
        self.settings = settings
        self.resolve_ref = resolve_ref
        self.http = http_session or requests.Session()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="action")

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
        self.http.close()

    def resolve_input(self, request: AttemptRequest) -> Tuple[Any, Any]:
        """Steps 1-2: resolve templates/refs and validate against the input model."""
        definition = self.registry.get(request.action_type)
        resolved = request.config.render(request.run_context, self.resolve_ref)
        return resolved, self._validate_input(definition, resolved)

    def _validate_input(self, definition: ActionDefinition, resolved: Any) -> Any:
        if definition.input_model is None:
            return resolved
        try:
            return definition.input_model.model_validate(resolved)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()
            )
            raise ActionInputError(f"Invalid input for '{definition.type_id}': {problems}") from e

    def execute(
        self,
        request: AttemptRequest,
        cancel_token: CancellationToken,
        run_deadline: Optional[Deadline] = None,
        log: Optional[ContextLogger] = None,
    ) -> AttemptResult:
        """
        Run one attempt.

        Raises:
            EngineError: every failure, carrying its ErrorCategory
        """
        cancel_token.raise_if_cancelled()
        definition = self.registry.get(request.action_type)
        resolved, validated = self.resolve_input(request)
        request.resolved_input = _dump(resolved)

        timeout_ms = request.timeout_ms or self.settings.default_timeout_ms
        timeout = timeout_ms / 1000.0
        if run_deadline is not None:
            timeout = run_deadline.cap(timeout)

        # Rate limit waits count against the action's own deadline too
        limit = definition.rate_limit or self.settings.rate_limits.get(definition.type_id)
        if limit is not None:
            self.rate_limiter.ensure(definition.type_id, limit)
            self.rate_limiter.acquire(
                definition.type_id,
                timeout=min(timeout, self.settings.rate_limit_wait_ms / 1000.0),
                cancel_token=cancel_token,
            )

        target = request.target or self._resolve_target(definition, validated, request)
        breaker = self.breakers.get(target)
        breaker.before_call()

        log = log or ContextLogger(logger, run_id=request.run_id, node_id=request.node_id)
        token = cancel_token.child()
        context = ActionContext(
            run_id=request.run_id,
            workflow_id=request.workflow_id,
            node_id=request.node_id,
            attempt=request.attempt,
            logger=log,
            secrets=self.secrets,
            http=self.http,
            cancel_token=token,
            deadline=Deadline(timeout),
            settings=self.settings,
        )

        try:
            result = self._invoke(definition, validated, context, timeout)
        except EngineError as e:
            if e.category in _BREAKER_CATEGORIES and not isinstance(e, CircuitOpenError):
                breaker.record_failure()
            else:
                breaker.release_probe()
            raise

        if not result.success:
            category = result.error_category or ErrorCategory.TRANSIENT
            if category in _BREAKER_CATEGORIES:
                breaker.record_failure()
            else:
                breaker.release_probe()
            raise ActionFailedError(
                result.error or f"Action '{definition.type_id}' failed",
                category=category,
                output=_dump(result.output),
            )

        breaker.record_success()
        output = _dump(result.output)
        self._validate_output(definition, output, log)
        return AttemptResult(input=_dump(resolved), output=output)

    def _invoke(
        self,
        definition: ActionDefinition,
        validated: Any,
        context: ActionContext,
        timeout: float,
    ) -> ActionResult:
        future = self._pool.submit(definition.executor, validated, context)
        try:
            result = future.result(timeout=timeout)
        except FutureTimeout as e:
            # Cooperative: the executor sees its token cancelled and should stop
            context.cancel_token.cancel("timeout")
            future.cancel()
            raise ActionTimeoutError(
                f"Action '{definition.type_id}' exceeded {timeout:.2f}s"
            ) from e
        except EngineError:
            raise
        except Exception as e:
            category = classify_exception(e)
            raise ActionFailedError(f"{type(e).__name__}: {e}", category=category) from e

        if context.cancel_token.cancelled:
            raise ExecutionCancelledError(context.cancel_token.reason or "cancelled")
        if not isinstance(result, ActionResult):
            # Bare return values are treated as successful output
            result = ActionResult.ok(result)
        return result

    @staticmethod
    def _resolve_target(definition: ActionDefinition, validated: Any, request: AttemptRequest) -> str:
        if definition.target_resolver is not None:
            target = definition.target_resolver(validated)
            if target:
                return target
        if definition.per_node_breaker:
            return f"{definition.type_id}:{request.workflow_id}/{request.node_id}"
        return definition.type_id

    @staticmethod
    def _validate_output(definition: ActionDefinition, output: Any, log: ContextLogger) -> None:
        if definition.output_model is None:
            return
        try:
            definition.output_model.model_validate(output)
        except ValidationError as e:
            log.warning(
                f"Output of '{definition.type_id}' does not match its schema "
                f"({e.error_count()} error(s)); keeping it as-is"
            )

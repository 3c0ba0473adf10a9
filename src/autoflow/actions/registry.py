"""Action registry: action-type id -> executor plus input/output schemas."""

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Optional, Type, TYPE_CHECKING

from pydantic import BaseModel

from ..core.cancellation import CancellationToken, Deadline
from ..errors import ErrorCategory, UnknownActionError
from ..safeguards.rate_limiter import RateLimit

if TYPE_CHECKING:
    import requests

    from ..core.config import ActionsConfig
    from ..utils.rich_logging import ContextLogger

logger = logging.getLogger(__name__)


class ActionResult(BaseModel):
    """What an executor returns."""
    success: bool
    output: Any = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None

    @classmethod
    def ok(cls, output: Any = None) -> "ActionResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(
        cls,
        error: str,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        output: Any = None,
    ) -> "ActionResult":
        return cls(success=False, error=error, error_category=category, output=output)


class SecretAccessor(Mapping):
    """Read-only view over the configured secrets."""

    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self._secrets = MappingProxyType(dict(secrets or {}))

    def __getitem__(self, name: str) -> str:
        return self._secrets[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._secrets)

    def __len__(self) -> int:
        return len(self._secrets)

    def __repr__(self) -> str:
        # Never print values
        return f"SecretAccessor({sorted(self._secrets)})"


@dataclass
class ActionContext:
    """Everything an executor may use besides its input."""
    run_id: str
    workflow_id: str
    node_id: str
    attempt: int
    logger: "ContextLogger"
    secrets: SecretAccessor
    http: "requests.Session"
    cancel_token: CancellationToken
    deadline: Deadline
    settings: Optional["ActionsConfig"] = None

    @property
    def remaining(self) -> Optional[float]:
        """Seconds left before the invocation deadline."""
        return self.deadline.remaining


Executor = Callable[[Any, ActionContext], ActionResult]


@dataclass
class ActionDefinition:
    """
    A registered action type.

    ``target_resolver`` maps validated input to the circuit-breaker key
    (e.g. the hostname of an HTTP request). With ``per_node_breaker`` and no
    resolved target, each workflow node gets its own breaker. ``reloader`` is
    called before retrying after a PLUGIN-category failure.
    """
    type_id: str
    executor: Executor
    input_model: Optional[Type[BaseModel]] = None
    output_model: Optional[Type[BaseModel]] = None
    plugin_id: Optional[str] = None
    description: str = ""
    target_resolver: Optional[Callable[[Any], Optional[str]]] = None
    per_node_breaker: bool = False
    rate_limit: Optional[RateLimit] = None
    reloader: Optional[Callable[[], None]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ActionRegistry:
    """Instance registry of action types; plugins add entries, they never replace the path."""

    def __init__(self):
        self._actions: Dict[str, ActionDefinition] = {}
        self._lock = threading.Lock()

    def register(self, definition: ActionDefinition, replace: bool = False) -> None:
        with self._lock:
            existing = self._actions.get(definition.type_id)
            if existing is not None and not replace:
                raise ValueError(
                    f"Action type '{definition.type_id}' already registered"
                    f" by {existing.plugin_id or 'core'}"
                )
            self._actions[definition.type_id] = definition
        logger.debug(
            f"Registered action '{definition.type_id}'"
            + (f" from plugin {definition.plugin_id}" if definition.plugin_id else "")
        )

    def action(
        self,
        type_id: str,
        input_model: Optional[Type[BaseModel]] = None,
        output_model: Optional[Type[BaseModel]] = None,
        **kwargs,
    ) -> Callable[[Executor], Executor]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: Executor) -> Executor:
            self.register(
                ActionDefinition(
                    type_id=type_id,
                    executor=fn,
                    input_model=input_model,
                    output_model=output_model,
                    description=(fn.__doc__ or "").strip().splitlines()[0] if fn.__doc__ else "",
                    **kwargs,
                )
            )
            return fn

        return decorator

    def unregister(self, type_id: str) -> bool:
        with self._lock:
            return self._actions.pop(type_id, None) is not None

    def unregister_plugin(self, plugin_id: str) -> List[str]:
        with self._lock:
            removed = [t for t, d in self._actions.items() if d.plugin_id == plugin_id]
            for type_id in removed:
                del self._actions[type_id]
        return removed

    def get(self, type_id: str) -> ActionDefinition:
        with self._lock:
            definition = self._actions.get(type_id)
        if definition is None:
            raise UnknownActionError(f"Unknown action type '{type_id}'")
        return definition

    def types(self) -> List[str]:
        with self._lock:
            return sorted(self._actions)

    def definitions(self) -> List[ActionDefinition]:
        with self._lock:
            return [self._actions[t] for t in sorted(self._actions)]

    def __contains__(self, type_id: str) -> bool:
        with self._lock:
            return type_id in self._actions

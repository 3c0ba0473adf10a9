"""Action registry, execution pipeline and built-in actions."""

from .builtin import register_builtin_actions
from .pipeline import ActionPipeline, AttemptRequest, AttemptResult
from .registry import (
    ActionContext,
    ActionDefinition,
    ActionRegistry,
    ActionResult,
    SecretAccessor,
)

__all__ = [
    "ActionContext",
    "ActionDefinition",
    "ActionPipeline",
    "ActionRegistry",
    "ActionResult",
    "AttemptRequest",
    "AttemptResult",
    "SecretAccessor",
    "register_builtin_actions",
]

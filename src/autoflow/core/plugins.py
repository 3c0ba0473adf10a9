"""Plugin contract: a bundle of actions, condition evaluators and trigger types."""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, TYPE_CHECKING, Union

if TYPE_CHECKING:
    from ..actions.registry import ActionDefinition
    from ..triggers.base import TriggerFactory
    from ..workflow.conditions import ConditionEvaluator


@dataclass
class Plugin:
    """
    What a plugin contributes to the engine.

    Installing a plugin only adds registry entries; the execution path is
    the same for plugin and built-in actions. Every action is tagged with
    ``plugin_id`` so the plugin can be uninstalled as a unit.
    """
    plugin_id: str
    actions: List["ActionDefinition"] = field(default_factory=list)
    conditions: Dict[str, Union["ConditionEvaluator", Callable]] = field(default_factory=dict)
    triggers: Dict[str, "TriggerFactory"] = field(default_factory=dict)
    version: str = "0.0.0"
    description: Optional[str] = None

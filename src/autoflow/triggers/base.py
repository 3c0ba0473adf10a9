"""Trigger contract shared by every trigger type."""

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from ..utils.error_handling import log_and_ignore

if TYPE_CHECKING:
    from ..core.config import TriggersConfig
    from ..core.events import EventBus

logger = logging.getLogger(__name__)

# fire(trigger_id, payload, dedup_key=None, content=None) -> run id or None
FireCallback = Callable[..., Optional[str]]


def canonical_hash(payload: Any) -> str:
    """Stable hash of a JSON-like payload (key order does not matter)."""
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass
class TriggerSpec:
    """Everything a trigger factory gets to build a runtime trigger."""
    trigger_id: str
    workflow_id: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    settings: Optional["TriggersConfig"] = None
    events: Optional["EventBus"] = None


class Trigger:
    """
    Runtime side of a trigger.

    Subclasses produce fire requests (from a timer, a file watcher, an engine
    event or an external call) and hand them to the manager through
    :meth:`emit`. State transitions and deduplication belong to the manager.
    """

    type_name = "manual"

    def __init__(self, spec: TriggerSpec):
        self.spec = spec
        self.trigger_id = spec.trigger_id
        self.workflow_id = spec.workflow_id
        self.config = spec.config
        self._fire: Optional[FireCallback] = None
        self._paused = threading.Event()

    @classmethod
    def validate_config(cls, config: Dict[str, Any]) -> List[str]:
        return []

    def register(self, fire: FireCallback) -> None:
        self._fire = fire
        self.start()

    def unregister(self) -> None:
        self.stop()
        self._fire = None

    def pause(self) -> None:
        self._paused.set()

    def resume(self) -> None:
        self._paused.clear()

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    def get_status(self) -> Dict[str, Any]:
        return {
            "type": self.type_name,
            "registered": self._fire is not None,
            "paused": self.paused,
            "next_fire_at": self.next_fire_at(),
        }

    def next_fire_at(self) -> Optional[float]:
        return None

    def dedup_content(self, payload: Dict[str, Any]) -> str:
        """The type-specific part of the dedup key."""
        return canonical_hash(payload)

    def start(self) -> None:
        """Begin producing fire requests (no-op for externally invoked triggers)."""

    def stop(self) -> None:
        """Stop producing fire requests."""

    def emit(self, payload: Dict[str, Any]) -> Optional[str]:
        """Hand a fire request to the manager. Returns the run id, if one was created."""
        if self._fire is None or self.paused:
            return None
        return self._fire(self.trigger_id, payload, content=self.dedup_content(payload))

    def _safe_emit(self, payload: Dict[str, Any]) -> Optional[str]:
        # Background trigger threads must survive a failing fire
        try:
            return self.emit(payload)
        except Exception as e:
            log_and_ignore(e, f"Trigger {self.trigger_id} failed to fire", logger_instance=logger)
            return None


class ManualTrigger(Trigger):
    """Fired only through ``TriggerManager.fire`` (CLI, API)."""

    type_name = "manual"


class WebhookTrigger(Trigger):
    """Fired by an HTTP front end; the optional token is checked before firing."""

    type_name = "webhook"

    def deliver(self, payload: Dict[str, Any], token: Optional[str] = None) -> Optional[str]:
        expected = self.config.get("token")
        if expected is not None and token != expected:
            logger.warning(f"Webhook {self.trigger_id} rejected a delivery with a bad token")
            return None
        return self.emit(payload)


# Trigger classes are factories themselves; plugins may register any callable of this shape
TriggerFactory = Callable[[TriggerSpec], Trigger]

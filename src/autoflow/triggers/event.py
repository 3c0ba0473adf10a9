"""Trigger driven by the engine's own events (chained workflows)."""

import logging
from typing import Any, Callable, Dict, List, Optional

from ..core.events import ALL_EVENTS, RUN_COMPLETED, EngineEvent
from .base import Trigger, TriggerSpec

logger = logging.getLogger(__name__)


class EventTrigger(Trigger):
    """
    Fires when the engine emits a matching event.

    Config: ``events`` (default ``["run:completed"]``), optional
    ``source_workflow`` to listen to a single upstream workflow, optional
    ``status``. Events from the trigger's own workflow are ignored unless
    ``allow_self`` is set. The dedup content is the event id.
    """

    type_name = "event"

    def __init__(self, spec: TriggerSpec):
        super().__init__(spec)
        self.event_types = list(spec.config.get("events") or [RUN_COMPLETED])
        self.source_workflow = spec.config.get("source_workflow", spec.config.get("sourceWorkflow"))
        self.status = spec.config.get("status")
        self.allow_self = bool(spec.config.get("allow_self", False))
        self._bus = spec.events
        self._unsubscribers: List[Callable[[], None]] = []

    @classmethod
    def validate_config(cls, config: Dict[str, Any]) -> List[str]:
        return [
            f"unknown engine event '{event}'"
            for event in config.get("events") or ()
            if event not in ALL_EVENTS
        ]

    def dedup_content(self, payload: Dict[str, Any]) -> str:
        return str(payload.get("id"))

    def matches(self, event: EngineEvent) -> bool:
        if event.type not in self.event_types:
            return False
        if event.workflow_id == self.workflow_id and not self.allow_self:
            return False
        if self.source_workflow is not None and event.workflow_id != self.source_workflow:
            return False
        if self.status is not None and event.status != self.status:
            return False
        return True

    def start(self) -> None:
        if self._bus is None:
            logger.warning(f"Event trigger {self.trigger_id} has no event bus; it will never fire")
            return
        if self._unsubscribers:
            return
        for event_type in self.event_types:
            self._unsubscribers.append(self._bus.subscribe(event_type, self._on_event))

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def _on_event(self, event: EngineEvent) -> Optional[str]:
        if not self.matches(event):
            return None
        return self._safe_emit(event.model_dump(mode="json"))

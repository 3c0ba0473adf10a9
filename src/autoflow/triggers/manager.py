"""Trigger manager: trigger state machine, dedup and fire serialization."""

import hashlib
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from ..core.events import EventBus
from ..core.models import TriggerEvent, TriggerRecord, TriggerState, TriggerStatus
from ..errors import ConcurrencyLimitError, EngineError, TriggerNotFoundError
from ..storage.trigger_store import TriggerStore
from .base import ManualTrigger, Trigger, TriggerFactory, TriggerSpec, WebhookTrigger, canonical_hash
from .event import EventTrigger
from .file_watch import FileWatchTrigger
from .schedule import ScheduleTrigger

if TYPE_CHECKING:
    from ..core.config import TriggersConfig
    from ..workflow.definition import TriggerDefinition

logger = logging.getLogger(__name__)

# Receives every accepted event; returns the created run id (or None if skipped)
TriggerEventHandler = Callable[[TriggerEvent], Optional[str]]

BUILTIN_TRIGGER_TYPES: Dict[str, TriggerFactory] = {
    "manual": ManualTrigger,
    "webhook": WebhookTrigger,
    "schedule": ScheduleTrigger,
    "file_watch": FileWatchTrigger,
    "event": EventTrigger,
}


def make_dedup_key(trigger_type: str, trigger_id: str, content: str) -> str:
    """sha256 of ``type|trigger_id|content``."""
    return hashlib.sha256(f"{trigger_type}|{trigger_id}|{content}".encode("utf-8")).hexdigest()


class TriggerManager:
    """
    Owns trigger records and the runtime trigger instances.

    State machine per trigger::

        active <-> paused          (pause / resume)
        active -> error            (error_threshold consecutive failures)
        error  -> active           (manual resume only)

    Every trigger type funnels into :meth:`fire`, which dedups against the
    event log and hands accepted events to the engine. Fires are serialized
    so accepted events reach the engine in fire-time order.
    """

    def __init__(
        self,
        store: TriggerStore,
        settings: "TriggersConfig",
        events: Optional[EventBus] = None,
        handler: Optional[TriggerEventHandler] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings
        self.events = events
        self.handler = handler
        self._clock = clock
        self._factories: Dict[str, TriggerFactory] = dict(BUILTIN_TRIGGER_TYPES)
        self._runtime: Dict[str, Trigger] = {}
        self._fire_lock = threading.Lock()
        self._lock = threading.RLock()
        self._started = False

    # Trigger types

    def register_type(self, type_name: str, factory: TriggerFactory, replace: bool = False) -> None:
        with self._lock:
            if type_name in self._factories and not replace:
                raise ValueError(f"Trigger type '{type_name}' already registered")
            self._factories[type_name] = factory
        logger.debug(f"Registered trigger type '{type_name}'")

    def unregister_type(self, type_name: str) -> None:
        with self._lock:
            if type_name in BUILTIN_TRIGGER_TYPES:
                self._factories[type_name] = BUILTIN_TRIGGER_TYPES[type_name]
            else:
                self._factories.pop(type_name, None)

    def types(self) -> List[str]:
        with self._lock:
            return sorted(self._factories)

    def validate(self, definition: "TriggerDefinition") -> List[str]:
        """Save-time check of a workflow's trigger definition."""
        with self._lock:
            factory = self._factories.get(definition.type)
        if factory is None:
            return [f"trigger: unknown trigger type '{definition.type}'"]
        validate = getattr(factory, "validate_config", None)
        if validate is None:
            return []
        return [f"trigger: {msg}" for msg in validate(definition.config)]

    # Registration

    @staticmethod
    def trigger_id_for(workflow_id: str) -> str:
        return workflow_id

    def register(self, workflow_id: str, definition: "TriggerDefinition") -> TriggerRecord:
        """Create or update the trigger of a workflow; (re)starts it when the manager runs."""
        trigger_id = self.trigger_id_for(workflow_id)
        with self._lock:
            self._stop_runtime(trigger_id)
            is_new = True
            try:
                self.store.get(trigger_id)
                is_new = False
            except TriggerNotFoundError:
                pass
            self.store.upsert(TriggerRecord(
                id=trigger_id,
                workflow_id=workflow_id,
                type=definition.type,
                config=definition.config,
                state=TriggerState.ACTIVE if definition.enabled else TriggerState.PAUSED,
                created_at=self._clock(),
            ))
            if not is_new and not definition.enabled:
                self.store.set_state(trigger_id, TriggerState.PAUSED)
            record = self.store.get(trigger_id)
            if self._started:
                self._start_runtime(record)
        logger.info(f"Trigger {trigger_id} ({record.type}) registered, state {record.state.value}")
        return record

    def unregister(self, workflow_id: str) -> bool:
        trigger_id = self.trigger_id_for(workflow_id)
        with self._lock:
            self._stop_runtime(trigger_id)
            removed = self.store.delete(trigger_id)
        if removed:
            logger.info(f"Trigger {trigger_id} unregistered")
        return removed

    def _start_runtime(self, record: TriggerRecord) -> Optional[Trigger]:
        factory = self._factories.get(record.type)
        if factory is None:
            logger.error(f"Trigger {record.id}: no factory for type '{record.type}'")
            return None
        trigger = factory(TriggerSpec(
            trigger_id=record.id,
            workflow_id=record.workflow_id,
            type=record.type,
            config=record.config,
            settings=self.settings,
            events=self.events,
        ))
        if record.state != TriggerState.ACTIVE:
            trigger.pause()
        trigger.register(self.fire)
        self._runtime[record.id] = trigger
        self.store.set_next_fire(record.id, trigger.next_fire_at())
        return trigger

    def _stop_runtime(self, trigger_id: str) -> None:
        trigger = self._runtime.pop(trigger_id, None)
        if trigger is not None:
            trigger.unregister()

    def runtime(self, trigger_id: str) -> Optional[Trigger]:
        with self._lock:
            return self._runtime.get(trigger_id)

    def start(self) -> None:
        """Start runtime triggers for every stored record."""
        with self._lock:
            if self._started:
                return
            self._started = True
            records = self.store.list()
            for record in records:
                self._start_runtime(record)
        logger.info(f"Trigger manager started with {len(records)} trigger(s)")

    def stop(self) -> None:
        with self._lock:
            self._started = False
            for trigger_id in list(self._runtime):
                self._stop_runtime(trigger_id)
        logger.info("Trigger manager stopped")

    # Firing

    def dedup_key(
        self,
        record: TriggerRecord,
        payload: Dict[str, Any],
        content: Optional[str] = None,
    ) -> str:
        if content is None:
            trigger = self._runtime.get(record.id)
            content = trigger.dedup_content(payload) if trigger is not None else canonical_hash(payload)
        return make_dedup_key(record.type, record.id, content)

    def fire(
        self,
        trigger_id: str,
        payload: Optional[Dict[str, Any]] = None,
        dedup_key: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Optional[str]:
        """
        Fire a trigger.

        Returns the run id created by the engine, or None when the trigger is
        not active, the event is a duplicate within the dedup window, the
        workflow is at its concurrency cap (counted as a drop), or the engine
        declined it (entry conditions, failure).

        Raises:
            TriggerNotFoundError: unknown trigger id
        """
        payload = dict(payload or {})
        with self._fire_lock:
            record = self.store.get(trigger_id)
            if record.state != TriggerState.ACTIVE:
                logger.info(f"Trigger {trigger_id} is {record.state.value}; fire ignored")
                return None

            event = TriggerEvent(
                id=uuid.uuid4().hex,
                trigger_id=trigger_id,
                workflow_id=record.workflow_id,
                dedup_key=dedup_key or self.dedup_key(record, payload, content),
                payload=payload,
                fired_at=self._clock(),
            )
            if not self.store.accept_event(event, self.settings.dedup_window_seconds):
                logger.debug(f"Trigger {trigger_id}: duplicate event dropped")
                return None

            trigger = self._runtime.get(trigger_id)
            if trigger is not None:
                self.store.set_next_fire(trigger_id, trigger.next_fire_at())
            if self.handler is None:
                return None

            try:
                run_id = self.handler(event)
            except ConcurrencyLimitError as e:
                # A drop; consecutive_failures is left as it was
                logger.warning(f"Trigger {trigger_id}: run rejected, {e}")
                self.store.record_drop(trigger_id)
                return None
            except EngineError as e:
                self._record_failure(trigger_id, str(e))
                return None
            except Exception as e:
                self._record_failure(trigger_id, f"{type(e).__name__}: {e}")
                raise
            self.store.record_success(trigger_id)
            return run_id

    def _record_failure(self, trigger_id: str, error: str) -> None:
        state = self.store.record_failure(trigger_id, error, self.settings.error_threshold)
        if state == TriggerState.ERROR:
            logger.error(f"Trigger {trigger_id} entered error state: {error}")
            trigger = self._runtime.get(trigger_id)
            if trigger is not None:
                trigger.pause()
        else:
            logger.warning(f"Trigger {trigger_id} fire failed: {error}")

    # State transitions

    def pause(self, trigger_id: str) -> TriggerStatus:
        with self._lock:
            record = self.store.get(trigger_id)
            if record.state == TriggerState.ACTIVE:
                self.store.set_state(trigger_id, TriggerState.PAUSED)
                trigger = self._runtime.get(trigger_id)
                if trigger is not None:
                    trigger.pause()
                logger.info(f"Trigger {trigger_id} paused")
            elif record.state == TriggerState.ERROR:
                logger.warning(f"Trigger {trigger_id} is in error; resume it instead of pausing")
            return self.get_status(trigger_id)

    def resume(self, trigger_id: str) -> TriggerStatus:
        """paused/error -> active (clears the failure counter)."""
        with self._lock:
            record = self.store.get(trigger_id)
            if record.state != TriggerState.ACTIVE:
                self.store.set_state(trigger_id, TriggerState.ACTIVE, reset_failures=True)
                trigger = self._runtime.get(trigger_id)
                if trigger is not None:
                    trigger.resume()
                elif self._started:
                    self._start_runtime(self.store.get(trigger_id))
                logger.info(f"Trigger {trigger_id} resumed from {record.state.value}")
            return self.get_status(trigger_id)

    def get_status(self, trigger_id: str) -> TriggerStatus:
        record = self.store.get(trigger_id)
        trigger = self._runtime.get(trigger_id)
        return TriggerStatus.from_record(
            record, next_fire_at=trigger.next_fire_at() if trigger is not None else None
        )

    def list_status(self) -> List[TriggerStatus]:
        return [
            TriggerStatus.from_record(
                record,
                next_fire_at=self._runtime[record.id].next_fire_at() if record.id in self._runtime else None,
            )
            for record in self.store.list()
        ]

    def recent_events(self, trigger_id: str, limit: int = 50) -> List[TriggerEvent]:
        """Accepted events for ``trigger_id``, newest first.

        Raises:
            TriggerNotFoundError: unknown trigger id
        """
        self.store.get(trigger_id)
        return self.store.list_events(trigger_id, limit)

    def prune_events(self) -> int:
        """Drop event log entries that are past the dedup window."""
        return self.store.prune_events(self._clock() - self.settings.dedup_window_seconds)

"""Engine events emitted for runs and nodes.

Events are consumed by UIs and by the ``event`` trigger type, so one
workflow's completion can start another.
"""

import logging
import threading
import uuid
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from ..utils.error_handling import log_and_ignore

logger = logging.getLogger(__name__)

RUN_STARTED = "run:started"
RUN_COMPLETED = "run:completed"
RUN_FAILED = "run:failed"
RUN_CANCELLED = "run:cancelled"
NODE_STARTED = "node:started"
NODE_COMPLETED = "node:completed"
ENGINE_ERROR = "engine:error"

ALL_EVENTS = (
    RUN_STARTED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_CANCELLED,
    NODE_STARTED,
    NODE_COMPLETED,
    ENGINE_ERROR,
)

WILDCARD = "*"


class EngineEvent(BaseModel):
    """Event payload for the event stream."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: str
    run_id: Optional[str] = None
    workflow_id: Optional[str] = None
    node_id: Optional[str] = None
    status: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    output: Any = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None


EventHandler = Callable[[EngineEvent], None]


class EventBus:
    """Synchronous in-process publish/subscribe.

    Handlers run on the emitting thread; a failing handler is logged and never
    breaks the emitter or other handlers.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def emit(self, event: EngineEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.type, [])) + list(
                self._handlers.get(WILDCARD, [])
            )
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                log_and_ignore(e, f"Event handler failed for {event.type}", logger_instance=logger)

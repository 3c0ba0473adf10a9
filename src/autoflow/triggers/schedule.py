"""Interval schedule trigger."""

import logging
import threading
import time
from typing import Any, Dict, List, Optional

from .base import Trigger, TriggerSpec

logger = logging.getLogger(__name__)

UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3_600,
    "days": 86_400,
}


def interval_seconds(config: Dict[str, Any]) -> float:
    """Interval from ``interval_seconds`` or ``interval_value`` + ``interval_unit``.

    Raises:
        ValueError: missing, unknown unit or non-positive interval
    """
    seconds = config.get("interval_seconds", config.get("intervalSeconds"))
    if seconds is None:
        value = config.get("interval_value", config.get("intervalValue"))
        unit = config.get("interval_unit", config.get("intervalUnit", "minutes"))
        if value is None:
            raise ValueError("schedule needs interval_seconds or interval_value")
        if unit not in UNIT_SECONDS:
            raise ValueError(f"unknown interval unit '{unit}' (expected one of {', '.join(UNIT_SECONDS)})")
        seconds = float(value) * UNIT_SECONDS[unit]
    seconds = float(seconds)
    if seconds <= 0:
        raise ValueError(f"schedule interval must be positive, got {seconds}")
    return seconds


class ScheduleTrigger(Trigger):
    """
    Fires every ``interval`` seconds on a timer thread.

    Missed ticks (process suspended, slow fire) are skipped, not replayed.
    The dedup content is the tick bucket, so two fires for the same tick
    collapse into one run.
    """

    type_name = "schedule"

    def __init__(self, spec: TriggerSpec):
        super().__init__(spec)
        self.interval = interval_seconds(spec.config)
        self.tick = spec.settings.schedule_tick if spec.settings is not None else 1.0
        self._next_fire: Optional[float] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def validate_config(cls, config: Dict[str, Any]) -> List[str]:
        try:
            interval_seconds(config)
        except (TypeError, ValueError) as e:
            return [str(e)]
        return []

    def next_fire_at(self) -> Optional[float]:
        return self._next_fire

    def dedup_content(self, payload: Dict[str, Any]) -> str:
        scheduled_at = float(payload.get("scheduled_at", time.time()))
        return str(int(scheduled_at // self.interval))

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._next_fire = time.time() + self.interval
        self._thread = threading.Thread(
            target=self._loop, name=f"schedule-{self.trigger_id}", daemon=True
        )
        self._thread.start()
        logger.debug(f"Schedule {self.trigger_id} every {self.interval:.0f}s")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.tick * 2)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(min(self.tick, max(0.0, self._next_fire - time.time()))):
            current = time.time()
            if current < self._next_fire:
                continue
            scheduled_at = self._next_fire
            while self._next_fire <= current:
                self._next_fire += self.interval
            if not self.paused:
                self._safe_emit({"scheduled_at": scheduled_at})

"""Trigger runtime state and the trigger event (dedup) log."""

import logging
import sqlite3
from typing import List, Optional

from ..core.models import TriggerEvent, TriggerRecord, TriggerState
from ..errors import TriggerNotFoundError
from .database import Database, dumps, loads

logger = logging.getLogger(__name__)


def _row_to_record(row: sqlite3.Row) -> TriggerRecord:
    return TriggerRecord(
        id=row["id"],
        workflow_id=row["workflow_id"],
        type=row["type"],
        config=loads(row["config_json"], {}),
        state=TriggerState(row["state"]),
        last_fired_at=row["last_fired_at"],
        next_fire_at=row["next_fire_at"],
        fire_count=row["fire_count"],
        dropped_count=row["dropped_count"],
        consecutive_failures=row["consecutive_failures"],
        last_error=row["last_error"],
        created_at=row["created_at"],
    )


def _row_to_event(row: sqlite3.Row) -> TriggerEvent:
    return TriggerEvent(
        id=row["id"],
        trigger_id=row["trigger_id"],
        workflow_id=row["workflow_id"],
        dedup_key=row["dedup_key"],
        payload=loads(row["payload_json"], {}),
        fired_at=row["fired_at"],
    )


class TriggerStore:
    def __init__(self, db: Database):
        self.db = db

    def upsert(self, record: TriggerRecord) -> None:
        """Create the trigger, or update type/config of an existing one (state is kept)."""
        self.db.execute(
            """
            INSERT INTO triggers (id, workflow_id, type, config_json, state, last_fired_at,
                                  next_fire_at, fire_count, dropped_count, consecutive_failures,
                                  last_error, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                type = excluded.type,
                config_json = excluded.config_json
            """,
            (
                record.id,
                record.workflow_id,
                record.type,
                dumps(record.config),
                record.state.value,
                record.last_fired_at,
                record.next_fire_at,
                record.fire_count,
                record.dropped_count,
                record.consecutive_failures,
                record.last_error,
                record.created_at,
            ),
        )

    def get(self, trigger_id: str) -> TriggerRecord:
        row = self.db.fetchone("SELECT * FROM triggers WHERE id = ?", (trigger_id,))
        if row is None:
            raise TriggerNotFoundError(f"Trigger '{trigger_id}' not found")
        return _row_to_record(row)

    def list(self) -> List[TriggerRecord]:
        return [_row_to_record(r) for r in self.db.fetchall("SELECT * FROM triggers ORDER BY id")]

    def delete(self, trigger_id: str) -> bool:
        cursor = self.db.execute("DELETE FROM triggers WHERE id = ?", (trigger_id,))
        return cursor.rowcount > 0

    def set_state(self, trigger_id: str, state: TriggerState, reset_failures: bool = False) -> None:
        if reset_failures:
            self.db.execute(
                "UPDATE triggers SET state = ?, consecutive_failures = 0, last_error = NULL WHERE id = ?",
                (state.value, trigger_id),
            )
        else:
            self.db.execute("UPDATE triggers SET state = ? WHERE id = ?", (state.value, trigger_id))

    def set_next_fire(self, trigger_id: str, next_fire_at: Optional[float]) -> None:
        self.db.execute(
            "UPDATE triggers SET next_fire_at = ? WHERE id = ?", (next_fire_at, trigger_id)
        )

    def record_success(self, trigger_id: str) -> None:
        self.db.execute(
            "UPDATE triggers SET consecutive_failures = 0 WHERE id = ? AND consecutive_failures > 0",
            (trigger_id,),
        )

    def record_drop(self, trigger_id: str) -> None:
        self.db.execute(
            "UPDATE triggers SET dropped_count = dropped_count + 1 WHERE id = ?", (trigger_id,)
        )

    def record_failure(self, trigger_id: str, error: str, error_threshold: int) -> TriggerState:
        """Count a failure; the trigger enters ``error`` once the threshold is reached."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT state, consecutive_failures FROM triggers WHERE id = ?", (trigger_id,)
            ).fetchone()
            if row is None:
                raise TriggerNotFoundError(f"Trigger '{trigger_id}' not found")
            failures = int(row["consecutive_failures"]) + 1
            state = TriggerState(row["state"])
            if failures >= error_threshold:
                state = TriggerState.ERROR
            conn.execute(
                """
                UPDATE triggers SET consecutive_failures = ?, last_error = ?, state = ?
                WHERE id = ?
                """,
                (failures, error, state.value, trigger_id),
            )
        return state

    def accept_event(self, event: TriggerEvent, window_seconds: float) -> bool:
        """Record ``event`` unless the same dedup key was accepted within the window.

        The check and the insert share one transaction. Returns False (and
        counts the drop) for a duplicate.
        """
        with self.db.transaction() as conn:
            duplicate = conn.execute(
                "SELECT 1 FROM trigger_events WHERE dedup_key = ? AND fired_at > ? LIMIT 1",
                (event.dedup_key, event.fired_at - window_seconds),
            ).fetchone()
            if duplicate is not None:
                conn.execute(
                    "UPDATE triggers SET dropped_count = dropped_count + 1 WHERE id = ?",
                    (event.trigger_id,),
                )
                return False
            conn.execute(
                """
                INSERT INTO trigger_events (id, trigger_id, workflow_id, dedup_key, payload_json, fired_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.trigger_id,
                    event.workflow_id,
                    event.dedup_key,
                    dumps(event.payload),
                    event.fired_at,
                ),
            )
            conn.execute(
                """
                UPDATE triggers SET fire_count = fire_count + 1, last_fired_at = ?
                WHERE id = ?
                """,
                (event.fired_at, event.trigger_id),
            )
        return True

    def list_events(self, trigger_id: str, limit: int = 50) -> List[TriggerEvent]:
        rows = self.db.fetchall(
            "SELECT * FROM trigger_events WHERE trigger_id = ? ORDER BY fired_at DESC LIMIT ?",
            (trigger_id, limit),
        )
        return [_row_to_event(r) for r in rows]

    def prune_events(self, older_than: float) -> int:
        """Delete dedup entries older than ``older_than`` (epoch seconds)."""
        cursor = self.db.execute("DELETE FROM trigger_events WHERE fired_at < ?", (older_than,))
        if cursor.rowcount:
            logger.debug(f"Pruned {cursor.rowcount} trigger events")
        return cursor.rowcount

"""Versioned workflow definitions."""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from ..core.models import WorkflowVersion, now
from ..errors import WorkflowNotFoundError
from .database import Database, dumps, loads

logger = logging.getLogger(__name__)


def _row_to_version(row: sqlite3.Row) -> WorkflowVersion:
    return WorkflowVersion(
        workflow_id=row["workflow_id"],
        version=row["version"],
        definition=loads(row["definition_json"], {}),
        schema_version=row["schema_version"],
        created_at=row["created_at"],
    )


class WorkflowStore:
    """Every save appends a new immutable version; the workflow row points at the latest."""

    def __init__(self, db: Database):
        self.db = db

    def save_version(
        self,
        workflow_id: str,
        name: str,
        definition: Dict[str, Any],
        schema_version: int,
    ) -> WorkflowVersion:
        with self.db.transaction() as conn:
            ts = now()
            row = conn.execute(
                "SELECT COALESCE(MAX(version), 0) FROM workflow_versions WHERE workflow_id = ?",
                (workflow_id,),
            ).fetchone()
            version = int(row[0]) + 1
            conn.execute(
                """
                INSERT INTO workflows (id, name, current_version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    current_version = excluded.current_version,
                    updated_at = excluded.updated_at
                """,
                (workflow_id, name, version, ts, ts),
            )
            conn.execute(
                """
                INSERT INTO workflow_versions (workflow_id, version, definition_json, schema_version, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (workflow_id, version, dumps(definition), schema_version, ts),
            )
        logger.info(f"Saved workflow {workflow_id} v{version}")
        return WorkflowVersion(
            workflow_id=workflow_id,
            version=version,
            definition=definition,
            schema_version=schema_version,
            created_at=ts,
        )

    def exists(self, workflow_id: str) -> bool:
        return self.db.fetchone("SELECT 1 FROM workflows WHERE id = ?", (workflow_id,)) is not None

    def current_version(self, workflow_id: str) -> int:
        row = self.db.fetchone("SELECT current_version FROM workflows WHERE id = ?", (workflow_id,))
        if row is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")
        return int(row["current_version"])

    def get(self, workflow_id: str, version: Optional[int] = None) -> WorkflowVersion:
        """Fetch a specific version, or the current one."""
        if version is None:
            version = self.current_version(workflow_id)
        row = self.db.fetchone(
            "SELECT * FROM workflow_versions WHERE workflow_id = ? AND version = ?",
            (workflow_id, version),
        )
        if row is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' v{version} not found")
        return _row_to_version(row)

    def versions(self, workflow_id: str) -> List[int]:
        rows = self.db.fetchall(
            "SELECT version FROM workflow_versions WHERE workflow_id = ? ORDER BY version",
            (workflow_id,),
        )
        return [int(r["version"]) for r in rows]

    def list(self) -> List[WorkflowVersion]:
        """Current version of every workflow, ordered by id."""
        rows = self.db.fetchall(
            """
            SELECT v.* FROM workflows w
            JOIN workflow_versions v ON v.workflow_id = w.id AND v.version = w.current_version
            ORDER BY w.id
            """
        )
        return [_row_to_version(r) for r in rows]

    def delete(self, workflow_id: str) -> bool:
        """Remove the workflow; versions, triggers, events, runs, node runs and jobs cascade."""
        cursor = self.db.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
        return cursor.rowcount > 0

"""Embedded SQLite store: connections, schema migrations and transactions.

Every thread gets its own connection. Connections run in autocommit mode;
multi-statement work goes through :meth:`Database.transaction`, which opens
``BEGIN IMMEDIATE`` so the write lock is taken up front and concurrent
claimers serialize on it instead of failing with a busy error mid-way.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional

logger = logging.getLogger(__name__)


def _migration_1_initial(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS workflows (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL DEFAULT '',
            current_version INTEGER NOT NULL,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS workflow_versions (
            workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
            version INTEGER NOT NULL,
            definition_json TEXT NOT NULL,
            schema_version INTEGER NOT NULL,
            created_at REAL NOT NULL,
            PRIMARY KEY (workflow_id, version)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS triggers (
            id TEXT PRIMARY KEY,
            workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
            type TEXT NOT NULL,
            config_json TEXT NOT NULL DEFAULT '{}',
            state TEXT NOT NULL DEFAULT 'active',
            last_fired_at REAL,
            next_fire_at REAL,
            fire_count INTEGER NOT NULL DEFAULT 0,
            dropped_count INTEGER NOT NULL DEFAULT 0,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            created_at REAL NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS trigger_events (
            id TEXT PRIMARY KEY,
            trigger_id TEXT NOT NULL,
            workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
            dedup_key TEXT NOT NULL,
            payload_json TEXT NOT NULL DEFAULT '{}',
            fired_at REAL NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_trigger_events_dedup ON trigger_events(dedup_key, fired_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS runs (
            id TEXT PRIMARY KEY,
            workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
            workflow_version INTEGER NOT NULL,
            status TEXT NOT NULL,
            trigger_event_id TEXT,
            context_json TEXT NOT NULL DEFAULT '{}',
            error TEXT,
            error_category TEXT,
            cancel_requested INTEGER NOT NULL DEFAULT 0,
            created_at REAL NOT NULL,
            started_at REAL,
            finished_at REAL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_workflow_status ON runs(workflow_id, status)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS node_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
            node_id TEXT NOT NULL,
            attempt INTEGER NOT NULL,
            status TEXT NOT NULL,
            input_json TEXT,
            output_json TEXT,
            error TEXT,
            error_category TEXT,
            started_at REAL NOT NULL,
            finished_at REAL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_node_runs_run ON node_runs(run_id, node_id)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
            priority INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL,
            next_retry_at REAL,
            locked_by TEXT,
            locked_at REAL,
            last_error TEXT,
            error_history_json TEXT NOT NULL DEFAULT '[]',
            resolution TEXT,
            resolved_at REAL,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, priority DESC, created_at)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_run ON jobs(run_id)")


MIGRATIONS = [
    _migration_1_initial,
]


def dumps(value: Any) -> str:
    """JSON-encode a column value; non-JSON types fall back to str()."""
    return json.dumps(value, default=str, sort_keys=True)


def loads(value: Optional[str], default: Any = None) -> Any:
    if value is None:
        return default
    return json.loads(value)


class Database:
    """Thread-local SQLite connections over a single database file."""

    def __init__(self, path: Path, busy_timeout_ms: int = 5000):
        if str(path) == ":memory:":
            # Each thread would see its own private in-memory database
            raise ValueError("Database requires a file path; ':memory:' is not shared across threads")
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._initialized = False

    def initialize(self) -> None:
        """Create the file, enable WAL and apply pending migrations."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.connection()
        conn.execute("PRAGMA journal_mode=WAL")
        with self.transaction() as tx:
            self._apply_migrations(tx)
        self._initialized = True
        logger.debug(f"Database ready at {self.path}")

    def _apply_migrations(self, conn: sqlite3.Connection) -> None:
        current_version = int(conn.execute("PRAGMA user_version").fetchone()[0])
        if current_version > len(MIGRATIONS):
            raise RuntimeError(
                f"Database {self.path} is at schema version {current_version}, "
                f"newer than this engine supports ({len(MIGRATIONS)})"
            )
        while current_version < len(MIGRATIONS):
            MIGRATIONS[current_version](conn)
            current_version += 1
            conn.execute(f"PRAGMA user_version = {current_version}")
            logger.info(f"Applied store migration {current_version}")

    @property
    def schema_version(self) -> int:
        return int(self.connection().execute("PRAGMA user_version").fetchone()[0])

    def connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
            self._local.depth = 0
            with self._lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside ``BEGIN IMMEDIATE``; nested calls join the outer transaction."""
        conn = self.connection()
        if self._local.depth > 0:
            self._local.depth += 1
            try:
                yield conn
            finally:
                self._local.depth -= 1
            return

        conn.execute("BEGIN IMMEDIATE")
        self._local.depth = 1
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            self._local.depth = 0

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        return self.connection().execute(sql, params)

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        return self.connection().execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        return self.connection().execute(sql, params).fetchall()

    def close(self) -> None:
        """Close every connection opened by any thread."""
        with self._lock:
            connections = list(self._connections)
            self._connections.clear()
        for conn in connections:
            conn.close()
        self._local = threading.local()

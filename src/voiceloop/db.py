"""SQLite persistence for the feedback loop.

Every operation opens its own connection so request threads never share
one. Writers go through ``Database.transaction()``, which takes SQLite's
write lock up front (``BEGIN IMMEDIATE``); that is the only critical
section in the package and it is never held across an LLM call.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS feedback_events (
    id TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    rewrite_id INTEGER,
    voice_id INTEGER,
    text TEXT NOT NULL,
    sentiment TEXT NOT NULL CHECK (sentiment IN ('positive', 'negative')),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS evolution_runs (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL CHECK (status IN ('running', 'completed', 'failed', 'abandoned')),
    base_version_id TEXT,
    result_version_id TEXT,
    candidate_ids_json TEXT NOT NULL DEFAULT '[]',
    error TEXT,
    started_at TEXT NOT NULL,
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS refined_candidates (
    id TEXT PRIMARY KEY,
    source_feedback_id TEXT NOT NULL UNIQUE,
    refined_text TEXT NOT NULL,
    quality_score INTEGER NOT NULL CHECK (quality_score BETWEEN 0 AND 100),
    status TEXT NOT NULL CHECK (status IN ('pending', 'rejected', 'implemented')),
    rejection_reason TEXT,
    is_incorporated INTEGER NOT NULL DEFAULT 0,
    claimed_by_run TEXT,
    implemented_version_id TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (source_feedback_id) REFERENCES feedback_events(id),
    FOREIGN KEY (claimed_by_run) REFERENCES evolution_runs(id)
);

CREATE TABLE IF NOT EXISTS system_prompt_versions (
    id TEXT PRIMARY KEY,
    version_number INTEGER NOT NULL UNIQUE,
    content TEXT NOT NULL,
    instruction_list_json TEXT NOT NULL DEFAULT '[]',
    fingerprint TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    source TEXT NOT NULL CHECK (source IN ('bootstrap', 'evolution', 'manual')),
    parent_version_id TEXT,
    source_run_id TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS voice_learned_rules (
    voice_id INTEGER NOT NULL,
    rule_text TEXT NOT NULL,
    position INTEGER NOT NULL,
    source_feedback_id TEXT,
    created_at TEXT NOT NULL,
    PRIMARY KEY (voice_id, rule_text)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_prompt_versions_single_active
    ON system_prompt_versions(is_active) WHERE is_active = 1;
CREATE UNIQUE INDEX IF NOT EXISTS idx_evolution_runs_single_running
    ON evolution_runs(status) WHERE status = 'running';
CREATE INDEX IF NOT EXISTS idx_candidates_status_created
    ON refined_candidates(status, created_at);
CREATE INDEX IF NOT EXISTS idx_voice_rules_position
    ON voice_learned_rules(voice_id, position);
"""


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_db_time(value: datetime) -> str:
    return value.isoformat()


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class Database:
    """Connection factory and transaction boundary for one SQLite file.

    Args:
        path: Path to the SQLite database file. ``:memory:`` is rejected
            because each operation opens a fresh connection.
        busy_timeout_seconds: How long a writer waits for the write lock.

    Example::

        db = Database("state_store/voiceloop.sqlite3")
        db.initialize_schema()
        with db.transaction() as conn:
            conn.execute("UPDATE ...")
    """

    def __init__(self, path: str | Path, *, busy_timeout_seconds: float = 30.0) -> None:
        if str(path) == ":memory:":
            raise ValueError("Database requires a file path; ':memory:' is not shared across connections")
        self.path = Path(path)
        self.busy_timeout_seconds = busy_timeout_seconds
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield an autocommit connection for reads."""
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside ``BEGIN IMMEDIATE``; commit on success, roll back on error."""
        conn = self._open()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def initialize_schema(self) -> None:
        """Create all tables and indexes if they don't exist."""
        conn = self._open()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA_SQL)
        finally:
            conn.close()
        logger.info("Database schema ready at %s", self.path)

    def health_check(self) -> bool:
        """Return True when every required table exists."""
        required = {
            "feedback_events",
            "refined_candidates",
            "system_prompt_versions",
            "evolution_runs",
            "voice_learned_rules",
        }
        with self.connect() as conn:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        return required <= {row["name"] for row in rows}

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager

from .canonical import prompt_fingerprint
from .db import Database, from_db_time, to_db_time, utcnow
from .models import PromptContext, PromptSource, SystemPromptVersion, new_id
from .prompts import DEFAULT_INSTRUCTION_LIST, DEFAULT_SYSTEM_INSTRUCTION

logger = logging.getLogger(__name__)


def _row_to_version(row: sqlite3.Row) -> SystemPromptVersion:
    return SystemPromptVersion(
        id=row["id"],
        version_number=int(row["version_number"]),
        content=row["content"],
        instruction_list=list(json.loads(row["instruction_list_json"])),
        is_active=bool(row["is_active"]),
        source=PromptSource(row["source"]),
        fingerprint=row["fingerprint"],
        created_at=from_db_time(row["created_at"]),
        parent_version_id=row["parent_version_id"],
        source_run_id=row["source_run_id"],
    )


class PromptVersionStore:
    """Append-only history of system prompts with exactly one active row.

    ``create_version`` is the only code path that touches ``is_active``. It
    deactivates the current row and inserts the new active one inside a
    single ``BEGIN IMMEDIATE`` transaction, and the partial unique index on
    ``is_active`` rejects any second active row outright, so readers see
    either the old version or the new one.
    """

    def __init__(
        self,
        db: Database,
        *,
        default_content: str = DEFAULT_SYSTEM_INSTRUCTION,
        default_instructions: Sequence[str] = DEFAULT_INSTRUCTION_LIST,
    ) -> None:
        self.db = db
        self.default_content = default_content
        self.default_instructions = list(default_instructions)

    @contextmanager
    def _writer(self, connection: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if connection is not None:
            yield connection
            return
        with self.db.transaction() as conn:
            yield conn

    def default_context(self) -> PromptContext:
        return PromptContext(content=self.default_content, instruction_list=list(self.default_instructions))

    def get_active(self) -> SystemPromptVersion | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM system_prompt_versions WHERE is_active = 1").fetchone()
        return _row_to_version(row) if row is not None else None

    def get_active_context(self) -> PromptContext:
        """Return the active prompt, or the compiled-in default before bootstrap."""
        active = self.get_active()
        if active is None:
            return self.default_context()
        return PromptContext(
            content=active.content,
            instruction_list=list(active.instruction_list),
            version_id=active.id,
            version_number=active.version_number,
        )

    def get_version(self, version_id: str) -> SystemPromptVersion | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM system_prompt_versions WHERE id = ?", (version_id,)).fetchone()
        return _row_to_version(row) if row is not None else None

    def create_version(
        self,
        content: str,
        instruction_list: Sequence[str],
        *,
        source: PromptSource = PromptSource.MANUAL,
        parent_version_id: str | None = None,
        source_run_id: str | None = None,
        connection: sqlite3.Connection | None = None,
    ) -> SystemPromptVersion:
        """Insert a new active version and deactivate the previous one atomically.

        Args:
            content: Free-text system instruction.
            instruction_list: Ordered atomic rules.
            source: Where the version came from.
            parent_version_id: Defaults to whichever version is active at commit time.
            source_run_id: Evolution run that produced this version, if any.
            connection: A connection already inside ``Database.transaction()``.
                When given, the write joins that transaction instead of opening one.

        Raises:
            ValueError: If content is empty.
        """
        content = content.strip()
        if not content:
            raise ValueError("system prompt content must be non-empty")
        rules = [item.strip() for item in instruction_list if item.strip()]
        fingerprint = prompt_fingerprint(content, rules)

        with self._writer(connection) as conn:
            previous = conn.execute("SELECT id FROM system_prompt_versions WHERE is_active = 1").fetchone()
            if parent_version_id is None and previous is not None:
                parent_version_id = previous["id"]
            next_number = conn.execute(
                "SELECT COALESCE(MAX(version_number), 0) + 1 FROM system_prompt_versions"
            ).fetchone()[0]
            version = SystemPromptVersion(
                id=new_id("SPV"),
                version_number=int(next_number),
                content=content,
                instruction_list=rules,
                is_active=True,
                source=source,
                fingerprint=fingerprint,
                created_at=utcnow(),
                parent_version_id=parent_version_id,
                source_run_id=source_run_id,
            )
            conn.execute("UPDATE system_prompt_versions SET is_active = 0 WHERE is_active = 1")
            conn.execute(
                """
                INSERT INTO system_prompt_versions (
                    id, version_number, content, instruction_list_json, fingerprint,
                    is_active, source, parent_version_id, source_run_id, created_at
                ) VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
                """,
                (
                    version.id,
                    version.version_number,
                    version.content,
                    json.dumps(version.instruction_list),
                    version.fingerprint,
                    version.source.value,
                    version.parent_version_id,
                    version.source_run_id,
                    to_db_time(version.created_at),
                ),
            )
        logger.info(
            "Activated system prompt %s (v%d, source=%s, rules=%d)",
            version.id,
            version.version_number,
            version.source.value,
            len(version.instruction_list),
        )
        return version

    def bootstrap(self) -> SystemPromptVersion:
        """Seed the default prompt if nothing is active yet; return the active version."""
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM system_prompt_versions WHERE is_active = 1").fetchone()
            if row is not None:
                return _row_to_version(row)
            version = self.create_version(
                self.default_content,
                self.default_instructions,
                source=PromptSource.BOOTSTRAP,
                connection=conn,
            )
        logger.info("Seeded bootstrap system prompt %s", version.id)
        return version

    def list_versions(self, limit: int | None = None) -> list[SystemPromptVersion]:
        """Return versions newest first.

        Args:
            limit: Maximum number of versions to return; all of them when None.
        """
        query = "SELECT * FROM system_prompt_versions ORDER BY version_number DESC"
        params: tuple[int, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self.db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_version(row) for row in rows]

    def count(self) -> int:
        with self.db.connect() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM system_prompt_versions").fetchone()[0])

    def count_active(self) -> int:
        with self.db.connect() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM system_prompt_versions WHERE is_active = 1").fetchone()[0])

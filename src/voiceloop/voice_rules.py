"""Per-voice learned rules: the low-latency personalization loop.

Rules are appended, never edited or reordered. Set-add semantics live in
the schema (primary key ``(voice_id, rule_text)`` plus ``INSERT OR IGNORE``)
so concurrent submissions for the same voice cannot lose an update or
write a duplicate.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager

from .db import Database, to_db_time, utcnow
from .llm import StructuredOutputAdapter
from .models import BrandVoice, FeedbackEvent, Rewrite, RuleExtraction
from .prompts import RULE_EXTRACTION_SYSTEM_INSTRUCTION, build_rule_extraction_prompt

logger = logging.getLogger(__name__)


class VoiceRuleStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    @contextmanager
    def _writer(self, connection: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if connection is not None:
            yield connection
            return
        with self.db.transaction() as conn:
            yield conn

    def list_rules(self, voice_id: int) -> list[str]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT rule_text FROM voice_learned_rules WHERE voice_id = ? ORDER BY position ASC",
                (voice_id,),
            ).fetchall()
        return [row["rule_text"] for row in rows]

    def append(
        self,
        voice_id: int,
        rule: str,
        *,
        source_feedback_id: str | None = None,
        connection: sqlite3.Connection | None = None,
    ) -> bool:
        """Append ``rule`` to the voice's list unless the exact text is already there.

        Returns:
            True if the rule was added, False if it was already present.

        Raises:
            ValueError: If the rule is empty after stripping.
        """
        text = rule.strip()
        if not text:
            raise ValueError("learned rule must be non-empty")
        with self._writer(connection) as conn:
            added = conn.execute(
                """
                INSERT OR IGNORE INTO voice_learned_rules (voice_id, rule_text, position, source_feedback_id, created_at)
                VALUES (
                    ?, ?,
                    (SELECT COALESCE(MAX(position), 0) + 1 FROM voice_learned_rules WHERE voice_id = ?),
                    ?, ?
                )
                """,
                (voice_id, text, voice_id, source_feedback_id, to_db_time(utcnow())),
            ).rowcount
        if added:
            logger.info("Voice %d learned rule from %s", voice_id, source_feedback_id)
        else:
            logger.debug("Voice %d already follows rule; append skipped", voice_id)
        return bool(added)


class VoiceRuleUpdater:
    """Rule-extraction pass for negative feedback on a voice-linked generation.

    ``extract`` only calls the LLM. The caller appends the rule through
    ``store`` in the same transaction as the rest of the submission.
    """

    def __init__(self, adapter: StructuredOutputAdapter[RuleExtraction], store: VoiceRuleStore) -> None:
        self.adapter = adapter
        self.store = store

    def extract(self, event: FeedbackEvent, voice: BrandVoice, generation: Rewrite | None) -> RuleExtraction:
        prompt = build_rule_extraction_prompt(event, voice, generation, self.store.list_rules(voice.id))
        extraction = self.adapter.invoke(prompt, system_instruction=RULE_EXTRACTION_SYSTEM_INSTRUCTION)
        if not extraction.is_valid:
            logger.info("Rule extraction declined feedback %s: %s", event.id, extraction.reason)
        return extraction

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from .db import Database, from_db_time, to_db_time, utcnow
from .errors import EvolutionConflictError
from .models import (
    CandidateStatus,
    ClaimedBatch,
    EvolutionRun,
    FeedbackEvent,
    RefinedCandidate,
    RunStatus,
    Sentiment,
    new_id,
)

logger = logging.getLogger(__name__)


def _row_to_event(row: sqlite3.Row) -> FeedbackEvent:
    return FeedbackEvent(
        id=row["id"],
        user_id=int(row["user_id"]),
        text=row["text"],
        sentiment=Sentiment(row["sentiment"]),
        created_at=from_db_time(row["created_at"]),
        rewrite_id=row["rewrite_id"],
        voice_id=row["voice_id"],
    )


def _row_to_candidate(row: sqlite3.Row) -> RefinedCandidate:
    return RefinedCandidate(
        id=row["id"],
        source_feedback_id=row["source_feedback_id"],
        refined_text=row["refined_text"],
        quality_score=int(row["quality_score"]),
        status=CandidateStatus(row["status"]),
        created_at=from_db_time(row["created_at"]),
        rejection_reason=row["rejection_reason"],
        is_incorporated=bool(row["is_incorporated"]),
        implemented_version_id=row["implemented_version_id"],
    )


def _row_to_run(row: sqlite3.Row) -> EvolutionRun:
    return EvolutionRun(
        id=row["id"],
        status=RunStatus(row["status"]),
        candidate_ids=list(json.loads(row["candidate_ids_json"])),
        started_at=from_db_time(row["started_at"]),
        base_version_id=row["base_version_id"],
        result_version_id=row["result_version_id"],
        error=row["error"],
        finished_at=from_db_time(row["finished_at"]),
    )


@dataclass(frozen=True)
class ClaimAttempt:
    """Outcome of ``FeedbackStore.claim_batch``; ``batch`` is None when nothing was claimed."""

    batch: ClaimedBatch | None
    reason: str
    pending_count: int = 0
    contended: bool = False


class FeedbackStore:
    """Feedback events, refined candidates and the evolution run ledger.

    Candidates move ``pending -> implemented`` only through
    ``mark_implemented``, which is scoped to the ids an evolution run
    claimed. Rejected candidates are written once and never touched again.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    @contextmanager
    def _writer(self, connection: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if connection is not None:
            yield connection
            return
        with self.db.transaction() as conn:
            yield conn

    # -- Feedback events ---------------------------------------------------

    def record_event(
        self,
        *,
        user_id: int,
        text: str,
        sentiment: Sentiment,
        rewrite_id: int | None = None,
        voice_id: int | None = None,
        connection: sqlite3.Connection | None = None,
    ) -> FeedbackEvent:
        """Append a raw feedback event. Events are never updated or deleted.

        Args:
            user_id: Submitting user.
            text: Trimmed feedback text, stored verbatim.
            sentiment: Positive or negative.
            rewrite_id: Rewrite the feedback is about, if any.
            voice_id: Brand voice resolved from the rewrite, if any.
            connection: Open transaction to write in; a new one is opened when omitted.

        Returns:
            The stored event with its generated ``FB-`` id.
        """
        event = FeedbackEvent(
            id=new_id("FB"),
            user_id=user_id,
            text=text,
            sentiment=sentiment,
            created_at=utcnow(),
            rewrite_id=rewrite_id,
            voice_id=voice_id,
        )
        with self._writer(connection) as conn:
            conn.execute(
                """
                INSERT INTO feedback_events (id, user_id, rewrite_id, voice_id, text, sentiment, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.user_id,
                    event.rewrite_id,
                    event.voice_id,
                    event.text,
                    event.sentiment.value,
                    to_db_time(event.created_at),
                ),
            )
        logger.info(
            "Recorded feedback %s (user=%d, sentiment=%s, rewrite=%s)",
            event.id,
            event.user_id,
            event.sentiment.value,
            event.rewrite_id,
        )
        return event

    def get_event(self, feedback_id: str) -> FeedbackEvent | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM feedback_events WHERE id = ?", (feedback_id,)).fetchone()
        return _row_to_event(row) if row is not None else None

    # -- Refined candidates ------------------------------------------------

    def insert_candidate(
        self,
        candidate: RefinedCandidate,
        *,
        connection: sqlite3.Connection | None = None,
    ) -> RefinedCandidate:
        """Persist a judged candidate, pending or rejected.

        Args:
            candidate: The candidate to store; its ``source_feedback_id`` must exist.
            connection: Open transaction to write in; a new one is opened when omitted.

        Raises:
            sqlite3.IntegrityError: If the event already has a candidate.
        """
        with self._writer(connection) as conn:
            conn.execute(
                """
                INSERT INTO refined_candidates (
                    id, source_feedback_id, refined_text, quality_score, status,
                    rejection_reason, is_incorporated, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    candidate.id,
                    candidate.source_feedback_id,
                    candidate.refined_text,
                    candidate.quality_score,
                    candidate.status.value,
                    candidate.rejection_reason,
                    to_db_time(candidate.created_at),
                ),
            )
        if candidate.status == CandidateStatus.REJECTED:
            logger.info(
                "Rejected candidate %s for %s (score=%d, reason=%s)",
                candidate.id,
                candidate.source_feedback_id,
                candidate.quality_score,
                candidate.rejection_reason,
            )
        else:
            logger.info(
                "Queued candidate %s for %s (score=%d)",
                candidate.id,
                candidate.source_feedback_id,
                candidate.quality_score,
            )
        return candidate

    def get_candidate(self, candidate_id: str) -> RefinedCandidate | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM refined_candidates WHERE id = ?", (candidate_id,)).fetchone()
        return _row_to_candidate(row) if row is not None else None

    def get_candidate_for_event(self, feedback_id: str) -> RefinedCandidate | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM refined_candidates WHERE source_feedback_id = ?",
                (feedback_id,),
            ).fetchone()
        return _row_to_candidate(row) if row is not None else None

    def list_candidates(self, status: CandidateStatus | None = None) -> list[RefinedCandidate]:
        """Return candidates oldest first, optionally filtered by status."""
        query = "SELECT * FROM refined_candidates"
        params: tuple[str, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY created_at ASC, rowid ASC"
        with self.db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_candidate(row) for row in rows]

    def list_pending(self) -> list[RefinedCandidate]:
        return self.list_candidates(CandidateStatus.PENDING)

    def count_pending(self) -> int:
        with self.db.connect() as conn:
            return int(
                conn.execute(
                    "SELECT COUNT(*) FROM refined_candidates WHERE status = ?",
                    (CandidateStatus.PENDING.value,),
                ).fetchone()[0]
            )

    # -- Evolution runs ----------------------------------------------------

    def _abandon_stale_runs(self, conn: sqlite3.Connection, claim_ttl_seconds: int) -> None:
        cutoff = to_db_time(utcnow() - timedelta(seconds=claim_ttl_seconds))
        stale = conn.execute(
            "SELECT id FROM evolution_runs WHERE status = ? AND started_at < ?",
            (RunStatus.RUNNING.value, cutoff),
        ).fetchall()
        for row in stale:
            self._finish_unsuccessful(conn, row["id"], RunStatus.ABANDONED, "claim expired")
            logger.warning("Abandoned stale evolution run %s; its candidates are pending again", row["id"])

    @staticmethod
    def _finish_unsuccessful(conn: sqlite3.Connection, run_id: str, status: RunStatus, error: str) -> bool:
        updated = conn.execute(
            """
            UPDATE evolution_runs SET status = ?, error = ?, finished_at = ?
            WHERE id = ? AND status = ?
            """,
            (status.value, error, to_db_time(utcnow()), run_id, RunStatus.RUNNING.value),
        ).rowcount
        conn.execute(
            "UPDATE refined_candidates SET claimed_by_run = NULL WHERE claimed_by_run = ? AND status = ?",
            (run_id, CandidateStatus.PENDING.value),
        )
        return updated == 1

    def claim_batch(
        self,
        *,
        threshold: int,
        max_batch_size: int,
        claim_ttl_seconds: int,
    ) -> ClaimAttempt:
        """Atomically claim the oldest unclaimed pending candidates for one evolution run.

        Runs older than ``claim_ttl_seconds`` are abandoned first, so a crashed
        process cannot hold the batch forever.

        Args:
            threshold: Minimum number of pending candidates needed to start a run.
            max_batch_size: Most candidates one run may take; the rest wait.
            claim_ttl_seconds: Age after which a running run counts as abandoned.

        Returns:
            A ``ClaimAttempt``. Its ``batch`` is None when another run is in
            flight (``contended`` is set) or fewer than ``threshold``
            candidates are waiting.
        """
        with self.db.transaction() as conn:
            self._abandon_stale_runs(conn, claim_ttl_seconds)
            in_flight = conn.execute(
                "SELECT id FROM evolution_runs WHERE status = ?",
                (RunStatus.RUNNING.value,),
            ).fetchone()
            if in_flight is not None:
                return ClaimAttempt(batch=None, reason=f"evolution {in_flight['id']} already in flight", contended=True)

            rows = conn.execute(
                """
                SELECT * FROM refined_candidates
                WHERE status = ? AND claimed_by_run IS NULL
                ORDER BY created_at ASC, rowid ASC
                """,
                (CandidateStatus.PENDING.value,),
            ).fetchall()
            if len(rows) < threshold:
                return ClaimAttempt(
                    batch=None,
                    reason=f"{len(rows)} of {threshold} candidates pending",
                    pending_count=len(rows),
                )

            candidates = [_row_to_candidate(row) for row in rows[:max_batch_size]]
            active = conn.execute("SELECT id FROM system_prompt_versions WHERE is_active = 1").fetchone()
            batch = ClaimedBatch(run_id=new_id("EVO"), candidates=candidates, started_at=utcnow())
            conn.execute(
                """
                INSERT INTO evolution_runs (id, status, base_version_id, candidate_ids_json, started_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    batch.run_id,
                    RunStatus.RUNNING.value,
                    active["id"] if active is not None else None,
                    json.dumps(batch.candidate_ids),
                    to_db_time(batch.started_at),
                ),
            )
            conn.executemany(
                "UPDATE refined_candidates SET claimed_by_run = ? WHERE id = ?",
                [(batch.run_id, candidate_id) for candidate_id in batch.candidate_ids],
            )
        logger.info("Evolution run %s claimed %d candidates", batch.run_id, len(candidates))
        return ClaimAttempt(batch=batch, reason="claimed", pending_count=len(rows))

    def release_claim(self, run_id: str, error: str) -> bool:
        """Mark a running run failed and return its candidates to the pending pool.

        Returns:
            False if the run was no longer running, e.g. already abandoned.
        """
        with self.db.transaction() as conn:
            released = self._finish_unsuccessful(conn, run_id, RunStatus.FAILED, error)
        if released:
            logger.info("Released claim of evolution run %s: %s", run_id, error)
        return released

    def assert_run_running(self, conn: sqlite3.Connection, run_id: str) -> None:
        row = conn.execute("SELECT status FROM evolution_runs WHERE id = ?", (run_id,)).fetchone()
        if row is None or row["status"] != RunStatus.RUNNING.value:
            status = row["status"] if row is not None else "missing"
            raise EvolutionConflictError(f"evolution run {run_id} no longer holds its claim (status={status})")

    def mark_implemented(
        self,
        conn: sqlite3.Connection,
        *,
        run_id: str,
        candidate_ids: Sequence[str],
        version_id: str,
    ) -> None:
        """Mark exactly the claimed snapshot implemented. Must run inside the commit transaction.

        Raises:
            EvolutionConflictError: If any claimed candidate is no longer pending under ``run_id``.
        """
        updated = conn.executemany(
            """
            UPDATE refined_candidates
            SET status = ?, is_incorporated = 1, implemented_version_id = ?
            WHERE id = ? AND status = ? AND claimed_by_run = ?
            """,
            [
                (CandidateStatus.IMPLEMENTED.value, version_id, candidate_id, CandidateStatus.PENDING.value, run_id)
                for candidate_id in candidate_ids
            ],
        ).rowcount
        if updated != len(candidate_ids):
            raise EvolutionConflictError(
                f"evolution run {run_id} expected to implement {len(candidate_ids)} candidates, updated {updated}"
            )

    def complete_run(self, conn: sqlite3.Connection, *, run_id: str, version_id: str) -> None:
        """Raises EvolutionConflictError unless the run is still running."""
        updated = conn.execute(
            """
            UPDATE evolution_runs SET status = ?, result_version_id = ?, finished_at = ?
            WHERE id = ? AND status = ?
            """,
            (RunStatus.COMPLETED.value, version_id, to_db_time(utcnow()), run_id, RunStatus.RUNNING.value),
        ).rowcount
        if updated != 1:
            raise EvolutionConflictError(f"evolution run {run_id} could not be completed")

    def get_run(self, run_id: str) -> EvolutionRun | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM evolution_runs WHERE id = ?", (run_id,)).fetchone()
        return _row_to_run(row) if row is not None else None

    def list_runs(self) -> list[EvolutionRun]:
        with self.db.connect() as conn:
            rows = conn.execute("SELECT * FROM evolution_runs ORDER BY started_at ASC, rowid ASC").fetchall()
        return [_row_to_run(row) for row in rows]

"""Batch evolution: fold accepted candidates into a new system prompt version.

The flow is a LangGraph state machine::

    claim -> route -> synthesize -> commit
                  \\-> skip

``claim`` and ``commit`` are short ``BEGIN IMMEDIATE`` transactions; the
synthesis LLM call between them runs with no lock held. A run owns exactly
the candidates it claimed, so candidates arriving mid-synthesis stay
pending; ``maybe_evolve`` checks the threshold again after every commit so
a batch that filled up while a run was in flight is not left waiting.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import replace
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .db import Database
from .errors import EvolutionConflictError, VoiceLoopError
from .feedback_store import FeedbackStore
from .llm import StructuredOutputAdapter
from .models import ClaimedBatch, EvolutionOutcome, EvolvedPrompt, PromptContext, PromptSource, SystemPromptVersion
from .prompt_store import PromptVersionStore
from .prompts import EVOLUTION_SYSTEM_INSTRUCTION, build_evolution_prompt

logger = logging.getLogger(__name__)


class EvolutionState(TypedDict, total=False):
    trigger: str
    batch: ClaimedBatch | None
    reason: str
    contended: bool
    context: PromptContext
    evolved: EvolvedPrompt
    version: SystemPromptVersion


class BatchEvolutionEngine:
    def __init__(
        self,
        *,
        db: Database,
        feedback_store: FeedbackStore,
        prompt_store: PromptVersionStore,
        adapter: StructuredOutputAdapter[EvolvedPrompt],
        batch_threshold: int = 5,
        max_batch_size: int = 25,
        claim_ttl_seconds: int = 600,
    ) -> None:
        if batch_threshold < 1:
            raise ValueError(f"batch_threshold must be >= 1, got {batch_threshold}")
        self.db = db
        self.feedback_store = feedback_store
        self.prompt_store = prompt_store
        self.adapter = adapter
        self.batch_threshold = batch_threshold
        self.max_batch_size = max(max_batch_size, batch_threshold)
        self.claim_ttl_seconds = claim_ttl_seconds
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(EvolutionState)
        graph.add_node("claim", self._claim)
        graph.add_node("route", self._route)
        graph.add_node("synthesize", self._synthesize)
        graph.add_node("commit", self._commit)
        graph.add_node("skip", self._skip)

        graph.add_edge(START, "claim")
        graph.add_edge("claim", "route")
        graph.add_edge("synthesize", "commit")
        graph.add_edge("commit", END)
        graph.add_edge("skip", END)
        return graph

    def _claim(self, state: EvolutionState) -> dict[str, Any]:
        attempt = self.feedback_store.claim_batch(
            threshold=self.batch_threshold,
            max_batch_size=self.max_batch_size,
            claim_ttl_seconds=self.claim_ttl_seconds,
        )
        return {"batch": attempt.batch, "reason": attempt.reason, "contended": attempt.contended}

    def _route(self, state: EvolutionState) -> Command[str]:
        if state.get("batch") is None:
            return Command(goto="skip")
        return Command(goto="synthesize")

    def _skip(self, state: EvolutionState) -> dict[str, Any]:
        reason = state.get("reason", "")
        if state.get("contended"):
            logger.warning("Evolution trigger (%s) skipped: %s", state.get("trigger", "unknown"), reason)
        else:
            logger.debug("Evolution trigger (%s) skipped: %s", state.get("trigger", "unknown"), reason)
        return {}

    def _synthesize(self, state: EvolutionState) -> dict[str, Any]:
        batch = state["batch"]
        try:
            context = self.prompt_store.get_active_context()
            evolved = self.adapter.invoke(
                build_evolution_prompt(context, batch.candidates),
                system_instruction=EVOLUTION_SYSTEM_INSTRUCTION,
            )
        except Exception as exc:
            self.feedback_store.release_claim(batch.run_id, f"synthesis failed: {exc}")
            raise
        return {"context": context, "evolved": evolved}

    def _commit(self, state: EvolutionState) -> dict[str, Any]:
        batch = state["batch"]
        context = state["context"]
        evolved = state["evolved"]
        try:
            with self.db.transaction() as conn:
                self.feedback_store.assert_run_running(conn, batch.run_id)
                active = conn.execute("SELECT id FROM system_prompt_versions WHERE is_active = 1").fetchone()
                active_id = active["id"] if active is not None else None
                if active_id != context.version_id:
                    logger.warning(
                        "Active prompt changed during evolution run %s (%s -> %s); committing on top",
                        batch.run_id,
                        context.version_id,
                        active_id,
                    )
                version = self.prompt_store.create_version(
                    evolved.content,
                    evolved.instruction_list,
                    source=PromptSource.EVOLUTION,
                    source_run_id=batch.run_id,
                    connection=conn,
                )
                self.feedback_store.mark_implemented(
                    conn,
                    run_id=batch.run_id,
                    candidate_ids=batch.candidate_ids,
                    version_id=version.id,
                )
                self.feedback_store.complete_run(conn, run_id=batch.run_id, version_id=version.id)
        except EvolutionConflictError as exc:
            logger.warning("Evolution run %s lost its claim: %s", batch.run_id, exc)
            self.feedback_store.release_claim(batch.run_id, str(exc))
            raise
        except Exception as exc:
            self.feedback_store.release_claim(batch.run_id, f"commit failed: {exc}")
            raise
        logger.info(
            "Evolution run %s committed %s from %d candidates",
            batch.run_id,
            version.id,
            len(batch.candidates),
        )
        return {"version": version}

    def _run_once(self, trigger: str) -> EvolutionOutcome:
        result = self.graph.invoke({"trigger": trigger})
        batch = result.get("batch")
        version = result.get("version")
        if batch is None or version is None:
            return EvolutionOutcome(evolved=False, reason=result.get("reason", "not evolved"))
        return EvolutionOutcome(
            evolved=True,
            reason="evolved",
            run_id=batch.run_id,
            version=version,
            candidate_ids=batch.candidate_ids,
        )

    def maybe_evolve(self, trigger: str = "manual") -> EvolutionOutcome:
        """Run one evolution check; evolves only when the pending batch meets the threshold.

        Triggers that arrive while a run is in flight are skipped, so after a
        successful commit the threshold is checked again and any batch that
        filled up during synthesis is evolved too. Follow-up versions are
        listed in ``follow_up_version_ids``. A failed follow-up is logged and
        leaves its candidates pending; it does not undo the first commit.

        Args:
            trigger: Label for logs, usually the feedback id that queued the last candidate.

        Returns:
            The outcome of the first run, with any follow-up versions attached.

        Raises:
            UpstreamAIError: If synthesis fails. The claim is released first.
            EvolutionConflictError: If the claim was lost before commit.
            sqlite3.Error: If the commit transaction fails. The claim is released first.
        """
        outcome = self._run_once(trigger)
        if not outcome.evolved:
            return outcome

        follow_ups: list[str] = []
        while True:
            try:
                follow_up = self._run_once(f"{trigger}/recheck")
            except (VoiceLoopError, sqlite3.Error):
                logger.exception("Follow-up evolution after run %s failed; candidates stay pending", outcome.run_id)
                break
            if not follow_up.evolved or follow_up.version is None:
                break
            follow_ups.append(follow_up.version.id)
        if not follow_ups:
            return outcome
        return replace(outcome, follow_up_version_ids=follow_ups)

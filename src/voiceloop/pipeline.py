"""Feedback submission boundary and object wiring.

One submission runs as: validate -> resolve ownership -> record the raw
event -> LLM calls (judge and/or rule extraction) -> one transaction for the
candidate row and the voice-rule append -> batch evolution check. Every LLM
call finishes before anything derived from it is written, so an upstream
failure leaves no candidate, no rule and no prompt change behind.

The evolution check is its own atomic step. Once the feedback is committed
the submission is reported as recorded; a failed evolution is surfaced as
``FeedbackResult.evolution_error`` and its candidates wait for the next
trigger, so callers never resubmit feedback that was already stored.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .collaborators import RewriteDirectory, VoiceDirectory
from .db import Database
from .errors import FeedbackValidationError, NotFoundError, VoiceLoopError
from .evolution import BatchEvolutionEngine
from .feedback_store import FeedbackStore
from .generation import RewriteGenerator
from .judge import RefinementJudge
from .llm import ModelSpec, StructuredOutputAdapter, TextGenerationAdapter, structured_adapter, text_adapter
from .models import (
    BrandVoice,
    CandidateStatus,
    EvolvedPrompt,
    FeedbackResult,
    FeedbackRoute,
    FeedbackSubmission,
    JudgeVerdict,
    PromptContext,
    RefinedCandidate,
    Rewrite,
    RuleExtraction,
)
from .prompt_store import PromptVersionStore
from .prompts import DEFAULT_SYSTEM_INSTRUCTION
from .settings import RuntimeSettings
from .voice_rules import VoiceRuleStore, VoiceRuleUpdater

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Thank you! Your feedback has been recorded."


def _preview(text: str, limit: int = 80) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


class FeedbackPipeline:
    """The operations the rest of the application calls.

    ``submit_feedback`` never raises for pipeline failures: it returns a
    ``FeedbackResult`` with ``ok=False`` and an ``error_code``. ``process``
    is the raising variant for callers that want the exception.
    """

    def __init__(
        self,
        *,
        db: Database,
        feedback_store: FeedbackStore,
        prompt_store: PromptVersionStore,
        judge: RefinementJudge,
        rule_updater: VoiceRuleUpdater,
        evolution: BatchEvolutionEngine,
        voices: VoiceDirectory,
        rewrites: RewriteDirectory,
        route: FeedbackRoute = FeedbackRoute.BOTH,
    ) -> None:
        self.db = db
        self.feedback_store = feedback_store
        self.prompt_store = prompt_store
        self.judge = judge
        self.rule_updater = rule_updater
        self.evolution = evolution
        self.voices = voices
        self.rewrites = rewrites
        self.route = route

    @property
    def voice_rules(self) -> VoiceRuleStore:
        return self.rule_updater.store

    def get_active_prompt_context(self) -> PromptContext:
        return self.prompt_store.get_active_context()

    def get_voice_learned_rules(self, voice_id: int) -> list[str]:
        return self.voice_rules.list_rules(voice_id)

    def submit_feedback(self, payload: Mapping[str, Any] | FeedbackSubmission) -> FeedbackResult:
        try:
            return self.process(payload)
        except (FeedbackValidationError, NotFoundError) as exc:
            logger.warning("Feedback rejected before processing (%s): %s", exc.error_code, exc)
            return FeedbackResult(ok=False, accepted=False, message=str(exc), error_code=exc.error_code)
        except VoiceLoopError as exc:
            logger.exception("Feedback processing failed (%s)", exc.error_code)
            return FeedbackResult(ok=False, accepted=False, message=str(exc), error_code=exc.error_code)

    def process(self, payload: Mapping[str, Any] | FeedbackSubmission) -> FeedbackResult:
        """Run one submission end to end.

        Raises:
            FeedbackValidationError: Malformed payload. Nothing was written.
            NotFoundError: Rewrite or voice missing or owned by someone else. Nothing was written.
            UpstreamAIError: A judge or rule-extraction call failed. Only the raw event was recorded.

        Evolution failures do not raise; they are returned as ``evolution_error``.
        """
        submission = self._validate(payload)
        rewrite, voice = self._resolve(submission)

        event = self.feedback_store.record_event(
            user_id=submission.user_id,
            text=submission.text,
            sentiment=submission.sentiment,
            rewrite_id=submission.rewrite_id,
            voice_id=voice.id if voice is not None else None,
        )
        logger.debug("Processing feedback %s: %s", event.id, _preview(event.text))

        voice_eligible = event.is_negative and voice is not None
        candidate: RefinedCandidate | None = None
        if self.route.includes_global or not voice_eligible:
            candidate = self.judge.refine(event, self.prompt_store.get_active_context(), rewrite)

        voice_rule: str | None = None
        if voice_eligible and self.route.includes_voice:
            if candidate is not None and candidate.status == CandidateStatus.PENDING:
                voice_rule = candidate.refined_text
            else:
                extraction = self.rule_updater.extract(event, voice, rewrite)
                voice_rule = extraction.rule if extraction.is_valid else None

        voice_rule_added = False
        with self.db.transaction() as conn:
            if candidate is not None:
                self.feedback_store.insert_candidate(candidate, connection=conn)
            if voice_rule is not None:
                voice_rule_added = self.voice_rules.append(
                    voice.id,
                    voice_rule,
                    source_feedback_id=event.id,
                    connection=conn,
                )

        evolved_version_id: str | None = None
        evolution_error: str | None = None
        if candidate is not None and candidate.status == CandidateStatus.PENDING:
            try:
                outcome = self.evolution.maybe_evolve(trigger=event.id)
            except VoiceLoopError as exc:
                # The feedback is committed; the candidate stays pending for the next trigger.
                logger.exception("Evolution after feedback %s failed (%s)", event.id, exc.error_code)
                evolution_error = exc.error_code
            except sqlite3.Error:
                logger.exception("Evolution after feedback %s failed (database_error)", event.id)
                evolution_error = "database_error"
            else:
                if outcome.evolved and outcome.version is not None:
                    evolved_version_id = outcome.version.id

        return FeedbackResult(
            ok=True,
            accepted=(candidate is not None and candidate.status == CandidateStatus.PENDING) or voice_rule is not None,
            message=SUCCESS_MESSAGE,
            feedback_id=event.id,
            route=self.route,
            candidate_id=candidate.id if candidate is not None else None,
            candidate_status=candidate.status if candidate is not None else None,
            voice_rule=voice_rule,
            voice_rule_added=voice_rule_added,
            evolved_version_id=evolved_version_id,
            evolution_error=evolution_error,
        )

    @staticmethod
    def _validate(payload: Mapping[str, Any] | FeedbackSubmission) -> FeedbackSubmission:
        if isinstance(payload, FeedbackSubmission):
            return payload
        if not isinstance(payload, Mapping):
            raise FeedbackValidationError(f"feedback payload must be a mapping, got {type(payload).__name__}")
        try:
            return FeedbackSubmission.model_validate(dict(payload))
        except ValidationError as exc:
            errors = [
                {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
                for error in exc.errors()
            ]
            summary = "; ".join(f"{'.'.join(str(part) for part in e['loc']) or 'payload'}: {e['msg']}" for e in errors)
            raise FeedbackValidationError(f"invalid feedback payload: {summary}", errors) from exc

    def _resolve(self, submission: FeedbackSubmission) -> tuple[Rewrite | None, BrandVoice | None]:
        if submission.rewrite_id is None:
            return None, None
        rewrite = self.rewrites.get_rewrite(submission.rewrite_id)
        if rewrite is None or rewrite.user_id != submission.user_id:
            raise NotFoundError(f"rewrite {submission.rewrite_id} not found")
        if rewrite.brand_voice_id is None:
            return rewrite, None
        voice = self.voices.get_voice(rewrite.brand_voice_id)
        if voice is None or voice.user_id != submission.user_id:
            raise NotFoundError(f"brand voice {rewrite.brand_voice_id} not found")
        return rewrite, voice


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class Stores:
    db: Database
    prompts: PromptVersionStore
    feedback: FeedbackStore
    voice_rules: VoiceRuleStore


def open_stores(settings: RuntimeSettings, *, repo_root: Path | None = None) -> Stores:
    """Open the database, create the schema and build every store. Makes no LLM calls.

    Raises:
        RuntimeError: If the schema is still incomplete after initialization.
    """
    root = repo_root if repo_root is not None else Path.cwd()
    db = Database(settings.database_file(root), busy_timeout_seconds=settings.db_busy_timeout_seconds)
    db.initialize_schema()
    if not db.health_check():
        raise RuntimeError(f"database {db.path} is missing required tables")
    default_content = settings.default_instruction_override() or DEFAULT_SYSTEM_INSTRUCTION
    return Stores(
        db=db,
        prompts=PromptVersionStore(db, default_content=default_content),
        feedback=FeedbackStore(db),
        voice_rules=VoiceRuleStore(db),
    )


def build_evolution_engine(
    settings: RuntimeSettings,
    stores: Stores,
    *,
    adapter: StructuredOutputAdapter[EvolvedPrompt] | None = None,
    repo_root: Path | None = None,
) -> BatchEvolutionEngine:
    """Build the batch evolution engine over already opened stores.

    Args:
        settings: Thresholds, batch size and claim TTL come from here.
        stores: Stores returned by ``open_stores``.
        adapter: Synthesis adapter; a live OpenAI model is built when omitted.
        repo_root: Directory holding the optional ``.env`` with OPENAI_API_KEY.

    Raises:
        RuntimeError: If a live model is needed and OPENAI_API_KEY is missing.
    """
    if adapter is None:
        adapter = structured_adapter(ModelSpec.for_role(settings, "evolution"), EvolvedPrompt, repo_root=repo_root)
    return BatchEvolutionEngine(
        db=stores.db,
        feedback_store=stores.feedback,
        prompt_store=stores.prompts,
        adapter=adapter,
        batch_threshold=settings.batch_threshold,
        max_batch_size=settings.max_batch_size,
        claim_ttl_seconds=settings.evolution_claim_ttl_seconds,
    )


def build_pipeline(
    settings: RuntimeSettings,
    *,
    voices: VoiceDirectory,
    rewrites: RewriteDirectory,
    repo_root: Path | None = None,
    judge_adapter: StructuredOutputAdapter[JudgeVerdict] | None = None,
    rule_adapter: StructuredOutputAdapter[RuleExtraction] | None = None,
    evolution_adapter: StructuredOutputAdapter[EvolvedPrompt] | None = None,
) -> FeedbackPipeline:
    """Build a ready pipeline: schema created, bootstrap prompt seeded, live models unless adapters are given."""
    stores = open_stores(settings, repo_root=repo_root)
    stores.prompts.bootstrap()

    if judge_adapter is None:
        judge_adapter = structured_adapter(ModelSpec.for_role(settings, "judge"), JudgeVerdict, repo_root=repo_root)
    if rule_adapter is None:
        rule_adapter = structured_adapter(ModelSpec.for_role(settings, "rules"), RuleExtraction, repo_root=repo_root)

    return FeedbackPipeline(
        db=stores.db,
        feedback_store=stores.feedback,
        prompt_store=stores.prompts,
        judge=RefinementJudge(judge_adapter, acceptance_threshold=settings.acceptance_threshold),
        rule_updater=VoiceRuleUpdater(rule_adapter, stores.voice_rules),
        evolution=build_evolution_engine(settings, stores, adapter=evolution_adapter, repo_root=repo_root),
        voices=voices,
        rewrites=rewrites,
        route=FeedbackRoute(settings.feedback_route),
    )


def build_generator(
    settings: RuntimeSettings,
    stores: Stores,
    *,
    adapter: TextGenerationAdapter | None = None,
    repo_root: Path | None = None,
) -> RewriteGenerator:
    """Build the generation-time reader of the active prompt and per-voice rules."""
    if adapter is None:
        adapter = text_adapter(ModelSpec.for_role(settings, "generation"), repo_root=repo_root)
    return RewriteGenerator(adapter, stores.prompts, stores.voice_rules)

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from voiceloop.db import Database, utcnow
from voiceloop.evolution import BatchEvolutionEngine
from voiceloop.feedback_store import FeedbackStore
from voiceloop.judge import RefinementJudge
from voiceloop.llm import StructuredOutputAdapter
from voiceloop.models import (
    BrandVoice,
    CandidateStatus,
    EvolvedPrompt,
    FeedbackRoute,
    JudgeVerdict,
    RefinedCandidate,
    Rewrite,
    RuleExtraction,
    Sentiment,
    new_id,
)
from voiceloop.pipeline import FeedbackPipeline
from voiceloop.prompt_store import PromptVersionStore
from voiceloop.voice_rules import VoiceRuleStore, VoiceRuleUpdater

_VOICELOOP_ENV = (
    "VOICELOOP_DATABASE_PATH",
    "VOICELOOP_MODEL_JUDGE",
    "VOICELOOP_MODEL_RULES",
    "VOICELOOP_MODEL_EVOLUTION",
    "VOICELOOP_MODEL_GENERATION",
    "VOICELOOP_ACCEPTANCE_THRESHOLD",
    "VOICELOOP_BATCH_THRESHOLD",
    "VOICELOOP_MAX_BATCH_SIZE",
    "VOICELOOP_FEEDBACK_ROUTE",
    "VOICELOOP_LLM_TIMEOUT_SECONDS",
    "VOICELOOP_LLM_MAX_RETRIES",
    "VOICELOOP_EVOLUTION_CLAIM_TTL_SECONDS",
    "VOICELOOP_DB_BUSY_TIMEOUT_SECONDS",
    "VOICELOOP_DEFAULT_INSTRUCTION_FILE",
)


@pytest.fixture(autouse=True)
def _isolated_voiceloop_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer shell settings out of the tests."""
    for name in _VOICELOOP_ENV:
        monkeypatch.delenv(name, raising=False)


class ScriptedRunnable:
    """Stands in for a LangChain runnable: returns queued responses in order.

    A queued exception instance is raised instead of returned. Every input is
    recorded so tests can inspect the prompts that were sent.
    """

    def __init__(self, responses: Iterable[Any] = ()) -> None:
        self.responses = list(responses)
        self.calls: list[Any] = []

    def invoke(self, input: Any) -> Any:  # noqa: A002
        self.calls.append(input)
        if not self.responses:
            raise AssertionError("ScriptedRunnable received an unexpected call")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class FunctionRunnable:
    def __init__(self, fn: Callable[[Any], Any]) -> None:
        self.fn = fn
        self.calls: list[Any] = []

    def invoke(self, input: Any) -> Any:  # noqa: A002
        self.calls.append(input)
        return self.fn(input)


def prompt_text(call: Any) -> str:
    """Flatten a recorded runnable input (str or message list) into one string."""
    if isinstance(call, str):
        return call
    return "\n".join(str(message.content) for message in call)


def verdict(score: int, refined: str = "", reason: str | None = None) -> dict[str, Any]:
    return {"score": score, "refined_content": refined, "rejection_reason": reason}


def extraction(rule: str | None, *, valid: bool = True, reason: str | None = None) -> dict[str, Any]:
    return {"is_valid": valid, "rule": rule, "reason": reason}


def evolved(content: str, instructions: list[str]) -> dict[str, Any]:
    return {"content": content, "instruction_list": instructions}


@dataclass
class InMemoryCatalog:
    """Fake voice and rewrite directories."""

    voices: dict[int, BrandVoice] = field(default_factory=dict)
    rewrites: dict[int, Rewrite] = field(default_factory=dict)

    def get_voice(self, voice_id: int) -> BrandVoice | None:
        return self.voices.get(voice_id)

    def get_rewrite(self, rewrite_id: int) -> Rewrite | None:
        return self.rewrites.get(rewrite_id)


@pytest.fixture
def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "voiceloop.sqlite3")
    database.initialize_schema()
    return database


@pytest.fixture
def prompt_store(db: Database) -> PromptVersionStore:
    return PromptVersionStore(db)


@pytest.fixture
def feedback_store(db: Database) -> FeedbackStore:
    return FeedbackStore(db)


@pytest.fixture
def voice_rule_store(db: Database) -> VoiceRuleStore:
    return VoiceRuleStore(db)


@pytest.fixture
def catalog() -> InMemoryCatalog:
    return InMemoryCatalog(
        voices={
            3: BrandVoice(id=3, user_id=1, name="Friendly", guidelines="casual tone", tone_tags=["casual", "warm"]),
            4: BrandVoice(id=4, user_id=2, name="Other user's voice", guidelines="formal"),
        },
        rewrites={
            10: Rewrite(
                id=10,
                user_id=1,
                brand_voice_id=3,
                original_text="We launched a new feature today.",
                rewritten_text="We launched a new feature today!!! 🚀🔥🎉",
            ),
            11: Rewrite(id=11, user_id=1, brand_voice_id=None, original_text="plain", rewritten_text="plain copy"),
            12: Rewrite(id=12, user_id=2, brand_voice_id=4, original_text="theirs", rewritten_text="their copy"),
            13: Rewrite(id=13, user_id=1, brand_voice_id=99, original_text="orphan", rewritten_text="orphan copy"),
        },
    )


def add_candidate(
    feedback_store: FeedbackStore,
    text: str,
    *,
    score: int = 85,
    status: CandidateStatus = CandidateStatus.PENDING,
) -> RefinedCandidate:
    event = feedback_store.record_event(user_id=1, text=f"feedback: {text}", sentiment=Sentiment.NEGATIVE)
    candidate = RefinedCandidate(
        id=new_id("RC"),
        source_feedback_id=event.id,
        refined_text=text,
        quality_score=score,
        status=status,
        created_at=utcnow(),
        rejection_reason="Low Quality Score" if status == CandidateStatus.REJECTED else None,
    )
    return feedback_store.insert_candidate(candidate)


def make_engine(
    db: Database,
    feedback_store: FeedbackStore,
    prompt_store: PromptVersionStore,
    runnable: Any,
    *,
    batch_threshold: int = 5,
    max_batch_size: int = 25,
    claim_ttl_seconds: int = 600,
) -> BatchEvolutionEngine:
    return BatchEvolutionEngine(
        db=db,
        feedback_store=feedback_store,
        prompt_store=prompt_store,
        adapter=StructuredOutputAdapter(schema=EvolvedPrompt, runnable=runnable),
        batch_threshold=batch_threshold,
        max_batch_size=max_batch_size,
        claim_ttl_seconds=claim_ttl_seconds,
    )


@dataclass
class PipelineHarness:
    pipeline: FeedbackPipeline
    judge: ScriptedRunnable
    rules: ScriptedRunnable
    evolution: Any


@pytest.fixture
def make_pipeline(
    db: Database,
    feedback_store: FeedbackStore,
    prompt_store: PromptVersionStore,
    voice_rule_store: VoiceRuleStore,
    catalog: InMemoryCatalog,
) -> Callable[..., PipelineHarness]:
    def _build(
        *,
        judge: Iterable[Any] = (),
        rules: Iterable[Any] = (),
        evolution: Any = None,
        route: FeedbackRoute = FeedbackRoute.BOTH,
        batch_threshold: int = 5,
    ) -> PipelineHarness:
        prompt_store.bootstrap()
        judge_runnable = ScriptedRunnable(judge)
        rules_runnable = ScriptedRunnable(rules)
        evolution_runnable = evolution if evolution is not None else ScriptedRunnable()
        pipeline = FeedbackPipeline(
            db=db,
            feedback_store=feedback_store,
            prompt_store=prompt_store,
            judge=RefinementJudge(StructuredOutputAdapter(schema=JudgeVerdict, runnable=judge_runnable)),
            rule_updater=VoiceRuleUpdater(
                StructuredOutputAdapter(schema=RuleExtraction, runnable=rules_runnable),
                voice_rule_store,
            ),
            evolution=make_engine(
                db,
                feedback_store,
                prompt_store,
                evolution_runnable,
                batch_threshold=batch_threshold,
            ),
            voices=catalog,
            rewrites=catalog,
            route=route,
        )
        return PipelineHarness(
            pipeline=pipeline,
            judge=judge_runnable,
            rules=rules_runnable,
            evolution=evolution_runnable,
        )

    return _build

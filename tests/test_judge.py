from __future__ import annotations

import pytest

from conftest import ScriptedRunnable, prompt_text, verdict
from voiceloop.db import utcnow
from voiceloop.errors import UpstreamAIError
from voiceloop.judge import DEFAULT_REJECTION_REASON, RefinementJudge
from voiceloop.llm import StructuredOutputAdapter
from voiceloop.models import CandidateStatus, FeedbackEvent, JudgeVerdict, PromptContext, Rewrite, Sentiment

CONTEXT = PromptContext(content="You write social copy.", instruction_list=["Keep it short."], version_id="SPV-base0000")
EVENT = FeedbackEvent(
    id="FB-judge001",
    user_id=1,
    text="Too many emojis, please stop",
    sentiment=Sentiment.NEGATIVE,
    created_at=utcnow(),
    rewrite_id=10,
)
REWRITE = Rewrite(
    id=10,
    user_id=1,
    brand_voice_id=3,
    original_text="We launched a new feature today.",
    rewritten_text="We launched a new feature today!!! 🚀🔥",
)


def _judge(*responses: object, threshold: int = 70) -> tuple[RefinementJudge, ScriptedRunnable]:
    runnable = ScriptedRunnable(responses)
    return RefinementJudge(StructuredOutputAdapter(schema=JudgeVerdict, runnable=runnable), acceptance_threshold=threshold), runnable


def test_high_score_produces_pending_candidate() -> None:
    judge, _ = _judge(verdict(85, "Avoid emoji usage."))
    candidate = judge.refine(EVENT, CONTEXT, REWRITE)
    assert candidate.status == CandidateStatus.PENDING
    assert candidate.refined_text == "Avoid emoji usage."
    assert candidate.quality_score == 85
    assert candidate.rejection_reason is None
    assert candidate.source_feedback_id == EVENT.id
    assert candidate.id.startswith("RC-")


def test_low_score_is_rejected_with_default_reason() -> None:
    judge, _ = _judge(verdict(40, "Be nicer."))
    candidate = judge.refine(EVENT, CONTEXT)
    assert candidate.status == CandidateStatus.REJECTED
    assert candidate.rejection_reason == DEFAULT_REJECTION_REASON


def test_low_score_keeps_judge_reason() -> None:
    judge, _ = _judge(verdict(12, "", "Abusive language"))
    candidate = judge.refine(EVENT, CONTEXT)
    assert candidate.status == CandidateStatus.REJECTED
    assert candidate.rejection_reason == "Abusive language"
    assert candidate.refined_text == ""


@pytest.mark.parametrize(("score", "expected"), [(70, CandidateStatus.PENDING), (69, CandidateStatus.REJECTED)])
def test_threshold_boundary(score: int, expected: CandidateStatus) -> None:
    judge, _ = _judge(verdict(score, "Use fewer exclamation marks."))
    assert judge.refine(EVENT, CONTEXT).status == expected


def test_configurable_threshold() -> None:
    judge, _ = _judge(verdict(75, "Use fewer exclamation marks."), threshold=80)
    assert judge.refine(EVENT, CONTEXT).status == CandidateStatus.REJECTED


def test_accepted_verdict_without_instruction_fails_closed() -> None:
    judge, _ = _judge(verdict(90, "   "))
    with pytest.raises(UpstreamAIError, match="no instruction"):
        judge.refine(EVENT, CONTEXT)


def test_transport_error_is_upstream_failure() -> None:
    judge, _ = _judge(TimeoutError("read timed out"))
    with pytest.raises(UpstreamAIError, match="timed out"):
        judge.refine(EVENT, CONTEXT)


def test_unparseable_output_is_upstream_failure() -> None:
    judge, _ = _judge({"raw": "not json", "parsed": None, "parsing_error": ValueError("Expecting value")})
    with pytest.raises(UpstreamAIError):
        judge.refine(EVENT, CONTEXT)


def test_prompt_carries_constitution_generation_and_current_rules() -> None:
    judge, runnable = _judge(verdict(85, "Avoid emoji usage."))
    judge.refine(EVENT, CONTEXT, REWRITE)
    sent = prompt_text(runnable.calls[0])
    assert "Constitution:" in sent
    assert "Professionalism" in sent
    assert REWRITE.rewritten_text in sent
    assert REWRITE.original_text in sent
    assert "1. Keep it short." in sent
    assert "Feedback sentiment: negative" in sent


def test_threshold_out_of_range_is_rejected() -> None:
    with pytest.raises(ValueError):
        RefinementJudge(StructuredOutputAdapter(schema=JudgeVerdict, runnable=ScriptedRunnable()), acceptance_threshold=101)

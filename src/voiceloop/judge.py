from __future__ import annotations

import logging

from .db import utcnow
from .errors import UpstreamAIError
from .llm import StructuredOutputAdapter
from .models import CandidateStatus, FeedbackEvent, JudgeVerdict, PromptContext, RefinedCandidate, Rewrite, new_id
from .prompts import JUDGE_SYSTEM_INSTRUCTION, build_judge_prompt

logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REASON = "Low Quality Score"


class RefinementJudge:
    """Scores one feedback event and distills it into a candidate instruction.

    The judge never writes: ``refine`` returns an unsaved candidate so the
    caller can persist it together with any other effects of the same
    submission, after every LLM call has succeeded.
    """

    def __init__(self, adapter: StructuredOutputAdapter[JudgeVerdict], *, acceptance_threshold: int = 70) -> None:
        if not 0 <= acceptance_threshold <= 100:
            raise ValueError(f"acceptance_threshold must be within 0..100, got {acceptance_threshold}")
        self.adapter = adapter
        self.acceptance_threshold = acceptance_threshold

    def refine(
        self,
        event: FeedbackEvent,
        context: PromptContext,
        generation: Rewrite | None = None,
    ) -> RefinedCandidate:
        """Return a pending candidate when the score meets the threshold, else a rejected one.

        Raises:
            UpstreamAIError: If the call fails, the output fails its schema, or an
                accepted verdict carries no instruction text.
        """
        verdict = self.adapter.invoke(
            build_judge_prompt(event, context, generation),
            system_instruction=JUDGE_SYSTEM_INSTRUCTION,
        )
        accepted = verdict.score >= self.acceptance_threshold
        if accepted and not verdict.refined_content:
            raise UpstreamAIError(f"judge accepted feedback {event.id} with score {verdict.score} but returned no instruction")

        if accepted:
            status = CandidateStatus.PENDING
            reason = None
        else:
            status = CandidateStatus.REJECTED
            reason = (verdict.rejection_reason or "").strip() or DEFAULT_REJECTION_REASON
        logger.debug("Judge scored feedback %s at %d (threshold %d)", event.id, verdict.score, self.acceptance_threshold)
        return RefinedCandidate(
            id=new_id("RC"),
            source_feedback_id=event.id,
            refined_text=verdict.refined_content,
            quality_score=verdict.score,
            status=status,
            created_at=utcnow(),
            rejection_reason=reason,
        )

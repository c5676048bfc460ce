from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_FEEDBACK_CHARS = 4_000


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


class CandidateStatus(str, Enum):
    PENDING = "pending"
    REJECTED = "rejected"
    IMPLEMENTED = "implemented"


class FeedbackRoute(str, Enum):
    """Which improvement loop a feedback event feeds."""

    PER_VOICE = "per_voice"
    GLOBAL = "global"
    BOTH = "both"

    @property
    def includes_voice(self) -> bool:
        return self in {FeedbackRoute.PER_VOICE, FeedbackRoute.BOTH}

    @property
    def includes_global(self) -> bool:
        return self in {FeedbackRoute.GLOBAL, FeedbackRoute.BOTH}


class PromptSource(str, Enum):
    BOOTSTRAP = "bootstrap"
    EVOLUTION = "evolution"
    MANUAL = "manual"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


# ---------------------------------------------------------------------------
# Collaborator records (owned outside this package, read-only here)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BrandVoice:
    id: int
    user_id: int
    name: str
    guidelines: str
    tone_tags: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Rewrite:
    """A persisted generation the user may comment on."""

    id: int
    user_id: int
    brand_voice_id: int | None
    original_text: str
    rewritten_text: str


# ---------------------------------------------------------------------------
# Records owned by the evolution pipeline
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeedbackEvent:
    """Raw user feedback. Immutable once recorded."""

    id: str
    user_id: int
    text: str
    sentiment: Sentiment
    created_at: datetime
    rewrite_id: int | None = None
    voice_id: int | None = None

    @property
    def is_negative(self) -> bool:
        return self.sentiment == Sentiment.NEGATIVE


@dataclass(frozen=True)
class RefinedCandidate:
    """A scored, distilled instruction derived from exactly one FeedbackEvent."""

    id: str
    source_feedback_id: str
    refined_text: str
    quality_score: int
    status: CandidateStatus
    created_at: datetime
    rejection_reason: str | None = None
    is_incorporated: bool = False
    implemented_version_id: str | None = None


@dataclass(frozen=True)
class SystemPromptVersion:
    id: str
    version_number: int
    content: str
    instruction_list: list[str]
    is_active: bool
    source: PromptSource
    fingerprint: str
    created_at: datetime
    parent_version_id: str | None = None
    source_run_id: str | None = None


@dataclass(frozen=True)
class PromptContext:
    """What generation reads: the active prompt content and its rules.

    ``version_id`` is None when no version has been persisted yet and the
    compiled-in default is being served.
    """

    content: str
    instruction_list: list[str]
    version_id: str | None = None
    version_number: int | None = None

    def render(self) -> str:
        if not self.instruction_list:
            return self.content
        numbered = "\n".join(f"{idx}. {rule}" for idx, rule in enumerate(self.instruction_list, start=1))
        return f"{self.content}\n\nRules:\n{numbered}"


@dataclass(frozen=True)
class ClaimedBatch:
    """Snapshot of the pending candidates one evolution run owns."""

    run_id: str
    candidates: list[RefinedCandidate]
    started_at: datetime

    @property
    def candidate_ids(self) -> list[str]:
        return [candidate.id for candidate in self.candidates]


@dataclass(frozen=True)
class EvolutionRun:
    id: str
    status: RunStatus
    candidate_ids: list[str]
    started_at: datetime
    base_version_id: str | None = None
    result_version_id: str | None = None
    error: str | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class EvolutionOutcome:
    evolved: bool
    reason: str
    run_id: str | None = None
    version: SystemPromptVersion | None = None
    candidate_ids: list[str] = field(default_factory=list)
    follow_up_version_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FeedbackResult:
    """Result of ``FeedbackPipeline.submit_feedback``.

    ``ok`` is False only for processing failures. A candidate the judge
    rejected is still ``ok`` (with ``accepted`` False). ``evolution_error``
    carries the error code of a failed batch evolution that ran after the
    feedback was committed; the submission itself is still ``ok``.
    """

    ok: bool
    accepted: bool
    message: str
    feedback_id: str | None = None
    route: FeedbackRoute | None = None
    candidate_id: str | None = None
    candidate_status: CandidateStatus | None = None
    voice_rule: str | None = None
    voice_rule_added: bool = False
    evolved_version_id: str | None = None
    evolution_error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "accepted": self.accepted,
            "message": self.message,
            "feedback_id": self.feedback_id,
            "route": self.route.value if self.route else None,
            "candidate_id": self.candidate_id,
            "candidate_status": self.candidate_status.value if self.candidate_status else None,
            "voice_rule": self.voice_rule,
            "voice_rule_added": self.voice_rule_added,
            "evolved_version_id": self.evolved_version_id,
            "evolution_error": self.evolution_error,
            "error_code": self.error_code,
        }


# ---------------------------------------------------------------------------
# Inbound payload
# ---------------------------------------------------------------------------


class FeedbackSubmission(BaseModel):
    """Validated feedback payload.

    The camelCase wire names (``userId``, ``feedback``, ``rewriteId``) are
    accepted as aliases, and a boolean ``isPositive`` is mapped onto
    ``sentiment``. One of the two is required: older clients treated
    ``isPositive`` as optional, but a payload with no sentiment at all is
    rejected as a validation error rather than guessed.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    user_id: int = Field(gt=0, validation_alias=AliasChoices("user_id", "userId"))
    text: str = Field(validation_alias=AliasChoices("text", "feedback"))
    sentiment: Sentiment
    rewrite_id: int | None = Field(default=None, gt=0, validation_alias=AliasChoices("rewrite_id", "rewriteId"))

    @model_validator(mode="before")
    @classmethod
    def _map_is_positive(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = dict(data)
        for key in ("isPositive", "is_positive"):
            if key in payload:
                flag = payload.pop(key)
                if not isinstance(flag, bool):
                    raise ValueError(f"{key} must be a boolean")
                payload.setdefault("sentiment", Sentiment.POSITIVE if flag else Sentiment.NEGATIVE)
        return payload

    @field_validator("text")
    @classmethod
    def _validate_text(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("feedback text must be non-empty")
        if len(trimmed) > MAX_FEEDBACK_CHARS:
            raise ValueError(f"feedback text must be at most {MAX_FEEDBACK_CHARS} characters")
        return trimmed


# ---------------------------------------------------------------------------
# Structured LLM outputs (fail closed: extra keys and bad values are errors)
# ---------------------------------------------------------------------------


class JudgeVerdict(BaseModel):
    model_config = ConfigDict(extra="forbid")

    score: int
    refined_content: str
    rejection_reason: str | None

    @field_validator("score")
    @classmethod
    def _score_in_range(cls, value: int) -> int:
        if not 0 <= value <= 100:
            raise ValueError(f"score must be within 0..100, got {value}")
        return value

    @field_validator("refined_content")
    @classmethod
    def _strip_content(cls, value: str) -> str:
        return value.strip()


class RuleExtraction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_valid: bool
    rule: str | None
    reason: str | None

    @model_validator(mode="after")
    def _valid_rule_has_text(self) -> "RuleExtraction":
        if self.rule is not None:
            self.rule = self.rule.strip() or None
        if self.is_valid and not self.rule:
            raise ValueError("a valid extraction must carry a non-empty rule")
        return self


class EvolvedPrompt(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: str
    instruction_list: list[str]

    @field_validator("content")
    @classmethod
    def _content_non_empty(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("content must be non-empty")
        return trimmed

    @field_validator("instruction_list")
    @classmethod
    def _dedupe_instructions(cls, values: list[str]) -> list[str]:
        deduped: list[str] = []
        seen: set[str] = set()
        for item in values:
            value = item.strip()
            key = value.lower()
            if not value or key in seen:
                continue
            seen.add(key)
            deduped.append(value)
        if not deduped:
            raise ValueError("instruction_list must contain at least one instruction")
        return deduped

from importlib.metadata import PackageNotFoundError, version

from .db import Database
from .errors import EvolutionConflictError, FeedbackValidationError, NotFoundError, UpstreamAIError, VoiceLoopError
from .evolution import BatchEvolutionEngine
from .feedback_store import FeedbackStore
from .generation import GenerationRequest, RewriteGenerator, build_generation_prompt
from .judge import RefinementJudge
from .models import (
    BrandVoice,
    CandidateStatus,
    EvolutionOutcome,
    FeedbackEvent,
    FeedbackResult,
    FeedbackRoute,
    FeedbackSubmission,
    PromptContext,
    RefinedCandidate,
    Rewrite,
    Sentiment,
    SystemPromptVersion,
)
from .pipeline import FeedbackPipeline, build_generator, build_pipeline, open_stores
from .prompt_store import PromptVersionStore
from .settings import RuntimeSettings
from .voice_rules import VoiceRuleStore, VoiceRuleUpdater


def get_version() -> str:
    try:
        return version(__name__)
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "BatchEvolutionEngine",
    "BrandVoice",
    "CandidateStatus",
    "Database",
    "EvolutionConflictError",
    "EvolutionOutcome",
    "FeedbackEvent",
    "FeedbackPipeline",
    "FeedbackResult",
    "FeedbackRoute",
    "FeedbackStore",
    "FeedbackSubmission",
    "FeedbackValidationError",
    "GenerationRequest",
    "NotFoundError",
    "PromptContext",
    "PromptVersionStore",
    "RefinedCandidate",
    "RefinementJudge",
    "Rewrite",
    "RewriteGenerator",
    "RuntimeSettings",
    "Sentiment",
    "SystemPromptVersion",
    "UpstreamAIError",
    "VoiceLoopError",
    "VoiceRuleStore",
    "VoiceRuleUpdater",
    "build_generation_prompt",
    "build_generator",
    "build_pipeline",
    "get_version",
    "open_stores",
]

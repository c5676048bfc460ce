from __future__ import annotations

from typing import Any


class VoiceLoopError(Exception):
    """Base class for every failure the feedback pipeline reports to its caller."""

    error_code = "voiceloop_error"


class FeedbackValidationError(VoiceLoopError, ValueError):
    """Raised when a feedback payload is malformed. Nothing has been written."""

    error_code = "validation_error"

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class NotFoundError(VoiceLoopError, LookupError):
    """Raised when a referenced rewrite or voice is missing or owned by another user."""

    error_code = "not_found"


class UpstreamAIError(VoiceLoopError, RuntimeError):
    """Raised when an LLM call fails, times out, or returns output that fails its schema."""

    error_code = "upstream_ai_error"


class EvolutionConflictError(VoiceLoopError):
    """Raised when an evolution commit finds that its batch claim is no longer held."""

    error_code = "evolution_conflict"

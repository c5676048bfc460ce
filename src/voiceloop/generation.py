"""Generation-time consumer of the evolved prompt and per-voice rules."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator

from .llm import TextGenerationAdapter
from .models import BrandVoice, PromptContext
from .prompt_store import PromptVersionStore
from .prompts import build_rewrite_prompt
from .voice_rules import VoiceRuleStore

logger = logging.getLogger(__name__)

GenerationMode = Literal["enhance", "generate"]
Platform = Literal["twitter", "linkedin", "general"]


class GenerationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    original_text: str
    mode: GenerationMode = "enhance"
    platform: Platform = "twitter"

    @field_validator("original_text")
    @classmethod
    def _text_non_empty(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("original_text must be non-empty")
        return trimmed


def build_generation_prompt(
    voice: BrandVoice,
    learned_rules: Sequence[str],
    context: PromptContext,
    request: GenerationRequest,
) -> tuple[str, str]:
    """Return ``(system_instruction, user_prompt)`` for one generation call."""
    user_prompt = build_rewrite_prompt(
        voice=voice,
        learned_rules=learned_rules,
        original_text=request.original_text,
        mode=request.mode,
        platform=request.platform,
    )
    return context.render(), user_prompt


class RewriteGenerator:
    """Reads the active prompt and the voice's rules at call time, then generates."""

    def __init__(self, adapter: TextGenerationAdapter, prompt_store: PromptVersionStore, voice_rules: VoiceRuleStore) -> None:
        self.adapter = adapter
        self.prompt_store = prompt_store
        self.voice_rules = voice_rules

    def generate(self, voice: BrandVoice, request: GenerationRequest) -> str:
        """Raises UpstreamAIError if the call fails or returns nothing."""
        context = self.prompt_store.get_active_context()
        rules = self.voice_rules.list_rules(voice.id)
        system_instruction, prompt = build_generation_prompt(voice, rules, context, request)
        logger.debug(
            "Generating %s/%s for voice %d with prompt v%s and %d learned rules",
            request.mode,
            request.platform,
            voice.id,
            context.version_number,
            len(rules),
        )
        return self.adapter.invoke(prompt, system_instruction=system_instruction)

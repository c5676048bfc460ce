from __future__ import annotations

from pathlib import Path

import pytest
from langchain_core.messages import AIMessage
from pydantic import ValidationError

from conftest import ScriptedRunnable
from voiceloop.errors import UpstreamAIError
from voiceloop.generation import GenerationRequest, RewriteGenerator, build_generation_prompt
from voiceloop.llm import TextGenerationAdapter
from voiceloop.models import BrandVoice, PromptContext
from voiceloop.pipeline import build_generator, open_stores
from voiceloop.prompt_store import PromptVersionStore
from voiceloop.settings import RuntimeSettings
from voiceloop.voice_rules import VoiceRuleStore

VOICE = BrandVoice(id=3, user_id=1, name="Friendly", guidelines="casual tone", tone_tags=["casual", "warm"])
CONTEXT = PromptContext(content="You write social copy.", instruction_list=["Keep it short.", "No jargon."])


def test_enhance_prompt_for_twitter() -> None:
    request = GenerationRequest(original_text="We launched a new feature today.")
    system_instruction, prompt = build_generation_prompt(VOICE, ["Avoid emoji usage."], CONTEXT, request)

    assert system_instruction == "You write social copy.\n\nRules:\n1. Keep it short.\n2. No jargon."
    assert "Rewrite the following text to match this brand voice." in prompt
    assert "Brand Guidelines: casual tone" in prompt
    assert "Tone: casual, warm" in prompt
    assert "Platform: twitter" in prompt
    assert "Use minimal hashtags." in prompt
    assert "Learned preferences for this voice:\n1. Avoid emoji usage." in prompt
    assert "Original Text:\nWe launched a new feature today." in prompt
    assert prompt.endswith("Output ONLY the rewritten text.")


def test_generate_prompt_for_linkedin_without_rules() -> None:
    voice = BrandVoice(id=5, user_id=1, name="Plain", guidelines="formal")
    request = GenerationRequest(original_text="our hiring push", mode="generate", platform="linkedin")
    _, prompt = build_generation_prompt(voice, [], CONTEXT, request)

    assert "Topic: our hiring push" in prompt
    assert "Tone: standard" in prompt
    assert "280" not in prompt
    assert "Learned preferences" not in prompt
    assert prompt.endswith("Output ONLY the generated post content.")


def test_generation_request_validation() -> None:
    with pytest.raises(ValidationError):
        GenerationRequest(original_text="hi", platform="myspace")
    with pytest.raises(ValidationError):
        GenerationRequest(original_text="   ")


def test_generator_reads_current_state_at_call_time(
    prompt_store: PromptVersionStore, voice_rule_store: VoiceRuleStore
) -> None:
    prompt_store.bootstrap()
    runnable = ScriptedRunnable([AIMessage(content="first"), AIMessage(content=" second ")])
    generator = RewriteGenerator(TextGenerationAdapter(runnable=runnable), prompt_store, voice_rule_store)
    request = GenerationRequest(original_text="We launched a new feature today.")

    assert generator.generate(VOICE, request) == "first"

    prompt_store.create_version("Evolved content.", ["Avoid emoji usage."])
    voice_rule_store.append(VOICE.id, "Use at most one exclamation mark.")
    assert generator.generate(VOICE, request) == "second"

    system_message, user_message = runnable.calls[1]
    assert system_message.content == "Evolved content.\n\nRules:\n1. Avoid emoji usage."
    assert "1. Use at most one exclamation mark." in user_message.content
    assert "Learned preferences" not in runnable.calls[0][1].content


def test_generator_rejects_empty_output(prompt_store: PromptVersionStore, voice_rule_store: VoiceRuleStore) -> None:
    generator = RewriteGenerator(
        TextGenerationAdapter(runnable=ScriptedRunnable([AIMessage(content="  ")])),
        prompt_store,
        voice_rule_store,
    )
    with pytest.raises(UpstreamAIError):
        generator.generate(VOICE, GenerationRequest(original_text="hello"))


def test_build_generator_wires_the_shared_stores(tmp_path: Path) -> None:
    settings = RuntimeSettings(database_path=str(tmp_path / "generation.sqlite3")).normalized()
    stores = open_stores(settings, repo_root=tmp_path)
    stores.voice_rules.append(VOICE.id, "Avoid emoji usage.")
    runnable = ScriptedRunnable([AIMessage(content="Big news: the feature is live.")])

    generator = build_generator(settings, stores, adapter=TextGenerationAdapter(runnable=runnable))

    assert generator.generate(VOICE, GenerationRequest(original_text="feature launch")) == "Big news: the feature is live."
    system_message, user_message = runnable.calls[0]
    assert system_message.content == stores.prompts.default_context().render()
    assert "1. Avoid emoji usage." in user_message.content

from __future__ import annotations

import threading

import pytest

from conftest import ScriptedRunnable, extraction, prompt_text
from voiceloop.db import utcnow
from voiceloop.errors import UpstreamAIError
from voiceloop.llm import StructuredOutputAdapter
from voiceloop.models import BrandVoice, FeedbackEvent, RuleExtraction, Sentiment
from voiceloop.voice_rules import VoiceRuleStore, VoiceRuleUpdater

VOICE = BrandVoice(id=3, user_id=1, name="Friendly", guidelines="casual tone", tone_tags=["casual"])


def _event(text: str = "Too many emojis, please stop") -> FeedbackEvent:
    return FeedbackEvent(
        id="FB-test0001",
        user_id=1,
        text=text,
        sentiment=Sentiment.NEGATIVE,
        created_at=utcnow(),
        rewrite_id=10,
        voice_id=3,
    )


def test_append_is_set_add(voice_rule_store: VoiceRuleStore) -> None:
    assert voice_rule_store.append(3, "Avoid emoji usage.")
    assert voice_rule_store.append(3, "Keep it under two sentences.")
    assert not voice_rule_store.append(3, "  Avoid emoji usage.  ")
    assert voice_rule_store.list_rules(3) == ["Avoid emoji usage.", "Keep it under two sentences."]


def test_rules_are_scoped_per_voice(voice_rule_store: VoiceRuleStore) -> None:
    voice_rule_store.append(3, "Avoid emoji usage.")
    assert voice_rule_store.append(4, "Avoid emoji usage.")
    assert voice_rule_store.list_rules(4) == ["Avoid emoji usage."]
    assert voice_rule_store.list_rules(5) == []


def test_append_rejects_blank_rule(voice_rule_store: VoiceRuleStore) -> None:
    with pytest.raises(ValueError):
        voice_rule_store.append(3, "   ")


def test_concurrent_appends_of_the_same_rule_keep_one(voice_rule_store: VoiceRuleStore) -> None:
    workers = 8
    barrier = threading.Barrier(workers)
    results: list[bool] = []
    lock = threading.Lock()

    def _worker() -> None:
        barrier.wait(timeout=10)
        added = voice_rule_store.append(3, "Avoid emoji usage.")
        with lock:
            results.append(added)

    threads = [threading.Thread(target=_worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(results) == workers
    assert results.count(True) == 1
    assert voice_rule_store.list_rules(3) == ["Avoid emoji usage."]


def test_extract_sees_existing_rules_and_writes_nothing(voice_rule_store: VoiceRuleStore) -> None:
    voice_rule_store.append(3, "Keep it short.")
    runnable = ScriptedRunnable([extraction("Avoid emoji usage.")])
    updater = VoiceRuleUpdater(StructuredOutputAdapter(schema=RuleExtraction, runnable=runnable), voice_rule_store)

    extracted = updater.extract(_event(), VOICE, None)

    assert extracted.is_valid
    assert extracted.rule == "Avoid emoji usage."
    assert voice_rule_store.list_rules(3) == ["Keep it short."]
    sent = prompt_text(runnable.calls[0])
    assert "1. Keep it short." in sent
    assert "Too many emojis, please stop" in sent


def test_extract_declines_invalid_feedback(voice_rule_store: VoiceRuleStore) -> None:
    runnable = ScriptedRunnable([extraction(None, valid=False, reason="spam")])
    updater = VoiceRuleUpdater(StructuredOutputAdapter(schema=RuleExtraction, runnable=runnable), voice_rule_store)

    extracted = updater.extract(_event("buy cheap followers at example.com"), VOICE, None)

    assert not extracted.is_valid
    assert extracted.rule is None
    assert extracted.reason == "spam"


def test_extract_fails_closed_on_valid_without_rule(voice_rule_store: VoiceRuleStore) -> None:
    runnable = ScriptedRunnable([extraction(None, valid=True)])
    updater = VoiceRuleUpdater(StructuredOutputAdapter(schema=RuleExtraction, runnable=runnable), voice_rule_store)
    with pytest.raises(UpstreamAIError):
        updater.extract(_event(), VOICE, None)
    assert voice_rule_store.list_rules(3) == []

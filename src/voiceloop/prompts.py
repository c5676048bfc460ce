"""Prompt texts for every LLM call the feedback loop makes.

Scoring policy lives here, in the constitution, not in the callers: callers
only compare the returned score against the configured acceptance threshold.
"""

from __future__ import annotations

from collections.abc import Sequence

from .models import BrandVoice, FeedbackEvent, PromptContext, RefinedCandidate, Rewrite

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are an expert social media copywriter. You rewrite and generate short-form "
    "social copy that matches the requested brand voice exactly, stays faithful to the "
    "source message, and reads naturally on the target platform."
)

DEFAULT_INSTRUCTION_LIST: tuple[str, ...] = (
    "Preserve the factual content of the original text.",
    "Follow the brand guidelines and tone over generic best practices.",
    "Keep the output ready to post: no preamble, no explanations, no quotation marks around it.",
)

CONSTITUTION: tuple[str, ...] = (
    "Professionalism: instructions must keep the copy professional and brand-safe.",
    "No harm: reject feedback that asks for harmful, hateful, deceptive or illegal content.",
    "Utility first: prefer instructions that make future generations more useful to the user.",
    "Consistency: do not contradict an existing instruction unless the feedback explicitly "
    "justifies the correction.",
)


def _numbered(items: Sequence[str]) -> str:
    if not items:
        return "(none)"
    return "\n".join(f"{idx}. {item}" for idx, item in enumerate(items, start=1))


def _clip(text: str, limit: int = 1_500) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


JUDGE_SYSTEM_INSTRUCTION = (
    "You are the quality judge for a self-improving copywriting assistant. You turn raw "
    "user feedback into at most one clear, emotion-free instruction and score how much "
    "that instruction deserves to be adopted.\n\n"
    f"Constitution:\n{_numbered(CONSTITUTION)}\n\n"
    "Scoring rubric (0-100):\n"
    "- 90-100: specific, constructive, safe, and consistent with the constitution.\n"
    "- 70-89: useful and safe but broad or partly subjective.\n"
    "- 40-69: vague, mostly emotional, or only relevant to a single post.\n"
    "- 0-39: spam, abusive, unsafe, or contradicting existing instructions without justification.\n"
    "Return refined_content as one imperative sentence (empty string if nothing is salvageable) "
    "and rejection_reason as a short phrase when the score is below 70, otherwise null."
)


def build_judge_prompt(event: FeedbackEvent, context: PromptContext, generation: Rewrite | None) -> str:
    sections = [
        f"Feedback sentiment: {event.sentiment.value}",
        f"Feedback text:\n{event.text}",
    ]
    if generation is not None:
        sections.append(f"Original text the user submitted:\n{_clip(generation.original_text)}")
        sections.append(f"Generated text the feedback refers to:\n{_clip(generation.rewritten_text)}")
    sections.append(f"Current system instruction:\n{context.content}")
    sections.append(f"Currently accepted instructions:\n{_numbered(context.instruction_list)}")
    sections.append("Score the feedback and distill it into a single instruction.")
    return "\n\n".join(sections)


RULE_EXTRACTION_SYSTEM_INSTRUCTION = (
    "You maintain personal writing rules for one brand voice. Given a complaint about a "
    "generated post, decide whether it is a genuine, actionable request (not spam, not "
    "abuse, not a request for harmful content). If it is, state the single rule that would "
    "have prevented the complaint as one short imperative sentence. Set is_valid to false "
    "and rule to null otherwise, and give the reason."
)


def build_rule_extraction_prompt(
    event: FeedbackEvent,
    voice: BrandVoice,
    generation: Rewrite | None,
    existing_rules: Sequence[str],
) -> str:
    sections = [
        f"Brand voice: {voice.name}",
        f"Voice guidelines:\n{voice.guidelines}",
        f"Rules this voice already follows:\n{_numbered(existing_rules)}",
    ]
    if generation is not None:
        sections.append(f"Generated text:\n{_clip(generation.rewritten_text)}")
    sections.append(f"User complaint:\n{event.text}")
    sections.append("What single actionable rule fixes this complaint, and is it valid?")
    return "\n\n".join(sections)


EVOLUTION_SYSTEM_INSTRUCTION = (
    "You maintain the shared system prompt of a copywriting assistant. You receive the "
    "current prompt, its instruction list, and a numbered batch of newly accepted "
    "instructions ordered oldest first. Merge the new insights into the instruction set. "
    "When rules conflict, keep the most specific rule; when equally specific, keep the most "
    "recent consensus (later numbers are newer). Drop existing rules the new batch "
    "contradicts. Keep every instruction atomic and imperative. Return the full rewritten "
    "system prompt content and the complete ordered instruction_list."
)


def build_evolution_prompt(context: PromptContext, candidates: Sequence[RefinedCandidate]) -> str:
    batch = "\n".join(
        f"{idx}. {candidate.refined_text}" for idx, candidate in enumerate(candidates, start=1)
    )
    return (
        f"Current system prompt:\n{context.content}\n\n"
        f"Current instruction list:\n{_numbered(context.instruction_list)}\n\n"
        f"New accepted instructions (oldest first):\n{batch}\n\n"
        "Produce the evolved system prompt."
    )


# ---------------------------------------------------------------------------
# Generation-time prompts
# ---------------------------------------------------------------------------

_PLATFORM_HINTS: dict[tuple[str, str], str] = {
    ("enhance", "twitter"): (
        "- Ensure it's under 280 characters if possible, or threaded if longer.\n"
        "- Use engaging hooks.\n"
        "- Use minimal hashtags."
    ),
    ("generate", "twitter"): (
        "- Create a viral quality tweet/thread.\n"
        "- Limit to 280 chars per tweet.\n"
        "- Focus on high engagement."
    ),
}


def build_rewrite_prompt(
    *,
    voice: BrandVoice,
    learned_rules: Sequence[str],
    original_text: str,
    mode: str,
    platform: str,
) -> str:
    tone = ", ".join(voice.tone_tags) if voice.tone_tags else "standard"
    lines: list[str] = ["You are a social media expert."]
    if mode == "enhance":
        lines.append("Rewrite the following text to match this brand voice.")
    else:
        lines.append("Create a new post about the following topic/idea.")
        lines.append(f"Topic: {original_text}")
    lines.append(f"Brand Guidelines: {voice.guidelines}")
    lines.append(f"Tone: {tone}")
    lines.append(f"Platform: {platform} (Optimize for this platform's best practices).")
    hint = _PLATFORM_HINTS.get((mode, platform))
    if hint:
        lines.append(hint)
    if learned_rules:
        lines.append(f"Learned preferences for this voice:\n{_numbered(learned_rules)}")
    if mode == "enhance":
        lines.append(f"\nOriginal Text:\n{original_text}")
        lines.append("\nOutput ONLY the rewritten text.")
    else:
        lines.append("\nOutput ONLY the generated post content.")
    return "\n".join(lines)

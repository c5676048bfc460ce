"""LLM plumbing: one model per role, strict structured output, fail closed.

Every call the feedback loop makes goes through an adapter here. Adapters
turn transport failures, timeouts and responses that do not match the
expected schema into ``UpstreamAIError`` so callers never act on a partial
or unchecked result.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .errors import UpstreamAIError
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)
ModelRole = Literal["judge", "rules", "evolution", "generation"]

# Sampling temperature per role.
_ROLE_TEMPERATURE: dict[str, float] = {
    "judge": 0.0,
    "rules": 0.0,
    "evolution": 0.2,
    "generation": 0.7,
}


class SupportsInvoke(Protocol):
    """Anything with a LangChain-style ``invoke``: a chat model, a structured runnable, a test fake."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(frozen=True)
class ModelSpec:
    """Which OpenAI model one role uses and how it is called."""

    model_name: str
    temperature: float = 0.0
    timeout_seconds: int = 60
    max_retries: int = 0

    @classmethod
    def for_role(cls, settings: RuntimeSettings, role: ModelRole) -> "ModelSpec":
        names = {
            "judge": settings.model_judge,
            "rules": settings.model_rules,
            "evolution": settings.model_evolution,
            "generation": settings.model_generation,
        }
        return cls(
            model_name=names[role],
            temperature=_ROLE_TEMPERATURE[role],
            timeout_seconds=settings.llm_timeout_seconds,
            max_retries=settings.llm_max_retries,
        )


def build_messages(prompt: str, system_instruction: str | None = None) -> str | list[Any]:
    if system_instruction is None or not system_instruction.strip():
        return prompt
    return [SystemMessage(content=system_instruction), HumanMessage(content=prompt)]


def message_text(content: Any) -> str:
    """Flatten a chat response's content (plain string or content blocks) into text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return str(content)
    parts = []
    for block in content:
        text = block.get("text") if isinstance(block, dict) else block
        if isinstance(text, str) and text.strip():
            parts.append(text)
    return "\n".join(parts)


def _unwrap_envelope(raw_output: Any, schema_name: str) -> Any:
    """Return the parsed payload of an ``include_raw=True`` response, or the output unchanged."""
    if not (isinstance(raw_output, dict) and {"parsed", "parsing_error"} <= raw_output.keys()):
        return raw_output
    if raw_output["parsing_error"] is not None:
        raise UpstreamAIError(f"{schema_name} response could not be parsed: {raw_output['parsing_error']!r}")
    if raw_output["parsed"] is None:
        raise UpstreamAIError(f"{schema_name} response had no parsed payload")
    return raw_output["parsed"]


def parse_structured_output(raw_output: Any, schema: type[SchemaT]) -> SchemaT:
    """Validate an LLM response against ``schema``.

    Accepts the ``include_raw`` envelope, a model instance (of ``schema`` or
    any other pydantic model with the same fields) or a plain dict. Anything
    else, and any payload the schema rejects, is an ``UpstreamAIError``.
    """
    name = schema.__name__
    payload = _unwrap_envelope(raw_output, name)
    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise UpstreamAIError(f"{name} response has unsupported type {type(payload).__name__}")
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise UpstreamAIError(f"{name} response failed validation: {exc}") from exc


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[SchemaT]):
    """Calls a structured-output runnable and returns a validated ``schema`` instance."""

    schema: type[SchemaT]
    runnable: SupportsInvoke

    def invoke(self, prompt: str, *, system_instruction: str | None = None) -> SchemaT:
        """Raises UpstreamAIError if the call fails or the response does not validate."""
        try:
            raw_output = self.runnable.invoke(build_messages(prompt, system_instruction))
        except UpstreamAIError:
            raise
        except Exception as exc:
            logger.warning("%s call failed: %s", self.schema.__name__, exc)
            raise UpstreamAIError(f"{self.schema.__name__} call failed: {exc}") from exc
        return parse_structured_output(raw_output, self.schema)


@dataclass(slots=True)
class TextGenerationAdapter:
    """Free-text generation; returns the stripped response text, never an empty string."""

    runnable: SupportsInvoke

    def invoke(self, prompt: str, *, system_instruction: str | None = None) -> str:
        try:
            response = self.runnable.invoke(build_messages(prompt, system_instruction))
        except Exception as exc:
            logger.warning("Text generation failed: %s", exc)
            raise UpstreamAIError(f"text generation failed: {exc}") from exc
        text = message_text(getattr(response, "content", response)).strip()
        if not text:
            raise UpstreamAIError("text generation returned an empty response")
        return text


def require_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading ``<repo_root>/.env`` first when it exists.

    Raises:
        RuntimeError: If the key is still missing.
    """
    env_file = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if env_file.is_file():
        load_dotenv(env_file)
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required to build a live LLM model")
    return key


def chat_model(model_spec: ModelSpec, *, repo_root: Path | None = None) -> ChatOpenAI:
    """Build the live ChatOpenAI client for one role.

    Raises:
        ValueError: If the model name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_spec.model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    require_openai_api_key(repo_root)
    return ChatOpenAI(
        model=model_spec.model_name,
        temperature=model_spec.temperature,
        timeout=model_spec.timeout_seconds,
        max_retries=model_spec.max_retries,
    )


def structured_adapter(
    model_spec: ModelSpec,
    schema: type[SchemaT],
    *,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[SchemaT]:
    """Bind ``schema`` to a live model with strict function calling.

    ``include_raw`` is on so provider-side parse failures come back as a
    ``parsing_error`` envelope that ``parse_structured_output`` rejects.
    """
    runnable = chat_model(model_spec, repo_root=repo_root).with_structured_output(
        schema,
        method="function_calling",
        include_raw=True,
        strict=True,
    )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


def text_adapter(model_spec: ModelSpec, *, repo_root: Path | None = None) -> TextGenerationAdapter:
    return TextGenerationAdapter(runnable=chat_model(model_spec, repo_root=repo_root))

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

_FEEDBACK_ROUTES = frozenset({"per_voice", "global", "both"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    database_path: str = "state_store/voiceloop.sqlite3"
    model_judge: str = "gpt-4o-mini"
    model_rules: str = "gpt-4o-mini"
    model_evolution: str = "gpt-4o"
    model_generation: str = "gpt-4o-mini"
    acceptance_threshold: int = 70
    batch_threshold: int = 5
    max_batch_size: int = 25
    feedback_route: str = "both"
    llm_timeout_seconds: int = 60
    llm_max_retries: int = 0
    evolution_claim_ttl_seconds: int = 600
    db_busy_timeout_seconds: int = 30
    default_instruction_file: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            database_path=os.getenv("VOICELOOP_DATABASE_PATH", "state_store/voiceloop.sqlite3"),
            model_judge=os.getenv("VOICELOOP_MODEL_JUDGE", "gpt-4o-mini"),
            model_rules=os.getenv("VOICELOOP_MODEL_RULES", "gpt-4o-mini"),
            model_evolution=os.getenv("VOICELOOP_MODEL_EVOLUTION", "gpt-4o"),
            model_generation=os.getenv("VOICELOOP_MODEL_GENERATION", "gpt-4o-mini"),
            acceptance_threshold=_get_env_int("VOICELOOP_ACCEPTANCE_THRESHOLD", default=70, minimum=0, maximum=100),
            batch_threshold=_get_env_int("VOICELOOP_BATCH_THRESHOLD", default=5, minimum=1, maximum=1_000),
            max_batch_size=_get_env_int("VOICELOOP_MAX_BATCH_SIZE", default=25, minimum=1, maximum=1_000),
            feedback_route=os.getenv("VOICELOOP_FEEDBACK_ROUTE", "both"),
            llm_timeout_seconds=_get_env_int("VOICELOOP_LLM_TIMEOUT_SECONDS", default=60, minimum=1, maximum=3_600),
            llm_max_retries=_get_env_int("VOICELOOP_LLM_MAX_RETRIES", default=0, minimum=0, maximum=10),
            evolution_claim_ttl_seconds=_get_env_int(
                "VOICELOOP_EVOLUTION_CLAIM_TTL_SECONDS", default=600, minimum=1, maximum=86_400
            ),
            db_busy_timeout_seconds=_get_env_int("VOICELOOP_DB_BUSY_TIMEOUT_SECONDS", default=30, minimum=1, maximum=600),
            default_instruction_file=os.getenv("VOICELOOP_DEFAULT_INSTRUCTION_FILE", ""),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        database_path = self.database_path.strip()
        if not database_path:
            raise ValueError("VOICELOOP_DATABASE_PATH must be non-empty")
        if database_path == ":memory:":
            raise ValueError("VOICELOOP_DATABASE_PATH cannot be ':memory:'; every operation opens its own connection")

        # -- Model name validation --
        models = {}
        for field_name, env_key in (
            ("model_judge", "VOICELOOP_MODEL_JUDGE"),
            ("model_rules", "VOICELOOP_MODEL_RULES"),
            ("model_evolution", "VOICELOOP_MODEL_EVOLUTION"),
            ("model_generation", "VOICELOOP_MODEL_GENERATION"),
        ):
            value = getattr(self, field_name).strip()
            if not value:
                raise ValueError(f"{env_key} must be non-empty")
            models[field_name] = value

        # -- Numeric bounds validation --
        if not 0 <= self.acceptance_threshold <= 100:
            raise ValueError(
                f"VOICELOOP_ACCEPTANCE_THRESHOLD must be within 0..100, got: {self.acceptance_threshold}"
            )
        if self.batch_threshold < 1:
            raise ValueError(f"VOICELOOP_BATCH_THRESHOLD must be >= 1, got: {self.batch_threshold}")
        max_batch_size = max(self.max_batch_size, self.batch_threshold)

        # -- Policy validation --
        feedback_route = self.feedback_route.strip().lower()
        if feedback_route not in _FEEDBACK_ROUTES:
            raise ValueError("VOICELOOP_FEEDBACK_ROUTE must be one of: per_voice, global, both")

        return replace(
            self,
            database_path=database_path,
            max_batch_size=max_batch_size,
            feedback_route=feedback_route,
            default_instruction_file=self.default_instruction_file.strip(),
            **models,
        )

    def database_file(self, repo_root: Path) -> Path:
        path = Path(self.database_path)
        return path if path.is_absolute() else repo_root / path

    def default_instruction_override(self) -> str | None:
        """Return the text of the configured default instruction file, if one is set."""
        if not self.default_instruction_file:
            return None
        path = Path(self.default_instruction_file)
        if not path.is_file():
            raise FileNotFoundError(f"VOICELOOP_DEFAULT_INSTRUCTION_FILE does not exist: {path}")
        text = path.read_text(encoding="utf-8").strip()
        if not text:
            raise ValueError(f"VOICELOOP_DEFAULT_INSTRUCTION_FILE is empty: {path}")
        return text


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed

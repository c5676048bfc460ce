"""Entry point for `python -m voiceloop` and the `voiceloop` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from voiceloop.errors import VoiceLoopError
from voiceloop.models import SystemPromptVersion
from voiceloop.pipeline import build_evolution_engine, open_stores
from voiceloop.settings import RuntimeSettings

logger = logging.getLogger("voiceloop.cli")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Operate the voiceloop prompt evolution store")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=None,
        help="Directory relative database paths resolve against (default: cwd)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the schema and seed the bootstrap prompt version")
    sub.add_parser("show-prompt", help="Print the active prompt context as JSON")
    history = sub.add_parser("history", help="List prompt versions, newest first")
    history.add_argument("--limit", type=int, default=None, help="Maximum number of versions to list")
    sub.add_parser("pending", help="List pending candidates and the batch threshold")
    rules = sub.add_parser("rules", help="List a brand voice's learned rules")
    rules.add_argument("--voice-id", type=int, required=True)
    set_prompt = sub.add_parser("set-prompt", help="Activate a manually written prompt version")
    set_prompt.add_argument("--file", type=Path, required=True, help="Text file holding the prompt content")
    set_prompt.add_argument(
        "--instruction",
        action="append",
        default=[],
        help="Instruction list entry; repeat for several, in order",
    )
    sub.add_parser("evolve", help="Run one evolution check (evolves only when the threshold is met)")
    return parser.parse_args(argv)


def _version_summary(version: SystemPromptVersion) -> dict[str, Any]:
    return {
        "id": version.id,
        "version_number": version.version_number,
        "is_active": version.is_active,
        "source": version.source.value,
        "fingerprint": version.fingerprint,
        "created_at": version.created_at.isoformat(),
        "parent_version_id": version.parent_version_id,
        "source_run_id": version.source_run_id,
        "instruction_count": len(version.instruction_list),
    }


def run_command(args: argparse.Namespace, settings: RuntimeSettings) -> dict[str, Any] | list[Any]:
    stores = open_stores(settings, repo_root=args.repo_root)

    if args.command == "init":
        return _version_summary(stores.prompts.bootstrap())

    if args.command == "show-prompt":
        context = stores.prompts.get_active_context()
        return {
            "version_id": context.version_id,
            "version_number": context.version_number,
            "content": context.content,
            "instruction_list": context.instruction_list,
        }

    if args.command == "history":
        if args.limit is not None and args.limit < 1:
            raise ValueError("--limit must be >= 1")
        return [_version_summary(version) for version in stores.prompts.list_versions(limit=args.limit)]

    if args.command == "pending":
        pending = stores.feedback.list_pending()
        return {
            "batch_threshold": settings.batch_threshold,
            "pending_count": len(pending),
            "candidates": [
                {
                    "id": candidate.id,
                    "source_feedback_id": candidate.source_feedback_id,
                    "quality_score": candidate.quality_score,
                    "refined_text": candidate.refined_text,
                    "created_at": candidate.created_at.isoformat(),
                }
                for candidate in pending
            ],
        }

    if args.command == "rules":
        return {"voice_id": args.voice_id, "rules": stores.voice_rules.list_rules(args.voice_id)}

    if args.command == "set-prompt":
        if not args.file.is_file():
            raise FileNotFoundError(f"Prompt file does not exist: {args.file}")
        version = stores.prompts.create_version(args.file.read_text(encoding="utf-8"), args.instruction)
        return _version_summary(version)

    if args.command == "evolve":
        engine = build_evolution_engine(settings, stores, repo_root=args.repo_root)
        outcome = engine.maybe_evolve(trigger="cli")
        return {
            "evolved": outcome.evolved,
            "reason": outcome.reason,
            "run_id": outcome.run_id,
            "version": _version_summary(outcome.version) if outcome.version is not None else None,
            "candidate_ids": outcome.candidate_ids,
            "follow_up_version_ids": outcome.follow_up_version_ids,
        }

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        result = run_command(args, settings)
    except (VoiceLoopError, OSError, ValueError, RuntimeError) as exc:
        logger.error("voiceloop %s failed: %s", args.command, exc)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

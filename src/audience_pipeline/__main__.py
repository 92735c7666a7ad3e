"""Entry point for `python -m audience_pipeline` and the `audience-pipeline` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from audience_pipeline import WorkflowEngine, WorkflowError
from audience_pipeline.models import DecisionStatus
from audience_pipeline.settings import RuntimeSettings


def _print_json(payload: Any) -> None:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        payload = {
            key: value.model_dump(mode="json") if isinstance(value, BaseModel) else value
            for key, value in payload.items()
        }
    print(json.dumps(payload, indent=2, default=str))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the audience research generation pipeline")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument("--repo-root", type=Path, default=None, help="Directory holding .env and the store (default: cwd)")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-project", help="Create a project from an onboarding JSON file")
    create.add_argument("--name", required=True)
    create.add_argument("--onboarding-file", type=Path, required=True)

    status = sub.add_parser("status", help="Print the per-step status map of a project")
    status.add_argument("project_id")

    generate = sub.add_parser("generate", help="Generate the draft of one step instance")
    generate.add_argument("project_id")
    generate.add_argument("step")
    generate.add_argument("--scope", default="", help="Segment or pain id for fan-out steps")
    generate.add_argument("--force", action="store_true", help="Discard an existing draft first")

    run_missing = sub.add_parser("run-missing", help="Generate every missing draft of a fan-out step")
    run_missing.add_argument("project_id")
    run_missing.add_argument("step")
    run_missing.add_argument("--concurrency", type=int, default=None)
    run_missing.add_argument("--all", action="store_true", help="Regenerate every target, not only missing ones")

    decide = sub.add_parser("decide", help="Record a decision on a review recommendation")
    decide.add_argument("project_id")
    decide.add_argument("step")
    decide.add_argument("recommendation_id")
    decide.add_argument("status", type=lambda value: value.lower(), choices=[item.value for item in DecisionStatus])
    decide.add_argument("--edited-text", default=None)
    decide.add_argument("--scope", default="")

    approve = sub.add_parser("approve", help="Approve the draft of one step instance")
    approve.add_argument("project_id")
    approve.add_argument("step")
    approve.add_argument("--scope", default="")

    reconcile = sub.add_parser("reconcile", help="Report orphan rankings and stale per-pain drafts")
    reconcile.add_argument("project_id")
    reconcile.add_argument("--prune", action="store_true", help="Delete what the report lists")

    return parser.parse_args(argv)


def run_command(engine: WorkflowEngine, args: argparse.Namespace) -> Any:
    if args.command == "create-project":
        if not args.onboarding_file.is_file():
            raise FileNotFoundError(f"Onboarding file does not exist: {args.onboarding_file}")
        onboarding = json.loads(args.onboarding_file.read_text(encoding="utf-8"))
        return engine.create_project(args.name, onboarding)
    if args.command == "status":
        return engine.project_steps(args.project_id)
    if args.command == "generate":
        if args.force:
            return asyncio.run(engine.regenerate(args.project_id, args.step, args.scope))
        return asyncio.run(engine.generate(args.project_id, args.step, args.scope))
    if args.command == "run-missing":
        if args.all:
            result = asyncio.run(engine.regenerate_all(args.project_id, args.step, args.concurrency))
        else:
            result = asyncio.run(engine.run_missing(args.project_id, args.step, args.concurrency))
        return {"counts": result.counts(), **result.model_dump(mode="json")}
    if args.command == "decide":
        return engine.record_decision(
            args.project_id,
            args.step,
            args.recommendation_id,
            args.status,
            edited_text=args.edited_text,
            scope_key=args.scope,
        )
    if args.command == "approve":
        return engine.approve(args.project_id, args.step, args.scope)
    if args.command == "reconcile":
        return engine.reconcile(args.project_id, prune=args.prune)
    raise ValueError(f"unknown command {args.command!r}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    repo_root = (args.repo_root or Path.cwd()).resolve()

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1
    engine = WorkflowEngine.from_settings(settings, repo_root)

    try:
        output = run_command(engine, args)
    except (WorkflowError, OSError, ValueError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("%s failed unexpectedly: %s", args.command, exc)
        return 1

    _print_json(output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

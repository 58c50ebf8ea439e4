"""Command-line entry point: ``speczero plan`` and ``speczero run``."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from .config import load_settings
from .exceptions import SpecZeroError
from .logging_config import setup_logging
from .models import StepStatus
from .pipeline import plan_repository, run_analysis
from .steps import stub_complete

logger = logging.getLogger("speczero.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="speczero",
        description="Feature-driven architecture spec generator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s plan ./my-repo --json
  %(prog)s run ./my-repo --dry-run
  %(prog)s run ./my-repo --model openrouter/mistralai/devstral-2512
        """,
    )
    parser.add_argument("--env-file", default=".env", help="Settings file (default: .env)")
    sub = parser.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan", help="Detect features and print the planned DAG")
    plan.add_argument("repo", type=Path, help="Path to the repository")
    plan.add_argument("--json", action="store_true", help="Print the full plan as JSON")

    run = sub.add_parser("run", help="Plan and execute the analysis")
    run.add_argument("repo", type=Path, help="Path to the repository")
    run.add_argument("--dry-run", action="store_true", help="Use a stub model instead of calling an LLM")
    run.add_argument("--slug", default=None, help="Project slug (default: repository folder name)")
    run.add_argument("--model", default=None, help="Override the litellm model string")
    return parser


def _print_plan(dag, as_json: bool) -> None:
    if as_json:
        print(json.dumps(dag.to_dict(), indent=2))
        return
    print(f"Repository type: {dag.repo_type.value}")
    print(f"Agents: {dag.metadata['total_agents']} ({dag.metadata['optional_agents']} optional)")
    print(f"Estimated duration: {dag.metadata['estimated_duration']}")
    for index, layer in enumerate(dag.layers):
        ids = ", ".join(a.id + ("?" if a.optional else "") for a in layer)
        print(f"  Layer {index}: {ids}")


def _report_progress(agent_id: str, status: StepStatus, message: str | None) -> None:
    suffix = f" ({message})" if message else ""
    print(f"[{status.value:>7}] {agent_id}{suffix}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {}
    if getattr(args, "model", None):
        overrides["llm_model"] = args.model
    try:
        settings = load_settings(args.env_file, **overrides)
    except SpecZeroError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 2
    setup_logging(settings.log_level, settings.log_format.value)

    if not args.repo.is_dir():
        print(f"Error: not a directory: {args.repo}", file=sys.stderr)
        return 2

    try:
        if args.command == "plan":
            _print_plan(plan_repository(args.repo, settings), args.json)
            return 0

        summary = run_analysis(
            args.repo,
            settings,
            complete=stub_complete if args.dry_run else None,
            project_slug=args.slug,
            on_progress=_report_progress,
        )
    except SpecZeroError as e:
        logger.error("Run aborted: %s", e.message)
        print(json.dumps(e.to_dict(), indent=2))
        return 2

    print(json.dumps(summary.to_dict(), indent=2))
    return 1 if summary.failed else 0


if __name__ == "__main__":
    sys.exit(main())

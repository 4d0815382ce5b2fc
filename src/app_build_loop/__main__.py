"""Entry point for `python -m app_build_loop` and the `app-build-loop` CLI script."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
from pathlib import Path

from app_build_loop.generator import DeepAgentArtifactGenerator
from app_build_loop.orchestrator import EXIT_FATAL, run_invocation
from app_build_loop.settings import RuntimeSettings
from app_build_loop.state_store import project_scoped_root
from app_build_loop.target import WorkspaceTarget
from app_build_loop.utils import render_report_text


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one invocation of the incremental app build loop")
    parser.add_argument("--spec-file", type=Path, default=None, help="Path to the markdown or JSON project spec")
    parser.add_argument("--spec-text", default=None, help="Inline project spec (mutually exclusive with --spec-file)")
    parser.add_argument("--memory-file", type=Path, default=None, help="Override the memory record path")
    parser.add_argument("--ledger-file", type=Path, default=None, help="Override the conversation ledger path")
    parser.add_argument(
        "--workspace-root",
        type=Path,
        default=None,
        help="Application workspace the agent builds into (default: cwd)",
    )
    parser.add_argument("--max-attempts", type=int, default=None, help="Building attempts per feature before blocking")
    parser.add_argument(
        "--max-features",
        type=int,
        default=None,
        help="Features to start in this invocation before suspending (0 = unlimited)",
    )
    parser.add_argument(
        "--retry-blocked",
        action="store_true",
        help="Reset blocked features to their previous status before planning",
    )
    parser.add_argument("--json", action="store_true", help="Print the invocation report as JSON")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_raw_spec(*, spec_file: Path | None, spec_text: str | None, settings: RuntimeSettings, repo_root: Path) -> str:
    if spec_text is not None and spec_file is not None:
        raise ValueError("--spec-text cannot be combined with --spec-file")
    if spec_text is not None:
        trimmed = spec_text.strip()
        if not trimmed:
            raise ValueError("--spec-text must be non-empty")
        return trimmed
    path = spec_file if spec_file is not None else settings.default_spec_file(repo_root)
    if not path.is_file():
        raise FileNotFoundError(f"Spec file does not exist: {path}")
    return path.read_text(encoding="utf-8")


def build_settings(args: argparse.Namespace) -> RuntimeSettings:
    settings = RuntimeSettings.from_env()
    overrides: dict[str, object] = {}
    if args.max_attempts is not None:
        overrides["max_attempts"] = args.max_attempts
    if args.max_features is not None:
        if args.max_features < 0:
            raise ValueError(f"--max-features must be >= 0, got: {args.max_features}")
        overrides["max_features_per_invocation"] = args.max_features
    if args.workspace_root is not None:
        overrides["workspace_root"] = str(args.workspace_root.resolve())
    return dataclasses.replace(settings, **overrides).normalized() if overrides else settings


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    repo_root = Path.cwd()
    try:
        settings = build_settings(args)
        raw_spec = load_raw_spec(
            spec_file=args.spec_file,
            spec_text=args.spec_text,
            settings=settings,
            repo_root=repo_root,
        )
    except (OSError, ValueError) as exc:
        logging.error("Unable to start invocation: %s", exc)
        return EXIT_FATAL

    workspace_root = settings.workspace_root_path.resolve()
    workspace_root.mkdir(parents=True, exist_ok=True)
    # Agent tools resolve the workspace from the environment.
    os.environ["BUILD_LOOP_WORKSPACE_ROOT"] = str(workspace_root)

    state_root = project_scoped_root(settings.state_store_path(repo_root), settings.project_id)
    memory_path = args.memory_file if args.memory_file is not None else state_root / settings.memory_file
    ledger_path = args.ledger_file if args.ledger_file is not None else state_root / settings.ledger_file
    # The ledger tool must append to the same file the orchestrator reads.
    os.environ["BUILD_LOOP_LEDGER_FILE"] = str(ledger_path.resolve())

    target = WorkspaceTarget(
        workspace_root,
        database_path=settings.database_file(workspace_root),
        generator=DeepAgentArtifactGenerator(settings),
        snapshot_root=state_root / settings.snapshot_dir,
    )
    exit_code, report = run_invocation(
        raw_spec,
        memory_path,
        ledger_path,
        target,
        settings,
        workspace_root=workspace_root,
        retry_blocked=args.retry_blocked,
    )

    if report is not None:
        print(report.model_dump_json(indent=2) if args.json else render_report_text(report))
    else:
        print("outcome=fatal")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())

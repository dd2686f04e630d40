from __future__ import annotations

import argparse
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
import json
from pathlib import Path

from mergegate.close_gate import CloseGateManager, MergeExecutor
from mergegate.config import AppConfig, load_config
from mergegate.github_gateway import GitHubGateway
from mergegate.integrity import IntegrityValidator
from mergegate.merge_log import MergeAttemptLog
from mergegate.mergeability import MergeabilityChecker
from mergegate.models import TASK_STATUSES, SweepResult
from mergegate.observability import configure_logging
from mergegate.observability_tui import run_dashboard
from mergegate.process_lock import sweeper_process_lock
from mergegate.reconcile import ReconciliationSweep, SweepRunner
from mergegate.remediation import DriftReport, generate_drift_report, generate_remediation
from mergegate.state import StateStore
from mergegate.transitions import TransitionService, precheck_transition


@dataclass(frozen=True)
class AppRuntime:
    store: StateStore
    transitions: TransitionService
    runner: SweepRunner


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mergegate")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create the base dir and state DB")
    _add_common_arguments(init_parser)

    task_parser = subparsers.add_parser("task", help="Create and inspect tasks")
    _add_common_arguments(task_parser)
    task_subparsers = task_parser.add_subparsers(dest="task_command", required=True)
    create_parser = task_subparsers.add_parser("create", help="Create a todo task")
    create_parser.add_argument("--id", dest="task_id", required=True)
    create_parser.add_argument("--title", required=True)
    create_parser.add_argument("--assignee", type=str)
    create_parser.add_argument("--reviewer", type=str)
    create_parser.add_argument("--metadata", type=str, help="Initial metadata as a JSON object")
    show_parser = task_subparsers.add_parser("show", help="Print a task as JSON")
    show_parser.add_argument("task_id")

    transition_parser = subparsers.add_parser(
        "transition", help="Request a status change through the transition gates"
    )
    _add_common_arguments(transition_parser)
    transition_parser.add_argument("task_id")
    transition_parser.add_argument("--status", required=True)
    transition_parser.add_argument(
        "--metadata", type=str, help="Metadata patch as a JSON object, merged over current"
    )

    precheck_parser = subparsers.add_parser(
        "precheck", help="List every unmet gate for a target status"
    )
    _add_common_arguments(precheck_parser)
    precheck_parser.add_argument("task_id")
    precheck_parser.add_argument("--status", required=True, choices=TASK_STATUSES)

    sweep_parser = subparsers.add_parser(
        "sweep", help="Merge green approved PRs and auto-close merged validating tasks"
    )
    _add_common_arguments(sweep_parser)
    sweep_parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    sweep_parser.add_argument("--json", action="store_true", help="Print sweep results as JSON")

    drift_parser = subparsers.add_parser(
        "drift", help="Report validating tasks and PRs that drifted out of sync"
    )
    _add_common_arguments(drift_parser)
    drift_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    remediation_parser = subparsers.add_parser(
        "remediation", help="Print fix instructions for a drift issue"
    )
    _add_common_arguments(remediation_parser)
    remediation_parser.add_argument("task_id")
    remediation_parser.add_argument("issue")
    remediation_parser.add_argument("--pr-url", type=str)

    top_parser = subparsers.add_parser("top", help="Open the validating-task dashboard")
    _add_common_arguments(top_parser)
    top_parser.add_argument(
        "--refresh-seconds",
        type=float,
        default=5.0,
        help="Dashboard refresh interval",
    )

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("mergegate.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="low",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (low or high)",
    )


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    configure_logging(args.verbose, state_dir=config.runtime.base_dir)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "remediation":
        print(generate_remediation(args.task_id, args.issue, args.pr_url))
        return

    runtime = build_runtime(config)
    if args.command == "task":
        _cmd_task(runtime, args)
        return
    if args.command == "transition":
        _cmd_transition(runtime, args)
        return
    if args.command == "precheck":
        report = precheck_transition(runtime.store.require_task(args.task_id), args.status)
        print(json.dumps(report.to_dict(), indent=2))
        return
    if args.command == "sweep":
        _cmd_sweep(config, runtime, once=bool(args.once), as_json=bool(args.json))
        return
    if args.command == "drift":
        report = generate_drift_report(
            runtime.store.list_tasks(), now=datetime.now(timezone.utc), config=config.drift
        )
        _print_drift_report(report, as_json=bool(args.json))
        return
    if args.command == "top":
        run_dashboard(
            store=runtime.store,
            config=config,
            refresh_seconds=float(args.refresh_seconds),
        )
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def build_runtime(config: AppConfig) -> AppRuntime:
    store = StateStore(config.runtime.state_db_path)
    github = GitHubGateway(
        command_timeout_seconds=config.github.command_timeout_seconds,
        merge_timeout_seconds=config.github.merge_timeout_seconds,
    )
    integrity = IntegrityValidator(
        github=github, skip_live_checks=config.integrity.skip_live_checks
    )
    log = MergeAttemptLog(max_entries=config.audit.merge_log_max_entries)
    sweep = ReconciliationSweep(
        checker=MergeabilityChecker(
            github, cache_ttl_seconds=config.github.mergeability_cache_ttl_seconds
        ),
        executor=MergeExecutor(github=github, method=config.github.merge_method),
        close_gates=CloseGateManager(store, github),
        log=log,
    )
    return AppRuntime(
        store=store,
        transitions=TransitionService(store, integrity),
        runner=SweepRunner(store, sweep, log),
    )


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    store = StateStore(config.runtime.state_db_path)
    print(f"Initialized mergegate base dir: {config.runtime.base_dir}")
    print(f"State DB: {store.db_path}")


def _cmd_task(runtime: AppRuntime, args: argparse.Namespace) -> None:
    if args.task_command == "create":
        task = runtime.store.create_task(
            args.task_id,
            args.title,
            assignee=args.assignee,
            reviewer=args.reviewer,
            metadata=_parse_json_object(args.metadata, flag="--metadata"),
        )
        print(json.dumps(task.to_dict(), indent=2))
        return
    if args.task_command == "show":
        task = runtime.store.require_task(args.task_id)
        print(json.dumps(task.to_dict(), indent=2))
        return
    raise RuntimeError(f"Unknown task command: {args.task_command}")


def _cmd_transition(runtime: AppRuntime, args: argparse.Namespace) -> None:
    response = runtime.transitions.request_transition(
        args.task_id,
        args.status,
        _parse_json_object(args.metadata, flag="--metadata"),
    )
    print(json.dumps(response.to_dict(), indent=2))
    if not response.success:
        raise SystemExit(1)


def _cmd_sweep(config: AppConfig, runtime: AppRuntime, *, once: bool, as_json: bool) -> None:
    with sweeper_process_lock(base_dir=config.runtime.base_dir, command="sweep"):
        if once:
            result = runtime.runner.run_once()
            if result is None:
                print("A sweep is already in flight; skipped.")
                return
            _print_sweep_result(result, as_json=as_json)
            return
        runtime.runner.run_forever(
            config.runtime.sweep_interval_seconds,
            on_result=lambda result: _print_sweep_result(result, as_json=as_json),
        )


def _print_sweep_result(result: SweepResult, *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result.to_dict(), indent=2), flush=True)
        return
    print(
        f"tasks_scanned={result.tasks_scanned} merge_attempts={result.merge_attempts} "
        f"merge_successes={result.merge_successes} auto_closes={result.auto_closes} "
        f"skipped={result.skipped}",
        flush=True,
    )
    for entry in result.entries:
        print(
            f"{entry.timestamp} {entry.action} task={entry.task_id} pr={entry.pr_url or '<none>'} "
            f"detail={entry.detail}",
            flush=True,
        )


def _print_drift_report(report: DriftReport, *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
        return
    summary = report.summary
    print(" ".join(f"{key}={value}" for key, value in summary.items()))
    flagged = [
        entry for entry in (*report.validating, *report.orphan_prs) if entry.issue != "clean"
    ]
    if not flagged:
        print("No drift detected.")
        return
    for entry in flagged:
        marker = " CRITICAL" if entry.critical else ""
        print()
        print(f"[{entry.issue}{marker}] {entry.task_id} {entry.title}")
        print(f"detail={entry.detail}")
        if entry.remediation:
            print(entry.remediation)


def _parse_json_object(raw: str | None, *, flag: str) -> dict[str, object] | None:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"{flag} must be valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise RuntimeError(f"{flag} must be a JSON object")
    return value

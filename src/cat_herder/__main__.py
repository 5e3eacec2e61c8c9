"""CLI entrypoint for cat-herder."""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from cat_herder.cancellation import CancelToken
from cat_herder.config import ProjectConfig, load_config
from cat_herder.errors import CatHerderError, TaskInterrupted
from cat_herder.file_access import (
    BLOCKED_EXIT_CODE,
    check_file_access,
    parse_hook_payload,
)
from cat_herder.schemas import TaskStatus
from cat_herder.state_store import StateStore, dump_record

logger = logging.getLogger(__name__)


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so ``CAT_HERDER_CONFIG`` can live there."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


_load_dotenv()


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all supported commands."""
    p = argparse.ArgumentParser(
        prog="cat-herder",
        description="cat-herder - run AI coding agents through resumable, checked pipelines.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging.")
    p.add_argument(
        "--config",
        type=str,
        default="",
        help="Path to cat-herder.yaml (default: search upward from the cwd).",
    )
    sub = p.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Run one task file through its pipeline.")
    run_p.add_argument("task_file", help="Path to the task markdown file.")
    run_p.add_argument("--pipeline", type=str, default=None, help="Pipeline name to use.")
    run_p.add_argument(
        "--model",
        type=str,
        default=None,
        help="Model for steps that do not configure one.",
    )

    seq_p = sub.add_parser("run-sequence", help="Run every task file in a folder in order.")
    seq_p.add_argument(
        "folder",
        nargs="?",
        default=None,
        help="Folder holding the task files (default: taskFolder from the config).",
    )
    seq_p.add_argument(
        "--model",
        type=str,
        default=None,
        help="Model for steps that do not configure one.",
    )

    status_p = sub.add_parser("status", help="Show the active (or last finished) task.")
    status_p.add_argument("--task-id", type=str, default="", help="Show this task instead.")
    status_p.add_argument("--json", action="store_true", help="Print the raw status record.")
    status_p.add_argument("--all", action="store_true", help="List every recorded task.")

    sub.add_parser("validate", help="Check the pipeline definitions for problems.")

    ask_p = sub.add_parser("ask", help="Ask the human a question on behalf of the agent.")
    ask_p.add_argument("question", help="The question to ask.")
    ask_p.add_argument("--task-id", type=str, default="", help="Task to ask about (default: active).")

    answer_p = sub.add_parser("answer", help="Answer a pending question for a task.")
    answer_p.add_argument("task_id", help="Task the answer is for.")
    answer_p.add_argument("text", help="The answer.")

    sub.add_parser(
        "check-file-access",
        help="Hook: read a JSON file path on stdin and exit 2 if the active step may not write it.",
    )
    return p


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    # -- Logging setup (early, for all commands) -----------------------------
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if not args.command:
        parser.print_help()
        return 1
    try:
        if args.command == "run":
            return _run_task(args)
        if args.command == "run-sequence":
            return _run_sequence(args)
        if args.command == "status":
            return _show_status(args)
        if args.command == "validate":
            return _validate(args)
        if args.command == "ask":
            return _ask(args)
        if args.command == "answer":
            return _answer(args)
        if args.command == "check-file-access":
            return _check_file_access(args)
    except TaskInterrupted as exc:
        print(f"\n  {exc} State saved; run the same command again to resume.", file=sys.stderr)
        return 0
    except CatHerderError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    parser.print_help()
    return 1


# -- Shared helpers -----------------------------------------------------------


def _config(args: argparse.Namespace) -> ProjectConfig:
    return load_config(args.config or None)


def _store(config: ProjectConfig) -> StateStore:
    return StateStore(config.state_dir, config.journal_file)


def _install_signal_handlers(token: CancelToken) -> None:
    """First SIGINT/SIGTERM cancels *token*; a second one exits immediately."""
    received = {"count": 0}

    def _handler(signum: int, _frame: object) -> None:
        received["count"] += 1
        if received["count"] > 1:
            os._exit(130)
        print(
            f"\n  Received {signal.Signals(signum).name}; saving state. "
            "Press Ctrl+C again to exit immediately.",
            file=sys.stderr,
            flush=True,
        )
        token.cancel()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _orchestrator(args: argparse.Namespace):
    from cat_herder.pipeline import Orchestrator

    config = _config(args)
    token = CancelToken()
    _install_signal_handlers(token)
    return Orchestrator(config, token=token, default_model=getattr(args, "model", None))


def _format_usage(status: TaskStatus) -> list[str]:
    lines = []
    for model, usage in sorted(status.token_usage.items()):
        lines.append(
            f"    {model}: in={usage.input_tokens:,} out={usage.output_tokens:,} "
            f"cache_write={usage.cache_creation_input_tokens:,} "
            f"cache_read={usage.cache_read_input_tokens:,}"
        )
    return lines


def _print_task_summary(status: TaskStatus) -> None:
    print("\n" + "=" * 60)
    print(f"  Task:    {status.task_id}")
    print("=" * 60)
    print(f"  Phase:   {status.phase.value}")
    print(f"  Step:    {status.current_step or '-'}")
    print(f"  Branch:  {status.branch or '-'}")
    if status.last_commit:
        print(f"  Commit:  {status.last_commit}")
    if status.steps:
        print("\n  Steps")
        for name, phase in status.steps.items():
            print(f"    {name:<20}  {phase.value}")
    if status.pending_question is not None:
        print(f"\n  Waiting for an answer: {status.pending_question.question}")
        print(f"  Reply with: cat-herder answer {status.task_id} \"<answer>\"")
    if status.rate_limit_reset_at:
        print(f"\n  Rate limit resets at {status.rate_limit_reset_at}")
    usage_lines = _format_usage(status)
    if usage_lines:
        print("\n  Token usage")
        for line in usage_lines:
            print(line)
    if status.stats.total_duration:
        print(
            f"\n  Elapsed: {status.stats.total_duration:.0f}s "
            f"(paused {status.stats.total_pause_time:.0f}s)"
        )
    print()


# -- Commands -----------------------------------------------------------------


def _run_task(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    status = orchestrator.run_task(args.task_file, pipeline_name=args.pipeline)
    _print_task_summary(status)
    return 0


def _run_sequence(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    sequence = orchestrator.run_sequence(args.folder or orchestrator.config.task_dir)
    print("\n" + "=" * 60)
    print(f"  Sequence: {sequence.sequence_id}")
    print("=" * 60)
    print(f"  Phase:    {sequence.phase.value}")
    print(f"  Branch:   {sequence.branch or '-'}")
    print(f"  Tasks:    {len(sequence.completed_tasks)} completed")
    for model, usage in sorted(sequence.stats.total_token_usage.items()):
        print(f"    {model}: {usage.total_tokens:,} tokens")
    print()
    return 0


def _show_status(args: argparse.Namespace) -> int:
    store = _store(_config(args))
    if args.all:
        records = store.list_task_statuses()
        if args.json:
            print(json.dumps([dump_record(r) for r in records], indent=2))
            return 0
        for record in records:
            print(f"{record.task_id:<40}  {record.phase.value:<18}  {record.current_step or '-'}")
        return 0
    task_id = args.task_id
    if not task_id:
        event = store.find_active_task() or store.find_last_finished_task()
        if event is None:
            print("No task has been run yet.")
            return 0
        task_id = event.id
    status = store.read_task(task_id)
    if not status.task_id:
        print(f"Error: no status recorded for {task_id}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps(dump_record(status), indent=2))
    else:
        _print_task_summary(status)
    return 0


def _validate(args: argparse.Namespace) -> int:
    from cat_herder.pipeline.validator import validate_config_file

    problems = validate_config_file(args.config or None)
    if not problems:
        print("Pipeline configuration is valid.")
        return 0
    print("Pipeline configuration has problems:", file=sys.stderr)
    for problem in problems:
        print(f"  - {problem}", file=sys.stderr)
    return 1


def _ask(args: argparse.Namespace) -> int:
    store = _store(_config(args))
    task_id = args.task_id
    if not task_id:
        event = store.find_active_task()
        if event is None:
            print("Error: no task is running; pass --task-id.", file=sys.stderr)
            return 1
        task_id = event.id
    path = store.write_question(task_id, args.question)
    logger.debug("Wrote question file %s", path)
    print(f"Question filed for {task_id}; waiting for the human to answer.")
    return 0


def _answer(args: argparse.Namespace) -> int:
    text = str(args.text or "").strip()
    if not text:
        print("Error: the answer must not be empty.", file=sys.stderr)
        return 1
    store = _store(_config(args))
    store.write_answer(args.task_id, text)
    print(f"Answer recorded for {args.task_id}.")
    return 0


def _check_file_access(args: argparse.Namespace) -> int:
    try:
        file_path = parse_hook_payload(sys.stdin.read())
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    config = _config(args)
    decision = check_file_access(config, _store(config), file_path)
    if decision.allowed:
        return 0
    print(decision.message, file=sys.stderr)
    return BLOCKED_EXIT_CODE


if __name__ == "__main__":
    sys.exit(main())

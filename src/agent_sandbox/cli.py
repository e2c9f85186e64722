"""Argparse-based CLI for agent-sandbox.

Runs the execution host or the controller, and manages stored tasks.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from agent_sandbox.config import Settings
from agent_sandbox.controller import Controller, HostUnavailableError
from agent_sandbox.models.events import StderrEvent, StdoutEvent
from agent_sandbox.models.task import (
    ExecutionMode,
    Frequency,
    InvalidTaskError,
    OneTimeTrigger,
    OnGoingTrigger,
    ScheduledTrigger,
    Task,
    TriggerType,
)
from agent_sandbox.services.runner import TaskOutputNotice
from agent_sandbox.services.task_store import TaskStore


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _format_task(task: Task) -> str:
    trigger = task.trigger
    if isinstance(trigger, OnGoingTrigger):
        detail = f"on-going ({trigger.domain})"
    elif isinstance(trigger, ScheduledTrigger):
        detail = f"scheduled ({trigger.frequency.value}{' at ' + trigger.timing if trigger.timing else ''})"
    else:
        detail = "one-time"
    flags = []
    if not task.enabled:
        flags.append("disabled")
    if task.favorited:
        flags.append("favorite")
    status = task.last_run_status.value if task.last_run_status else "never run"
    suffix = f" [{', '.join(flags)}]" if flags else ""
    return f"- {task.id}: {task.name} | {detail} | {status}{suffix}"


def _build_trigger(args: argparse.Namespace):
    if args.trigger == TriggerType.ON_GOING.value:
        return OnGoingTrigger(domain=args.domain or "")
    if args.trigger == TriggerType.SCHEDULED.value:
        return ScheduledTrigger(frequency=args.frequency, timing=args.timing)
    return OneTimeTrigger()


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


async def _open_store(settings: Settings) -> TaskStore:
    store = TaskStore(settings.tasks_path, max_concurrency=settings.max_concurrency)
    await store.load()
    return store


async def _tasks_command(args: argparse.Namespace, settings: Settings) -> int:
    store = await _open_store(settings)

    if args.tasks_command == "list":
        tasks = await (store.favorited() if args.favorites else store.list_tasks())
        if not tasks:
            print("No tasks found.")
        for task in tasks:
            print(_format_task(task))
        return 0

    if args.tasks_command == "create":
        task = await store.create(
            name=args.name,
            original_prompt=args.prompt,
            optimized_prompt=args.optimized_prompt or "",
            trigger=_build_trigger(args),
            start_url=args.start_url,
            mode=ExecutionMode(args.mode),
        )
        print(f"Created task {task.id}")
        return 0

    if args.tasks_command == "delete":
        if not await store.delete(args.task_id):
            print(f"Task {args.task_id} not found", file=sys.stderr)
            return 1
        print(f"Deleted task {args.task_id}")
        return 0

    if args.tasks_command == "favorite":
        task = await store.toggle_favorite(args.task_id)
        if task is None:
            print(f"Task {args.task_id} not found", file=sys.stderr)
            return 1
        print(f"{task.name}: {'favorite' if task.favorited else 'not favorite'}")
        return 0

    if args.tasks_command == "upcoming":
        runs = await store.upcoming_schedule()
        if not runs:
            print("No scheduled tasks.")
        for run in runs:
            minutes = int(run.next_run_in.total_seconds() // 60)
            print(f"- {run.name}: in {minutes} min ({run.next_run_at:%Y-%m-%d %H:%M})")
        return 0

    return await _run_task(args.task_id, settings)


async def _run_task(task_id: str, settings: Settings) -> int:
    controller = Controller(settings)

    async def echo(notice: TaskOutputNotice) -> None:
        if isinstance(notice.event, StdoutEvent):
            print(notice.event.data, end="", flush=True)
        elif isinstance(notice.event, StderrEvent):
            print(notice.event.data, end="", file=sys.stderr, flush=True)

    controller.runner.on("task_output", echo)
    try:
        await controller.start(with_scheduler=False)
        result = await controller.runner.trigger(task_id)
        if not result.started or result.run is None:
            print(result.message, file=sys.stderr)
            return 1
        outcome = await result.run
        print(f"\nTask finished: {outcome.status.value}")
        return 0 if outcome.success else 1
    except HostUnavailableError as e:
        print(str(e), file=sys.stderr)
        return 1
    finally:
        await controller.stop()


async def _controller_command(settings: Settings) -> int:
    controller = Controller(settings)
    try:
        await controller.start()
    except HostUnavailableError as e:
        print(str(e), file=sys.stderr)
        await controller.stop()
        return 1
    try:
        await asyncio.Event().wait()
    finally:
        await controller.stop()
    return 0


# ---------------------------------------------------------------------------
# Subparser registration
# ---------------------------------------------------------------------------


def _register_subcommands(subparsers: argparse._SubParsersAction) -> None:
    subparsers.add_parser("host", help="Run the execution host")
    subparsers.add_parser("controller", help="Run the controller and scheduler")

    tasks = subparsers.add_parser("tasks", help="Manage stored tasks")
    tasks_sub = tasks.add_subparsers(dest="tasks_command", required=True)

    p = tasks_sub.add_parser("list", help="List tasks")
    p.add_argument("--favorites", action="store_true", help="Only favorited tasks")

    p = tasks_sub.add_parser("create", help="Create a task")
    p.add_argument("name", help="Task name")
    p.add_argument("prompt", help="Instruction for the agent")
    p.add_argument("--optimized-prompt", default=None, help="Refined instruction")
    p.add_argument(
        "--trigger",
        choices=[t.value for t in TriggerType],
        default=TriggerType.ONE_TIME.value,
    )
    p.add_argument("--domain", default=None, help="Domain for on-going tasks")
    p.add_argument(
        "--frequency",
        choices=[f.value for f in Frequency],
        default=Frequency.DAILY.value,
        help="Frequency for scheduled tasks",
    )
    p.add_argument("--timing", default=None, help="HH:MM, or 'Mon HH:MM' for weekly tasks")
    p.add_argument("--start-url", default=None, help="Page to open before running")
    p.add_argument(
        "--mode",
        choices=[m.value for m in ExecutionMode],
        default=ExecutionMode.AGENT.value,
    )

    p = tasks_sub.add_parser("delete", help="Delete a task")
    p.add_argument("task_id")

    p = tasks_sub.add_parser("favorite", help="Toggle a task's favorite flag")
    p.add_argument("task_id")

    tasks_sub.add_parser("upcoming", help="Show upcoming scheduled runs")

    p = tasks_sub.add_parser("run", help="Run a task now against the configured host")
    p.add_argument("task_id")


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate handler."""

    parser = argparse.ArgumentParser(
        prog="agent-sandbox",
        description="Task orchestration and sandboxed agent execution",
    )
    parser.add_argument("--tasks-path", default=None, help="Path to the tasks JSON file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")
    _register_subcommands(subparsers)

    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "host":
        from agent_sandbox.host import main as host_main

        host_main()
        return

    settings = Settings()
    if args.tasks_path:
        settings.tasks_path = args.tasks_path

    if args.command == "controller":
        _setup_logging(args.verbose)
        try:
            code = asyncio.run(_controller_command(settings))
        except KeyboardInterrupt:
            code = 0
    else:
        # Task commands print to stdout, keep logs out of it unless asked
        if args.verbose:
            _setup_logging(True)
        try:
            code = asyncio.run(_tasks_command(args, settings))
        except InvalidTaskError as e:
            print(str(e), file=sys.stderr)
            code = 1

    if code:
        sys.exit(code)

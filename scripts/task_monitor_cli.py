#!/usr/bin/env python3
"""Command line client for watching and managing tasks through the task monitor."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any

sys.path.append(".")

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from scripts._console_utils import (
    get_console,
    get_err_console,
    status_label,
    styled_status,
)
from taskmonitor.configs.config import config
from taskmonitor.configs.logging_config import setup_logging
from taskmonitor.core.exceptions import MutationError, TransportError
from taskmonitor.core.step_inference import task_type_label
from taskmonitor.core.step_status import TERMINAL_TASK_STATUSES
from taskmonitor.schemas.progress import ProgressSnapshot
from taskmonitor.services.task_queries import TaskQueries, get_task_queries

LIST_STATUSES = ("all", "queued", "processing", "completed", "failed", "cancelled")

console = get_console()
err_console = get_err_console()


def render_snapshot(snapshot: ProgressSnapshot) -> Panel:
    """Build a panel with task details, step table and error log."""
    fields = snapshot.projected_fields
    header = Text()
    header.append(fields.filename or "-", style="bold white")
    header.append("  type=", style="dim")
    header.append(task_type_label(fields.task_type))
    header.append("  status=", style="dim")
    header.append_text(styled_status(snapshot.status))
    header.append("  progress=", style="dim")
    header.append(f"{snapshot.progress_percent}%", style="bold white")
    if fields.voice_language:
        header.append("  voice=", style="dim")
        header.append(fields.voice_language)
    if fields.subtitle_language:
        header.append("  subtitles=", style="dim")
        header.append(fields.subtitle_language)

    steps = Table(header_style="bold cyan", show_lines=False, expand=False)
    steps.add_column("Step", style="bold white")
    steps.add_column("Status")
    steps.add_column("")
    for step in snapshot.steps:
        marker = "<- current" if step.name == snapshot.current_step else ""
        if step.blocked_by_failure:
            marker = "blocked by failure"
        steps.add_row(step.name, styled_status(step.status), Text(marker, style="dim"))

    body = Table.grid()
    body.add_row(header)
    body.add_row(steps)
    for error in snapshot.errors:
        line = Text()
        line.append(f"{error.step}: ", style="bold red")
        line.append(error.error)
        if error.timestamp:
            line.append(f" ({error.timestamp})", style="dim")
        body.add_row(line)
    return Panel.fit(body, title=f"Task {snapshot.task_id or '-'}", border_style="cyan")


async def cmd_list(args: argparse.Namespace, queries: TaskQueries) -> None:
    tasks = await queries.list_tasks(status=args.status, page=args.page, limit=args.limit)
    if args.json:
        console.print_json(data=tasks)
        return
    if not tasks:
        console.print("[bold yellow]No tasks found.[/]")
        return
    table = Table(
        title=f"{len(tasks)} task(s) found",
        header_style="bold cyan",
        show_lines=False,
    )
    table.add_column("Task ID", style="bold white")
    table.add_column("Status")
    table.add_column("Type")
    table.add_column("Created")
    table.add_column("Updated")
    for task in tasks:
        status_value = str(task.get("status") or "-")
        table.add_row(
            str(task.get("task_id")),
            styled_status(status_value),
            task_type_label(task.get("task_type")),
            str(task.get("created_at") or "-"),
            str(task.get("updated_at") or "-"),
        )
    console.print(table)


async def cmd_show(args: argparse.Namespace, queries: TaskQueries) -> None:
    snapshot = await queries.get_snapshot(args.task_id)
    if snapshot is None:
        console.print(f"[bold red]Task {args.task_id} not found.[/]")
        sys.exit(1)
    if args.json:
        console.print_json(data=snapshot.to_payload("compact" if args.compact else None))
        return
    console.print(render_snapshot(snapshot))


async def cmd_watch(args: argparse.Namespace, queries: TaskQueries) -> None:
    """Print every snapshot change until the task reaches a terminal status."""
    done = asyncio.Event()
    last: dict[str, Any] = {}

    def on_update(snapshot: ProgressSnapshot | None) -> None:
        if snapshot is None:
            console.print(f"[bold red]Task {args.task_id} not found.[/]")
            done.set()
            return
        signature = (snapshot.status, snapshot.progress_percent, snapshot.current_step)
        if last.get("signature") != signature:
            last["signature"] = signature
            line = Text.assemble(
                Text(f"{snapshot.progress_percent:>3}% ", style="bold white"),
                styled_status(snapshot.status),
                Text(f"  {snapshot.current_step or '-'}", style="dim"),
            )
            console.print(line)
        if snapshot.status in TERMINAL_TASK_STATUSES or (
            snapshot.status == "failed" and not args.follow_failed
        ):
            last["final"] = snapshot
            done.set()

    subscription = queries.watch_task(args.task_id, on_update)
    try:
        await asyncio.wait_for(done.wait(), timeout=args.timeout)
    except asyncio.TimeoutError:
        err_console.print(f"[yellow]Stopped watching after {args.timeout:g}s.[/]")
    finally:
        subscription.close()
    if "final" in last:
        console.print(render_snapshot(last["final"]))


def _print_ok(message: str, task_id: str) -> None:
    console.print(
        Text.assemble(
            status_label("OK", "bold green"),
            Text(f" {message} ", style="bold white"),
            Text(task_id, style="bold cyan"),
        )
    )


async def cmd_cancel(args: argparse.Namespace, queries: TaskQueries) -> None:
    await queries.cancel(args.task_id)
    _print_ok("Cancellation requested for", args.task_id)


async def cmd_retry(args: argparse.Namespace, queries: TaskQueries) -> None:
    result = await queries.retry(args.task_id, args.step)
    step = result.get("step") or args.step or "failed step"
    _print_ok(f"Retry queued from {step} for", args.task_id)


async def cmd_delete(args: argparse.Namespace, queries: TaskQueries) -> None:
    await queries.delete(args.task_id)
    _print_ok("Deleted", args.task_id)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Task monitor: reconciled task progress from the command line",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/task_monitor_cli.py list --status failed
  python scripts/task_monitor_cli.py show <task_id>
  python scripts/task_monitor_cli.py watch <task_id> --timeout 600
  python scripts/task_monitor_cli.py retry <task_id> --step generate_audio
        """,
    )
    sub = parser.add_subparsers(dest="command")

    list_parser = sub.add_parser("list", help="List tasks")
    list_parser.add_argument("--status", choices=LIST_STATUSES, default="all")
    list_parser.add_argument("--page", type=int, default=1)
    list_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Tasks per page (default: 20)",
    )
    list_parser.add_argument(
        "--json",
        action="store_true",
        help="Output JSON instead of human-readable text",
    )
    list_parser.set_defaults(func=cmd_list)

    show_parser = sub.add_parser("show", help="Show a reconciled task snapshot")
    show_parser.add_argument("task_id", help="Task identifier")
    show_parser.add_argument("--json", action="store_true")
    show_parser.add_argument(
        "--compact",
        action="store_true",
        help="With --json, emit the compact payload",
    )
    show_parser.set_defaults(func=cmd_show)

    watch_parser = sub.add_parser("watch", help="Follow a task until it finishes")
    watch_parser.add_argument("task_id", help="Task identifier")
    watch_parser.add_argument(
        "--timeout",
        type=float,
        default=3600,
        help="Give up after this many seconds (default: 3600)",
    )
    watch_parser.add_argument(
        "--follow-failed",
        action="store_true",
        help="Keep watching failed tasks (e.g. while a retry is pending)",
    )
    watch_parser.set_defaults(func=cmd_watch)

    cancel_parser = sub.add_parser("cancel", help="Cancel a running task")
    cancel_parser.add_argument("task_id", help="Task identifier")
    cancel_parser.set_defaults(func=cmd_cancel)

    retry_parser = sub.add_parser("retry", help="Retry a failed task")
    retry_parser.add_argument("task_id", help="Task identifier")
    retry_parser.add_argument("--step", help="Step to resume from (default: failed step)")
    retry_parser.set_defaults(func=cmd_retry)

    delete_parser = sub.add_parser("delete", help="Delete a task")
    delete_parser.add_argument("task_id", help="Task identifier")
    delete_parser.set_defaults(func=cmd_delete)

    return parser


async def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "command", None):
        parser.print_help()
        return
    setup_logging(config.log_level, component="cli")
    queries = get_task_queries()
    await queries.preferences.load()
    try:
        await args.func(args, queries)
    except (TransportError, MutationError) as exc:
        err_console.print(f"[bold red]{exc}[/]")
        sys.exit(1)
    finally:
        await queries.close()


if __name__ == "__main__":
    asyncio.run(main())

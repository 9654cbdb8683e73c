"""Command-line entry for stacker_lite.

A small CLI over ``TaskController`` for listing, adding and editing tasks
stored in the JSON task document.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date
from typing import Optional

from . import _init_logging
from .config_loader import load_config
from .domain.action_service import Intent
from .domain.task_controller import TaskController
from .domain.task_repository import JsonTaskRepository
from .lite_exceptions import InvalidIntentError, PersistenceError, RuleParseError, StorageError
from .lite_logging import configure_lite_logging
from .lite_models import TaskEdit, new_task
from .lite_rrule_expander import format_rule, parse_rule

logger = logging.getLogger(__name__)

EDIT_SCOPES = {
    "instance": Intent.EDIT_INSTANCE,
    "future": Intent.EDIT_FUTURE,
    "series": Intent.EDIT_SERIES,
}
DELETE_SCOPES = {
    "instance": Intent.DELETE_INSTANCE,
    "future": Intent.DELETE_FUTURE,
    "all": Intent.DELETE_ALL,
}


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from exc


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid number {value!r}") from exc
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {number}")
    return number


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the stacker CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="stacker",
        description="Stacker - recurring task planner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  stacker add "Gym" --date 2026-01-05 --rrule "FREQ=WEEKLY;BYDAY=MO"
  stacker list --days 14
  stacker edit <occurrence-id> --scope future --title "Gym (new plan)"
  stacker delete <occurrence-id> --scope instance
        """,
    )
    parser.add_argument("--config", metavar="PATH", help="Config file (default: ~/.config/stacker/config.yaml)")
    parser.add_argument("--data", metavar="PATH", help="Task document path (overrides config data_path)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="List occurrences in a window")
    list_cmd.add_argument("--start", type=_iso_date, help="Window start (default: today)")
    list_cmd.add_argument("--days", type=_non_negative_int, default=7, help="Window length in days (default: 7)")
    list_cmd.add_argument("--all", action="store_true", help="Include completed occurrences")

    add_cmd = sub.add_parser("add", help="Add a task or recurring series")
    add_cmd.add_argument("title")
    add_cmd.add_argument("--date", type=_iso_date, help="Date or series start (default: today)")
    add_cmd.add_argument("--rrule", help='Recurrence rule, e.g. "FREQ=DAILY;COUNT=5"')

    toggle_cmd = sub.add_parser("toggle", help="Toggle completion of an occurrence")
    toggle_cmd.add_argument("occurrence_id")

    edit_cmd = sub.add_parser("edit", help="Edit an occurrence, the series, or this and following")
    edit_cmd.add_argument("occurrence_id")
    edit_cmd.add_argument("--scope", choices=sorted(EDIT_SCOPES), default="instance")
    edit_cmd.add_argument("--title")
    edit_cmd.add_argument("--date", type=_iso_date)
    edit_cmd.add_argument("--rrule", help="New recurrence rule")

    delete_cmd = sub.add_parser("delete", help="Delete an occurrence, this and following, or everything")
    delete_cmd.add_argument("occurrence_id")
    delete_cmd.add_argument("--scope", choices=sorted(DELETE_SCOPES), default="instance")

    rollover_cmd = sub.add_parser("rollover", help="Move overdue work to today")
    rollover_cmd.add_argument("--today", type=_iso_date, help="Override today's date")

    return parser


def _build_edit(args: argparse.Namespace) -> TaskEdit:
    fields: dict = {}
    if args.title is not None:
        fields["title"] = args.title
    if args.date is not None:
        fields["date"] = args.date
    if args.rrule:
        fields["recurrence"] = parse_rule(args.rrule)
    return TaskEdit(**fields)


async def _run(args: argparse.Namespace, controller: TaskController) -> int:
    await controller.load()

    if args.command == "list":
        for occ in controller.project(args.start, args.days, include_completed=args.all):
            mark = "x" if occ.is_completed else " "
            print(f"{occ.date.isoformat()}  [{mark}] {occ.title}  ({occ.occurrence_id})")
        return 0

    if args.command == "add":
        rule = format_rule(parse_rule(args.rrule)) if args.rrule else None
        task = await controller.add_task(new_task(args.title, args.date or date.today(), recurrence_rule=rule))
        print(task.id)
        return 0

    if args.command == "rollover":
        result = await controller.rollover(args.today)
        print(f"Rolled over {len(result.plans)} item(s)")
        return 0

    occurrence = controller.resolve_occurrence(args.occurrence_id)
    if occurrence is None:
        print(f"No occurrence {args.occurrence_id}", file=sys.stderr)
        return 1

    if args.command == "toggle":
        result = await controller.perform(occurrence, Intent.TOGGLE)
    elif args.command == "edit":
        result = await controller.perform(occurrence, EDIT_SCOPES[args.scope], _build_edit(args))
    else:
        result = await controller.perform(occurrence, DELETE_SCOPES[args.scope])

    if not result.success:
        for warning in result.warnings:
            print(warning, file=sys.stderr)
        return 1
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Run the stacker CLI and return the process exit code."""
    parser = _create_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    _init_logging(config.log_level)
    configure_lite_logging(debug_mode=args.debug)
    if args.data:
        config.data_path = args.data

    controller = TaskController(JsonTaskRepository(config.resolved_data_path), config)
    try:
        return asyncio.run(_run(args, controller))
    except RuleParseError as exc:
        print(f"Invalid recurrence rule: {exc}", file=sys.stderr)
        return 2
    except (StorageError, PersistenceError, InvalidIntentError) as exc:
        logger.error("stacker %s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

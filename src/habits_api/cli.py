"""
Command line orphan check.

Usage:
    habits-find-orphans CREDENTIALS [USER_ID] [--log-file PATH]

CREDENTIALS is a JSON file describing the store to open, e.g.
``{"backend": "sqlite", "sqlite_db_path": "./data/habits.db"}``. Without
USER_ID every user in the store is scanned. The scan is read-only; the
grouped report goes to stdout and the first ORPHAN_LOG_LIMIT orphans are
written to the log file.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .errors import HabitsError
from .logging_setup import configure_logging
from .models import InstanceEntity
from .orphans import OrphanDetector
from .repositories import Store, build_store
from .settings import get_settings
from .utils import group_by_recurrence

logger = logging.getLogger(__name__)

CONSOLE_GROUP_LIMIT = 5


def load_credentials(path: str) -> Dict[str, Any]:
    """Read the store description. Raises ValueError when it is not a JSON object."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("credential file must contain a JSON object")
    return data


def _instance_line(inst: InstanceEntity) -> str:
    return f"  - ID: {inst['id']}, Name: {inst['name']}, Date: {inst['date']}, Completed: {inst['completed']}"


def _print_groups(user_id: str, orphans: List[InstanceEntity]) -> None:
    print(f"Found {len(orphans)} orphaned instances for user: {user_id}:")
    for recurrence_id, items in group_by_recurrence(orphans).items():
        print(f"\nRecurrenceId: {recurrence_id} ({len(items)} instances):")
        for inst in items[:CONSOLE_GROUP_LIMIT]:
            print(_instance_line(inst))
        if len(items) > CONSOLE_GROUP_LIMIT:
            print(f"  ... and {len(items) - CONSOLE_GROUP_LIMIT} more instances")


async def check_user(detector: OrphanDetector, user_id: str) -> List[InstanceEntity]:
    """Scan one user and print the result. Store failures are logged and yield no orphans."""
    print(f"Checking orphaned instances for user: {user_id}")
    try:
        report = await detector.scan(user_id)
    except HabitsError as e:
        logger.error("Error checking orphaned instances for user %s: %s", user_id, e)
        return []

    if report.total_recurring == 0:
        print(f"No recurring instances found for user: {user_id}")
        return []
    print(f"Found {report.total_recurring} recurring instances for user: {user_id}")
    print(f"Found {report.valid_pattern_count} valid recurrence patterns for user: {user_id}")
    if not report.orphans:
        print(f"No orphaned instances found for user: {user_id}. All instances have valid recurrence patterns.")
        return []
    _print_groups(user_id, report.orphans)
    return report.orphans


def write_report(
    path: str,
    orphans: List[InstanceEntity],
    limit: int,
    started: datetime,
    error: Optional[BaseException] = None,
) -> None:
    """
    Start the log file fresh and write the first ``limit`` orphans, grouped by recurrence id.

    A check that stopped early ends the file with an ``ERROR:`` line.
    """
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"Orphaned Instances Check - {started.isoformat()}\n\n")
        if orphans:
            logged = orphans[:limit]
            f.write(f"Total orphaned instances found: {len(orphans)}\n")
            f.write(f"Logging first {len(logged)} instances:\n\n")
            for recurrence_id, items in group_by_recurrence(logged).items():
                f.write(f"\nRecurrenceId: {recurrence_id} ({len(items)} instances):\n")
                for inst in items:
                    f.write(_instance_line(inst) + "\n")
        if error is not None:
            f.write(f"\nERROR: {error}\n")


async def _check_all(detector: OrphanDetector, store: Store, found: List[InstanceEntity]) -> None:
    print("Checking for all users...")
    user_ids = await store.list_user_ids()
    if not user_ids:
        print("No users found in the database.")
        return
    print(f"Found {len(user_ids)} users. Checking each for orphaned instances...")
    for uid in user_ids:
        found.extend(await check_user(detector, uid))


async def run(store: Store, user_id: Optional[str], log_path: str, limit: int) -> List[InstanceEntity]:
    """
    Scan one user or every user and write the report file. Returns all orphans found.

    Store and file errors are logged and end the check early; they are never raised.
    """
    started = datetime.now(timezone.utc)
    detector = OrphanDetector(store)
    found: List[InstanceEntity] = []
    error: Optional[HabitsError] = None

    try:
        if user_id:
            found = await check_user(detector, user_id)
        else:
            await _check_all(detector, store, found)
    except HabitsError as e:
        logger.error("Error running orphaned instances check: %s", e)
        error = e

    try:
        write_report(log_path, found, limit, started, error)
    except OSError as e:
        logger.error("Could not write orphan report to %s: %s", log_path, e)
    else:
        if found:
            print(f"\nDetailed report of orphaned instances written to: {log_path}")

    print(f"\nCheck completed. Found a total of {len(found)} orphaned instances.")
    return found


def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = get_settings()
    configure_logging(settings.log_level)

    parser = argparse.ArgumentParser(
        prog="habits-find-orphans",
        description="Report recurring todo instances whose recurrence pattern no longer exists.",
    )
    parser.add_argument("credentials", nargs="?", help="JSON file describing the store to open")
    parser.add_argument("user_id", nargs="?", help="Only check this user (default: all users)")
    parser.add_argument(
        "--log-file",
        default=settings.orphan_log_path,
        help=f"Report file, overwritten on each run (default: {settings.orphan_log_path})",
    )
    args = parser.parse_args(argv)

    if not args.credentials:
        print("Please provide the path to your store credential file:", file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 1

    try:
        creds = load_credentials(args.credentials)
        store = build_store(
            str(creds.get("backend", "sqlite")).lower(),
            creds.get("sqlite_db_path") or settings.sqlite_db_path,
        )
    except (OSError, ValueError, HabitsError) as e:
        print(f"Error opening store from {args.credentials}: {e}", file=sys.stderr)
        return 1
    print("Store initialized.")

    asyncio.run(run(store, args.user_id, args.log_file, settings.orphan_log_limit))
    return 0


if __name__ == "__main__":
    sys.exit(main())

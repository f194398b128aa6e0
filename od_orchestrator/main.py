"""Command line entry point for Open Dental mirror syncs."""
from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, time as dtime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from od_connector.errors import OpenDentalError

from .runs import DailySync, RunHistory, SyncSummary
from .service import EnvironmentCredentialProvider, PracticeIntegration
from .storage import JsonFilePersistence, JsonPracticeDirectory

logger = logging.getLogger(__name__)

DEFAULT_PRACTICES_FILE = Path(os.getenv("OD_PRACTICES_FILE", "practices.json"))
DEFAULT_DATA_DIR = Path(os.getenv("OD_DATA_DIR", "data"))
DEFAULT_HISTORY_FILE = Path(os.getenv("OD_RUN_HISTORY", "run_history.json"))
DEFAULT_SYNC_TIME = os.getenv("OD_DAILY_SYNC_TIME", "02:00")

SYNC_COMMANDS = ("sync_patients", "sync_providers", "sync_operatories", "sync_appointments", "sync_all")


def build_integration(directory: JsonPracticeDirectory, data_dir: Path) -> PracticeIntegration:
    return PracticeIntegration(
        EnvironmentCredentialProvider(),
        directory,
        persistence_factory=lambda practice_id: JsonFilePersistence(
            data_dir / practice_id, directory.get(practice_id).tz
        ),
    )


def run_sync(
    integration: PracticeIntegration,
    method_name: str,
    practice_ids: Sequence[str],
    *,
    cancel_event: Optional[threading.Event] = None,
) -> SyncSummary:
    """Run one sync method for every practice in parallel.

    Each practice has its own executor, so practices do not throttle each
    other. Failures are collected per practice rather than aborting the rest.
    """

    def run_one(practice_id: str) -> object:
        started = time.monotonic()
        result = getattr(integration, method_name)(practice_id, cancel_event=cancel_event)
        logger.info("%s for %s finished in %.1fs: %s", method_name, practice_id, time.monotonic() - started, result)
        return result

    synced: Dict[str, object] = {}
    failed: Dict[str, str] = {}
    with ThreadPoolExecutor(max_workers=max(1, len(practice_ids)), thread_name_prefix="od-sync") as pool:
        futures = {practice_id: pool.submit(run_one, practice_id) for practice_id in practice_ids}
        for practice_id, future in futures.items():
            try:
                synced[practice_id] = future.result()
            except (OpenDentalError, KeyError, ValueError) as exc:
                logger.error("%s for %s failed: %s", method_name, practice_id, exc)
                failed[practice_id] = str(exc)
    return {"command": method_name, "synced": synced, "failed": failed}


def run_scheduler(
    integration: PracticeIntegration,
    practice_ids: Sequence[str],
    history: RunHistory,
    run_time: dtime,
) -> None:
    schedule = DailySync(
        run_time,
        lambda stop_event: run_sync(integration, "sync_all", practice_ids, cancel_event=stop_event),
        history,
    )
    schedule.run_forever()


def _parse_time_of_day(value: str) -> dtime:
    try:
        return datetime.strptime(value, "%H:%M").time()
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected HH:MM, got {value!r}") from exc


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Open Dental practice sync controller")
    parser.add_argument(
        "command",
        nargs="?",
        choices=(*SYNC_COMMANDS, "run_scheduler"),
        default="run_scheduler",
        help="Command to execute",
    )
    parser.add_argument(
        "--practice",
        dest="practices",
        action="append",
        default=[],
        help="Practice id to process; repeatable. Defaults to every configured practice.",
    )
    parser.add_argument("--practices-file", type=Path, default=DEFAULT_PRACTICES_FILE)
    parser.add_argument("--data-dir", type=Path, default=DEFAULT_DATA_DIR)
    parser.add_argument("--history-file", type=Path, default=DEFAULT_HISTORY_FILE)
    parser.add_argument("--sync-time", type=_parse_time_of_day, default=_parse_time_of_day(DEFAULT_SYNC_TIME))
    parser.add_argument("--log-level", default=os.getenv("OD_LOG_LEVEL", "INFO"))
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    history = RunHistory(args.history_file)
    directory = JsonPracticeDirectory(args.practices_file)
    practice_ids = args.practices or directory.practice_ids()
    if not practice_ids:
        logger.error("No practices configured in %s", args.practices_file)
        return 2
    integration = build_integration(directory, args.data_dir)

    if args.command == "run_scheduler":
        run_scheduler(integration, practice_ids, history, args.sync_time)
        return 0

    summary = history.track(args.command, lambda: run_sync(integration, args.command, practice_ids))
    return 1 if summary.get("failed") else 0


if __name__ == "__main__":
    sys.exit(main())

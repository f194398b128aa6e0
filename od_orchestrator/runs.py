"""Run history and the daily sync schedule behind the command line."""
from __future__ import annotations

import logging
import signal
import threading
import time
from datetime import UTC, datetime, time as dtime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .storage import atomic_write_json, read_json_file

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 500

SyncSummary = Dict[str, object]


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat().replace("+00:00", "Z")


def run_status(summary: Optional[SyncSummary]) -> str:
    """``partial`` when some practices failed, ``failed`` when none synced."""

    if not summary or not summary.get("failed"):
        return "success"
    return "partial" if summary.get("synced") else "failed"


class RunHistory:
    """Newest-last JSON list of sync runs, trimmed to ``max_entries``."""

    def __init__(
        self,
        path: Path,
        *,
        max_entries: int = DEFAULT_HISTORY_LIMIT,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.path = Path(path)
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()

    def entries(self) -> List[Dict[str, object]]:
        return read_json_file(self.path, list, "Run history")

    def record(
        self,
        command: str,
        status: str,
        *,
        started_at: datetime,
        summary: Optional[SyncSummary] = None,
        error: Optional[str] = None,
    ) -> Dict[str, object]:
        completed_at = self._clock()
        entry: Dict[str, object] = {
            "command": command,
            "status": status,
            "started_at": _format_timestamp(started_at),
            "completed_at": _format_timestamp(completed_at),
            "duration_seconds": round((completed_at - started_at).total_seconds(), 3),
        }
        if summary is not None:
            entry["synced"] = summary.get("synced", {})
            entry["failed"] = summary.get("failed", {})
        if error:
            entry["error"] = error

        with self._lock:
            history = self.entries()
            history.append(entry)
            atomic_write_json(self.path, history[-self.max_entries:])
        return entry

    def track(self, command: str, action: Callable[[], SyncSummary]) -> SyncSummary:
        """Run ``action`` and record the outcome; failures are recorded, then re-raised."""

        started_at = self._clock()
        try:
            summary = action()
        except Exception as exc:
            self.record(command, "failed", started_at=started_at, error=str(exc))
            raise
        self.record(command, run_status(summary), started_at=started_at, summary=summary)
        return summary


class DailySync:
    """Runs ``job`` once a day at ``run_time`` local time until stopped.

    ``job`` receives the stop event so a shutdown cancels the sync in flight.
    """

    def __init__(
        self,
        run_time: dtime,
        job: Callable[[threading.Event], SyncSummary],
        history: RunHistory,
        *,
        command: str = "sync_all",
        poll_seconds: float = 60.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.run_time = run_time
        self.command = command
        self._job = job
        self._history = history
        self._poll_seconds = max(1.0, poll_seconds)
        self._clock = clock
        self._stop_event = threading.Event()
        self.next_run = self.next_run_after(clock())

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def next_run_after(self, moment: datetime) -> datetime:
        candidate = datetime.combine(moment.date(), self.run_time)
        if candidate <= moment:
            candidate += timedelta(days=1)
        return candidate

    def run_pending(self) -> bool:
        """Run the sync if it is due; returns whether it ran."""

        if self._clock() < self.next_run:
            return False
        started = time.monotonic()
        try:
            self._history.track(self.command, lambda: self._job(self._stop_event))
        except Exception:
            logger.exception("Scheduled %s failed", self.command)
        finally:
            self.next_run = self.next_run_after(self._clock())
        logger.info(
            "Scheduled %s took %.1fs; next run at %s",
            self.command,
            time.monotonic() - started,
            self.next_run.isoformat(timespec="minutes"),
        )
        return True

    def run_forever(self) -> None:
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._handle_stop_signal)
            signal.signal(signal.SIGTERM, self._handle_stop_signal)

        logger.info("Daily %s scheduled at %s", self.command, self.run_time.strftime("%H:%M"))
        while not self._stop_event.is_set():
            self.run_pending()
            self._stop_event.wait(self._poll_seconds)
        logger.info("Daily scheduler stopped")

    def stop(self) -> None:
        self._stop_event.set()

    def _handle_stop_signal(self, signum: int, frame) -> None:  # type: ignore[override]
        logger.info("Received signal %s; stopping scheduler", signum)
        self._stop_event.set()


__all__ = ["DailySync", "RunHistory", "run_status"]

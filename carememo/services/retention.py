"""
Retention scheduler that deletes recordings older than the retention window.

Runs as a daemon thread. On start it performs a catch-up sweep when the last
sweep is unknown or more than 30 days old, then sleeps until each tick of the
cron schedule. A failure for one user is logged and counted; it never stops the
sweep for the others or the loop itself.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from carememo.services.models import format_timestamp, parse_timestamp, utc_now

if TYPE_CHECKING:
    from carememo.config import RetentionSettings
    from carememo.services.conversation_store import ConversationStore, RetentionResult

_logger = logging.getLogger("carememo.retention")

STARTUP_SWEEP_AGE = timedelta(days=30)
# Upper bound on one sleep so a stop or a wall-clock jump is noticed.
MAX_SLEEP_SECONDS = 3600.0


@dataclass
class SweepReport:
    started_at: str
    finished_at: str = ""
    users: int = 0
    deleted_records: int = 0
    deleted_audio_files: int = 0
    failed_users: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "users": self.users,
            "deletedConversations": self.deleted_records,
            "deletedAudioFiles": self.deleted_audio_files,
            "failedUsers": self.failed_users,
        }


def validate_schedule(schedule: str) -> None:
    if not isinstance(schedule, str) or not croniter.is_valid(schedule):
        raise ValueError(f"Invalid cron expression: {schedule!r}")


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name!r}") from exc


class RetentionScheduler:
    def __init__(
        self,
        store: "ConversationStore",
        settings: "RetentionSettings",
        watermark_path: str,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        validate_schedule(settings.schedule)
        _zone(settings.timezone)
        self._store = store
        self._settings = settings
        self._watermark_path = watermark_path
        self._clock = clock

        self._lock = threading.Lock()
        self._sweep_lock = threading.Lock()
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._startup_done = threading.Event()
        self._next_run: Optional[datetime] = None
        self._last_sweep: Optional[SweepReport] = None

    @property
    def settings(self) -> "RetentionSettings":
        return self._settings

    @property
    def running(self) -> bool:
        return self._running

    # ── Lifecycle ──────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the scheduler thread."""
        with self._lock:
            if self._running:
                _logger.warning("Retention scheduler already running")
                return
            self._running = True
            self._stop_event.clear()
            self._startup_done.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                name="RetentionScheduler",
                daemon=True,
            )
            self._thread.start()
        _logger.info(
            "Retention scheduler started: schedule=%s timezone=%s months=%s",
            self._settings.schedule,
            self._settings.timezone,
            self._settings.months,
        )

    def stop(self) -> None:
        """Stop the scheduler thread; a sweep in progress finishes first."""
        with self._lock:
            if not self._running:
                _logger.warning("Retention scheduler is not running")
                return
            self._running = False
            self._stop_event.set()
            thread = self._thread
            self._thread = None
        if thread:
            thread.join()
        self._next_run = None
        _logger.info("Retention scheduler stopped")

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the startup check (and its catch-up sweep, if any) has finished."""
        return self._startup_done.wait(timeout)

    def _run_loop(self) -> None:
        try:
            if self._startup_sweep_due():
                _logger.info("Running catch-up retention sweep on startup")
                self._sweep_safely()
        finally:
            self._startup_done.set()

        next_run = self._compute_next_run()
        while not self._stop_event.is_set():
            remaining = (next_run - self._clock()).total_seconds()
            if remaining > 0:
                if self._stop_event.wait(min(remaining, MAX_SLEEP_SECONDS)):
                    break
                continue
            _logger.info("Running scheduled retention sweep")
            self._sweep_safely()
            next_run = self._compute_next_run()

    def _sweep_safely(self) -> None:
        try:
            self.run_sweep()
        except Exception as exc:
            _logger.exception("Retention sweep failed: %s", exc)

    def _compute_next_run(self) -> datetime:
        now = self._clock().astimezone(_zone(self._settings.timezone))
        next_run = croniter(self._settings.schedule, now).get_next(datetime)
        self._next_run = next_run
        _logger.debug("Next retention sweep at %s", next_run.isoformat())
        return next_run

    # ── Watermark ──────────────────────────────────────────────────────

    def read_watermark(self) -> Optional[datetime]:
        try:
            with open(self._watermark_path, "r", encoding="utf-8") as f:
                return parse_timestamp(f.read())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            _logger.warning("Ignoring unreadable cleanup watermark %s: %s", self._watermark_path, exc)
            return None

    def _write_watermark(self, when: datetime) -> None:
        temp_path = f"{self._watermark_path}.tmp"
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(format_timestamp(when))
            os.replace(temp_path, self._watermark_path)
        except OSError as exc:
            _logger.error("Failed to write cleanup watermark %s: %s", self._watermark_path, exc)

    def _startup_sweep_due(self) -> bool:
        last = self.read_watermark()
        if last is None:
            return True
        return self._clock() - last > STARTUP_SWEEP_AGE

    # ── Sweeps ─────────────────────────────────────────────────────────

    def run_sweep(self) -> SweepReport:
        """Apply the retention window to every user and record the sweep time."""
        with self._sweep_lock:
            months = self._settings.months
            report = SweepReport(started_at=format_timestamp(self._clock()))
            users = self._store.list_users()
            report.users = len(users)
            for user_id in users:
                try:
                    result = self._store.delete_older_than(user_id, months)
                except Exception as exc:
                    _logger.exception("Retention sweep failed for user=%s: %s", user_id, exc)
                    report.failed_users.append(user_id)
                    continue
                report.deleted_records += result.deleted_records
                report.deleted_audio_files += result.deleted_audio_files

            finished = self._clock()
            report.finished_at = format_timestamp(finished)
            self._write_watermark(finished)
            self._last_sweep = report

        _logger.info(
            "Retention sweep completed: users=%s deleted_conversations=%s "
            "deleted_audio_files=%s failed_users=%s",
            report.users,
            report.deleted_records,
            report.deleted_audio_files,
            len(report.failed_users),
        )
        return report

    def cleanup_user(self, user_id: str, months: Optional[int] = None) -> "RetentionResult":
        months = self._settings.months if months is None else months
        _logger.info("Manual cleanup requested: user=%s months=%s", user_id, months)
        return self._store.delete_older_than(user_id, months)

    # ── Status / settings ──────────────────────────────────────────────

    def status(self) -> dict:
        last = self._last_sweep
        watermark = self.read_watermark()
        storage: dict[str, dict] = {}
        for user_id in self._store.list_users():
            try:
                storage[user_id] = self._store.stats(user_id).to_dict()
            except Exception as exc:
                _logger.warning("Storage stats failed for user=%s: %s", user_id, exc)
                storage[user_id] = {"error": str(exc)}
        return {
            "isRunning": self._running,
            "enabled": self._settings.enabled,
            "schedule": self._settings.schedule,
            "timezone": self._settings.timezone,
            "retentionMonths": self._settings.months,
            "nextRun": self._next_run.isoformat() if self._next_run else None,
            "lastCleanup": format_timestamp(watermark) if watermark else None,
            "lastSweep": last.to_dict() if last else None,
            "storageStats": storage,
        }

    def update_settings(self, months: Optional[int] = None, schedule: Optional[str] = None) -> dict:
        changes: dict = {}
        if months is not None:
            if isinstance(months, bool) or not isinstance(months, int) or months < 1:
                raise ValueError("Retention months must be a positive integer")
            changes["months"] = months
        if schedule is not None:
            validate_schedule(schedule)
            changes["schedule"] = schedule
        if not changes:
            return self.status()

        was_running = self._running
        if was_running:
            self.stop()
        self._settings = replace(self._settings, **changes)
        _logger.info("Retention settings updated: %s", changes)
        if was_running:
            self.start()
        return self.status()

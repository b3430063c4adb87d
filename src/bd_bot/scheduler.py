from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from telegram.ext import CallbackContext, Job, JobQueue

from bd_bot.birthday_store import load_birthdays, mark_notified
from bd_bot.date_logic import DEFAULT_LEAP_DAY_RULE, to_utc_date
from bd_bot.dispatcher import DispatchError, Dispatcher
from bd_bot.models import BirthdayEntry, Occurrence
from bd_bot.notification_policy import SkipReason, evaluate
from bd_bot.quiet_hours import (
    DEFAULT_NOTIFICATION_END_HOUR,
    DEFAULT_NOTIFICATION_START_HOUR,
    is_within_notification_hours,
)
from bd_bot.settings import DEFAULT_POLL_INTERVAL_SECONDS

LOGGER = logging.getLogger(__name__)

JOB_NAME = "birthday-scheduler"

Clock = Callable[[], datetime]


class LifecycleState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"
    STOPPED = "stopped"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


class StatusSource(Protocol):
    def get_status(self) -> LifecycleState: ...

    def get_notification_hours(self) -> tuple[int, int]: ...

    def get_notifications_sent(self) -> int: ...

    def get_uptime(self) -> timedelta: ...


class SchedulerState:
    """Lifecycle fields and counters shared between the poller and readers.

    Every read and write goes through ``_lock``.
    """

    def __init__(self, notification_start_hour: int, notification_end_hour: int) -> None:
        self._lock = threading.Lock()
        self._status = LifecycleState.IDLE
        self._started_at: datetime | None = None
        self._notifications_sent = 0
        self._notification_start_hour = notification_start_hour
        self._notification_end_hour = notification_end_hour

    @property
    def status(self) -> LifecycleState:
        with self._lock:
            return self._status

    @property
    def notification_hours(self) -> tuple[int, int]:
        with self._lock:
            return self._notification_start_hour, self._notification_end_hour

    @property
    def notifications_sent(self) -> int:
        with self._lock:
            return self._notifications_sent

    def set_status(self, status: LifecycleState) -> None:
        with self._lock:
            self._status = status
        LOGGER.info("Status changed: %s", status.value)

    def mark_started(self, now: datetime) -> None:
        with self._lock:
            self._started_at = now

    def uptime(self, now: datetime) -> timedelta:
        with self._lock:
            started_at = self._started_at
        if started_at is None:
            return timedelta(0)
        return max(now - started_at, timedelta(0))

    def record_notification(self) -> int:
        with self._lock:
            self._notifications_sent += 1
            return self._notifications_sent


class BirthdayScheduler:
    def __init__(
        self,
        *,
        dispatcher: Dispatcher,
        store_path: Path,
        notification_start_hour: int = DEFAULT_NOTIFICATION_START_HOUR,
        notification_end_hour: int = DEFAULT_NOTIFICATION_END_HOUR,
        leap_day_rule: str = DEFAULT_LEAP_DAY_RULE,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        self._dispatcher = dispatcher
        self._store_path = store_path
        self._leap_day_rule = leap_day_rule
        self._poll_interval = poll_interval_seconds
        self._clock = clock
        self._state = SchedulerState(notification_start_hour, notification_end_hour)
        self._job: Job | None = None

    def get_status(self) -> LifecycleState:
        return self._state.status

    def get_notification_hours(self) -> tuple[int, int]:
        return self._state.notification_hours

    def get_notifications_sent(self) -> int:
        return self._state.notifications_sent

    def get_uptime(self) -> timedelta:
        return self._state.uptime(_as_utc(self._clock()))

    @property
    def is_running(self) -> bool:
        return self._job is not None

    def start(self, job_queue: JobQueue) -> None:
        if self.is_running:
            LOGGER.warning("start() called but scheduler is already running, ignoring")
            return

        self._state.set_status(LifecycleState.CONNECTING)
        self._state.mark_started(_as_utc(self._clock()))
        self._job = job_queue.run_repeating(
            self._job_callback,
            interval=self._poll_interval,
            first=0,
            name=JOB_NAME,
        )
        self._state.set_status(LifecycleState.RUNNING)

        start_hour, end_hour = self._state.notification_hours
        LOGGER.info("Notification hours: %02d:00 - %02d:00 UTC", start_hour, end_hour)

    def stop(self) -> None:
        """Remove the polling job. A wake that is already running finishes."""
        if self._job is not None:
            self._job.schedule_removal()
            self._job = None
        self._state.set_status(LifecycleState.STOPPED)

    async def _job_callback(self, context: CallbackContext) -> None:
        if self.get_status() is not LifecycleState.RUNNING:
            return
        try:
            await self.tick(self._clock())
        except Exception:
            LOGGER.exception("Birthday check failed, retrying on next wake")

    async def tick(self, now: datetime) -> int:
        """Run one wake.

        Inside the window every wake scans and sends. Outside it only the
        top-of-hour wake scans, and that scan never sends.
        """
        now = _as_utc(now)
        start_hour, end_hour = self._state.notification_hours
        if is_within_notification_hours(now.hour, start_hour, end_hour):
            return await self.run_scan(now)

        if now.minute == 0:
            LOGGER.debug("Outside notification hours, running hourly check at %s", now.isoformat())
            return await self.run_scan(now, send=False)
        return 0

    async def run_scan(self, now: datetime, *, send: bool = True) -> int:
        """Evaluate every entry and dispatch what is due.

        With ``send=False`` due entries are only counted and logged as
        deferred; nothing is dispatched and the store is not written.
        """
        started = time.monotonic()
        now = _as_utc(now)
        today = to_utc_date(now)
        LOGGER.info("Starting birthday check at %s UTC (hour: %02d)", now.strftime("%Y-%m-%d %H:%M:%S"), now.hour)

        try:
            birthdays = load_birthdays(self._store_path)
        except (OSError, ValueError):
            LOGGER.exception("Failed to load birthdays from %s, skipping this check", self._store_path)
            return 0

        LOGGER.info("Loaded %d birthday entries from storage", len(birthdays))

        notified: list[BirthdayEntry] = []
        skipped = 0
        deferred = 0
        for index, entry in enumerate(birthdays, start=1):
            decision = evaluate(entry, today, self._leap_day_rule)

            if not decision.due:
                skipped += 1
                self._log_skip(index, entry, decision.skip_reason, decision.occurrence)
                continue

            if not send:
                deferred += 1
                LOGGER.info(
                    "Deferring %s notification for '%s' until notification hours",
                    decision.tier.name,
                    entry.name,
                )
                continue

            LOGGER.info(
                "Sending %s notification for '%s' to chat %d",
                decision.tier.name,
                entry.name,
                entry.chat_id,
            )
            try:
                await self._dispatcher.send(entry.chat_id, decision.message)
            except DispatchError:
                LOGGER.exception(
                    "Failed to send %s notification for '%s' to chat %d",
                    decision.tier.name,
                    entry.name,
                    entry.chat_id,
                )
                skipped += 1
                continue

            total = self._state.record_notification()
            notified.append(entry)
            LOGGER.info(
                "%s notification sent for '%s' (chat %d, total sent: %d)",
                decision.tier.name,
                entry.name,
                entry.chat_id,
                total,
            )

        if notified:
            try:
                stamped = mark_notified(self._store_path, notified, today)
            except (OSError, ValueError):
                LOGGER.exception("Failed to save last_notification dates to %s", self._store_path)
            else:
                LOGGER.info("Saved last_notification for %d entries", stamped)
        else:
            LOGGER.debug("No notifications sent, store unchanged")

        LOGGER.info(
            "Summary: processed=%d sent=%d skipped=%d deferred=%d duration=%.3fs",
            len(birthdays),
            len(notified),
            skipped,
            deferred,
            time.monotonic() - started,
        )
        return len(notified)

    @staticmethod
    def _log_skip(
        index: int,
        entry: BirthdayEntry,
        reason: SkipReason | None,
        occurrence: Occurrence | None,
    ) -> None:
        if reason is SkipReason.NO_RECIPIENT:
            LOGGER.warning("Skip entry %d: no chat id configured for '%s'", index, entry.name)
        elif reason is SkipReason.MALFORMED_DATE:
            LOGGER.warning(
                "Skip entry %d: invalid birth date for '%s': %r", index, entry.name, entry.birth_date
            )
        elif reason is SkipReason.ALREADY_NOTIFIED:
            LOGGER.debug("Skip entry %d: already notified '%s' today", index, entry.name)
        elif occurrence is not None:
            LOGGER.debug(
                "No match for '%s': next birthday %s is in %d days%s",
                entry.name,
                occurrence.date.isoformat(),
                occurrence.days_until,
                " (next year)" if occurrence.next_year else "",
            )

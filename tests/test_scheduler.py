from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from bd_bot.birthday_store import load_birthdays, save_birthdays_atomic
from bd_bot.dispatcher import DispatchError
from bd_bot.models import BirthdayEntry
from bd_bot.scheduler import BirthdayScheduler, LifecycleState


@dataclass
class FakeDispatcher:
    sent_messages: list[tuple[int, str]] = field(default_factory=list)
    failing_chat_ids: set[int] = field(default_factory=set)

    async def send(self, chat_id: int, text: str) -> None:
        if chat_id in self.failing_chat_ids:
            raise DispatchError(f"chat {chat_id} unreachable")
        self.sent_messages.append((chat_id, text))


@dataclass
class FakeClock:
    now: datetime

    def __call__(self) -> datetime:
        return self.now


def _scheduler(
    path: Path,
    dispatcher: FakeDispatcher,
    *,
    now: datetime,
    start_hour: int = 8,
    end_hour: int = 20,
    poll_interval_seconds: float = 60.0,
) -> BirthdayScheduler:
    return BirthdayScheduler(
        dispatcher=dispatcher,
        store_path=path,
        notification_start_hour=start_hour,
        notification_end_hour=end_hour,
        poll_interval_seconds=poll_interval_seconds,
        clock=FakeClock(now),
    )


def _save(path: Path, *entries: BirthdayEntry) -> None:
    save_birthdays_atomic(path, list(entries))


def test_scan_deduplicates_same_day(tmp_path: Path) -> None:
    path = tmp_path / "birthdays.toml"
    _save(path, BirthdayEntry(name="Alice", birth_date="1990-03-14", last_notification=None, chat_id=100))
    dispatcher = FakeDispatcher()
    now = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)
    scheduler = _scheduler(path, dispatcher, now=now)

    first_count = asyncio.run(scheduler.run_scan(now))
    second_count = asyncio.run(scheduler.run_scan(now + timedelta(hours=5)))

    assert first_count == 1
    assert second_count == 0
    assert len(dispatcher.sent_messages) == 1
    assert dispatcher.sent_messages[0][0] == 100
    assert "Alice" in dispatcher.sent_messages[0][1]
    assert load_birthdays(path)[0].last_notification == date(2026, 3, 14)
    assert scheduler.get_notifications_sent() == 1


def test_scan_next_day_allows_new_send(tmp_path: Path) -> None:
    path = tmp_path / "birthdays.toml"
    _save(
        path,
        BirthdayEntry(name="Alice", birth_date="0000-03-14", last_notification=date(2026, 3, 13), chat_id=100),
    )
    dispatcher = FakeDispatcher()
    now = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)

    count = asyncio.run(_scheduler(path, dispatcher, now=now).run_scan(now))

    assert count == 1


def test_scan_sends_reminder_tiers(tmp_path: Path) -> None:
    path = tmp_path / "birthdays.toml"
    _save(
        path,
        BirthdayEntry(name="Two", birth_date="0000-03-15", last_notification=None, chat_id=1),
        BirthdayEntry(name="Four", birth_date="2001-03-29", last_notification=None, chat_id=2),
        BirthdayEntry(name="Other", birth_date="0000-03-20", last_notification=None, chat_id=3),
    )
    dispatcher = FakeDispatcher()
    now = datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc)

    count = asyncio.run(_scheduler(path, dispatcher, now=now).run_scan(now))

    assert count == 2
    assert [chat_id for chat_id, _text in dispatcher.sent_messages] == [1, 2]
    assert "03-15" in dispatcher.sent_messages[0][1]
    assert "03-29" in dispatcher.sent_messages[1][1]


def test_scan_without_matches_does_not_rewrite_store(tmp_path: Path) -> None:
    path = tmp_path / "birthdays.toml"
    _save(path, BirthdayEntry(name="Alice", birth_date="0000-07-01", last_notification=None, chat_id=100))
    inode_before = path.stat().st_ino
    now = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)

    count = asyncio.run(_scheduler(path, FakeDispatcher(), now=now).run_scan(now))

    assert count == 0
    # Saves replace the file, so an untouched store keeps its inode.
    assert path.stat().st_ino == inode_before


def test_dispatch_failure_skips_entry_and_continues(tmp_path: Path) -> None:
    path = tmp_path / "birthdays.toml"
    _save(
        path,
        BirthdayEntry(name="Blocked", birth_date="0000-03-14", last_notification=None, chat_id=13),
        BirthdayEntry(name="Alice", birth_date="0000-03-14", last_notification=None, chat_id=100),
    )
    dispatcher = FakeDispatcher(failing_chat_ids={13})
    now = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)
    scheduler = _scheduler(path, dispatcher, now=now)

    count = asyncio.run(scheduler.run_scan(now))

    loaded = load_birthdays(path)
    assert count == 1
    assert loaded[0].last_notification is None
    assert loaded[1].last_notification == date(2026, 3, 14)
    assert scheduler.get_notifications_sent() == 1


def test_malformed_and_unconfigured_entries_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "birthdays.toml"
    _save(
        path,
        BirthdayEntry(name="Broken", birth_date="03-14", last_notification=None, chat_id=5),
        BirthdayEntry(name="Nobody", birth_date="0000-03-14", last_notification=None, chat_id=0),
        BirthdayEntry(name="Alice", birth_date="0000-03-14", last_notification=None, chat_id=100),
    )
    dispatcher = FakeDispatcher()
    now = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)

    count = asyncio.run(_scheduler(path, dispatcher, now=now).run_scan(now))

    assert count == 1
    assert dispatcher.sent_messages[0][0] == 100
    assert load_birthdays(path)[0].birth_date == "03-14"


def test_store_load_failure_aborts_scan(tmp_path: Path) -> None:
    path = tmp_path / "birthdays.toml"
    path.write_text("[[birthdays]\nname = ", encoding="utf-8")
    dispatcher = FakeDispatcher()
    now = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)

    count = asyncio.run(_scheduler(path, dispatcher, now=now).run_scan(now))

    assert count == 0
    assert dispatcher.sent_messages == []


def test_tick_outside_window_never_sends(tmp_path: Path) -> None:
    path = tmp_path / "birthdays.toml"
    _save(path, BirthdayEntry(name="Alice", birth_date="0000-03-14", last_notification=None, chat_id=100))
    dispatcher = FakeDispatcher()
    quarter_past = datetime(2026, 3, 14, 3, 15, tzinfo=timezone.utc)
    scheduler = _scheduler(path, dispatcher, now=quarter_past)

    assert asyncio.run(scheduler.tick(quarter_past)) == 0

    for hour in (0, 4, 21):
        on_the_hour = datetime(2026, 3, 14, hour, 0, tzinfo=timezone.utc)
        assert asyncio.run(scheduler.tick(on_the_hour)) == 0

    assert dispatcher.sent_messages == []
    assert load_birthdays(path)[0].last_notification is None
    assert scheduler.get_notifications_sent() == 0


def test_due_entry_deferred_overnight_is_sent_when_window_opens(tmp_path: Path) -> None:
    path = tmp_path / "birthdays.toml"
    _save(path, BirthdayEntry(name="Alice", birth_date="0000-03-14", last_notification=None, chat_id=100))
    dispatcher = FakeDispatcher()
    midnight = datetime(2026, 3, 14, 0, 0, tzinfo=timezone.utc)
    scheduler = _scheduler(path, dispatcher, now=midnight)

    assert asyncio.run(scheduler.tick(midnight)) == 0
    assert asyncio.run(scheduler.tick(datetime(2026, 3, 14, 8, 0, tzinfo=timezone.utc))) == 1
    assert len(dispatcher.sent_messages) == 1


def test_tick_inside_wrapping_window_scans_every_minute(tmp_path: Path) -> None:
    path = tmp_path / "birthdays.toml"
    _save(path, BirthdayEntry(name="Alice", birth_date="0000-03-14", last_notification=None, chat_id=100))
    dispatcher = FakeDispatcher()
    now = datetime(2026, 3, 14, 23, 37, tzinfo=timezone.utc)
    scheduler = _scheduler(path, dispatcher, now=now, start_hour=22, end_hour=6)

    assert asyncio.run(scheduler.tick(now)) == 1


@dataclass
class FakeJob:
    callback: Callable[[object], Awaitable[None]]
    interval: float
    first: float
    name: str
    removed: bool = False

    def schedule_removal(self) -> None:
        self.removed = True


@dataclass
class FakeJobQueue:
    jobs: list[FakeJob] = field(default_factory=list)

    def run_repeating(
        self,
        callback: Callable[[object], Awaitable[None]],
        interval: float,
        first: float = 0,
        name: str | None = None,
    ) -> FakeJob:
        job = FakeJob(callback=callback, interval=interval, first=first, name=name or "")
        self.jobs.append(job)
        return job


def test_start_registers_one_repeating_job(tmp_path: Path) -> None:
    now = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)
    scheduler = _scheduler(tmp_path / "birthdays.toml", FakeDispatcher(), now=now, poll_interval_seconds=30.0)
    job_queue = FakeJobQueue()

    scheduler.start(job_queue)
    scheduler.start(job_queue)

    assert len(job_queue.jobs) == 1
    job = job_queue.jobs[0]
    assert job.interval == 30.0
    assert job.first == 0
    assert job.name == "birthday-scheduler"
    assert scheduler.is_running is True
    assert scheduler.get_status() is LifecycleState.RUNNING


def test_job_callback_sends_once_per_day(tmp_path: Path) -> None:
    path = tmp_path / "birthdays.toml"
    _save(path, BirthdayEntry(name="Alice", birth_date="0000-03-14", last_notification=None, chat_id=100))
    dispatcher = FakeDispatcher()
    now = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)
    scheduler = _scheduler(path, dispatcher, now=now)
    job_queue = FakeJobQueue()

    scheduler.start(job_queue)
    callback = job_queue.jobs[0].callback
    asyncio.run(callback(None))
    asyncio.run(callback(None))

    assert len(dispatcher.sent_messages) == 1
    assert scheduler.get_notifications_sent() == 1


def test_stop_removes_job(tmp_path: Path) -> None:
    path = tmp_path / "birthdays.toml"
    _save(path, BirthdayEntry(name="Alice", birth_date="0000-03-14", last_notification=None, chat_id=100))
    dispatcher = FakeDispatcher()
    now = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)
    scheduler = _scheduler(path, dispatcher, now=now)
    job_queue = FakeJobQueue()

    scheduler.start(job_queue)
    scheduler.stop()

    assert job_queue.jobs[0].removed is True
    assert scheduler.is_running is False
    assert scheduler.get_status() is LifecycleState.STOPPED

    # A wake already queued before removal is ignored once stopped.
    asyncio.run(job_queue.jobs[0].callback(None))
    assert dispatcher.sent_messages == []


def test_stop_without_start_is_safe(tmp_path: Path) -> None:
    now = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)
    scheduler = _scheduler(tmp_path / "birthdays.toml", FakeDispatcher(), now=now)

    assert scheduler.get_status() is LifecycleState.IDLE
    scheduler.stop()

    assert scheduler.get_status() is LifecycleState.STOPPED


def test_job_callback_survives_failing_tick(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    now = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)
    scheduler = _scheduler(tmp_path / "birthdays.toml", FakeDispatcher(), now=now)
    calls: list[datetime] = []

    async def failing_tick(tick_now: datetime) -> int:
        calls.append(tick_now)
        raise RuntimeError("boom")

    scheduler.tick = failing_tick
    job_queue = FakeJobQueue()
    scheduler.start(job_queue)

    asyncio.run(job_queue.jobs[0].callback(None))
    asyncio.run(job_queue.jobs[0].callback(None))

    assert calls == [now, now]
    assert "Birthday check failed" in caplog.text
    assert scheduler.get_status() is LifecycleState.RUNNING


def test_status_surface(tmp_path: Path) -> None:
    clock = FakeClock(datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc))
    scheduler = BirthdayScheduler(
        dispatcher=FakeDispatcher(),
        store_path=tmp_path / "birthdays.toml",
        notification_start_hour=22,
        notification_end_hour=6,
        poll_interval_seconds=60.0,
        clock=clock,
    )

    scheduler.start(FakeJobQueue())
    clock.now = clock.now + timedelta(minutes=90)
    assert scheduler.get_uptime() == timedelta(minutes=90)
    scheduler.stop()

    assert scheduler.get_notification_hours() == (22, 6)
    assert scheduler.get_notifications_sent() == 0

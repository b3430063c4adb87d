from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from bd_bot.main import start_scheduler, stop_scheduler
from bd_bot.scheduler import BirthdayScheduler, LifecycleState


@dataclass
class FakeBot:
    username: str = "bd_test_bot"
    first_name: str = "Birthday Bot"


@dataclass
class FakeJob:
    removed: bool = False

    def schedule_removal(self) -> None:
        self.removed = True


@dataclass
class FakeJobQueue:
    jobs: list[FakeJob] = field(default_factory=list)

    def run_repeating(self, callback: Any, interval: float, first: float = 0, name: str | None = None) -> FakeJob:
        job = FakeJob()
        self.jobs.append(job)
        return job


@dataclass
class FakeApplication:
    bot_data: dict[str, Any]
    bot: FakeBot = field(default_factory=FakeBot)
    job_queue: FakeJobQueue = field(default_factory=FakeJobQueue)


class NullDispatcher:
    async def send(self, chat_id: int, text: str) -> None:
        raise AssertionError("no message expected")


def test_lifecycle_hooks_register_and_remove_job(tmp_path: Path) -> None:
    scheduler = BirthdayScheduler(
        dispatcher=NullDispatcher(),
        store_path=tmp_path / "birthdays.toml",
        clock=lambda: datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc),
    )
    application = FakeApplication(bot_data={"scheduler": scheduler})

    asyncio.run(start_scheduler(application))

    assert len(application.job_queue.jobs) == 1
    assert scheduler.get_status() is LifecycleState.RUNNING

    asyncio.run(stop_scheduler(application))

    assert application.job_queue.jobs[0].removed is True
    assert scheduler.get_status() is LifecycleState.STOPPED

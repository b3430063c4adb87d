from __future__ import annotations

import logging
import os

from telegram.ext import Application

from bd_bot.birthday_store import ensure_store
from bd_bot.bot_handlers import HandlerDependencies, build_handlers
from bd_bot.dispatcher import TelegramDispatcher
from bd_bot.scheduler import BirthdayScheduler
from bd_bot.settings import load_settings

LOGGER = logging.getLogger(__name__)

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def resolve_log_level() -> int:
    level = logging.INFO
    if os.getenv("DEBUG", "").strip().lower() in {"true", "1", "yes"}:
        level = logging.DEBUG

    raw_level = os.getenv("LOG_LEVEL", "").strip().upper()
    return LOG_LEVELS.get(raw_level, level)


def configure_logging() -> None:
    logging.basicConfig(
        level=resolve_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Every getUpdates long-poll is logged by httpx at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def start_scheduler(application: Application) -> None:
    me = application.bot
    LOGGER.info("Bot initialized as @%s (%s)", me.username, me.first_name)
    scheduler: BirthdayScheduler = application.bot_data["scheduler"]
    if application.job_queue is None:
        raise RuntimeError("python-telegram-bot[job-queue] is required to run the scheduler")
    scheduler.start(application.job_queue)


async def stop_scheduler(application: Application) -> None:
    scheduler: BirthdayScheduler = application.bot_data["scheduler"]
    scheduler.stop()


def main() -> None:
    configure_logging()

    settings = load_settings()
    ensure_store(settings.birthday_store_path)

    application = (
        Application.builder()
        .token(settings.telegram_bot_token)
        .post_init(start_scheduler)
        .post_stop(stop_scheduler)
        .build()
    )

    scheduler = BirthdayScheduler(
        dispatcher=TelegramDispatcher(application.bot),
        store_path=settings.birthday_store_path,
        notification_start_hour=settings.notification_start_hour,
        notification_end_hour=settings.notification_end_hour,
        leap_day_rule=settings.leap_day_rule,
        poll_interval_seconds=settings.poll_interval_seconds,
    )
    application.bot_data["scheduler"] = scheduler
    application.bot_data["handler_deps"] = HandlerDependencies(
        settings=settings,
        status_source=scheduler,
    )

    for handler in build_handlers():
        application.add_handler(handler)

    application.run_polling()


if __name__ == "__main__":
    main()

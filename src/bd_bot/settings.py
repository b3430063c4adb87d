from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from bd_bot.date_logic import ALLOWED_LEAP_DAY_RULES, DEFAULT_LEAP_DAY_RULE
from bd_bot.quiet_hours import DEFAULT_NOTIFICATION_END_HOUR, DEFAULT_NOTIFICATION_START_HOUR

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class Settings:
    telegram_bot_token: str
    birthday_store_path: Path
    notification_start_hour: int
    notification_end_hour: int
    leap_day_rule: str
    poll_interval_seconds: float


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        raise ValueError(f"Missing required environment variable: {name}")
    return value.strip()


def parse_hour_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default

    try:
        hour = int(raw.strip())
    except ValueError:
        hour = -1

    if hour < 0 or hour > 23:
        LOGGER.warning("Invalid %s: %s, using default: %d", name, raw, default)
        return default
    return hour


def _leap_day_rule_env() -> str:
    raw = os.getenv("LEAP_DAY_RULE")
    if raw is None or not raw.strip():
        return DEFAULT_LEAP_DAY_RULE

    rule = raw.strip().lower()
    if rule not in ALLOWED_LEAP_DAY_RULES:
        LOGGER.warning("Invalid LEAP_DAY_RULE: %s, using default: %s", raw, DEFAULT_LEAP_DAY_RULE)
        return DEFAULT_LEAP_DAY_RULE
    return rule


def _poll_interval_env() -> float:
    raw = os.getenv("POLL_INTERVAL_SECONDS")
    if raw is None or not raw.strip():
        return DEFAULT_POLL_INTERVAL_SECONDS

    try:
        interval = float(raw.strip())
    except ValueError:
        interval = 0.0

    if interval <= 0:
        LOGGER.warning(
            "Invalid POLL_INTERVAL_SECONDS: %s, using default: %s", raw, DEFAULT_POLL_INTERVAL_SECONDS
        )
        return DEFAULT_POLL_INTERVAL_SECONDS
    return interval


def load_settings() -> Settings:
    root = Path.cwd()

    token = _required_env("TELEGRAM_BOT_TOKEN")
    birthday_store_path = Path(
        os.getenv("BIRTHDAY_STORE_PATH", root / "data" / "birthdays.toml")
    )

    return Settings(
        telegram_bot_token=token,
        birthday_store_path=birthday_store_path,
        notification_start_hour=parse_hour_env(
            "NOTIFICATION_START_HOUR", DEFAULT_NOTIFICATION_START_HOUR
        ),
        notification_end_hour=parse_hour_env(
            "NOTIFICATION_END_HOUR", DEFAULT_NOTIFICATION_END_HOUR
        ),
        leap_day_rule=_leap_day_rule_env(),
        poll_interval_seconds=_poll_interval_env(),
    )

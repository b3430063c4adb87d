from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass
from datetime import date, datetime

from bd_bot.date_logic import (
    DEFAULT_LEAP_DAY_RULE,
    InvalidBirthdayError,
    next_occurrence,
    parse_birth_date,
    to_utc_date,
)
from bd_bot.models import AnnualDate, BirthdayEntry, Occurrence


class Tier(enum.Enum):
    BIRTHDAY_TODAY = 0
    REMINDER_2_WEEKS = 14
    REMINDER_4_WEEKS = 28

    @property
    def offset_days(self) -> int:
        return self.value


class SkipReason(enum.Enum):
    NO_RECIPIENT = "no chat id configured"
    MALFORMED_DATE = "invalid birth date"
    ALREADY_NOTIFIED = "already notified today"
    NO_MATCH = "not 0, 14 or 28 days away"


TIERS_BY_OFFSET = {tier.offset_days: tier for tier in Tier}

TODAY_TEMPLATES = (
    "🎉 Happy Birthday, {name}! 🎂",
    "🥳 Today we celebrate {name}. Happy Birthday! 🎂",
    "🎈 It's {name}'s birthday today! 🎉",
    "🎂 Happy Birthday, {name}! Cake is appropriate. 🎉",
)

TWO_WEEKS_TEMPLATES = (
    "📅 Reminder: {name}'s birthday is in 2 weeks ({month_day})! 🎈",
    "⏳ Two weeks to go until {name}'s birthday ({month_day}). 🎁",
    "🗓️ {name}'s birthday lands in 14 days ({month_day}). Plan accordingly. 🎈",
)

FOUR_WEEKS_TEMPLATES = (
    "📅 Early reminder: {name}'s birthday is in 4 weeks ({month_day})! 🗓️",
    "🗓️ Heads up: {name}'s birthday is 4 weeks away ({month_day}). 🎁",
    "⌛ 28 days until {name}'s birthday ({month_day}). 🗓️",
)

TEMPLATES_BY_TIER = {
    Tier.BIRTHDAY_TODAY: TODAY_TEMPLATES,
    Tier.REMINDER_2_WEEKS: TWO_WEEKS_TEMPLATES,
    Tier.REMINDER_4_WEEKS: FOUR_WEEKS_TEMPLATES,
}


@dataclass(frozen=True)
class PolicyDecision:
    tier: Tier | None = None
    message: str | None = None
    occurrence: Occurrence | None = None
    skip_reason: SkipReason | None = None

    @property
    def due(self) -> bool:
        return self.tier is not None


def evaluate(
    entry: BirthdayEntry,
    today: date | datetime,
    leap_day_rule: str = DEFAULT_LEAP_DAY_RULE,
) -> PolicyDecision:
    """Decide whether ``entry`` gets a notification on ``today``.

    At most one notification per entry per UTC day: an entry already
    notified today is skipped whatever tier would match.
    """
    today = to_utc_date(today)

    if entry.chat_id == 0:
        return PolicyDecision(skip_reason=SkipReason.NO_RECIPIENT)

    try:
        annual = parse_birth_date(entry.birth_date)
    except InvalidBirthdayError:
        return PolicyDecision(skip_reason=SkipReason.MALFORMED_DATE)

    if entry.last_notification == today:
        return PolicyDecision(skip_reason=SkipReason.ALREADY_NOTIFIED)

    occurrence = next_occurrence(annual, today, leap_day_rule)
    tier = TIERS_BY_OFFSET.get(occurrence.days_until)
    if tier is None:
        return PolicyDecision(occurrence=occurrence, skip_reason=SkipReason.NO_MATCH)

    return PolicyDecision(
        tier=tier,
        message=format_message(entry, annual, occurrence, tier),
        occurrence=occurrence,
    )


def format_message(entry: BirthdayEntry, annual: AnnualDate, occurrence: Occurrence, tier: Tier) -> str:
    template = _select_rotating_template(entry.chat_id, occurrence.date, tier)
    return template.format(name=entry.name, month_day=annual.month_day())


def _select_rotating_template(chat_id: int, occurrence_date: date, tier: Tier) -> str:
    templates = TEMPLATES_BY_TIER[tier]
    seed = "|".join((str(chat_id), occurrence_date.isoformat(), tier.name))
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    index = int.from_bytes(digest[:4], "big") % len(templates)
    return templates[index]

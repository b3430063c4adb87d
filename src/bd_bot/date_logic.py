from __future__ import annotations

import re
from datetime import date, datetime, timezone

from bd_bot.models import UNKNOWN_YEAR_PREFIX, AnnualDate, Occurrence

ALLOWED_LEAP_DAY_RULES = {"feb28", "mar1"}
DEFAULT_LEAP_DAY_RULE = "feb28"

_FULL_DATE_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")
_MONTH_DAY_RE = re.compile(r"(\d{2})-(\d{2})")


class InvalidBirthdayError(ValueError):
    pass


def is_leap_year(year: int) -> bool:
    return year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)


def validate_month_day(month: int, day: int, *, allow_feb_29: bool = True) -> None:
    if month < 1 or month > 12:
        raise InvalidBirthdayError(f"Invalid month: {month}")

    if day < 1 or day > 31:
        raise InvalidBirthdayError(f"Invalid day: {day}")

    year = 2000 if allow_feb_29 else 2001
    try:
        date(year, month, day)
    except ValueError as exc:
        raise InvalidBirthdayError(f"Invalid month/day combination: {month:02d}-{day:02d}") from exc


def parse_birth_date(value: str) -> AnnualDate:
    """Parse a stored ``YYYY-MM-DD`` birth date.

    A ``0000`` year marks an unknown year. Any other year must form a real
    calendar date but never affects scheduling.
    """
    match = _FULL_DATE_RE.fullmatch(value.strip())
    if not match:
        raise InvalidBirthdayError(f"Birth date must use YYYY-MM-DD: {value!r}")

    year = int(match.group(1))
    month = int(match.group(2))
    day = int(match.group(3))
    validate_month_day(month, day, allow_feb_29=True)

    if year == 0:
        return AnnualDate(month=month, day=day, year=None)

    try:
        date(year, month, day)
    except ValueError as exc:
        raise InvalidBirthdayError(f"Invalid date: {value}") from exc
    return AnnualDate(month=month, day=day, year=year)


def normalize_birth_date_input(raw_text: str) -> str:
    """Accept ``YYYY-MM-DD`` or ``MM-DD`` and return the stored form."""
    value = raw_text.strip()

    if _MONTH_DAY_RE.fullmatch(value):
        value = UNKNOWN_YEAR_PREFIX + value

    parse_birth_date(value)
    return value


def to_utc_date(now: date | datetime) -> date:
    # Day math must run on midnights, never on a time-of-day instant.
    if isinstance(now, datetime):
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        return now.date()
    return now


def occurrence_for_year(month: int, day: int, year: int, leap_day_rule: str) -> date:
    if month == 2 and day == 29 and not is_leap_year(year):
        if leap_day_rule == "feb28":
            return date(year, 2, 28)
        if leap_day_rule == "mar1":
            return date(year, 3, 1)
        raise InvalidBirthdayError(f"Unsupported leap day rule: {leap_day_rule}")
    return date(year, month, day)


def next_occurrence(
    annual: AnnualDate,
    today: date | datetime,
    leap_day_rule: str = DEFAULT_LEAP_DAY_RULE,
) -> Occurrence:
    today = to_utc_date(today)

    this_year = occurrence_for_year(annual.month, annual.day, today.year, leap_day_rule)
    diff = (this_year - today).days
    if diff >= 0:
        return Occurrence(date=this_year, days_until=diff, next_year=False)

    next_year = occurrence_for_year(annual.month, annual.day, today.year + 1, leap_day_rule)
    return Occurrence(date=next_year, days_until=(next_year - today).days, next_year=True)


def days_until(
    annual: AnnualDate,
    today: date | datetime,
    leap_day_rule: str = DEFAULT_LEAP_DAY_RULE,
) -> int:
    return next_occurrence(annual, today, leap_day_rule).days_until

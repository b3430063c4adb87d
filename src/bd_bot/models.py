from __future__ import annotations

from dataclasses import dataclass
from datetime import date


UNKNOWN_YEAR_PREFIX = "0000-"


@dataclass(frozen=True)
class BirthdayEntry:
    name: str
    birth_date: str
    last_notification: date | None
    chat_id: int


@dataclass(frozen=True)
class AnnualDate:
    month: int
    day: int
    year: int | None

    def month_day(self) -> str:
        return f"{self.month:02d}-{self.day:02d}"


@dataclass(frozen=True)
class Occurrence:
    date: date
    days_until: int
    next_year: bool

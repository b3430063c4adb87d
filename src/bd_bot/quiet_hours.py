from __future__ import annotations

DEFAULT_NOTIFICATION_START_HOUR = 8
DEFAULT_NOTIFICATION_END_HOUR = 20


def is_within_notification_hours(current_hour: int, start_hour: int, end_hour: int) -> bool:
    """Return whether ``current_hour`` falls inside the inclusive send window.

    A window whose start is after its end wraps past midnight, e.g. 22-6.
    """
    if start_hour <= end_hour:
        return start_hour <= current_hour <= end_hour
    return current_hour >= start_hour or current_hour <= end_hour


def format_notification_hours(start_hour: int, end_hour: int) -> str:
    window = f"{start_hour:02d}:00 - {end_hour:02d}:00 UTC"
    if start_hour > end_hour:
        return f"{window} (next day)"
    return window

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
import tomllib
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path

from bd_bot.models import BirthdayEntry

LOGGER = logging.getLogger(__name__)

_STORE_LOCK = threading.Lock()


def _toml_escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


@contextmanager
def _locked(path: Path) -> Iterator[None]:
    """Serialize physical reads and writes of the store file.

    The thread lock covers this process; the flock on a sidecar file covers
    other processes editing the same store.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_path = path.with_name(f"{path.name}.lock")

    with _STORE_LOCK:
        with lock_path.open("a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def _parse_last_notification(value: object) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _read(path: Path) -> list[BirthdayEntry]:
    if not path.exists():
        return []

    with path.open("rb") as file_obj:
        data = tomllib.load(file_obj)

    birthdays: list[BirthdayEntry] = []
    for row in data.get("birthdays", []):
        birthdays.append(
            BirthdayEntry(
                name=str(row.get("name", "")),
                birth_date=str(row.get("birth_date", "")),
                last_notification=_parse_last_notification(row.get("last_notification")),
                chat_id=int(row.get("chat_id", 0)),
            )
        )
    return birthdays


def render_birthdays(entries: list[BirthdayEntry]) -> str:
    lines: list[str] = [
        "# Managed by bd_bot. birth_date uses YYYY-MM-DD; a 0000 year means the year is unknown.",
        "",
    ]

    for entry in entries:
        lines.append("[[birthdays]]")
        lines.append(f'name = "{_toml_escape(entry.name)}"')
        lines.append(f'birth_date = "{_toml_escape(entry.birth_date)}"')
        if entry.last_notification is not None:
            lines.append(f"last_notification = {entry.last_notification.isoformat()}")
        lines.append(f"chat_id = {entry.chat_id}")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def _write(path: Path, entries: list[BirthdayEntry]) -> None:
    rendered = render_birthdays(entries)
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_file = tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        delete=False,
    )
    try:
        with temp_file:
            temp_file.write(rendered)
        os.replace(temp_file.name, path)
    except BaseException:
        Path(temp_file.name).unlink(missing_ok=True)
        raise


def load_birthdays(path: Path) -> list[BirthdayEntry]:
    with _locked(path):
        return _read(path)


def save_birthdays_atomic(path: Path, entries: list[BirthdayEntry]) -> None:
    with _locked(path):
        _write(path, entries)


def ensure_store(path: Path) -> None:
    with _locked(path):
        if path.exists():
            return
        _write(path, [])
    LOGGER.info("Created empty birthday store at %s", path)


def update_birthdays(
    path: Path,
    mutate: Callable[[list[BirthdayEntry]], list[BirthdayEntry] | None],
) -> list[BirthdayEntry]:
    """Run load -> mutate -> save under one lock.

    ``mutate`` returns the new list, or ``None`` to leave the store untouched.
    """
    with _locked(path):
        current = _read(path)
        updated = mutate(list(current))
        if updated is None:
            return current
        _write(path, updated)
        return updated


def mark_notified(path: Path, notified: list[BirthdayEntry], today: date) -> int:
    """Stamp ``last_notification = today`` on entries notified during a scan.

    The list is re-read under the lock so edits made while messages were in
    flight survive. An entry is stamped only if its chat id and birth date
    still match a notified snapshot entry.
    """
    keys = {(entry.chat_id, entry.birth_date) for entry in notified}
    stamped = 0

    def _stamp(entries: list[BirthdayEntry]) -> list[BirthdayEntry] | None:
        nonlocal stamped
        result: list[BirthdayEntry] = []
        for entry in entries:
            if (entry.chat_id, entry.birth_date) in keys and entry.last_notification != today:
                entry = BirthdayEntry(
                    name=entry.name,
                    birth_date=entry.birth_date,
                    last_notification=today,
                    chat_id=entry.chat_id,
                )
                stamped += 1
            result.append(entry)
        return result if stamped else None

    update_birthdays(path, _stamp)
    return stamped


def upsert_birthday(path: Path, *, chat_id: int, name: str, birth_date: str) -> tuple[BirthdayEntry, str | None]:
    """Create or update the entry for ``chat_id``.

    Returns the stored entry and the previous birth date, if one existed.
    Changing the date resets ``last_notification``.
    """
    new_entry = BirthdayEntry(name=name, birth_date=birth_date, last_notification=None, chat_id=chat_id)
    previous: str | None = None

    def _upsert(entries: list[BirthdayEntry]) -> list[BirthdayEntry]:
        nonlocal previous
        for index, entry in enumerate(entries):
            if entry.chat_id == chat_id:
                previous = entry.birth_date
                entries[index] = new_entry
                return entries
        return [*entries, new_entry]

    update_birthdays(path, _upsert)
    return new_entry, previous


def rename_birthday(path: Path, *, chat_id: int, name: str) -> bool:
    renamed = False

    def _rename(entries: list[BirthdayEntry]) -> list[BirthdayEntry] | None:
        nonlocal renamed
        for index, entry in enumerate(entries):
            if entry.chat_id == chat_id:
                entries[index] = BirthdayEntry(
                    name=name,
                    birth_date=entry.birth_date,
                    last_notification=entry.last_notification,
                    chat_id=entry.chat_id,
                )
                renamed = True
                return entries
        return None

    update_birthdays(path, _rename)
    return renamed


def find_birthday(path: Path, chat_id: int) -> BirthdayEntry | None:
    for entry in load_birthdays(path):
        if entry.chat_id == chat_id:
            return entry
    return None

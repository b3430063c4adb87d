from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from telegram import Chat, Update, User
from telegram.ext import (
    BaseHandler,
    CallbackContext,
    CommandHandler,
    MessageHandler,
    filters,
)

from bd_bot.birthday_store import find_birthday, rename_birthday, upsert_birthday
from bd_bot.date_logic import InvalidBirthdayError, normalize_birth_date_input
from bd_bot.models import UNKNOWN_YEAR_PREFIX, BirthdayEntry
from bd_bot.quiet_hours import format_notification_hours, is_within_notification_hours
from bd_bot.scheduler import StatusSource
from bd_bot.settings import Settings

LOGGER = logging.getLogger(__name__)

GROUP_CHAT_TYPES = {Chat.GROUP, Chat.SUPERGROUP}

WELCOME_TEXT = (
    "Hi, I am Jeeves bot. I can send you notifications about birthdays. Send me a message like:\n"
    "\n"
    "/update_birth_date 1999-12-31\n"
    "\n"
    "to configure your birthdate.\n"
    "\n"
    "Note: Only one birth date can be configured per chat.\n"
    "\n"
    "Use /help to see all available commands."
)

HELP_TEXT = (
    "Available commands:\n"
    "\n"
    "/start - Welcome message and getting started\n"
    "/help - Show this help message\n"
    "/update_birth_date - Set your birth date\n"
    "  • YYYY-MM-DD format (e.g., /update_birth_date 1999-12-31)\n"
    "  • MM-DD format (e.g., /update_birth_date 12-31) - year unknown\n"
    "/my_info - Show your current information\n"
    "/status - Show bot status\n"
    "\n"
    "You will get a reminder 4 weeks and 2 weeks ahead, and greetings on the day! 🎉"
)


@dataclass(frozen=True)
class HandlerDependencies:
    settings: Settings
    status_source: StatusSource


def resolve_chat_name(chat: Chat, user: User | None) -> str:
    """Pick a display name: group title for groups, the user's name otherwise."""
    chat_name = "Unknown"
    if chat.type in GROUP_CHAT_TYPES:
        if chat.title:
            chat_name = chat.title
    elif user is not None:
        if user.first_name:
            chat_name = user.first_name
            if user.last_name:
                chat_name += " " + user.last_name
        elif user.username:
            chat_name = user.username

    if chat_name == "Unknown" and chat.title:
        chat_name = chat.title
    return chat_name


def format_uptime(uptime: timedelta) -> str:
    seconds = int(uptime.total_seconds())
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h {seconds % 3600 // 60}m"
    return f"{seconds // 86400}d {seconds % 86400 // 3600}h"


def render_status(
    source: StatusSource,
    now: datetime,
    *,
    username: str | None = None,
    first_name: str | None = None,
) -> str:
    start_hour, end_hour = source.get_notification_hours()
    in_window = is_within_notification_hours(now.hour, start_hour, end_hour)
    next_check = now.replace(second=0, microsecond=0) + timedelta(minutes=1)
    return (
        "🤖 Bot status\n"
        f"Username: {'@' + username if username else 'unknown'}\n"
        f"Name: {first_name or 'unknown'}\n"
        f"Status: {source.get_status().value}\n"
        f"Uptime: {format_uptime(source.get_uptime())}\n"
        f"Notifications sent: {source.get_notifications_sent()}\n"
        f"Notification hours: {format_notification_hours(start_hour, end_hour)}\n"
        f"In notification window: {'yes' if in_window else 'no'}\n"
        f"Next check: {next_check.strftime('%H:%M:%S')} UTC"
    )


def render_my_info(entry: BirthdayEntry) -> str:
    text = (
        "📋 Your Information:\n\n"
        f"Name: {entry.name}\n"
        f"Birth Date: {entry.birth_date}\n"
        f"Chat ID: {entry.chat_id}"
    )
    if entry.last_notification is not None:
        text += f"\nLast Notification: {entry.last_notification.isoformat()}"
    return text


def render_update_confirmation(birth_date: str) -> str:
    if birth_date.startswith(UNKNOWN_YEAR_PREFIX):
        month_day = birth_date.removeprefix(UNKNOWN_YEAR_PREFIX)
        return (
            f"✅ Your birth date has been set to {month_day} (year unknown)!\n\n"
            f"I'll send you birthday greetings every {month_day}! 🎉"
        )
    return (
        f"✅ Your birth date has been set to {birth_date}!\n\n"
        "I'll send you birthday greetings on your special day! 🎉"
    )


async def start_command(update: Update, context: CallbackContext) -> None:
    await update.effective_message.reply_text(WELCOME_TEXT)


async def help_command(update: Update, context: CallbackContext) -> None:
    await update.effective_message.reply_text(HELP_TEXT)


async def update_birth_date_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    message = update.effective_message

    raw_text = " ".join(context.args or []).strip()
    if not raw_text:
        await message.reply_text(
            "Please provide a birth date. Example: /update_birth_date 1999-12-31"
        )
        return

    try:
        birth_date = normalize_birth_date_input(raw_text)
    except InvalidBirthdayError:
        await message.reply_text(
            "Invalid date. Please use YYYY-MM-DD (e.g., 1999-12-31) or MM-DD (e.g., 12-31)."
        )
        return

    chat = update.effective_chat
    chat_name = resolve_chat_name(chat, update.effective_user)

    try:
        _entry, previous = upsert_birthday(
            deps.settings.birthday_store_path,
            chat_id=chat.id,
            name=chat_name,
            birth_date=birth_date,
        )
    except (OSError, ValueError):
        LOGGER.exception("Failed to save birthday for chat %d", chat.id)
        await message.reply_text("Sorry, there was an error saving your information.")
        return

    if previous is None:
        LOGGER.info("Added new birthday for %s (chat %d): %s", chat_name, chat.id, birth_date)
    else:
        LOGGER.info("Updated birthday for %s (chat %d): %s -> %s", chat_name, chat.id, previous, birth_date)

    await message.reply_text(render_update_confirmation(birth_date))


async def my_info_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    chat_id = update.effective_chat.id

    try:
        entry = find_birthday(deps.settings.birthday_store_path, chat_id)
    except (OSError, ValueError):
        LOGGER.exception("Failed to load birthdays for chat %d", chat_id)
        await update.effective_message.reply_text("Sorry, there was an error accessing the database.")
        return

    if entry is None:
        await update.effective_message.reply_text(
            "You don't have any information stored yet. Use /update_birth_date to set your birth date."
        )
        return
    await update.effective_message.reply_text(render_my_info(entry))


async def status_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    now = datetime.now(timezone.utc)
    message = render_status(
        deps.status_source,
        now,
        username=context.bot.username,
        first_name=context.bot.first_name,
    )
    await update.effective_message.reply_text(message)


async def new_members_handler(update: Update, context: CallbackContext) -> None:
    members = update.effective_message.new_chat_members or ()
    if any(member.id == context.bot.id for member in members):
        LOGGER.info("Added to chat %d", update.effective_chat.id)
        await update.effective_message.reply_text(WELCOME_TEXT)


async def chat_title_handler(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    chat_id = update.effective_chat.id
    new_title = update.effective_message.new_chat_title
    LOGGER.info("Chat title changed to '%s' for chat %d", new_title, chat_id)

    try:
        renamed = rename_birthday(deps.settings.birthday_store_path, chat_id=chat_id, name=new_title)
    except (OSError, ValueError):
        LOGGER.exception("Failed to rename birthday entry for chat %d", chat_id)
        return

    if not renamed:
        LOGGER.debug("No birthday entry found for chat %d", chat_id)


async def private_text_handler(update: Update, context: CallbackContext) -> None:
    await update.effective_message.reply_text("Hello! Send /help to see available commands.")


async def unknown_command(update: Update, context: CallbackContext) -> None:
    await update.effective_message.reply_text("Unknown command. Send /help for available commands.")


def build_handlers() -> list[BaseHandler]:
    return [
        CommandHandler("start", start_command),
        CommandHandler("help", help_command),
        CommandHandler("update_birth_date", update_birth_date_command),
        CommandHandler("my_info", my_info_command),
        CommandHandler("status", status_command),
        MessageHandler(filters.StatusUpdate.NEW_CHAT_MEMBERS, new_members_handler),
        MessageHandler(filters.StatusUpdate.NEW_CHAT_TITLE, chat_title_handler),
        MessageHandler(filters.COMMAND, unknown_command),
        MessageHandler(filters.TEXT & filters.ChatType.PRIVATE, private_text_handler),
    ]

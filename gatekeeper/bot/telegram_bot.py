"""
Goal Gatekeeper — Telegram Bot.

Telegram is the host surface for the single user: goal intake, manual
check-ins, and the Gatekeeper conversation itself. Plain text is routed to
the active check-in session; scheduled check-ins and deadline warnings are
pushed to the owner chat by repeating jobs.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
    Defaults,
    MessageHandler,
    filters,
)
from telegram.helpers import escape_markdown

from gatekeeper.config import settings
from gatekeeper.core.errors import (
    MalformedResponse,
    PersistenceFailure,
    ProviderUnavailable,
    SessionBusy,
)
from gatekeeper.data.models import Sender

if TYPE_CHECKING:
    from gatekeeper.core.goal_service import GoalService
    from gatekeeper.core.session_manager import SessionManager
    from gatekeeper.data.db import Stores
    from gatekeeper.data.models import Goal
    from gatekeeper.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

RESUME_HISTORY_LINES = 6

# /editgoal field name -> Goal attribute
EDITABLE_FIELDS = {
    "title": "title",
    "goal": "desired_goal",
    "state": "current_state",
    "endstate": "end_state",
    "frequency": "frequency",
    "deadline": "end_date",
    "voice": "voice",
}


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users.

    Does NOT send any response to strangers — the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _local_now() -> datetime:
    """Wall-clock time in settings.TIMEZONE, naive like every stored timestamp."""
    return datetime.now(ZoneInfo(settings.TIMEZONE)).replace(tzinfo=None)


def _md(text: str) -> str:
    """Escape user or LLM text for parse_mode="Markdown"."""
    return escape_markdown(text, version=1)


def _open_goals(stores: Stores) -> list[Goal]:
    return stores.goals.list_goals(include_completed=False)


def _goal_from_args(stores: Stores, args: list[str] | None) -> Goal | None:
    """Resolve `/cmd <n>` against the numbering shown by /goals."""
    if not args:
        return None
    try:
        index = int(args[0])
    except ValueError:
        return None
    goals = _open_goals(stores)
    if 1 <= index <= len(goals):
        return goals[index - 1]
    return None


def _split_project(stores: Stores, text: str) -> tuple[str | None, str]:
    """Pull a leading `#project` tag off the goal text.

    Raises ValueError if the tag names no known project.
    """
    text = text.strip()
    if not text.startswith("#"):
        return None, text
    tag, _, rest = text.partition(" ")
    wanted = tag[1:].lower()
    for project in stores.projects.list_projects():
        if wanted in (project.id.lower(), project.name.lower()):
            return project.id, rest.strip()
    raise ValueError(f"Unknown project '{tag[1:]}'")


def _format_goal_line(index: int, goal: Goal) -> str:
    deadline = goal.end_date[:10] if goal.end_date else "no deadline"
    return f"{index}. {_md(goal.title)} ({goal.frequency}, due {deadline})"


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message."""
    await update.message.reply_text(
        "Welcome to *Goal Gatekeeper*!\n\n"
        "I keep you accountable for your goals:\n"
        "• Use /addgoal to describe a new goal in your own words\n"
        "• I'll check in with you on the schedule each goal asks for\n"
        "• Just reply in plain text during a check-in\n\n"
        "Type /help for the full command list.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "*Available commands:*\n"
        "/goals — List open goals\n"
        "/addgoal [#project] <description> — Create a goal\n"
        "/checkin <n> — Start a check-in for goal n\n"
        "/close — End the current check-in\n"
        "/editgoal <n> <field> <value> — Edit goal n (title, goal, state, endstate, frequency, deadline, voice)\n"
        "/complete <n> — Mark goal n as completed\n"
        "/deletegoal <n> — Delete goal n and its chat history\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_goals(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /goals — list open goals with their numbers."""
    stores: Stores = context.bot_data["stores"]
    manager: SessionManager = context.bot_data["manager"]
    try:
        goals = _open_goals(stores)
    except PersistenceFailure as exc:
        logger.error("/goals error: %s", exc)
        await update.message.reply_text("Couldn't load goals. Please try again.")
        return

    if not goals:
        await update.message.reply_text("No open goals. Add one with /addgoal.")
        return

    lines = [f"*Open goals* (deadlines in {_md(settings.TIMEZONE)}):\n"]
    for i, goal in enumerate(goals, start=1):
        line = _format_goal_line(i, goal)
        if goal.id == manager.active_goal_id:
            line += " — in check-in"
        lines.append(line)
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_addgoal(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addgoal [#project] <text> — LLM intake of a new goal."""
    stores: Stores = context.bot_data["stores"]
    goal_service: GoalService = context.bot_data["goal_service"]

    text = " ".join(context.args or [])
    try:
        project_id, description = _split_project(stores, text)
    except ValueError as exc:
        await update.message.reply_text(f"{exc}. Projects: " + ", ".join(
            p.id for p in stores.projects.list_projects()
        ))
        return
    if not description:
        await update.message.reply_text(
            "Usage: /addgoal [#project] <description>\n"
            "e.g. /addgoal #work Ship v1 of the app by the end of the month"
        )
        return

    processing_msg = await update.message.reply_text("Processing...")
    try:
        goal = await goal_service.create_from_text(description, project_id=project_id)
    except (ProviderUnavailable, MalformedResponse) as exc:
        logger.error("Goal intake failed: %s", exc)
        await update.message.reply_text(
            "Sorry, I couldn't understand that goal right now. Please try again."
        )
        return
    except PersistenceFailure as exc:
        logger.error("Goal intake could not be saved: %s", exc)
        await update.message.reply_text("Couldn't save the goal. Please try again.")
        return
    finally:
        try:
            await processing_msg.delete()
        except Exception:
            pass  # Non-critical if delete fails

    await update.message.reply_text(
        f"✅ Goal created: *{_md(goal.title)}*\n"
        f"End state: {_md(goal.end_state) or '—'}\n"
        f"Check-ins: {goal.frequency}\n"
        f"Deadline: {goal.end_date[:10]}",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_checkin(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /checkin <n> — open a manual check-in."""
    stores: Stores = context.bot_data["stores"]
    manager: SessionManager = context.bot_data["manager"]

    goal = _goal_from_args(stores, context.args)
    if goal is None:
        await update.message.reply_text("Usage: /checkin <n>\nUse /goals to see the numbers.")
        return

    try:
        session, opened = await manager.open_manual(goal.id)
    except SessionBusy:
        await update.message.reply_text(
            "Another check-in is in progress. Finish it or /close it first."
        )
        return
    except (LookupError, PersistenceFailure) as exc:
        logger.error("/checkin error: %s", exc)
        await update.message.reply_text("Couldn't open that check-in. Please try again.")
        return

    if opened:
        for message in opened:
            await update.message.reply_text(message.text)
        return

    recent = session.messages[-RESUME_HISTORY_LINES:]
    lines = [f"Resuming check-in for *{_md(goal.title)}*. Recent messages:\n"]
    for message in recent:
        who = "You" if message.sender is Sender.USER else "Gatekeeper"
        lines.append(f"{who}: {_md(message.text)}")
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_close(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /close — end the active check-in."""
    manager: SessionManager = context.bot_data["manager"]
    if await manager.close_active():
        await update.message.reply_text("Check-in closed.")
    else:
        await update.message.reply_text("No check-in is open.")


@authorized_only
async def cmd_complete(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /complete <n> — mark a goal as completed."""
    stores: Stores = context.bot_data["stores"]
    goal_service: GoalService = context.bot_data["goal_service"]

    goal = _goal_from_args(stores, context.args)
    if goal is None:
        await update.message.reply_text("Usage: /complete <n>\nUse /goals to see the numbers.")
        return

    try:
        goal_service.set_completed(goal.id)
    except SessionBusy:
        await update.message.reply_text("That goal is in a check-in. /close it first.")
        return
    except (ValueError, PersistenceFailure) as exc:
        logger.error("/complete error: %s", exc)
        await update.message.reply_text("Couldn't complete that goal. Please try again.")
        return
    await update.message.reply_text(f"🎉 Marked '*{_md(goal.title)}*' as completed.", parse_mode="Markdown")


@authorized_only
async def cmd_editgoal(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /editgoal <n> <field> <value> — direct edit of one goal field."""
    stores: Stores = context.bot_data["stores"]
    goal_service: GoalService = context.bot_data["goal_service"]

    args = context.args or []
    goal = _goal_from_args(stores, args[:1])
    field = args[1].lower() if len(args) > 1 else ""
    if goal is None or field not in EDITABLE_FIELDS:
        await update.message.reply_text(
            "Usage: /editgoal <n> <field> <value>\n"
            f"Fields: {', '.join(EDITABLE_FIELDS)}\n"
            "e.g. /editgoal 1 frequency weekly"
        )
        return

    attr = EDITABLE_FIELDS[field]
    try:
        updated = goal_service.edit_goal(goal.id, **{attr: " ".join(args[2:])})
    except ValueError as exc:
        await update.message.reply_text(f"Couldn't update {field}: {exc}")
        return
    except PersistenceFailure as exc:
        logger.error("/editgoal error: %s", exc)
        await update.message.reply_text("Couldn't save that edit. Please try again.")
        return

    value = getattr(updated, attr) or "—"
    if attr == "end_date":
        value = value[:10]
    await update.message.reply_text(
        f"✏️ Updated *{_md(updated.title)}*\n{field}: {_md(value)}",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_deletegoal(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /deletegoal <n> — delete a goal and its chat history."""
    stores: Stores = context.bot_data["stores"]
    goal_service: GoalService = context.bot_data["goal_service"]

    goal = _goal_from_args(stores, context.args)
    if goal is None:
        await update.message.reply_text("Usage: /deletegoal <n>\nUse /goals to see the numbers.")
        return

    try:
        goal_service.delete_goal(goal.id)
    except SessionBusy:
        await update.message.reply_text("That goal is in a check-in. /close it first.")
        return
    except PersistenceFailure as exc:
        logger.error("/deletegoal error: %s", exc)
        await update.message.reply_text("Couldn't delete that goal. Please try again.")
        return
    await update.message.reply_text(f"🗑️ Deleted '*{_md(goal.title)}*'.", parse_mode="Markdown")


# ---------------------------------------------------------------------------
# Message handlers
# ---------------------------------------------------------------------------


@authorized_only
async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle plain text — the user's reply in the active check-in."""
    manager: SessionManager = context.bot_data["manager"]
    if manager.active_session is None:
        await update.message.reply_text(
            "No check-in is open right now. Use /goals and /checkin <n> to start one."
        )
        return

    processing_msg = await update.message.reply_text("Processing...")
    try:
        await manager.handle_user_message(update.message.text)
    except SessionBusy:
        await update.message.reply_text("Still working on your last message, one moment.")
    except ValueError:
        pass  # Empty text
    finally:
        try:
            await processing_msg.delete()
        except Exception:
            pass  # Non-critical if delete fails


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    stores: Stores | None = None,
    notifier: NotificationPort | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        stores: SQLite stores. Defaults to the DB at settings.DATABASE_PATH.
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
    """
    from gatekeeper.core.goal_service import GoalService
    from gatekeeper.core.session_manager import SessionManager
    from gatekeeper.data.db import Stores

    # Updates run concurrently so /close can arrive while a reply is processing
    app = (
        ApplicationBuilder()
        .token(settings.TELEGRAM_BOT_TOKEN)
        .defaults(Defaults(tzinfo=ZoneInfo(settings.TIMEZONE)))
        .concurrent_updates(True)
        .build()
    )

    if stores is None:
        stores = Stores.open()

    if notifier is None:
        from gatekeeper.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    _run_startup_tasks(stores)

    manager = SessionManager(
        stores, notifier=notifier, owner_id=settings.owner_id, clock=_local_now,
    )
    app.bot_data["stores"] = stores
    app.bot_data["notifier"] = notifier
    app.bot_data["manager"] = manager
    app.bot_data["goal_service"] = GoalService(stores, manager, clock=_local_now)

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("goals", cmd_goals))
    app.add_handler(CommandHandler("addgoal", cmd_addgoal))
    app.add_handler(CommandHandler("checkin", cmd_checkin))
    app.add_handler(CommandHandler("close", cmd_close))
    app.add_handler(CommandHandler("editgoal", cmd_editgoal))
    app.add_handler(CommandHandler("complete", cmd_complete))
    app.add_handler(CommandHandler("deletegoal", cmd_deletegoal))

    # Text messages (non-command)
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))

    _setup_jobs(app, manager, stores, notifier)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _run_startup_tasks(stores: Stores) -> None:
    """Legacy import (once) and the deadline sweep over every goal."""
    from gatekeeper.core.deadline_sync import sync_all_goal_deadlines
    from gatekeeper.data.migration import import_legacy_export

    if settings.LEGACY_EXPORT_PATH:
        try:
            import_legacy_export(settings.LEGACY_EXPORT_PATH, stores)
        except PersistenceFailure as exc:
            logger.error("Legacy import failed: %s", exc)

    try:
        sync_all_goal_deadlines(stores)
    except PersistenceFailure as exc:
        logger.error("Startup deadline sweep failed: %s", exc)


def _setup_jobs(
    app: Application,
    manager: SessionManager,
    stores: Stores,
    notifier: NotificationPort,
) -> None:
    """Register the due-goal check and the approaching-deadline scan."""
    from gatekeeper.core.scheduler import notify_upcoming_deadlines, run_due_goal_check

    window = timedelta(hours=settings.DEADLINE_WARNING_HOURS)

    async def _due_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        await run_due_goal_check(
            manager, stores.goals, notifier, settings.owner_id, now=_local_now(),
        )

    async def _deadline_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        await notify_upcoming_deadlines(
            stores.goals, notifier, settings.owner_id,
            now=_local_now(), window=window, tz_name=settings.TIMEZONE,
        )

    app.job_queue.run_repeating(
        _due_job_callback,
        interval=settings.CHECK_INTERVAL_SECONDS,
        first=10,
        name="due_goal_check",
    )
    app.job_queue.run_repeating(
        _deadline_job_callback,
        interval=settings.DEADLINE_CHECK_INTERVAL_SECONDS,
        first=30,
        name="deadline_scan",
    )

    logger.info(
        "Due-goal check every %ds, deadline scan every %ds (%s)",
        settings.CHECK_INTERVAL_SECONDS,
        settings.DEADLINE_CHECK_INTERVAL_SECONDS,
        settings.TIMEZONE,
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting Goal Gatekeeper bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()

"""
Telegram Bot - PM Team Chat Interface

Commands:
- /request <text>   submit a work request (multiline)
- /template         structured request template
- /modify <text>    change the analysis of the last request
- /approve [id]     approve a request in analysis or a task in review
- /provide <text>   answer the PM's information request
- /reject <id> [reason]
- /status, /standup, /blockers, /blocker <id>, /todo, /doc <file>
- /health, /flags, /help

Plain text goes to the PM agent as a conversation.

All replies use HTML parse mode. Long messages are split into chunks;
if Telegram rejects the markup the text is resent without tags.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import uvicorn
from telegram import Bot, Update
from telegram.constants import ChatAction, ParseMode
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    CommandHandler,
    MessageHandler,
    ContextTypes,
    filters,
)

from pm_controller import __version__
from pm_controller.api import create_app
from pm_controller.config import Settings, configure_logging
from pm_controller.conversation import format_task_info, format_blocked_tasks_summary
from pm_controller.formatting import (
    escape_html,
    markdown_to_telegram_html,
    split_message,
    strip_html,
)
from pm_controller.health import format_report
from pm_controller.orchestrator import AgentOrchestrator
from pm_controller.permissions import is_path_safe, is_system_restricted

logger = logging.getLogger("telegram_bot")

CHUNK_DELAY = 0.2
ORCHESTRATOR_KEY = "orchestrator"


# -----------------------------------------------------------------------------
# Message Delivery
# -----------------------------------------------------------------------------
async def send_html(bot: Bot, chat_id, text: str) -> None:
    """Send HTML text in chunks, falling back to plain text."""
    chunks = split_message(text)
    try:
        for index, chunk in enumerate(chunks):
            prefix = f"<i>(continued {index + 1}/{len(chunks)})</i>\n\n" if index > 0 else ""
            await bot.send_message(chat_id=chat_id, text=prefix + chunk, parse_mode=ParseMode.HTML)
            if index < len(chunks) - 1:
                await asyncio.sleep(CHUNK_DELAY)
    except TelegramError as e:
        logger.error(f"Failed to send formatted message: {e}")
        plain_chunks = split_message(strip_html(text))
        for index, chunk in enumerate(plain_chunks):
            await bot.send_message(chat_id=chat_id, text=chunk)
            if index < len(plain_chunks) - 1:
                await asyncio.sleep(CHUNK_DELAY)


class TelegramNotifier:
    """Posts PM team notifications to the configured chat."""

    def __init__(self, bot: Bot, chat_id: str):
        self.bot = bot
        self.chat_id = chat_id

    async def send(self, text: str) -> None:
        if not self.chat_id:
            logger.warning("TELEGRAM_CHAT_ID not set, dropping notification")
            return
        await send_html(self.bot, self.chat_id, text)
        logger.info(f"Telegram notification sent: {strip_html(text)[:50]}...")


async def reply(update: Update, context: ContextTypes.DEFAULT_TYPE, text: str) -> None:
    await send_html(context.bot, update.effective_chat.id, text)


def get_orchestrator(context: ContextTypes.DEFAULT_TYPE) -> AgentOrchestrator:
    return context.bot_data[ORCHESTRATOR_KEY]


def command_text(update: Update) -> str:
    """Everything after the command word, newlines preserved."""
    text = update.effective_message.text or ""
    parts = text.split(None, 1)
    return parts[1].strip() if len(parts) > 1 else ""


def username_of(update: Update) -> str:
    user = update.effective_user
    if not user:
        return "unknown"
    return user.username or user.first_name or str(user.id)


HELP_TEXT = (
    "<b>🤖 AI PM Team</b>\n\n"
    "💬 <b>Talk to your PM!</b> Just send a message:\n"
    "   <i>\"What blockers do we have?\"</i>\n"
    "   <i>\"What should we work on next?\"</i>\n\n"
    "<b>Core Commands:</b>\n"
    "📝 /request [description] - Submit work request\n"
    "📑 /template - Get structured request template\n"
    "✏️ /modify [changes] - Request changes to analysis\n"
    "✅ /approve [id] - Approve latest request or a task in review\n"
    "❌ /reject [id] [reason] - Reject a request or task\n"
    "📝 /provide [info] - Submit required information\n"
    "📋 /status - Check team progress\n\n"
    "<b>Info &amp; Reports:</b>\n"
    "📊 /standup - Latest daily report\n"
    "📋 /todo - View TODO.md\n"
    "📄 /doc [filename] - Get any project document\n"
    "🩺 /health - System diagnostics\n"
    "🚩 /flags - Feature flags\n\n"
    "<b>Debugging &amp; Blockers:</b>\n"
    "🚫 /blockers - List all blocked tasks\n"
    "🔍 /blocker [task-id] - Detailed blocker info\n\n"
    "<b>Quick Start:</b>\n"
    "1. Type <code>/template</code> to see the request format\n"
    "2. Submit with <code>/request [details]</code>\n"
    "3. Review the analysis, use <code>/modify</code> if needed\n"
    "4. Approve with <code>/approve</code>\n"
    "5. Provide any required info if asked\n"
    "6. Watch the agents build it!"
)

TEMPLATE_TEXT = (
    "📝 <b>Request Template</b>\n\n"
    "Copy and fill out this template for best results:\n\n"
    "<pre>/request\n\n"
    "FEATURE: [Short name]\n\n"
    "WHAT: [What should be built?]\n\n"
    "WHY: [Why is this needed?]\n\n"
    "WHO: [Who will use this?]\n\n"
    "SUCCESS: [How will we know it works?]\n\n"
    "NOTES: [Technical requirements, constraints, or context]</pre>\n\n"
    "<b>Example:</b>\n"
    "<pre>/request\n\n"
    "FEATURE: User Authentication\n\n"
    "WHAT: Email/password login system with JWT tokens\n\n"
    "WHY: Users need secure accounts\n\n"
    "WHO: All web app users\n\n"
    "SUCCESS: Users can register, login, and stay logged in\n\n"
    "NOTES: Use bcrypt for passwords, refresh tokens for sessions</pre>"
)


# -----------------------------------------------------------------------------
# Core Command Handlers
# -----------------------------------------------------------------------------
async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start. ALWAYS responds."""
    logger.info(f"User {username_of(update)} started bot in chat {update.effective_chat.id}")
    await reply(update, context, f"👋 Welcome to the AI PM Team (v{__version__})!\n\n{HELP_TEXT}")


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await reply(update, context, HELP_TEXT)


async def template_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await reply(update, context, TEMPLATE_TEXT)


async def request_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /request <description>."""
    description = command_text(update)
    if not description:
        await reply(update, context, "❌ Please provide a description after /request")
        return

    try:
        orchestrator = get_orchestrator(context)
        record = orchestrator.requests.create(description, submitted_by=username_of(update))
        orchestrator.last_request_id = record.request_id
        await reply(
            update, context,
            f"📝 <b>Request Created</b> <code>{record.request_id}</code>\n"
            f"<i>{escape_html(record.title)}...</i>\n\n⏳ Analyzing...",
        )
    except Exception as e:
        logger.error(f"Error in request_command: {e}")
        await reply(update, context, "❌ <b>Error</b>: Could not create request")


async def modify_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    modifications = command_text(update)
    if not modifications:
        await reply(update, context, "❌ Please specify what you want to modify")
        return

    orchestrator = get_orchestrator(context)
    if not orchestrator.last_request_id:
        await reply(update, context, "❌ No active request to modify. Submit one first with /request")
        return
    try:
        await orchestrator.pm.modify_request(orchestrator.last_request_id, modifications, username_of(update))
    except Exception as e:
        logger.error(f"Error in modify_command: {e}")
        await reply(update, context, "❌ <b>Error</b>: Could not modify request")


async def provide_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    information = command_text(update)
    if not information:
        await reply(update, context, "❌ Please provide the requested information")
        return
    try:
        await get_orchestrator(context).pm.provide_information(information, username_of(update))
    except Exception as e:
        logger.error(f"Error in provide_command: {e}")
        await reply(update, context, "❌ <b>Error</b>: Could not process information")


async def approve_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /approve [id]; defaults to the last request."""
    orchestrator = get_orchestrator(context)
    item_id = context.args[0] if context.args else orchestrator.last_request_id
    if not item_id:
        await reply(update, context, "❌ No request to approve. Submit one first with /request")
        return
    try:
        await orchestrator.pm.approve(item_id, username_of(update))
    except Exception as e:
        logger.error(f"Error in approve_command: {e}")
        await reply(update, context, "❌ <b>Error</b>: Could not approve")


async def reject_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not context.args:
        await reply(update, context, "Usage: /reject &lt;id&gt; [reason]")
        return
    item_id = context.args[0]
    reason = " ".join(context.args[1:]) or "No reason provided"
    try:
        await get_orchestrator(context).pm.reject(item_id, reason, username_of(update))
    except Exception as e:
        logger.error(f"Error in reject_command: {e}")
        await reply(update, context, "❌ Error rejecting")


# -----------------------------------------------------------------------------
# Reports
# -----------------------------------------------------------------------------
async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        status = get_orchestrator(context).pm.get_status()
        await reply(update, context, markdown_to_telegram_html(status))
    except Exception as e:
        logger.error(f"Error in status_command: {e}")
        await reply(update, context, "❌ Error getting status")


async def standup_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        report = get_orchestrator(context).pm.get_latest_standup()
        await reply(update, context, markdown_to_telegram_html(report))
    except Exception as e:
        logger.error(f"Error in standup_command: {e}")
        await reply(update, context, "❌ Error loading standup report")


async def blockers_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        blocked = get_orchestrator(context).conversation.get_blocked_tasks()
        await reply(update, context, markdown_to_telegram_html(format_blocked_tasks_summary(blocked)))
    except Exception as e:
        logger.error(f"Error in blockers_command: {e}")
        await reply(update, context, "❌ Error retrieving blocked tasks")


async def blocker_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not context.args:
        await reply(update, context, "Usage: /blocker &lt;task-id&gt;")
        return
    try:
        info = get_orchestrator(context).conversation.query_task(context.args[0])
        await reply(update, context, markdown_to_telegram_html(format_task_info(info)))
    except Exception as e:
        logger.error(f"Error in blocker_command: {e}")
        await reply(update, context, "❌ Error retrieving task information")


def project_relative(project_root: Path, filename: str) -> str:
    root = Path(project_root).resolve()
    return (root / filename).resolve().relative_to(root).as_posix()


def read_project_file(project_root: Path, filename: str) -> Optional[str]:
    """Read a file under the project root; None when missing, outside it or restricted."""
    if not is_path_safe(filename, project_root):
        return None
    if is_system_restricted(project_relative(project_root, filename)):
        return None
    path = (Path(project_root) / filename).resolve()
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8", errors="replace")


async def todo_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    content = read_project_file(get_orchestrator(context).settings.project_root, "TODO.md")
    if content is None:
        await reply(update, context, "⚠️ TODO.md not found")
        return
    await reply(update, context, f"📋 <b>TODO.md</b>\n\n{markdown_to_telegram_html(content)}")


async def doc_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    filename = command_text(update)
    if not filename:
        await reply(update, context, "Usage: /doc &lt;filename&gt;")
        return
    project_root = get_orchestrator(context).settings.project_root
    if not is_path_safe(filename, project_root):
        await reply(update, context, "🚫 Access denied: path is outside the project")
        return
    if is_system_restricted(project_relative(project_root, filename)):
        await reply(update, context, "🚫 Access denied: restricted file")
        return
    content = read_project_file(project_root, filename)
    if content is None:
        await reply(update, context, f"⚠️ File not found: {escape_html(filename)}")
        return
    formatted = (
        markdown_to_telegram_html(content) if filename.endswith(".md")
        else f"<pre>{escape_html(content)}</pre>"
    )
    await reply(update, context, f"📄 <b>{escape_html(filename)}</b>\n\n{formatted}")


async def health_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        report = await asyncio.to_thread(get_orchestrator(context).health.run_all_checks)
        await reply(update, context, f"<pre>{escape_html(format_report(report))}</pre>")
    except Exception as e:
        logger.error(f"Error in health_command: {e}")
        await reply(update, context, f"❌ Health check failed: {escape_html(str(e)[:100])}")


async def flags_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    flags = get_orchestrator(context).flags.get_all_flags()
    lines = ["🚩 <b>Feature Flags</b>", ""]
    for flag in flags:
        icon = "🟢" if flag["enabled"] else "⚪"
        lines.append(
            f"{icon} <code>{escape_html(flag['name'])}</code> "
            f"({flag['rollout_percentage']}%) - {escape_html(flag.get('description') or '')}"
        )
    await reply(update, context, "\n".join(lines))


# -----------------------------------------------------------------------------
# Conversation
# -----------------------------------------------------------------------------
async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Free text goes to the PM agent."""
    message = update.effective_message
    chat = update.effective_chat
    logger.info(f"Inbound chat.id={chat.id} type={chat.type} title={chat.title or ''}")
    if not message or not message.text or not message.text.strip():
        return

    try:
        await context.bot.send_chat_action(chat_id=chat.id, action=ChatAction.TYPING)
        answer = await get_orchestrator(context).pm.handle_conversational_query(
            message.text, username=username_of(update)
        )
        await reply(update, context, markdown_to_telegram_html(answer))
    except Exception as e:
        logger.error(f"Error in conversational handler: {e}")
        await reply(
            update, context,
            "❌ Sorry, I encountered an error processing your message. "
            "Please try a specific command like /status or /blockers.",
        )


# -----------------------------------------------------------------------------
# Error Handler
# -----------------------------------------------------------------------------
async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle errors - ALWAYS tries to respond."""
    logger.error(f"Update {update} caused error {context.error}")
    try:
        if isinstance(update, Update) and update.effective_message:
            await update.effective_message.reply_text(
                "An error occurred. Please try again later.\n"
                f"Error: {str(context.error)[:100]}"
            )
    except Exception as e:
        logger.error(f"Failed to send error response: {e}")


# -----------------------------------------------------------------------------
# Application
# -----------------------------------------------------------------------------
COMMANDS = [
    ("start", start_command),
    ("help", help_command),
    ("template", template_command),
    ("request", request_command),
    ("modify", modify_command),
    ("provide", provide_command),
    ("approve", approve_command),
    ("reject", reject_command),
    ("status", status_command),
    ("standup", standup_command),
    ("blockers", blockers_command),
    ("blocker", blocker_command),
    ("todo", todo_command),
    ("doc", doc_command),
    ("health", health_command),
    ("flags", flags_command),
]


def build_application(settings: Settings) -> Application:
    """Build the bot; the orchestrator and status API start in post_init."""

    async def post_init(application: Application) -> None:
        await application.bot.delete_webhook(drop_pending_updates=True)
        notifier = TelegramNotifier(application.bot, settings.telegram_chat_id)
        orchestrator = AgentOrchestrator(settings, notifier=notifier.send)
        application.bot_data[ORCHESTRATOR_KEY] = orchestrator
        await orchestrator.start()

        server = uvicorn.Server(uvicorn.Config(
            create_app(orchestrator),
            host=settings.api_host,
            port=settings.api_port,
            log_level=settings.log_level.lower(),
        ))
        application.bot_data["api_server"] = server
        application.bot_data["api_task"] = asyncio.create_task(server.serve())
        logger.info(f"Status API on http://{settings.api_host}:{settings.api_port}")

    async def post_shutdown(application: Application) -> None:
        server = application.bot_data.get("api_server")
        if server:
            server.should_exit = True
            await application.bot_data["api_task"]
        orchestrator = application.bot_data.get(ORCHESTRATOR_KEY)
        if orchestrator:
            await orchestrator.shutdown()

    application = (
        Application.builder()
        .token(settings.telegram_bot_token)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )
    for name, handler in COMMANDS:
        application.add_handler(CommandHandler(name, handler))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))
    application.add_error_handler(error_handler)
    return application


def main():
    """Start the bot."""
    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_file)

    if not settings.telegram_bot_token:
        logger.error("TELEGRAM_BOT_TOKEN environment variable not set!")
        sys.exit(1)
    if not settings.llm_api_key:
        logger.warning("No LLM API key set; analysis and agent work will fail")

    logger.info(f"Starting PM team bot v{__version__}")
    logger.info(f"Project root: {settings.project_root}")

    application = build_application(settings)
    logger.info("Bot started. Polling for updates...")
    application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()

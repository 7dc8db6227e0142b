"""Telegram bot front end for remote sessions and setup dialogs."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.error import Conflict, NetworkError, TelegramError, TimedOut
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .backoff import PollingGaveUpError, PollingRecovery
from .callbacks import ANSWER, SESSION_FLOW, TASK_FLOW, decode_callback
from .models import ActiveSession, FlowReply

logger = logging.getLogger(__name__)

TELEGRAM_MESSAGE_LIMIT = 4096

POLLING_STALL_SECONDS = 45
HEALTH_CHECK_INTERVAL_SECONDS = 15

HELP_TEXT = (
    "Remote Session Relay\n\n"
    "Commands:\n"
    "/session - Pick a machine and folder, then start a session\n"
    "/task <name> - Set up a task (new or existing repo)\n"
    "/cancel - Cancel the setup dialog in this topic\n"
    "/sessions - List active sessions\n"
    "/kill - Kill the session in this topic\n"
    "/help - Show this message\n\n"
    "Write in a session topic to send input."
)


def make_thread_key(chat_id: int, topic_id: Optional[int] = None) -> str:
    """``<chat_id>.<topic_id>``, or just the chat id outside forum topics."""
    if topic_id is None:
        return str(chat_id)
    return f"{chat_id}.{topic_id}"


def split_thread_key(thread_key: str) -> tuple[int, Optional[int]]:
    chat, sep, topic = thread_key.rpartition(".")
    if not sep:
        return int(topic), None
    return int(chat), int(topic)


def build_keyboard(rows: list) -> InlineKeyboardMarkup:
    """Rows of (label, callback_data) pairs to an inline keyboard."""
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(label, callback_data=data) for label, data in row]
        for row in rows
    ])


def thread_key_for(update: Update) -> str:
    message = update.effective_message
    topic_id = message.message_thread_id if message and message.is_topic_message else None
    return make_thread_key(update.effective_chat.id, topic_id)


class TelegramBot:
    """Telegram bot driving setup dialogs and relaying session input."""

    def __init__(
        self,
        token: str,
        allowed_chat_ids: Optional[list[int]] = None,
        allowed_user_ids: Optional[list[int]] = None,
        polling_recovery: Optional[PollingRecovery] = None,
    ):
        """
        Initialize the Telegram bot.

        Args:
            token: Telegram bot token from BotFather
            allowed_chat_ids: Chat IDs allowed to use the bot (None = allow all)
            allowed_user_ids: User IDs allowed to use the bot (None = allow all)
            polling_recovery: Retry policy for getUpdates failures
        """
        self.token = token
        self.allowed_chat_ids = set(allowed_chat_ids) if allowed_chat_ids else None
        self.allowed_user_ids = set(allowed_user_ids) if allowed_user_ids else None
        self.polling_recovery = polling_recovery or PollingRecovery()
        self.application: Optional[Application] = None
        self.bot: Optional[Bot] = None
        self.flow_engine = None

        # Session callbacks, wired in main
        self._on_session_input: Optional[Callable[[str, str], Awaitable[bool]]] = None
        self._on_list_sessions: Optional[Callable[[], list[ActiveSession]]] = None
        self._on_kill_session: Optional[Callable[[str], Awaitable[bool]]] = None
        self._on_answer_question: Optional[Callable[[str, int], Awaitable[Optional[str]]]] = None
        self._is_session_topic: Optional[Callable[[str], bool]] = None

        self._last_get_updates_ts = time.monotonic()
        self._health_monitor_task: Optional[asyncio.Task] = None
        self._polling_gave_up = False

    @classmethod
    def from_config(cls, config: dict) -> "TelegramBot":
        telegram = config.get("telegram", {})
        return cls(
            token=telegram["token"],
            allowed_chat_ids=telegram.get("allowed_chat_ids"),
            allowed_user_ids=telegram.get("allowed_user_ids"),
            polling_recovery=PollingRecovery.from_config(config),
        )

    def set_flow_engine(self, flow_engine):
        self.flow_engine = flow_engine

    def set_session_input_handler(self, handler: Callable[[str, str], Awaitable[bool]]):
        self._on_session_input = handler

    def set_list_sessions_handler(self, handler: Callable[[], list[ActiveSession]]):
        self._on_list_sessions = handler

    def set_kill_session_handler(self, handler: Callable[[str], Awaitable[bool]]):
        self._on_kill_session = handler

    def set_answer_question_handler(self, handler: Callable[[str, int], Awaitable[Optional[str]]]):
        self._on_answer_question = handler

    def set_session_topic_check(self, check: Callable[[str], bool]):
        self._is_session_topic = check

    def _is_allowed(self, chat_id: int, user_id: Optional[int] = None) -> bool:
        """Check if a chat/user is allowed to use the bot."""
        if self.allowed_user_ids is not None:
            if user_id is None or user_id not in self.allowed_user_ids:
                return False

        if self.allowed_chat_ids is not None:
            if chat_id not in self.allowed_chat_ids:
                return False

        return True

    def _check_update(self, update: Update) -> bool:
        user = update.effective_user
        allowed = self._is_allowed(update.effective_chat.id, user.id if user else None)
        if not allowed:
            logger.warning(
                f"Unauthorized: chat_id={update.effective_chat.id}, user_id={user.id if user else None}"
            )
        return allowed

    async def _send_reply(self, update: Update, reply: FlowReply):
        markup = build_keyboard(reply.buttons) if reply.buttons else None
        await update.effective_message.reply_text(reply.text, reply_markup=markup)

    # =========================================================================
    # Commands
    # =========================================================================

    async def _cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /help and /start."""
        if not self._check_update(update):
            await update.message.reply_text("Unauthorized.")
            return
        await update.message.reply_text(HELP_TEXT)

    async def _cmd_session(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /session - start the session setup dialog."""
        if not self._check_update(update):
            await update.message.reply_text("Unauthorized.")
            return
        if not self.flow_engine:
            await update.message.reply_text("Session setup not configured.")
            return

        reply = await self.flow_engine.start_session_flow(
            thread_key_for(update),
            owner_ref=str(update.effective_user.id),
            chat_id=update.effective_chat.id,
        )
        await self._send_reply(update, reply)

    async def _cmd_task(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /task <name> - start the task setup dialog."""
        if not self._check_update(update):
            await update.message.reply_text("Unauthorized.")
            return
        if not self.flow_engine:
            await update.message.reply_text("Task setup not configured.")
            return
        if not context.args:
            await update.message.reply_text("Usage: /task <name>")
            return

        reply = await self.flow_engine.start_task_flow(
            thread_key_for(update),
            " ".join(context.args),
            owner_ref=str(update.effective_user.id),
            chat_id=update.effective_chat.id,
        )
        await self._send_reply(update, reply)

    async def _cmd_cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /cancel - drop this topic's setup dialog."""
        if not self._check_update(update):
            await update.message.reply_text("Unauthorized.")
            return
        if self.flow_engine and await self.flow_engine.cancel(thread_key_for(update)):
            await update.message.reply_text("Setup cancelled.")
        else:
            await update.message.reply_text("Nothing to cancel.")

    async def _cmd_sessions(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /sessions - list active sessions."""
        if not self._check_update(update):
            await update.message.reply_text("Unauthorized.")
            return
        if not self._on_list_sessions:
            await update.message.reply_text("Session listing not configured.")
            return

        sessions = self._on_list_sessions()
        if not sessions:
            await update.message.reply_text("No active sessions.")
            return

        lines = ["Active sessions:\n"]
        for session in sessions:
            minutes = session.duration_ms() // 60000
            lines.append(
                f"{session.session_ref}\n"
                f"  {session.target}: {session.project_label or '-'} ({session.state.value}, {minutes}m)"
            )
        await update.message.reply_text("\n".join(lines))

    async def _cmd_kill(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /kill - kill the session bound to this topic."""
        if not self._check_update(update):
            await update.message.reply_text("Unauthorized.")
            return
        if not self._on_kill_session:
            await update.message.reply_text("Session killing not configured.")
            return

        thread_key = thread_key_for(update)
        try:
            if await self._on_kill_session(thread_key):
                await update.message.reply_text("Session killed.")
            else:
                await update.message.reply_text("No running session in this topic.")
        except Exception as e:
            logger.error(f"Error killing session on {thread_key}: {e}")
            await update.message.reply_text(f"Error: {e}")

    # =========================================================================
    # Messages and buttons
    # =========================================================================

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Route text to a waiting setup dialog, else to the topic's session."""
        if not self._check_update(update):
            return

        thread_key = thread_key_for(update)
        text = update.message.text

        if self.flow_engine and self.flow_engine.awaiting_text(thread_key):
            reply = await self.flow_engine.handle_text(thread_key, text, owner_ref=str(update.effective_user.id))
            if reply:
                await self._send_reply(update, reply)
            return

        if not self._on_session_input or not (self._is_session_topic and self._is_session_topic(thread_key)):
            logger.debug(f"Ignoring message on {thread_key}: no session or dialog")
            return

        try:
            delivered = await self._on_session_input(thread_key, text)
        except Exception as e:
            logger.error(f"Error sending input to {thread_key}: {e}")
            await update.message.reply_text(f"Error: {e}")
            return
        if not delivered:
            await update.message.reply_text("❌ Session is not accepting input.")

    async def _handle_flow_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle setup dialog button presses (sf:/tf:)."""
        query = update.callback_query
        await query.answer()

        if not self._is_allowed(query.message.chat_id, query.from_user.id):
            logger.warning(f"Unauthorized callback: chat_id={query.message.chat_id}, user_id={query.from_user.id}")
            return
        if not self.flow_engine:
            await query.edit_message_text("Setup not configured.")
            return

        thread_key = thread_key_for(update)
        try:
            reply = await self.flow_engine.handle_callback(thread_key, query.data, owner_ref=str(query.from_user.id))
            if reply is None:
                return
            markup = build_keyboard(reply.buttons) if reply.buttons else None
            await query.edit_message_text(reply.text, reply_markup=markup)
        except Exception as e:
            logger.error(f"Error handling flow callback {query.data!r} on {thread_key}: {e}", exc_info=True)
            await query.edit_message_text(f"Error: {e}")

    async def _handle_answer_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle ask_user option buttons (aq:<thread_key>:<index>)."""
        query = update.callback_query
        await query.answer()

        if not self._is_allowed(query.message.chat_id, query.from_user.id):
            return

        token = decode_callback(query.data)
        if token is None or token.namespace != ANSWER or not token.value.isdigit():
            logger.error(f"Invalid answer callback data: {query.data}")
            await query.edit_message_text("Invalid button data.")
            return
        if not self._on_answer_question:
            await query.edit_message_text("Session input handler not configured.")
            return

        answer = await self._on_answer_question(token.key, int(token.value))
        original = query.message.text or ""
        if answer is None:
            await query.edit_message_text(f"{original}\n\n✗ This question is no longer pending.")
        else:
            await query.edit_message_text(f"{original}\n\n✓ Answered: {answer}")

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send_notification(
        self,
        chat_id: int,
        message: str,
        reply_to_message_id: Optional[int] = None,
        message_thread_id: Optional[int] = None,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> Optional[int]:
        """
        Send a message.

        Args:
            chat_id: Chat to send to
            message: Message text
            reply_to_message_id: Optional message to reply to
            message_thread_id: Optional forum topic ID
            parse_mode: Optional parse mode ("MarkdownV2", "HTML", or None for plain text)
            reply_markup: Optional inline keyboard

        Returns:
            Message ID of sent message, or None on failure
        """
        if not self.bot:
            logger.error("Bot not initialized")
            return None

        try:
            msg = await self.bot.send_message(
                chat_id=chat_id,
                text=message,
                reply_to_message_id=reply_to_message_id,
                message_thread_id=message_thread_id,
                parse_mode=parse_mode,
                reply_markup=reply_markup,
            )
            return msg.message_id
        except Exception as e:
            if parse_mode:
                logger.warning(f"{parse_mode} parsing failed, retrying as plain text: {e}")
                try:
                    msg = await self.bot.send_message(
                        chat_id=chat_id,
                        text=message,
                        reply_to_message_id=reply_to_message_id,
                        message_thread_id=message_thread_id,
                        reply_markup=reply_markup,
                    )
                    return msg.message_id
                except Exception as e2:
                    logger.error(f"Failed to send plain text message: {e2}")
                    return None
            logger.error(f"Failed to send Telegram message: {e}")
            return None

    async def create_forum_topic(self, chat_id: int, name: str) -> Optional[int]:
        """Create a forum topic and return its ID."""
        if not self.bot:
            return None
        try:
            topic = await self.bot.create_forum_topic(chat_id=chat_id, name=name)
            return topic.message_thread_id
        except Exception as e:
            logger.error(f"Failed to create forum topic in {chat_id}: {e}")
            return None

    # =========================================================================
    # Polling
    # =========================================================================

    async def _start_polling(self):
        await self.application.updater.start_polling(
            poll_interval=0.0,
            timeout=10,
            read_timeout=15,
            write_timeout=5,
            connect_timeout=5,
            pool_timeout=5,
            drop_pending_updates=False,
            error_callback=self._on_polling_error,
        )

    def _track_get_updates(self):
        """Wrap bot.get_updates so every successful poll is timestamped."""
        original = self.application.bot.get_updates

        async def tracked_get_updates(*args, **kwargs):
            result = await original(*args, **kwargs)
            self._last_get_updates_ts = time.monotonic()
            if self.polling_recovery.failing:
                self.polling_recovery.record_success()
            return result

        self.application.bot.get_updates = tracked_get_updates

    def _on_polling_error(self, error: TelegramError):
        """Updater error callback; counts transient getUpdates failures."""
        if self._polling_gave_up:
            return
        if not isinstance(error, (Conflict, NetworkError, TimedOut)):
            logger.error(f"Telegram polling error: {error}")
            return
        try:
            self.polling_recovery.record_failure(error)
        except PollingGaveUpError as e:
            self._give_up_polling(e)

    def _give_up_polling(self, error: PollingGaveUpError):
        logger.critical(f"Telegram polling stopped: {error}")
        self._polling_gave_up = True
        if self.application and self.application.updater:
            asyncio.get_running_loop().create_task(self.application.updater.stop())

    async def _polling_health_monitor(self):
        """Restart the updater (with backoff) when getUpdates stalls."""
        while not self._polling_gave_up:
            await asyncio.sleep(HEALTH_CHECK_INTERVAL_SECONDS)
            elapsed = time.monotonic() - self._last_get_updates_ts
            if elapsed <= POLLING_STALL_SECONDS:
                continue

            try:
                delay = self.polling_recovery.record_failure(TimedOut(f"no getUpdates for {elapsed:.0f}s"))
            except PollingGaveUpError as e:
                self._give_up_polling(e)
                return

            logger.warning(f"Telegram polling stalled for {elapsed:.0f}s, restarting updater in {delay:.1f}s")
            try:
                await self.application.updater.stop()
                await asyncio.sleep(delay)
                self._last_get_updates_ts = time.monotonic()
                await self._start_polling()
            except Exception as e:
                logger.error(f"Failed to restart Telegram polling: {e}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        """Start the bot."""
        self.application = (
            Application.builder()
            .token(self.token)
            .build()
        )
        self.bot = self.application.bot

        self.application.add_handler(CommandHandler("start", self._cmd_help))
        self.application.add_handler(CommandHandler("help", self._cmd_help))
        self.application.add_handler(CommandHandler("session", self._cmd_session))
        self.application.add_handler(CommandHandler("task", self._cmd_task))
        self.application.add_handler(CommandHandler("cancel", self._cmd_cancel))
        self.application.add_handler(CommandHandler("sessions", self._cmd_sessions))
        self.application.add_handler(CommandHandler("kill", self._cmd_kill))

        self.application.add_handler(CallbackQueryHandler(self._handle_flow_callback, pattern=f"^{SESSION_FLOW}:"))
        self.application.add_handler(CallbackQueryHandler(self._handle_flow_callback, pattern=f"^{TASK_FLOW}:"))
        self.application.add_handler(CallbackQueryHandler(self._handle_answer_callback, pattern=f"^{ANSWER}:"))

        self.application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_message))

        await self.application.initialize()
        await self.application.start()
        self._track_get_updates()
        self._last_get_updates_ts = time.monotonic()
        await self._start_polling()
        self._health_monitor_task = asyncio.create_task(self._polling_health_monitor())

        logger.info("Telegram bot started")

    async def stop(self):
        """Stop the bot."""
        if self._health_monitor_task:
            self._health_monitor_task.cancel()
            try:
                await self._health_monitor_task
            except asyncio.CancelledError:
                pass
            self._health_monitor_task = None

        if self.application:
            if self.application.updater.running:
                await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()
            logger.info("Telegram bot stopped")

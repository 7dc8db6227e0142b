"""Buffered delivery of session output to chat topics."""

import asyncio
import logging
from typing import Optional

from .telegram_bot import TELEGRAM_MESSAGE_LIMIT, build_keyboard, make_thread_key, split_thread_key

logger = logging.getLogger(__name__)


def split_message(text: str, limit: int = TELEGRAM_MESSAGE_LIMIT) -> list[str]:
    """Split text into pieces no longer than ``limit``, preferring newline boundaries."""
    parts = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        parts.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        parts.append(text)
    return parts


class TopicRelay:
    """
    Sends text to chat topics and batches streaming output per session.

    Chunks for a session are buffered and sent as one message every
    ``flush_interval`` seconds, or immediately once the buffer passes
    ``max_message_length`` characters.
    """

    def __init__(self, bot, flush_interval: float = 1.5, max_message_length: int = 3500):
        self.bot = bot
        self.flush_interval = flush_interval
        self.max_message_length = max_message_length
        self._buffers: dict[str, list[str]] = {}       # session_ref -> pending pieces
        self._buffer_threads: dict[str, str] = {}      # session_ref -> thread_key
        self._flush_tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(cls, bot, config: Optional[dict] = None) -> "TopicRelay":
        relay_config = (config or {}).get("relay", {})
        return cls(
            bot,
            flush_interval=relay_config.get("flush_interval_seconds", 1.5),
            max_message_length=relay_config.get("max_message_length", 3500),
        )

    async def create_topic(self, chat_id: int, name: str) -> Optional[str]:
        """Create a forum topic and return its thread key."""
        if not self.bot:
            return None
        topic_id = await self.bot.create_forum_topic(chat_id, name[:128])
        if topic_id is None:
            return None
        return make_thread_key(chat_id, topic_id)

    async def send_to_topic(self, thread_key: str, text: str, buttons: Optional[list] = None) -> Optional[int]:
        """Send text (split if needed). Buttons go on the last piece. Returns the last message id."""
        if not self.bot:
            logger.debug(f"No chat bot configured, dropping {len(text)} chars for {thread_key}")
            return None
        chat_id, topic_id = split_thread_key(thread_key)
        parts = split_message(text) or [""]
        message_id = None
        for i, part in enumerate(parts):
            markup = build_keyboard(buttons) if buttons and i == len(parts) - 1 else None
            message_id = await self.bot.send_notification(
                chat_id=chat_id,
                message=part,
                message_thread_id=topic_id,
                reply_markup=markup,
            )
            if message_id is None:
                logger.warning(f"Relay send to {thread_key} failed ({len(part)} chars)")
        return message_id

    async def receive_chunk(self, session_ref: str, thread_key: str, text: str):
        """Buffer a chunk of session output for delivery."""
        if not text:
            return
        buffer = self._buffers.setdefault(session_ref, [])
        buffer.append(text)
        self._buffer_threads[session_ref] = thread_key

        if sum(len(piece) for piece in buffer) >= self.max_message_length:
            await self.flush(session_ref)
        elif session_ref not in self._flush_tasks:
            self._flush_tasks[session_ref] = asyncio.create_task(self._flush_later(session_ref))

    async def _flush_later(self, session_ref: str):
        await asyncio.sleep(self.flush_interval)
        self._flush_tasks.pop(session_ref, None)
        try:
            await self.flush(session_ref)
        except Exception as e:
            logger.warning(f"Timed flush for {session_ref} failed (non-fatal): {e}")

    async def flush(self, session_ref: str):
        """Send whatever is buffered for the session now."""
        task = self._flush_tasks.pop(session_ref, None)
        if task and task is not asyncio.current_task():
            task.cancel()

        buffer = self._buffers.get(session_ref)
        thread_key = self._buffer_threads.get(session_ref)
        if not buffer or not thread_key:
            return
        text = "\n".join(buffer)
        buffer.clear()
        await self.send_to_topic(thread_key, text)

    async def final_flush(self, session_ref: str):
        """Flush and forget a session's buffer (session ended)."""
        await self.flush(session_ref)
        self._buffers.pop(session_ref, None)
        self._buffer_threads.pop(session_ref, None)

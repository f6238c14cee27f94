from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from loguru import logger

from pibot.agent.session_cache import SessionCache
from pibot.execution import bind_execution
from pibot.prompts import BUSY_TEXT, GENERATION_ERROR_TEXT, chat_prompt, trim_reply
from pibot.runtime_state import TaskArbiter, TaskKind
from pibot.telegram import InboundMessage, TelegramApiError, TelegramClient

if TYPE_CHECKING:
    from loguru import Logger

POLL_ERROR_BACKOFF_SECONDS = 2.0


class ChatBot:
    """Long-polls Telegram and answers each message through the agent."""

    def __init__(
        self,
        client: TelegramClient,
        arbiter: TaskArbiter,
        cache: SessionCache,
        *,
        agent_dir: Path,
        polling_timeout_seconds: int = 30,
        call_timeout_seconds: float | None = None,
        owner_chat_id: int | None = None,
        error_backoff_seconds: float = POLL_ERROR_BACKOFF_SECONDS,
    ) -> None:
        self.client = client
        self.arbiter = arbiter
        self.cache = cache
        self.agent_dir = agent_dir
        self.polling_timeout_seconds = max(0, int(polling_timeout_seconds))
        self.call_timeout_seconds = call_timeout_seconds
        self.owner_chat_id = owner_chat_id
        self.error_backoff_seconds = error_backoff_seconds
        self.offset = 0

    async def _generate(self, message: InboundMessage, log: Logger) -> str:
        prompt = chat_prompt(self.agent_dir, message.text, message.replied_to_text)
        try:
            text = await self.cache.invoke(
                prompt,
                self.call_timeout_seconds,
                log,
                label="chat reply",
            )
        except Exception as exc:
            self.arbiter.record_generation_error(exc)
            log.error("pi request failed: {}", exc)
            return GENERATION_ERROR_TEXT
        self.arbiter.clear_chat_error()
        return text

    async def _send(self, chat_id: int, text: str, log: Logger) -> None:
        try:
            await self.client.send_message(chat_id, trim_reply(text))
        except (TelegramApiError, httpx.HTTPError) as exc:
            self.arbiter.record_send_error(exc)
            log.error("failed sending reply to chat_id={}: {}", chat_id, exc)
            raise

    async def handle_message(self, message: InboundMessage) -> str | None:
        log = bind_execution(op="chat")
        log.info("incoming message chat_id={} update_id={}", message.chat_id, message.update_id)
        if self.owner_chat_id is not None and message.chat_id != self.owner_chat_id:
            log.warning("ignoring message from chat_id={} (not the owner)", message.chat_id)
            return None

        self.arbiter.record_message()
        if not self.arbiter.try_begin(TaskKind.CHAT_REPLY):
            self.arbiter.record_busy_reject()
            log.info("agent busy with {}; rejecting message", self.arbiter.snapshot().active_task)
            reply = BUSY_TEXT
        else:
            try:
                reply = await self._generate(message, log)
            finally:
                self.arbiter.finish(TaskKind.CHAT_REPLY)

        await self._send(message.chat_id, reply, log)
        return reply

    async def poll_once(self) -> int:
        batch = await self.client.get_updates(self.offset, self.polling_timeout_seconds)
        self.arbiter.record_poll_success()
        for message in batch.messages:
            self.offset = max(self.offset, message.update_id + 1)
            await self.handle_message(message)
        self.offset = max(self.offset, batch.next_offset)
        return len(batch.messages)

    async def send_to_owner(self, text: str) -> None:
        if self.owner_chat_id is None:
            return
        await self.client.send_message(self.owner_chat_id, trim_reply(text))

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("waiting for Telegram messages...")
        while not stop.is_set():
            try:
                await self.poll_once()
            except Exception as exc:
                logger.error("poll loop error: {}", exc)
                self.arbiter.record_poll_error(exc)
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.error_backoff_seconds)
                except TimeoutError:
                    pass

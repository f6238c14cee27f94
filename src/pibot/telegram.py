from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

API_BASE_URL = "https://api.telegram.org"
POLL_REQUEST_TIMEOUT_MIN_SECONDS = 20
POLL_REQUEST_TIMEOUT_BUFFER_SECONDS = 10
MESSAGE_REQUEST_TIMEOUT_SECONDS = 15


class TelegramApiError(RuntimeError):
    """Raised when the Telegram Bot API rejects a request."""

    def __init__(self, method: str, description: str, *, status_code: int | None = None) -> None:
        super().__init__(f"Telegram {method} failed: {description}")
        self.method = method
        self.description = description
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class InboundMessage:
    update_id: int
    chat_id: int
    text: str
    replied_to_text: str | None = None


@dataclass(frozen=True, slots=True)
class UpdateBatch:
    next_offset: int
    messages: list[InboundMessage]


def clamp_timeout_seconds(timeout_seconds: int) -> int:
    return 1 if timeout_seconds <= 0 else timeout_seconds


def poll_request_timeout_seconds(poll_timeout_seconds: int) -> int:
    with_buffer = clamp_timeout_seconds(poll_timeout_seconds) + POLL_REQUEST_TIMEOUT_BUFFER_SECONDS
    return max(POLL_REQUEST_TIMEOUT_MIN_SECONDS, with_buffer)


def _message_text(message: dict[str, Any]) -> str | None:
    for key in ("text", "caption"):
        value = message.get(key)
        if isinstance(value, str):
            return value
    return None


def parse_updates(result: Any, offset: int) -> UpdateBatch:
    next_offset = offset
    messages: list[InboundMessage] = []
    if not isinstance(result, list):
        return UpdateBatch(next_offset=next_offset, messages=messages)

    for update in result:
        if not isinstance(update, dict):
            continue
        update_id = update.get("update_id")
        if not isinstance(update_id, int):
            continue
        if update_id >= next_offset:
            next_offset = update_id + 1

        message = update.get("message")
        if not isinstance(message, dict):
            continue
        chat = message.get("chat")
        if not isinstance(chat, dict) or not isinstance(chat.get("id"), int):
            continue
        text = _message_text(message)
        if not text:
            continue

        replied_to_text = None
        reply = message.get("reply_to_message")
        if isinstance(reply, dict):
            replied_to_text = _message_text(reply)

        messages.append(
            InboundMessage(
                update_id=update_id,
                chat_id=chat["id"],
                text=text,
                replied_to_text=replied_to_text,
            )
        )
    return UpdateBatch(next_offset=next_offset, messages=messages)


class TelegramClient:
    def __init__(
        self,
        token: str,
        *,
        base_url: str = API_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = token
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, method: str, payload: dict[str, Any], timeout_seconds: float) -> Any:
        response = await self._client.post(
            f"/bot{self._token}/{method}",
            json=payload,
            timeout=timeout_seconds,
        )
        try:
            body = response.json()
        except ValueError as exc:
            raise TelegramApiError(
                method,
                f"invalid JSON response (status {response.status_code})",
                status_code=response.status_code,
            ) from exc

        if (
            response.status_code != httpx.codes.OK
            or not isinstance(body, dict)
            or not body.get("ok")
        ):
            description = body.get("description") if isinstance(body, dict) else None
            raise TelegramApiError(
                method,
                str(description or f"status {response.status_code}"),
                status_code=response.status_code,
            )
        return body.get("result")

    async def get_updates(self, offset: int, timeout_seconds: int) -> UpdateBatch:
        result = await self._post(
            "getUpdates",
            {
                "offset": offset,
                "timeout": max(0, timeout_seconds),
                "allowed_updates": ["message"],
            },
            poll_request_timeout_seconds(timeout_seconds),
        )
        return parse_updates(result, offset)

    async def send_message(self, chat_id: int, text: str) -> None:
        await self._post(
            "sendMessage",
            {"chat_id": chat_id, "text": text},
            MESSAGE_REQUEST_TIMEOUT_SECONDS,
        )

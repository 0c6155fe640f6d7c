from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .config import TelegramConfig
from .errors import TransportSendFailed
from .formatting import to_markdown_v2, to_plain_text
from .utils import log_event, truncate


@dataclass(frozen=True)
class InlineButton:
    text: str
    callback_data: str


class ChatTransport(Protocol):
    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_to: int | None = None,
        button: InlineButton | None = None,
    ) -> int | None: ...

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> bool: ...

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None: ...


class TelegramClient:
    def __init__(
        self,
        config: TelegramConfig,
        http_client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._logger = logger or logging.getLogger("vidlens.telegram")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_to: int | None = None,
        button: InlineButton | None = None,
    ) -> int | None:
        payload: dict[str, Any] = {"chat_id": chat_id}
        if reply_to is not None:
            payload["reply_to_message_id"] = reply_to
        if button is not None:
            payload["reply_markup"] = {
                "inline_keyboard": [[{"text": button.text, "callback_data": button.callback_data}]]
            }
        try:
            data = await self._call_with_text("sendMessage", payload, text)
            message_id = (data.get("result") or {}).get("message_id")
            if not data.get("ok") or not message_id:
                raise TransportSendFailed(str(data.get("description") or "missing_message_id"))
        except TransportSendFailed as exc:
            log_event(self._logger, logging.ERROR, "telegram_send_failed", chat_id=chat_id, error=str(exc))
            return None
        return int(message_id)

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> bool:
        payload: dict[str, Any] = {"chat_id": chat_id, "message_id": message_id}
        try:
            data = await self._call_with_text("editMessageText", payload, text)
        except TransportSendFailed as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "telegram_edit_failed",
                chat_id=chat_id,
                message_id=message_id,
                error=str(exc),
            )
            return False
        if data.get("ok") or "message is not modified" in str(data.get("description", "")):
            log_event(self._logger, logging.DEBUG, "telegram_edited", chat_id=chat_id, message_id=message_id)
            return True
        log_event(
            self._logger,
            logging.WARNING,
            "telegram_edit_failed",
            chat_id=chat_id,
            message_id=message_id,
            error=data.get("description"),
        )
        return False

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_id, "show_alert": False}
        if text:
            payload["text"] = text
        try:
            data = await self._call("answerCallbackQuery", payload)
        except TransportSendFailed as exc:
            log_event(self._logger, logging.WARNING, "telegram_answer_failed", error=str(exc))
            return
        if not data.get("ok"):
            log_event(
                self._logger,
                logging.WARNING,
                "telegram_answer_failed",
                error=data.get("description"),
            )

    async def set_webhook(self, url: str, secret_token: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"url": url, "allowed_updates": ["message", "callback_query"]}
        if secret_token:
            payload["secret_token"] = secret_token
        return await self._call("setWebhook", payload)

    async def _call_with_text(self, method: str, payload: dict[str, Any], text: str) -> dict[str, Any]:
        rendered = to_markdown_v2(text)
        if len(rendered) <= self._config.max_message_chars:
            data = await self._call(method, {**payload, "text": rendered, "parse_mode": "MarkdownV2"})
            if data.get("ok") or "can't parse entities" not in str(data.get("description", "")):
                return data
            log_event(self._logger, logging.WARNING, "telegram_markdown_rejected", method=method)
        plain = truncate(to_plain_text(text), self._config.max_message_chars - 2, suffix="\n…")
        return await self._call(method, {**payload, "text": plain})

    async def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._config.api_base}/bot{self._config.bot_token}/{method}"
        try:
            response = await self._http.post(url, json=payload)
        except httpx.RequestError as exc:
            # The request URL embeds the bot token, keep it out of the message.
            raise TransportSendFailed(f"{method} network_error: {type(exc).__name__}") from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise TransportSendFailed(f"{method} invalid_json status={response.status_code}") from exc
        if not isinstance(data, dict):
            raise TransportSendFailed(f"{method} unexpected_response status={response.status_code}")
        return data

"""Telegram Bot API: update parsing, webhook registration and reply relay."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ValidationError

from .errors import ConfigurationError, MalformedPayloadError, RelayError

logger = logging.getLogger(__name__)


# -----------------------------
# Inbound update
# -----------------------------
class Chat(BaseModel):
    id: int


class IncomingMessage(BaseModel):
    chat: Chat
    text: Optional[str] = None


class Update(BaseModel):
    """The subset of a Telegram ``Update`` this bot reads."""

    message: Optional[IncomingMessage] = None


def parse_update(payload: Any) -> tuple[int, str]:
    """Return ``(chat_id, text)`` or raise :class:`MalformedPayloadError`."""
    try:
        update = Update.model_validate(payload)
    except ValidationError as e:
        raise MalformedPayloadError(f"Invalid update: {e.error_count()} error(s)") from e
    if update.message is None:
        raise MalformedPayloadError("Update carries no message")
    text = update.message.text or ""
    # Whitespace-only text counts as empty: user turns must carry content
    # (see Message.content_required), so such updates are rejected here.
    if not text.strip():
        raise MalformedPayloadError("Message has no text")
    return update.message.chat.id, text


# -----------------------------
# Bot API client
# -----------------------------
class TelegramClient:
    """Minimal async client for ``setWebhook`` and ``sendMessage``."""

    def __init__(
        self,
        bot_token: str,
        *,
        api_base: str = "https://api.telegram.org",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.bot_token)

    def _method_url(self, method: str) -> str:
        if not self.bot_token:
            raise ConfigurationError("TELEGRAM_BOT_TOKEN not set")
        return f"{self.api_base}/bot{self.bot_token}/{method}"

    async def _call(self, http_method: str, method: str, **kwargs: Any) -> Dict[str, Any]:
        url = self._method_url(method)
        if self._client is not None:
            response = await self._client.request(http_method, url, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(http_method, url, **kwargs)
        # Telegram reports failures in the JSON body ({"ok": false, ...}) with 4xx codes.
        return response.json()

    async def set_webhook(self, url: str) -> Dict[str, Any]:
        """Point the bot's webhook at ``url``; returns Telegram's JSON result."""
        logger.info("Registering webhook at %s", url)
        return await self._call("GET", "setWebhook", params={"url": url})

    async def send_message(self, chat_id: int, text: str) -> Dict[str, Any]:
        try:
            result = await self._call("POST", "sendMessage", json={"chat_id": chat_id, "text": text})
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            raise RelayError(f"sendMessage to chat {chat_id} failed: {e}") from e
        if not isinstance(result, dict) or not result.get("ok"):
            raise RelayError(f"sendMessage to chat {chat_id} rejected: {result!r}")
        return result

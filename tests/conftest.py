"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from relay_bot.config import BotConfig, ConversationConfig, TelegramConfig  # noqa: E402
from relay_bot.conversation import Message  # noqa: E402
from relay_bot.errors import InferenceError  # noqa: E402
from relay_bot.llm import InferenceReply  # noqa: E402
from relay_bot.store import DiskSessionStore  # noqa: E402
from relay_bot.telegram import TelegramClient  # noqa: E402

BOT_TOKEN = "123456:TEST-TOKEN"
SYSTEM_PROMPT = "You are a test assistant."


class FakeGateway:
    """Gateway double that records every call and replies with ``reply``."""

    def __init__(self, reply: Optional[str] = "hello!", fail: bool = False):
        self.reply = reply
        self.fail = fail
        self.calls: List[List[Dict[str, str]]] = []

    async def invoke(self, model_id: str, messages: Sequence[Message]) -> InferenceReply:
        self.calls.append([m.to_record() for m in messages])
        if self.fail:
            raise InferenceError("model unavailable")
        return InferenceReply(response_text=self.reply)


class TelegramRecorder:
    """httpx mock transport standing in for api.telegram.org."""

    def __init__(self, ok: bool = True, send_status: int = 200):
        self.ok = ok
        self.send_status = send_status
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method = request.url.path.rsplit("/", 1)[-1]
        if method == "sendMessage" and self.send_status != 200:
            return httpx.Response(self.send_status, json={"ok": False, "description": "Bad Request"})
        if method == "setWebhook" and not self.ok:
            return httpx.Response(400, json={"ok": False, "description": "bad webhook"})
        return httpx.Response(200, json={"ok": True, "result": True})

    def calls_to(self, method: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/" + method)]

    def sent_payloads(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.calls_to("sendMessage")]


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for conversation files during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in [
        "RELAY_BOT_CONFIG",
        "TELEGRAM_BOT_TOKEN",
        "CLOUDFLARE_ACCOUNT_ID",
        "CLOUDFLARE_API_TOKEN",
        "FORWARDED_ALLOW_IPS",
    ]:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def bot_config() -> BotConfig:
    return BotConfig(
        telegram=TelegramConfig(bot_token=BOT_TOKEN),
        conversation=ConversationConfig(max_messages=10, system_prompt=SYSTEM_PROMPT),
    )


@pytest.fixture
def store(tmp_data_dir: Path) -> DiskSessionStore:
    return DiskSessionStore(str(tmp_data_dir))


@pytest.fixture
def telegram_api() -> TelegramRecorder:
    return TelegramRecorder()


@pytest.fixture
def make_telegram(telegram_api: TelegramRecorder) -> Callable[..., TelegramClient]:
    def _make(token: str = BOT_TOKEN) -> TelegramClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(telegram_api))
        return TelegramClient(token, client=client)

    return _make

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence

import httpx
import pytest

from relay_bot.conversation import Message
from relay_bot.errors import (
    ConfigurationError,
    InferenceError,
    MalformedPayloadError,
    PersistenceError,
    RelayError,
)
from relay_bot.handlers import BotServices, MessageFlow, MessageState, handle_message, register_webhook
from relay_bot.llm import InferenceReply
from relay_bot.telegram import TelegramClient

from conftest import BOT_TOKEN, SYSTEM_PROMPT, FakeGateway


def _update(chat_id: int, text: Optional[str]) -> bytes:
    message: Dict[str, Any] = {"chat": {"id": chat_id}}
    if text is not None:
        message["text"] = text
    return json.dumps({"message": message}).encode("utf-8")


def _history(n: int) -> List[Dict[str, str]]:
    records = [{"role": "system", "content": SYSTEM_PROMPT}]
    for i in range(1, n):
        role = "user" if i % 2 else "assistant"
        records.append({"role": role, "content": f"{role}-{i}"})
    return records


@pytest.fixture
def services(bot_config, store, make_telegram) -> BotServices:
    return BotServices(config=bot_config, store=store, gateway=FakeGateway(), telegram=make_telegram())


def test_new_chat_is_seeded_then_extended(services, telegram_api):
    flow = asyncio.run(handle_message(_update(42, "سلام"), services))

    assert flow.state is MessageState.DONE
    # What the model saw: the log before the assistant turn
    assert services.gateway.calls == [
        [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": "سلام"}]
    ]
    stored = asyncio.run(services.store.get("chat:42"))
    assert stored == [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "سلام"},
        {"role": "assistant", "content": "hello!"},
    ]
    assert telegram_api.sent_payloads() == [{"chat_id": 42, "text": "hello!"}]


def test_flow_walks_every_state_in_order(services):
    flow = asyncio.run(handle_message(_update(1, "hi"), services))
    assert flow.history == [
        MessageState.RECEIVED,
        MessageState.PARSED,
        MessageState.LOG_LOADED,
        MessageState.USER_APPENDED,
        MessageState.INFERENCE_INVOKED,
        MessageState.ASSISTANT_APPENDED,
        MessageState.LOG_TRIMMED,
        MessageState.LOG_PERSISTED,
        MessageState.RELAYED,
    ]


def test_existing_chat_is_not_reseeded(services):
    asyncio.run(services.store.put("chat:5", _history(3)))
    asyncio.run(handle_message(_update(5, "again"), services))

    stored = asyncio.run(services.store.get("chat:5"))
    assert len(stored) == 5
    assert sum(1 for r in stored if r["role"] == "system") == 1
    assert stored[-2:] == [
        {"role": "user", "content": "again"},
        {"role": "assistant", "content": "hello!"},
    ]


def test_full_log_is_trimmed_to_cap(services):
    original = _history(10)
    asyncio.run(services.store.put("chat:9", original))
    asyncio.run(handle_message(_update(9, "one more"), services))

    stored = asyncio.run(services.store.get("chat:9"))
    assert len(stored) == 10
    assert original[0] not in stored and original[1] not in stored
    assert stored[:8] == original[2:]


def test_inference_failure_leaves_log_unchanged(services, telegram_api):
    original = _history(3)
    asyncio.run(services.store.put("chat:3", original))
    services.gateway.fail = True

    flow = MessageFlow(body=_update(3, "hello?"), services=services)
    with pytest.raises(InferenceError):
        asyncio.run(flow.run())

    assert flow.state is MessageState.FAILED
    assert flow.history[-1] is MessageState.USER_APPENDED
    assert asyncio.run(services.store.get("chat:3")) == original
    assert telegram_api.calls_to("sendMessage") == []


class ExplodingGateway:
    async def invoke(self, model_id: str, messages: Sequence[Message]) -> InferenceReply:
        raise TimeoutError("took too long")


def test_unexpected_gateway_errors_become_inference_errors(bot_config, store, make_telegram):
    services = BotServices(config=bot_config, store=store, gateway=ExplodingGateway(), telegram=make_telegram())
    with pytest.raises(InferenceError):
        asyncio.run(handle_message(_update(3, "hello?"), services))
    assert asyncio.run(store.get("chat:3")) is None


@pytest.mark.parametrize("reply", [None, "", "   "])
def test_missing_reply_uses_fallback(services, telegram_api, reply):
    services.gateway.reply = reply
    asyncio.run(handle_message(_update(7, "hi"), services))

    stored = asyncio.run(services.store.get("chat:7"))
    assert stored[-1] == {"role": "assistant", "content": "No response from AI"}
    assert telegram_api.sent_payloads()[0]["text"] == "No response from AI"


@pytest.mark.parametrize(
    "body",
    [
        _update(11, ""),
        _update(11, None),
        json.dumps({"message": {"text": "no chat"}}).encode(),
        json.dumps({"update_id": 1}).encode(),
        b"not json",
        b"",
    ],
)
def test_malformed_updates_touch_nothing(services, body):
    asyncio.run(services.store.put("chat:11", _history(3)))
    with pytest.raises(MalformedPayloadError):
        asyncio.run(handle_message(body, services))
    assert services.gateway.calls == []
    assert asyncio.run(services.store.get("chat:11")) == _history(3)


def test_missing_bot_token_fails_before_store_access(bot_config, store, make_telegram):
    services = BotServices(
        config=bot_config, store=store, gateway=FakeGateway(), telegram=make_telegram(token="")
    )
    with pytest.raises(ConfigurationError):
        asyncio.run(handle_message(_update(1, "hi"), services))
    assert asyncio.run(store.get("chat:1")) is None


def test_relay_failure_is_swallowed_after_persisting(services, telegram_api):
    telegram_api.send_status = 400
    flow = asyncio.run(handle_message(_update(8, "hi"), services))

    assert flow.state is MessageState.DONE
    assert flow.relay_error is not None
    assert len(asyncio.run(services.store.get("chat:8"))) == 3


def test_unexpected_relay_errors_are_swallowed(bot_config, store, telegram_api):
    client = httpx.AsyncClient(transport=httpx.MockTransport(telegram_api))
    asyncio.run(client.aclose())
    telegram = TelegramClient(BOT_TOKEN, client=client)
    services = BotServices(config=bot_config, store=store, gateway=FakeGateway(), telegram=telegram)

    flow = asyncio.run(handle_message(_update(8, "hi"), services))

    assert flow.state is MessageState.DONE
    assert isinstance(flow.relay_error, RelayError)
    assert isinstance(flow.relay_error.__cause__, RuntimeError)
    assert len(asyncio.run(store.get("chat:8"))) == 3


class BrokenStore:
    def __init__(self):
        self.reads = 0

    async def get(self, key: str):
        self.reads += 1
        return None

    async def put(self, key: str, records: List[Dict[str, str]]) -> None:
        raise OSError("disk full")


def test_persistence_failure_fails_request_without_reply(bot_config, make_telegram, telegram_api):
    services = BotServices(
        config=bot_config, store=BrokenStore(), gateway=FakeGateway(), telegram=make_telegram()
    )
    with pytest.raises(PersistenceError):
        asyncio.run(handle_message(_update(2, "hi"), services))
    assert len(services.gateway.calls) == 1
    assert telegram_api.calls_to("sendMessage") == []


def test_register_webhook_requires_token(bot_config, store, make_telegram, telegram_api):
    services = BotServices(
        config=bot_config, store=store, gateway=FakeGateway(), telegram=make_telegram(token="")
    )
    with pytest.raises(ConfigurationError):
        asyncio.run(register_webhook("https://bot.example", services))
    assert telegram_api.requests == []


def test_register_webhook_passes_origin(services, telegram_api):
    result = asyncio.run(register_webhook("https://bot.example", services))
    assert result["ok"] is True
    (request,) = telegram_api.calls_to("setWebhook")
    assert request.url.params["url"] == "https://bot.example"


class BarrierGateway:
    """Holds every caller until ``parties`` invocations are in flight."""

    def __init__(self, parties: int):
        self.parties = parties
        self.waiting = 0
        self.event = asyncio.Event()

    async def invoke(self, model_id: str, messages: Sequence[Message]) -> InferenceReply:
        self.waiting += 1
        if self.waiting >= self.parties:
            self.event.set()
        await self.event.wait()
        return InferenceReply(response_text=f"re: {messages[-1].content}")


def test_concurrent_turns_for_same_chat_lose_an_update(bot_config, store, make_telegram):
    """Unconditional overwrite: two interleaved requests keep only one turn."""

    async def main():
        services = BotServices(
            config=bot_config, store=store, gateway=BarrierGateway(2), telegram=make_telegram()
        )
        await asyncio.gather(
            handle_message(_update(77, "first"), services),
            handle_message(_update(77, "second"), services),
        )
        return await store.get("chat:77")

    stored = asyncio.run(main())
    users = [r["content"] for r in stored if r["role"] == "user"]
    assert len(stored) == 3
    assert len(users) == 1 and users[0] in {"first", "second"}

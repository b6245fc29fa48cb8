"""Request handlers: webhook registration and the per-message state machine.

A handled message walks a fixed chain of states::

    RECEIVED -> PARSED -> LOG_LOADED -> USER_APPENDED -> INFERENCE_INVOKED
      -> ASSISTANT_APPENDED -> LOG_TRIMMED -> LOG_PERSISTED -> RELAYED -> DONE

Any step may fail, which moves the flow to FAILED and re-raises. The
stored log is written only by the persist step, so a failed inference
leaves it untouched. Relay failures are logged and swallowed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .config import BotConfig
from .conversation import ConversationLog, conversation_key
from .errors import (
    ConfigurationError,
    InferenceError,
    MalformedPayloadError,
    PersistenceError,
    RelayError,
)
from .llm import InferenceGateway, InferenceReply
from .store import SessionStore
from .telegram import TelegramClient, parse_update

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BotServices:
    """Everything a handler needs, wired once by the application factory."""

    config: BotConfig
    store: SessionStore
    gateway: InferenceGateway
    telegram: TelegramClient


# -----------------------------
# RegisterWebhook
# -----------------------------
async def register_webhook(origin: str, services: BotServices) -> Dict[str, Any]:
    """Point Telegram at ``origin``. Returns the platform's JSON result.

    Raises :class:`ConfigurationError` without any network call when the
    bot token is missing.
    """
    if not services.telegram.configured:
        raise ConfigurationError("TELEGRAM_BOT_TOKEN not set")
    result = await services.telegram.set_webhook(origin)
    if isinstance(result, dict) and result.get("ok"):
        logger.info("Webhook registered for %s", origin)
    else:
        logger.warning("Webhook registration for %s rejected: %s", origin, result)
    return result


# -----------------------------
# HandleMessage
# -----------------------------
class MessageState(str, Enum):
    RECEIVED = "received"
    PARSED = "parsed"
    LOG_LOADED = "log_loaded"
    USER_APPENDED = "user_appended"
    INFERENCE_INVOKED = "inference_invoked"
    ASSISTANT_APPENDED = "assistant_appended"
    LOG_TRIMMED = "log_trimmed"
    LOG_PERSISTED = "log_persisted"
    RELAYED = "relayed"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = frozenset({MessageState.DONE, MessageState.FAILED})

# state -> (step method, state reached when the step succeeds)
_TRANSITIONS: Dict[MessageState, Tuple[str, MessageState]] = {
    MessageState.RECEIVED: ("_parse", MessageState.PARSED),
    MessageState.PARSED: ("_load_log", MessageState.LOG_LOADED),
    MessageState.LOG_LOADED: ("_append_user", MessageState.USER_APPENDED),
    MessageState.USER_APPENDED: ("_invoke", MessageState.INFERENCE_INVOKED),
    MessageState.INFERENCE_INVOKED: ("_append_assistant", MessageState.ASSISTANT_APPENDED),
    MessageState.ASSISTANT_APPENDED: ("_trim", MessageState.LOG_TRIMMED),
    MessageState.LOG_TRIMMED: ("_persist", MessageState.LOG_PERSISTED),
    MessageState.LOG_PERSISTED: ("_relay", MessageState.RELAYED),
    MessageState.RELAYED: ("_finish", MessageState.DONE),
}


@dataclass
class MessageFlow:
    """One inbound message, carried through the states above."""

    body: bytes
    services: BotServices
    state: MessageState = MessageState.RECEIVED
    history: List[MessageState] = field(default_factory=list)

    chat_id: Optional[int] = None
    text: str = ""
    key: str = ""
    log: Optional[ConversationLog] = None
    reply: Optional[InferenceReply] = None
    reply_text: str = ""
    error: Optional[BaseException] = None
    relay_error: Optional[RelayError] = None

    async def run(self) -> "MessageFlow":
        while self.state not in TERMINAL_STATES:
            step_name, next_state = _TRANSITIONS[self.state]
            try:
                await getattr(self, step_name)()
            except Exception as e:
                self.error = e
                self._move(MessageState.FAILED)
                raise
            self._move(next_state)
        return self

    def _move(self, state: MessageState) -> None:
        self.history.append(self.state)
        self.state = state

    # --------- steps ----------
    async def _parse(self) -> None:
        try:
            payload = json.loads(self.body or b"null")
        except ValueError as e:
            raise MalformedPayloadError("Body is not valid JSON") from e
        self.chat_id, self.text = parse_update(payload)
        if not self.services.telegram.configured:
            raise ConfigurationError("TELEGRAM_BOT_TOKEN not set")
        self.key = conversation_key(self.chat_id, self.services.config.store.key_prefix)
        logger.info("Message for %s (%d chars)", self.key, len(self.text))

    async def _load_log(self) -> None:
        records = await self.services.store.get(self.key)
        try:
            self.log = ConversationLog.from_records(
                records,
                max_messages=self.services.config.conversation.max_messages,
            )
        except ValueError as e:
            raise PersistenceError(f"Stored log for {self.key!r} is unreadable: {e}") from e

    async def _append_user(self) -> None:
        # Seeding only happens on an empty log; a log whose system message was
        # trimmed away is not re-seeded.
        self.log.seed(self.services.config.conversation.system_prompt)
        self.log.add_user(self.text)

    async def _invoke(self) -> None:
        model = self.services.config.inference.model
        try:
            self.reply = await self.services.gateway.invoke(model, self.log.messages)
        except InferenceError:
            logger.error("Inference failed for %s", self.key)
            raise
        except Exception as e:
            logger.error("Inference failed for %s", self.key)
            raise InferenceError(f"Inference failed: {e}") from e

    async def _append_assistant(self) -> None:
        text = self.reply.response_text if self.reply is not None else None
        if not text or not text.strip():
            text = self.services.config.inference.fallback_reply
        self.reply_text = text
        self.log.add_assistant(text)

    async def _trim(self) -> None:
        dropped = self.log.trim()
        if dropped:
            logger.debug("Trimmed %d message(s) from %s", dropped, self.key)

    async def _persist(self) -> None:
        try:
            await self.services.store.put(self.key, self.log.to_records())
        except PersistenceError:
            logger.error("Failed to persist %s", self.key)
            raise
        except Exception as e:
            logger.error("Failed to persist %s", self.key)
            raise PersistenceError(f"Failed to persist {self.key!r}: {e}") from e

    async def _relay(self) -> None:
        try:
            await self.services.telegram.send_message(self.chat_id, self.reply_text)
        except RelayError as e:
            self.relay_error = e
            logger.warning("Reply delivery to chat %s failed: %s", self.chat_id, e)
        except Exception as e:
            self.relay_error = RelayError(f"Reply delivery to chat {self.chat_id} failed: {e}")
            self.relay_error.__cause__ = e
            logger.warning("Reply delivery to chat %s failed: %s", self.chat_id, e)

    async def _finish(self) -> None:
        logger.debug("Handled %s via %s", self.key, [s.value for s in self.history])


async def handle_message(body: bytes, services: BotServices) -> MessageFlow:
    """Run one inbound update through the message state machine."""
    return await MessageFlow(body=body, services=services).run()

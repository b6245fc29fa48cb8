"""Per-chat conversation log: seeding, ordered appends and trimming."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ValidationError, model_validator

DEFAULT_MAX_MESSAGES = 10


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """A single conversational turn, stored as ``{"role", "content"}``."""

    role: Role
    content: str

    @model_validator(mode="after")
    def content_required(self) -> "Message":
        if self.role is not Role.SYSTEM and not self.content.strip():
            raise ValueError(f"{self.role.value} message content must be non-empty")
        return self

    def to_record(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


def conversation_key(chat_id: int | str, prefix: str = "chat:") -> str:
    """Return the store key for a chat, e.g. ``chat:42``."""
    return f"{prefix}{chat_id}"


class ConversationLog:
    """Bounded, ordered message sequence for one conversation.

    Invariants:
      - at most one system message, and only ever at index 0;
      - after :meth:`trim`, ``len(log) <= max_messages``; the survivors are
        a suffix of the previous order. Trimming may drop the system
        message, and it is never re-seeded afterwards.
    """

    def __init__(
        self,
        messages: Optional[Iterable[Message]] = None,
        *,
        max_messages: int = DEFAULT_MAX_MESSAGES,
    ) -> None:
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self.max_messages = max_messages
        self._messages: List[Message] = []
        for m in messages or []:
            self.append(m)

    # --------- construction ----------
    @classmethod
    def from_records(
        cls,
        records: Optional[Iterable[Dict[str, Any]]],
        *,
        max_messages: int = DEFAULT_MAX_MESSAGES,
    ) -> "ConversationLog":
        """Build a log from stored records; ``None`` reads as an empty log."""
        try:
            messages = [Message.model_validate(r) for r in records or []]
        except ValidationError as e:
            raise ValueError(f"Invalid stored conversation record: {e}") from e
        return cls(messages, max_messages=max_messages)

    def to_records(self) -> List[Dict[str, str]]:
        return [m.to_record() for m in self._messages]

    # --------- mutation ----------
    def seed(self, system_prompt: str) -> bool:
        """Insert the system message if the log is empty. Returns True if seeded."""
        if self._messages:
            return False
        self._messages.append(Message(role=Role.SYSTEM, content=system_prompt))
        return True

    def append(self, message: Message) -> None:
        if message.role is Role.SYSTEM and self._messages:
            raise ValueError("system message may only be the first entry of a log")
        self._messages.append(message)

    def add_user(self, text: str) -> Message:
        msg = Message(role=Role.USER, content=text)
        self.append(msg)
        return msg

    def add_assistant(self, text: str) -> Message:
        msg = Message(role=Role.ASSISTANT, content=text)
        self.append(msg)
        return msg

    def trim(self) -> int:
        """Drop the oldest entries beyond ``max_messages``. Returns the count dropped."""
        overflow = len(self._messages) - self.max_messages
        if overflow <= 0:
            return 0
        del self._messages[:overflow]
        return overflow

    # --------- views ----------
    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def is_seeded(self) -> bool:
        return bool(self._messages) and self._messages[0].role is Role.SYSTEM

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(list(self._messages))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConversationLog):
            return NotImplemented
        return self._messages == other._messages

    def __repr__(self) -> str:
        return f"ConversationLog(len={len(self)}, max_messages={self.max_messages})"

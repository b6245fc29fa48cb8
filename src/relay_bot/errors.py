"""Exception hierarchy for the relay bot.

Each class maps to exactly one HTTP outcome in :mod:`relay_bot.server`;
handlers raise them and never build responses themselves.
"""

from __future__ import annotations


class RelayBotError(Exception):
    """Base class for every error raised by the relay bot."""


class ConfigurationError(RelayBotError):
    """A required secret or binding is missing. Client-visible, not retried."""


class MalformedPayloadError(RelayBotError):
    """The inbound update lacks a chat id or text."""


class InferenceError(RelayBotError):
    """The completion service failed or timed out."""


class PersistenceError(RelayBotError):
    """Reading or writing the session store failed."""


class RelayError(RelayBotError):
    """Delivering the reply to the chat failed (best-effort, swallowed)."""


__all__ = [
    "RelayBotError",
    "ConfigurationError",
    "MalformedPayloadError",
    "InferenceError",
    "PersistenceError",
    "RelayError",
]

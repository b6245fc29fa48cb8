"""Request classification.

Every inbound request maps to exactly one :class:`Route`; classification
has no side effects and never raises.
"""

from __future__ import annotations

from enum import Enum

WEBHOOK_PATH = "/set-webhook"
MESSAGE_PATH = "/"


class Route(str, Enum):
    REGISTER_WEBHOOK = "register_webhook"
    HANDLE_MESSAGE = "handle_message"
    REJECTED = "rejected"


def classify(method: str, path: str) -> Route:
    method = (method or "").upper()
    if method == "GET" and path == WEBHOOK_PATH:
        return Route.REGISTER_WEBHOOK
    if method == "POST" and path == MESSAGE_PATH:
        return Route.HANDLE_MESSAGE
    return Route.REJECTED


__all__ = ["Route", "classify", "WEBHOOK_PATH", "MESSAGE_PATH"]

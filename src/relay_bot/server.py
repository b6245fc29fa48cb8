"""FastAPI application: one catch-all route dispatching on :func:`classify`."""
from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from .config import BotConfig, get_config
from .errors import ConfigurationError, MalformedPayloadError
from .handlers import BotServices, handle_message, register_webhook
from .llm import InferenceGateway, create_from_config
from .routing import Route, classify
from .store import SessionStore, create_store
from .telegram import TelegramClient

logger = logging.getLogger(__name__)

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

NO_MESSAGE = "No message provided"
INTERNAL_ERROR = "Internal server error"


def _text(body: str, status_code: int) -> PlainTextResponse:
    return PlainTextResponse(body, status_code=status_code)


def _make_store(config: BotConfig) -> SessionStore:
    return create_store(
        config.store,
        account_id=config.inference.account_id,
        api_token=config.inference.api_token,
        api_base=config.inference.api_base,
    )


def _make_telegram(config: BotConfig) -> TelegramClient:
    return TelegramClient(
        config.telegram.bot_token,
        api_base=config.telegram.api_base,
        timeout=config.telegram.timeout,
    )


# -----------------------------
# Route handlers
# -----------------------------
async def _register_webhook(request: Request, services: BotServices) -> PlainTextResponse:
    origin = f"{request.url.scheme}://{request.url.netloc}"
    try:
        result = await register_webhook(origin, services)
    except ConfigurationError as e:
        return _text(str(e), 400)
    except Exception:
        logger.exception("Error setting webhook")
        return _text(INTERNAL_ERROR, 500)

    if isinstance(result, dict) and result.get("ok"):
        return _text("Webhook set successfully", 200)
    return _text(f"Failed: {json.dumps(result, ensure_ascii=False)}", 500)


async def _handle_message(request: Request, services: BotServices) -> PlainTextResponse:
    body = await request.body()
    try:
        await handle_message(body, services)
    except MalformedPayloadError as e:
        logger.info("Rejected update: %s", e)
        return _text(NO_MESSAGE, 400)
    except ConfigurationError as e:
        return _text(str(e), 400)
    except Exception:
        logger.exception("Error handling message")
        return _text(INTERNAL_ERROR, 500)
    return _text("Message processed", 200)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config: Optional[BotConfig] = None,
    *,
    config_path: Optional[str] = None,
    store: Optional[SessionStore] = None,
    gateway: Optional[InferenceGateway] = None,
    telegram: Optional[TelegramClient] = None,
) -> FastAPI:
    """Build the application. Collaborators default to the configured backends."""
    config = config or get_config(config_path)
    services = BotServices(
        config=config,
        store=store or _make_store(config),
        gateway=gateway or create_from_config(config.inference),
        telegram=telegram or _make_telegram(config),
    )

    app = FastAPI(title="Relay Bot", version="0.1.0", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.services = services

    @app.api_route("/{path:path}", methods=ALL_METHODS)
    async def entry(request: Request, path: str) -> PlainTextResponse:
        route = classify(request.method, request.url.path)
        if route is Route.REGISTER_WEBHOOK:
            return await _register_webhook(request, services)
        if route is Route.HANDLE_MESSAGE:
            return await _handle_message(request, services)
        return _text("Method or route not allowed", 405)

    return app

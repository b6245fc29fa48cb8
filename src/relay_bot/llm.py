"""Inference gateway: one completion call per handled message."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence

import httpx

from .config import InferenceConfig
from .conversation import Message
from .errors import ConfigurationError, InferenceError

logger = logging.getLogger(__name__)


# -----------------------------
# Types
# -----------------------------
@dataclass(frozen=True)
class InferenceReply:
    response_text: Optional[str] = None


class InferenceGateway(Protocol):
    async def invoke(self, model_id: str, messages: Sequence[Message]) -> InferenceReply:
        """Run the model over the full ordered message list."""
        ...


# -----------------------------
# Workers AI
# -----------------------------
class WorkersAIGateway:
    """Cloudflare Workers AI text-generation over the REST API.

    ``POST {api_base}/accounts/{account_id}/ai/run/{model}`` with
    ``{"messages": [...]}``; the reply text is ``result.response``.
    """

    def __init__(
        self,
        account_id: str,
        api_token: str,
        *,
        api_base: str = "https://api.cloudflare.com/client/v4",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not account_id or not api_token:
            raise ConfigurationError("Workers AI gateway requires account_id and api_token")
        self._base = f"{api_base.rstrip('/')}/accounts/{account_id}/ai/run"
        self._headers = {"Authorization": f"Bearer {api_token}"}
        self._timeout = timeout
        self._client = client

    async def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=self._headers)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(url, json=payload, headers=self._headers)

    async def invoke(self, model_id: str, messages: Sequence[Message]) -> InferenceReply:
        # Model ids contain slashes (@cf/meta/...) and are part of the path as-is.
        url = f"{self._base}/{model_id}"
        payload = {"messages": [m.to_record() for m in messages]}
        logger.debug("Invoking %s with %d messages", model_id, len(messages))
        try:
            response = await self._post(url, payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise InferenceError(f"Inference timed out for {model_id}: {e}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise InferenceError(f"Inference call failed for {model_id}: {e}") from e

        if isinstance(data, dict) and data.get("success") is False:
            raise InferenceError(f"Inference rejected for {model_id}: {data.get('errors')}")
        return InferenceReply(response_text=_extract_text(data))


def _extract_text(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    result = data.get("result", data)
    if not isinstance(result, dict):
        return None
    text = result.get("response")
    if text is None:
        return None
    return str(text)


# -----------------------------
# Convenience factory
# -----------------------------
def create_from_config(cfg: InferenceConfig) -> WorkersAIGateway:
    """Create the configured gateway (only ``workers_ai`` is supported)."""
    if cfg.backend.lower() != "workers_ai":
        raise ConfigurationError(f"Unknown inference backend: {cfg.backend!r}")
    return WorkersAIGateway(
        cfg.account_id,
        cfg.api_token,
        api_base=cfg.api_base,
        timeout=cfg.timeout,
    )

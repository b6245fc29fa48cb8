"""Session store adapters: conversation records keyed by conversation id.

Two methods only (``get`` / ``put``). ``put`` overwrites unconditionally;
there is no compare-and-swap, so concurrent read-modify-write cycles on
the same key can lose an update.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

import httpx

from .config import StoreConfig
from .errors import ConfigurationError, PersistenceError

logger = logging.getLogger(__name__)

Record = Dict[str, str]


class SessionStore(Protocol):
    """Protocol describing async storage for conversation records."""

    async def get(self, key: str) -> Optional[List[Record]]:
        """Return the stored records for ``key`` or ``None`` if absent."""
        ...

    async def put(self, key: str, records: List[Record]) -> None:
        """Replace whatever is stored under ``key`` with ``records``."""
        ...


# -----------------------------
# Helpers
# -----------------------------
def _safe_key(name: str) -> str:
    # Keep it readable but filesystem-safe.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    return s[:128]


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def _decode_records(raw: Any, key: str) -> List[Record]:
    if not isinstance(raw, list):
        raise PersistenceError(f"Stored value for {key!r} is not a list")
    return raw


# -----------------------------
# DiskSessionStore
# -----------------------------
class DiskSessionStore:
    """One JSON file per conversation key, replaced atomically on write.

    Layout:
        data_dir/
          <safe key>.json       # list[{"role", "content"}]
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / f"{_safe_key(key)}.json"

    def _read(self, key: str) -> Optional[List[Record]]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError):
            # Corruption fallback: keep a backup and start fresh.
            bad = path.with_suffix(".corrupt.json")
            logger.warning("Corrupt conversation file %s; moved to %s", path, bad)
            path.replace(bad)
            return None
        return _decode_records(raw, key)

    def _write(self, key: str, records: List[Record]) -> None:
        _atomic_write_text(self._path(key), json.dumps(records, ensure_ascii=False, indent=2))

    async def get(self, key: str) -> Optional[List[Record]]:
        try:
            return await asyncio.to_thread(self._read, key)
        except OSError as e:
            raise PersistenceError(f"Failed to read {key!r}: {e}") from e

    async def put(self, key: str, records: List[Record]) -> None:
        try:
            await asyncio.to_thread(self._write, key, list(records))
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {key!r}: {e}") from e


# -----------------------------
# CloudflareKVStore
# -----------------------------
class CloudflareKVStore:
    """Workers KV namespace accessed through the Cloudflare REST API.

    Values are the JSON-encoded record list, one KV entry per key.
    """

    def __init__(
        self,
        account_id: str,
        namespace_id: str,
        api_token: str,
        *,
        api_base: str = "https://api.cloudflare.com/client/v4",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not (account_id and namespace_id and api_token):
            raise ConfigurationError("Cloudflare KV store requires account_id, namespace_id and api_token")
        self._base = f"{api_base.rstrip('/')}/accounts/{account_id}/storage/kv/namespaces/{namespace_id}/values"
        self._headers = {"Authorization": f"Bearer {api_token}"}
        self._timeout = timeout
        self._client = client

    def _url(self, key: str) -> str:
        return f"{self._base}/{quote(key, safe='')}"

    async def _request(self, method: str, key: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, self._url(key), headers=self._headers, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.request(method, self._url(key), headers=self._headers, **kwargs)

    async def get(self, key: str) -> Optional[List[Record]]:
        try:
            response = await self._request("GET", key)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            raw = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PersistenceError(f"KV read failed for {key!r}: {e}") from e
        return _decode_records(raw, key)

    async def put(self, key: str, records: List[Record]) -> None:
        body = json.dumps(list(records), ensure_ascii=False)
        try:
            response = await self._request("PUT", key, content=body.encode("utf-8"))
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise PersistenceError(f"KV write failed for {key!r}: {e}") from e


# -----------------------------
# Factory
# -----------------------------
def create_store(
    cfg: StoreConfig,
    *,
    account_id: str = "",
    api_token: str = "",
    api_base: str = "https://api.cloudflare.com/client/v4",
) -> SessionStore:
    """Build the single configured store backend."""
    backend = cfg.backend.lower()
    if backend == "disk":
        return DiskSessionStore(cfg.data_dir)
    if backend == "cloudflare_kv":
        return CloudflareKVStore(
            account_id,
            cfg.namespace_id,
            api_token,
            api_base=api_base,
            timeout=cfg.timeout,
        )
    raise ConfigurationError(f"Unknown store backend: {cfg.backend!r}")

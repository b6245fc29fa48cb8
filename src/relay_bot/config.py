"""Configuration loading for the relay bot.

Layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable RELAY_BOT_CONFIG
3. Fallback to "config/default.yaml"

Overrides come from environment variables with prefix ``RELAY_BOT__``
(e.g., RELAY_BOT__STORE__BACKEND=cloudflare_kv), plus the conventional
platform variables listed in ``ENV_ALIASES``.

The merged mapping is frozen into a :class:`BotConfig`, built once at
process start and handed to :func:`relay_bot.server.create_app`.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "RELAY_BOT__"

# Plain variable name -> dotted config key
ENV_ALIASES: Dict[str, str] = {
    "TELEGRAM_BOT_TOKEN": "telegram.bot_token",
    "CLOUDFLARE_ACCOUNT_ID": "inference.account_id",
    "CLOUDFLARE_API_TOKEN": "inference.api_token",
    "FORWARDED_ALLOW_IPS": "server.forwarded_allow_ips",
}

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly and professional sales assistant. Introduce yourself "
    "at the start of a conversation, answer questions about the available "
    "plans and help the customer complete a purchase."
)

DEFAULTS: Dict[str, Any] = {
    "telegram": {
        "bot_token": "",
        "api_base": "https://api.telegram.org",
        "timeout": 10.0,
    },
    "inference": {
        "backend": "workers_ai",
        "model": "@cf/meta/llama-4-scout-17b-16e-instruct",
        "account_id": "",
        "api_token": "",
        "api_base": "https://api.cloudflare.com/client/v4",
        "timeout": 30.0,
        "fallback_reply": "No response from AI",
    },
    "store": {
        "backend": "disk",
        "data_dir": "data/conversations",
        "key_prefix": "chat:",
        "namespace_id": "",
        "timeout": 10.0,
    },
    "conversation": {
        "max_messages": 10,
        "system_prompt": DEFAULT_SYSTEM_PROMPT,
    },
    "server": {
        # Proxies whose X-Forwarded-Proto/-For headers are trusted; "*" trusts all.
        "forwarded_allow_ips": "127.0.0.1",
    },
    "logging": {"level": "INFO"},
}


# -----------------------------
# Raw mapping
# -----------------------------
def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _set_path(cfg: Dict[str, Any], parts: list[str], value: Any) -> None:
    sub = cfg
    for p in parts[:-1]:
        if p not in sub or not isinstance(sub[p], dict):
            sub[p] = {}
        sub = sub[p]
    sub[parts[-1]] = value


def _apply_env_overrides(cfg: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Apply alias variables first, then RELAY_BOT__ overrides on top."""
    for name, dotted in ENV_ALIASES.items():
        value = environ.get(name)
        if value:
            # Secrets stay strings, never coerced.
            _set_path(cfg, dotted.split("."), value)

    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., RELAY_BOT__STORE__DATA_DIR -> cfg["store"]["data_dir"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        _set_path(cfg, parts, _coerce(value))
    return cfg


def _merge(base: Dict[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in extra.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(
    path: str | None = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Load YAML configuration merged over :data:`DEFAULTS`.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``RELAY_BOT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.
    environ : Mapping[str, str] | None
        Environment to read overrides from; defaults to ``os.environ``.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    environ = os.environ if environ is None else environ
    if path is None:
        path = environ.get("RELAY_BOT_CONFIG", "config/default.yaml")

    cfg = copy.deepcopy(DEFAULTS)
    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(cfg, environ)

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(cfg, loaded), environ)


# -----------------------------
# Typed, immutable view
# -----------------------------
@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str = ""
    api_base: str = "https://api.telegram.org"
    timeout: float = 10.0


@dataclass(frozen=True)
class InferenceConfig:
    backend: str = "workers_ai"
    model: str = "@cf/meta/llama-4-scout-17b-16e-instruct"
    account_id: str = ""
    api_token: str = ""
    api_base: str = "https://api.cloudflare.com/client/v4"
    timeout: float = 30.0
    fallback_reply: str = "No response from AI"


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "disk"
    data_dir: str = "data/conversations"
    key_prefix: str = "chat:"
    namespace_id: str = ""
    timeout: float = 10.0


@dataclass(frozen=True)
class ConversationConfig:
    max_messages: int = 10
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


@dataclass(frozen=True)
class ServerConfig:
    forwarded_allow_ips: str = "127.0.0.1"


@dataclass(frozen=True)
class BotConfig:
    """Process-wide settings, constructed once and injected into handlers."""

    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    log_level: str = "INFO"

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "BotConfig":
        tg = cfg.get("telegram", {}) or {}
        inf = cfg.get("inference", {}) or {}
        st = cfg.get("store", {}) or {}
        conv = cfg.get("conversation", {}) or {}
        srv = cfg.get("server", {}) or {}

        max_messages = int(conv.get("max_messages", 10))
        if max_messages < 1:
            raise ValueError("conversation.max_messages must be at least 1")

        return cls(
            telegram=TelegramConfig(
                bot_token=str(tg.get("bot_token") or ""),
                api_base=str(tg.get("api_base") or TelegramConfig.api_base).rstrip("/"),
                timeout=float(tg.get("timeout", 10.0)),
            ),
            inference=InferenceConfig(
                backend=str(inf.get("backend") or "workers_ai"),
                model=str(inf.get("model") or InferenceConfig.model),
                account_id=str(inf.get("account_id") or ""),
                api_token=str(inf.get("api_token") or ""),
                api_base=str(inf.get("api_base") or InferenceConfig.api_base).rstrip("/"),
                timeout=float(inf.get("timeout", 30.0)),
                fallback_reply=str(inf.get("fallback_reply") or InferenceConfig.fallback_reply),
            ),
            store=StoreConfig(
                backend=str(st.get("backend") or "disk"),
                data_dir=str(st.get("data_dir") or StoreConfig.data_dir),
                key_prefix=str(st.get("key_prefix", "chat:")),
                namespace_id=str(st.get("namespace_id") or ""),
                timeout=float(st.get("timeout", 10.0)),
            ),
            conversation=ConversationConfig(
                max_messages=max_messages,
                system_prompt=str(conv.get("system_prompt") or DEFAULT_SYSTEM_PROMPT).strip(),
            ),
            server=ServerConfig(
                forwarded_allow_ips=str(srv.get("forwarded_allow_ips") or ServerConfig.forwarded_allow_ips),
            ),
            log_level=str((cfg.get("logging", {}) or {}).get("level", "INFO")).upper(),
        )


def get_config(path: str | None = None) -> BotConfig:
    """Shortcut for ``BotConfig.from_mapping(load_config(path))``."""
    return BotConfig.from_mapping(load_config(path))

"""Script to launch the relay bot webhook server."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional, Sequence

import uvicorn

# Ensure src/ is on sys.path (so imports work when run directly)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from relay_bot.config import get_config  # noqa: E402
from relay_bot.server import create_app  # noqa: E402

# Reload and multiple workers need an importable factory, not an app object.
APP_FACTORY = "relay_bot.server:create_app"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the relay bot webhook server.")
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST", "127.0.0.1"),
        help="Host to bind the server to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind the server to (default: 8000)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development (default: off)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=int(os.environ.get("WORKERS", "1")),
        help="Number of worker processes (default: 1)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file (default: $RELAY_BOT_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--forwarded-allow-ips",
        type=str,
        default=None,
        help="Proxy addresses trusted for X-Forwarded-* headers (default: server.forwarded_allow_ips)",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    config = get_config(args.config)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
    )

    if args.reload or args.workers > 1:
        # Each (re)started process builds its own app from the same config file.
        if args.config:
            os.environ["RELAY_BOT_CONFIG"] = os.path.abspath(args.config)
        app = APP_FACTORY
        extra = {"factory": True, "app_dir": SRC_DIR}
    else:
        app = create_app(config)
        extra = {}

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=args.workers,
        proxy_headers=True,
        forwarded_allow_ips=args.forwarded_allow_ips or config.server.forwarded_allow_ips,
        log_level=config.log_level.lower(),
        **extra,
    )


if __name__ == "__main__":
    main()

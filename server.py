from __future__ import annotations

import argparse
import sys

import uvicorn
from loguru import logger

from backrooms.api import build_services, create_app
from backrooms.config import load_settings


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Serve the live AI-to-AI backrooms conversation")
    p.add_argument("--host", type=str, default=None, help="Bind address (default: HOST env or 0.0.0.0)")
    p.add_argument("--port", type=int, default=None, help="Port (default: PORT env or 3001)")
    p.add_argument("--log-level", type=str, default=None, help="Loguru level (default: LOG_LEVEL env or INFO)")
    p.add_argument("--auto-start", action="store_true", help="Start a fresh conversation on boot without an admin call")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings()
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.log_level:
        settings.log_level = args.log_level.upper()
    if args.auto_start:
        settings.auto_start = True

    logger.remove()
    logger.add(sys.stdout, level=settings.log_level, colorize=True, format="{time:HH:mm:ss} | {level} | {message}")
    if not settings.admin_code:
        logger.warning("admin_code_missing | start/stop/reset/archive will reject every request")

    app = create_app(build_services(settings))
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()

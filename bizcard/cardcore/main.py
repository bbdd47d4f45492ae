"""
CardCore - Main entry point.

This module starts CardCore with all components:
- HTTP API (uvicorn serving the FastAPI app)
- Telemetry pipeline (periodic analytics flush)
- Shutdown hooks bound to SIGINT / SIGTERM

Usage:
    python -m bizcard.cardcore.main

Configuration is entirely via environment variables.
See config.py and api/settings.py for all available settings.

Invariants:
    - The store is connected before the HTTP server accepts requests
    - On SIGINT / SIGTERM buffered analytics are flushed (bounded attempts)
      before the process exits

How to change safely:
    - Add new components to Server, not here
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import sys

import json_log_formatter
import uvicorn

from .api.http_server import create_app
from .api.settings import Settings
from .config import ServerConfig
from .server import Server

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


async def serve(server: Server, settings: Settings) -> None:
    """Run the HTTP API until shutdown is requested, then stop the server."""
    await server.start()

    loop = asyncio.get_running_loop()
    server.hooks.install_signal_handlers(loop, on_complete=server.request_shutdown)

    # Lifecycle is owned here so signals reach the shutdown hooks first
    http = uvicorn.Server(
        uvicorn.Config(
            create_app(server, settings),
            host=settings.host,
            port=settings.port,
            lifespan="off",
            log_config=None,
            timeout_graceful_shutdown=int(settings.graceful_timeout),
        )
    )
    http_task = asyncio.create_task(http.serve())
    shutdown_task = asyncio.create_task(server.wait_for_shutdown())
    logger.info(f"HTTP API listening on {settings.bind_address}")

    try:
        await asyncio.wait({http_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        http.should_exit = True
        await asyncio.gather(http_task, return_exceptions=True)
        shutdown_task.cancel()
        await server.stop()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)
    try:
        asyncio.run(serve(server, Settings()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

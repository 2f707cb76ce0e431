"""Process entry point: config, logging, storage check, then serve."""

from __future__ import annotations

import asyncio
import logging
import sys

import uvicorn

from relay.app import create_app
from relay.config import AppConfig, load_config
from relay.db import build_backend
from relay.errors import StorageUnavailable
from relay.logging import setup_logging

logger = logging.getLogger(__name__)


async def _verify_storage(config: AppConfig) -> None:
    backend = build_backend(config.storage)
    try:
        await backend.connect()
    finally:
        await backend.close()


def main() -> None:
    setup_logging("room-relay")
    config = load_config()

    try:
        asyncio.run(_verify_storage(config))
    except StorageUnavailable as exc:
        logger.error("Failed to start server: %s", exc)
        sys.exit(1)

    app = create_app(config)
    logger.info("Relay listening on %s:%d", config.server.host, config.server.port)
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_config=None)


if __name__ == "__main__":
    main()

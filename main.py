"""
docbroker main entry point
Builds the document facade and deployment reconciler and keeps them running.
"""

import asyncio
import sys

from loguru import logger

from docbroker.app import build_services
from docbroker.settings import global_settings


async def main() -> None:
    logger.remove()
    logger.add(sys.stderr, level=global_settings.log_level)

    logger.info("Starting docbroker...")
    services = build_services(global_settings)

    try:
        logger.info("Checking document store connection...")
        if await services.start():
            logger.info("Document store reachable")
        else:
            logger.warning("Document store unreachable; requests will trip the breaker")

        logger.info("docbroker is running. Press Ctrl+C to stop.")
        while True:
            await asyncio.sleep(60)

    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Received interrupt signal, shutting down...")
    finally:
        await services.shutdown()
        logger.info("docbroker stopped")


if __name__ == "__main__":
    asyncio.run(main())

#!/usr/bin/env python3
"""
Standalone settlement listener

Runs only the dealer settlement watchers, without the HTTP API:
1. Watches L3Interaction and routes each job creator's funds
2. Watches FundsTransferredToMediator and pays out the queued creator
3. Stops cleanly on interrupt, uninstalling its log filters
"""

import asyncio
import logging

from whisperpay.config import configure_logging, load_settings
from whisperpay.helper.api_service import APIService

logger = logging.getLogger(__name__)


async def run_listener(api_service: APIService, stop_event: asyncio.Event) -> bool:
    orchestrator = await api_service.register_startup_event()
    if not orchestrator.running:
        logger.error("No settlement watcher could be started; check RPC, key and dealer address")
        return False
    try:
        await stop_event.wait()
    finally:
        await api_service.register_shutdown_event()
    return True


async def main():
    """Main entry point for the settlement listener"""
    configure_logging()
    api_service = APIService(load_settings())
    try:
        await run_listener(api_service, asyncio.Event())
    except asyncio.CancelledError:
        logger.info("Shutting down settlement listener...")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Settlement listener stopped")


if __name__ == "__main__":
    run()

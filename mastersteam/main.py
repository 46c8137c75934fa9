"""
Main entry point for the mastersteam search service

Starts the HTTP API that searches the Steam master server and queries
every server it returns.
"""

import asyncio
import logging
import signal

from mastersteam.config import config
from mastersteam.servers.api_server import ApiServer
from mastersteam.servers.search import SearchService
from mastersteam.utils.fault_policy import get_fault_policy

logger = logging.getLogger(__name__)


class ServiceManager:
    """Owns the API server and its shutdown"""

    def __init__(self, config):
        self.config = config
        self.api_server = None
        self.running = False
        self._stopped = asyncio.Event()

    async def start(self):
        """Start the API server and wait until stop() is called"""
        policy = get_fault_policy(self.config.FAULT_POLICY)
        search_service = SearchService(self.config, policy=policy)

        self.api_server = ApiServer(self.config, search_service)
        await self.api_server.start()
        self.running = True

        logger.info(
            f"Serving searches against {self.config.MASTER_HOST}:{self.config.MASTER_PORT} "
            f"with {self.config.QUERY_WORKERS} workers, fault policy '{self.config.FAULT_POLICY}'"
        )

        await self._stopped.wait()

    async def stop(self):
        """Stop the API server"""
        if not self.running:
            self._stopped.set()
            return

        logger.info("Shutting down...")
        await self.api_server.stop()
        self.running = False
        self._stopped.set()


async def main():
    """Main entry point"""

    manager = ServiceManager(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(manager.stop()))

    try:
        await manager.start()
    finally:
        await manager.stop()


def run():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")


if __name__ == '__main__':
    run()

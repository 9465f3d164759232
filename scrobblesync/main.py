import asyncio
import logging
import signal
import sys
import time
import uvicorn

from .config import settings
from .store import EventStore
from .clients.lastfm_client import LastfmClient
from .engine import SyncEngine
from .errors import StoreError
from . import server


# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")


class SyncService:
    def __init__(self):
        self.running = True
        sync_config = settings.sync_config()
        self.store = EventStore(sync_config.db_path)
        self.lastfm = LastfmClient(settings)
        self.engine = SyncEngine(self.store, self.lastfm, sync_config)

        # Link engine to server module
        server.engine = self.engine

    async def setup(self):
        await self.lastfm.initialize()
        await self.engine.initialize()

    async def run_maintenance_tasks(self):
        """Periodic slow tasks"""
        logger.info("Maintenance tasks started")
        last_run = time.time()
        while self.running:
            await asyncio.sleep(60)
            if time.time() - last_run < settings.MAINTENANCE_INTERVAL_SECONDS:
                continue
            try:
                deleted = await self.engine.cleanup()
                if deleted:
                    await self.engine.compact()
            except StoreError as e:
                logger.error(f"Error in maintenance tasks: {e}", exc_info=True)
            last_run = time.time()

    async def sync_loop(self):
        while self.running:
            start_time = time.time()
            try:
                report = await self.engine.sync_now()
                if report is not None and report.events_added:
                    logger.info(f"Synced {report.events_added} new scrobbles")
            except Exception as e:
                logger.error(f"Error in sync loop: {e}", exc_info=True)

            # Wait for remainder of interval
            elapsed = time.time() - start_time
            sleep_time = max(1, settings.SYNC_INTERVAL_SECONDS - elapsed)
            await asyncio.sleep(sleep_time)

    async def start(self):
        await self.setup()

        tasks = [
            asyncio.create_task(self.sync_loop()),
            asyncio.create_task(self.run_maintenance_tasks())
        ]

        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            server_task = uvicorn.Server(config).serve()
            tasks.append(asyncio.create_task(server_task))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            self.engine.close()
            await self.lastfm.close()


def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)


if __name__ == "__main__":
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SyncService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")

"""
Dialer Worker
Background process that runs campaign dialing

Run as separate process:
    python -m campaign_dialer.workers.dialer_worker
"""
import asyncio
import logging
import signal
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from campaign_dialer.core.config import Settings, get_settings
from campaign_dialer.core.engine import DialerEngine, build_engine_from_settings
from campaign_dialer.domain.models.campaign import CampaignStatus


logger = logging.getLogger(__name__)

# Configure logging for worker
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


class DialerWorker:
    """
    Hosts the dialing engine outside the API process.

    Responsibilities:
    - Connect the switch, task store and notification bus
    - Resume campaigns that were active when the process last stopped
    - Re-arm scheduled campaign starts
    - Shut everything down cleanly on SIGINT/SIGTERM
    """

    STATS_INTERVAL = 60  # Seconds between stats log lines

    def __init__(self, engine: Optional[DialerEngine] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.engine = engine
        self.running = False
        self._stop_event: Optional[asyncio.Event] = None

    async def initialize(self) -> None:
        """Build and connect the engine."""
        logger.info("Initializing Dialer Worker...")
        if self.engine is None:
            self.engine = build_engine_from_settings(self.settings)
        await self.engine.start()
        logger.info("Dialer Worker initialized successfully")

    async def resume_active_campaigns(self) -> int:
        """Restart runners for campaigns left active by a previous process."""
        campaigns = await self.engine.campaign_store.list_campaigns(CampaignStatus.ACTIVE)
        for campaign in campaigns:
            self.engine.scheduler.start(campaign.id)
        if campaigns:
            logger.info(f"Resumed {len(campaigns)} active campaigns")
        return len(campaigns)

    async def run(self) -> None:
        """Main worker loop: wait for a stop request, logging stats periodically."""
        self._stop_event = asyncio.Event()
        await self.initialize()
        await self.resume_active_campaigns()

        self.running = True
        logger.info("Dialer Worker started")

        try:
            while self.running:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.STATS_INTERVAL)
                except asyncio.TimeoutError:
                    logger.info(f"Dialer stats: {self.get_stats()}")
        except asyncio.CancelledError:
            logger.info("Worker received cancellation signal")
        finally:
            await self.shutdown()

    def request_stop(self) -> None:
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        if self.engine is None:
            return
        logger.info("Shutting down Dialer Worker...")
        self.running = False
        engine, self.engine = self.engine, None
        await engine.stop()
        logger.info("Dialer Worker shutdown complete")

    def get_stats(self) -> dict:
        """Get worker statistics."""
        if self.engine is None:
            return {"running": self.running}
        return {
            "running": self.running,
            "dialer": self.engine.dialer.get_stats(),
            "scheduler": self.engine.scheduler.get_stats(),
        }


async def main():
    """Entry point for running dialer worker as separate process."""
    worker = DialerWorker()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        worker.request_stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    finally:
        await worker.shutdown()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()

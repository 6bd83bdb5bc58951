"""
Headless pipeline worker.

Runs every stage worker pool and the recovery scheduler without the HTTP
API. Start with:

    python -m recon.worker

SIGINT/SIGTERM stop the queue (in-flight jobs get a grace period) and
close the shared browser.
"""

import asyncio
import logging
import signal

from recon.config import settings
from recon.database import create_engine, create_session_factory, init_models
from recon.events import EventPublisher
from recon.scheduler import start_scheduler, stop_scheduler
from recon.services.pipeline_coordinator import create_pipeline_coordinator

logger = logging.getLogger(__name__)


async def run_worker(stop_event: asyncio.Event = None) -> None:
    stop_event = stop_event or asyncio.Event()

    engine = create_engine(settings.DATABASE_URL)
    await init_models(engine)

    publisher = EventPublisher(settings.EVENT_DELIVERY_TIMEOUT_SECONDS)
    coordinator = create_pipeline_coordinator(settings, create_session_factory(engine), publisher)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    try:
        await coordinator.start()
        start_scheduler(coordinator, settings.RECOVERY_INTERVAL_SECONDS)
        logger.info("Worker running, waiting for jobs")
        await stop_event.wait()
    finally:
        logger.info("Closing browser and stopping queue before exit...")
        stop_scheduler()
        await coordinator.stop()
        await engine.dispose()


def main() -> None:
    logging.basicConfig(level=settings.LOG_LEVEL)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()

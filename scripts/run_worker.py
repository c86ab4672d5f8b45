"""
Run the Apple Health import worker until SIGINT/SIGTERM
"""

import asyncio
import signal
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import engine
from core.exceptions import DatabaseError
from core.logging import setup_logging
from ingestion.scheduler import ClaimScheduler

setup_logging()
logger = logging.getLogger(__name__)


async def run_worker():
    """Check connectivity, start polling, wait for a shutdown signal"""
    logger.info("Starting Apple Health import worker")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Scratch directory: {settings.SCRATCH_DIR}")
    if not settings.EDEN_APP_URL or not settings.WORKER_SECRET:
        logger.warning("EDEN_APP_URL or WORKER_SECRET not set; scorecard triggers are disabled")

    scheduler = ClaimScheduler()

    try:
        await scheduler.check_connectivity()
    except DatabaseError as e:
        logger.error(f"Startup aborted: {e}")
        await engine.dispose()
        sys.exit(1)

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    scheduler.start()

    try:
        await shutdown.wait()
        logger.info("Shutdown requested, waiting for the current import to finish")
    finally:
        await scheduler.stop()
        await engine.dispose()
        logger.info("Worker stopped")


if __name__ == "__main__":
    asyncio.run(run_worker())

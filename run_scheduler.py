#!/usr/bin/env python3
"""
Bonded Ledger - Standalone Scheduler Runner

Runs the batch job scheduler without the API, for deployments that keep
the scheduler in its own process.

Jobs managed:
1. HOURLY_BATCH - queue housekeeping (hourly)
2. EOD_SNAPSHOT - close the previous business day (daily)
3. RECALC_QUEUE - drain the recalculation queue (every few minutes)
"""
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone

# Setup logging first
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

# Validate required environment variables
REQUIRED_VARS = ["DATABASE_URL"]
missing = [var for var in REQUIRED_VARS if not os.getenv(var)]
if missing:
    logger.error(f"Missing required environment variables: {missing}")
    sys.exit(1)

# Import after env validation
from bonded_ledger.core.config import settings  # noqa: E402
from bonded_ledger.core.database import engine  # noqa: E402
from bonded_ledger.jobs.scheduler import job_scheduler  # noqa: E402

# Graceful shutdown flag
_shutdown = False


def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global _shutdown
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    _shutdown = True


async def main():
    logger.info("=" * 60)
    logger.info("Bonded Ledger Scheduler Service")
    logger.info("=" * 60)
    logger.info(f"Started at: {datetime.now(timezone.utc).isoformat()}")
    logger.info(f"Reference time zone: {settings.SCHEDULER_TIMEZONE}")

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    try:
        await job_scheduler.start()
        logger.info("Scheduler service running. Press Ctrl+C to stop.")
        while not _shutdown:
            await asyncio.sleep(1)
    except Exception as e:
        logger.error(f"Scheduler service error: {e}")
        raise
    finally:
        logger.info("Stopping batch job scheduler...")
        await job_scheduler.shutdown(timeout=settings.RECALC_DRAIN_SOFT_DEADLINE_SECONDS)
        await engine.dispose()
        logger.info("Scheduler service stopped.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)

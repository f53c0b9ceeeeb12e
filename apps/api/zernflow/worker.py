"""
Background worker that drives the scheduled ticks.

Usage:
    python -m zernflow.worker

An alternative to calling the /internal/scheduled endpoints from cron: the
loop runs the same tick functions every WORKER_POLL_INTERVAL seconds.
"""

import asyncio
import logging
from datetime import datetime

from zernflow.core.config import settings
from zernflow.db.session import SessionLocal
from zernflow.services import tick_service
from zernflow.utils import utcnow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Read by the worker_service health check
last_tick_at: datetime | None = None


async def run_ticks() -> dict[str, dict]:
    """Run every tick once, each in its own session; one failing tick does not stop the others."""
    results = {}
    for name, tick in tick_service.TICKS.items():
        with SessionLocal() as db:
            try:
                results[name] = await tick(db)
            except Exception:
                db.rollback()
                logger.exception("Tick %s failed", name)
    return results


async def worker_loop() -> None:
    """Main worker loop - polls for due work and processes it."""
    global last_tick_at
    logger.info("Worker starting (poll interval: %ss)", settings.WORKER_POLL_INTERVAL)
    while True:
        results = await run_ticks()
        last_tick_at = utcnow()
        jobs = results.get("jobs") or {}
        if jobs.get("total"):
            logger.info("Jobs tick: %s", jobs)
        await asyncio.sleep(settings.WORKER_POLL_INTERVAL)


def main() -> None:
    asyncio.run(worker_loop())


if __name__ == "__main__":
    main()

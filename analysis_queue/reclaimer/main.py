"""
Lease reclaimer for recovering jobs from crashed workers.

The reclaimer runs periodically, finds active jobs whose lease expired and
returns them to the queue (or dead-letters them once attempts run out).
This is what gives the queue at-least-once execution.
"""

import asyncio
import logging
import signal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analysis_queue.config import get_settings
from analysis_queue.constants import SPAN_RECLAIM
from analysis_queue.db import close_db, get_session_context, init_db
from analysis_queue.db.repository import JobRepository
from analysis_queue.observability.logging import setup_logging
from analysis_queue.observability.metrics import get_metrics
from analysis_queue.observability.tracing import get_tracer, setup_tracing
from analysis_queue.types.job import ReclaimOutcome

logger = logging.getLogger(__name__)


class Reclaimer:
    """
    Periodic lease reclaimer.

    Each sweep:
    1. Finds leased jobs whose lease_until has passed
    2. Counts the lost attempt and returns them to PENDING, or DEAD at the ceiling
    3. Records metrics for monitoring
    """

    def __init__(
        self,
        interval_seconds: float | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        """
        Initialize the reclaimer.

        Args:
            interval_seconds: Seconds between sweeps. Defaults to half the lease.
            session_factory: Session factory. Defaults to the one set up by init_db().
        """
        self.interval = interval_seconds or get_settings().reclaim_interval
        self._session_factory = session_factory
        self._running = False
        self._stopped = asyncio.Event()
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the reclaim loop."""
        logger.info(f"Reclaimer starting with interval {self.interval}s")
        self._running = True
        self._stopped.clear()

        while self._running:
            try:
                await self.run_once()
            except SQLAlchemyError as e:
                logger.exception(f"Error in reclaim sweep: {e}")

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Reclaimer stopped")

    async def stop(self) -> None:
        """Stop the reclaimer."""
        logger.info("Reclaimer stopping")
        self._running = False
        self._stopped.set()

    async def run_once(self) -> ReclaimOutcome:
        """
        Run one sweep (for testing or cron-style execution).

        Returns:
            ReclaimOutcome with reclaimed, dead-lettered and scanned counts.
        """
        with get_tracer().start_as_current_span(SPAN_RECLAIM) as span:
            async with get_session_context(self._session_factory) as session:
                outcome = await JobRepository(session).reclaim_expired()

            span.set_attribute("reclaimed", outcome.reclaimed)
            span.set_attribute("dead", outcome.dead)

        self._metrics.record_reclaimed(outcome.reclaimed, outcome.dead)
        return outcome


async def run_async() -> None:
    """Run the reclaimer asynchronously."""
    setup_logging(service="reclaimer")
    setup_tracing()
    await init_db()

    reclaimer = Reclaimer()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(reclaimer.stop()))

    try:
        await reclaimer.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reclaimer."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()

"""
Expiry sweeper - server-side job that expires overdue OPEN gigs.

Every run moves OPEN gigs whose delivery deadline has passed to EXPIRED and
refunds their requesters inside a single storage transaction.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .gigs import GigService
from .models import SweepResult
from .service import Clock, utc_now

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "expire_overdue_gigs"


class ExpirySweeper:
    def __init__(self, gigs: GigService, clock: Clock = utc_now, interval_seconds: int = 60):
        self.gigs = gigs
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.scheduler: Optional[AsyncIOScheduler] = None

    def sweep(self) -> SweepResult:
        result = self.gigs.expire_overdue(self.clock())
        logger.debug(f"Expiry sweep at {result.swept_at.isoformat()}: {len(result.expired_gig_ids)} expired")
        return result

    def start(self) -> None:
        """Schedule ``sweep`` on an interval. Must be called with an event loop running."""
        if self.scheduler and self.scheduler.running:
            return
        self.scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": self.interval_seconds},
            timezone="UTC",
        )
        self.scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=SWEEP_JOB_ID,
            name="Expire overdue gigs",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Expiry sweeper scheduled every {self.interval_seconds} seconds")

    def shutdown(self) -> None:
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Expiry sweeper stopped")
        self.scheduler = None

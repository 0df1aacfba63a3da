"""
Argus Escrow — Payout Job Scheduler
Runs the payout worker on a fixed interval inside the API process.

A run that is still going when the next tick fires is not doubled up:
the job has max_instances=1 and the worker skips overlapping calls.
"""
import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from argus.config import Settings, get_settings
from argus.services.payout_worker import PayoutWorker

logger = logging.getLogger("argus.jobs")

PAYOUT_JOB_ID = "zec_payout_worker"


async def run_payout_cycle(worker: PayoutWorker) -> None:
    """Job body: one payout run, outcome logged."""
    result = await worker.process_withdrawals()
    if result.skipped_reason:
        logger.info("⏭️ Payout run skipped: %s", result.skipped_reason)
    else:
        logger.info(
            "💸 Payout run finished: %d processed, %d failed",
            result.processed, result.failed,
        )
    for error in result.errors:
        logger.warning("Payout run error: %s", error)


class PayoutScheduler:
    """Owns the AsyncIOScheduler that triggers the payout worker."""

    def __init__(self, worker: PayoutWorker, settings: Optional[Settings] = None):
        self.worker = worker
        self.settings = settings or get_settings()
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,          # one run for a backlog of missed ticks
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
            timezone="UTC",
        )

    def setup_jobs(self) -> None:
        interval = self.settings.PAYOUT_INTERVAL_MINUTES
        self.scheduler.add_job(
            run_payout_cycle,
            trigger=IntervalTrigger(minutes=interval),
            args=[self.worker],
            id=PAYOUT_JOB_ID,
            name="💸 ZEC payout worker",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True,
        )
        logger.info("✅ Payout worker scheduled every %d minutes", interval)

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Payout scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("👋 Payout scheduler stopped")

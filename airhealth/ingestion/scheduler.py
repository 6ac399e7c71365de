"""Scheduler for periodic data ingestion."""
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from airhealth.config import Settings
from airhealth.exceptions import AirQualityException, IngestionInProgressError
from airhealth.logging_config import get_logger
from airhealth.models import IngestionMode, IngestionReport
from airhealth.services.ingestion_service import IngestionService

CYCLE_JOB_ID = "ingest_cycle"
STARTUP_JOB_ID = "ingest_startup"


class DataScheduler:
    """Runs ingestion cycles twice daily, once shortly after start, and on demand."""

    def __init__(
        self,
        ingestion_service: IngestionService,
        cities: Sequence[str],
        settings: Settings,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        self.ingestion_service = ingestion_service
        self.cities = list(cities)
        self.settings = settings
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.logger = get_logger("ingestion.scheduler")

    async def run_cycle_job(self, mode: IngestionMode = IngestionMode.POLL):
        """Scheduled job: run a cycle and log the outcome."""
        try:
            report = await self.ingestion_service.run_ingestion_cycle(self.cities, mode)
            self.logger.info(
                f"Scheduled {mode.value} cycle {report.status}: "
                f"{len(report.succeeded)}/{len(self.cities)} cities"
            )
        except IngestionInProgressError:
            self.logger.warning("Skipping scheduled cycle, previous cycle still running")
        except AirQualityException as e:
            self.logger.error(f"Scheduled ingestion cycle failed: {e.message}", extra={"details": e.details})

    async def trigger_now(self, mode: IngestionMode = IngestionMode.POLL) -> IngestionReport:
        """Manual trigger; errors propagate to the caller."""
        self.logger.info(f"Manual {mode.value} ingestion triggered")
        return await self.ingestion_service.run_ingestion_cycle(self.cities, mode)

    def start(self, run_on_start: bool = True):
        """Start the scheduler."""
        self.scheduler.add_job(
            self.run_cycle_job,
            CronTrigger(hour=self.settings.ingest_cron_hours, minute=0, timezone=timezone.utc),
            id=CYCLE_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        if run_on_start:
            self.scheduler.add_job(
                self.run_cycle_job,
                "date",
                run_date=datetime.now(timezone.utc) + timedelta(seconds=self.settings.startup_delay_seconds),
                id=STARTUP_JOB_ID,
                replace_existing=True
            )

        self.scheduler.start()
        self.logger.info(f"Scheduler started (hours={self.settings.ingest_cron_hours} UTC)")

    async def stop(self):
        """
        Stop the scheduler and wait for a running cycle to wind down.

        Remaining cities are skipped; the city being fetched is finished so
        its write lands before the caller closes the store.
        """
        self.ingestion_service.cancel()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        if self.ingestion_service.is_running:
            self.logger.info("Waiting for running ingestion cycle to finish")
        await self.ingestion_service.wait_idle()
        self.logger.info("Scheduler stopped")

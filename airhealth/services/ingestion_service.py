"""Service for running ingestion cycles across cities."""
import asyncio
from datetime import date, datetime, time, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from airhealth.config import Settings
from airhealth.exceptions import (
    AirQualityException,
    IngestionCycleError,
    IngestionInProgressError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from airhealth.logging_config import get_logger
from airhealth.models import (
    IngestionFailure,
    IngestionMode,
    IngestionReport,
    Measurement,
)
from airhealth.storage.gateway import MeasurementStoreGateway


class CityFetcher(Protocol):
    async def fetch_city(self, city: str) -> Measurement:
        ...


class IngestionService:
    """Fetch -> map -> store for every city, one city at a time."""

    def __init__(
        self,
        fetcher: CityFetcher,
        gateway: MeasurementStoreGateway,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize ingestion service.

        Args:
            fetcher: Provider client with an async fetch_city(city)
            gateway: Store gateway for validated upserts
            settings: Retry, cooldown and backfill settings
            sleep: Awaitable sleep used for backoff
        """
        self.fetcher = fetcher
        self.gateway = gateway
        self.settings = settings
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._cancel_event = asyncio.Event()
        self.logger = get_logger("services.ingestion")

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def cancel(self):
        """Ask a running cycle to stop before its next city."""
        self._cancel_event.set()

    async def wait_idle(self):
        """Return once no cycle holds the lock; the in-flight city finishes first."""
        async with self._lock:
            pass

    async def fetch_with_retry(self, city: str) -> Measurement:
        """
        Fetch one city, retrying transient failures.

        Network failures back off exponentially up to ``retry_attempts``.
        A rate limit waits out the cooldown and is retried once.

        Raises:
            NetworkError: Retry budget exhausted
            RateLimitError: Rate limited again after the cooldown
            InvalidDataError: Unusable payload, never retried
        """
        failures = 0
        delay = self.settings.retry_base_delay_seconds
        cooled_down = False

        while True:
            try:
                return await asyncio.wait_for(
                    self.fetcher.fetch_city(city),
                    timeout=self.settings.fetch_timeout_seconds
                )
            except RateLimitError as e:
                if cooled_down:
                    raise
                cooled_down = True
                cooldown = max(self.settings.rate_limit_cooldown_seconds, e.retry_after or 0)
                self.logger.warning(f"Rate limited on {city}, cooling down {cooldown:.0f}s")
                await self._sleep(cooldown)
                continue
            except asyncio.TimeoutError:
                error = NetworkError(
                    f"Fetch for {city} exceeded {self.settings.fetch_timeout_seconds}s",
                    api_name="WAQI",
                    details={"city": city}
                )
            except NetworkError as e:
                error = e

            failures += 1
            if failures >= self.settings.retry_attempts:
                raise error

            self.logger.warning(
                f"Attempt {failures} for {city} failed ({error.message}), retrying in {delay:.1f}s"
            )
            await self._sleep(delay)
            delay *= self.settings.retry_multiplier

    def _backfill_dates(self, now: datetime) -> List[date]:
        """The backfill_days dates ending yesterday."""
        today = now.astimezone(timezone.utc).date()
        return [today - timedelta(days=offset) for offset in range(1, self.settings.backfill_days + 1)]

    async def _ingest_city(self, city: str, mode: IngestionMode, now: datetime) -> int:
        if mode == IngestionMode.BACKFILL:
            missing = sorted(set(self._backfill_dates(now)) - self.gateway.existing_dates(city))
            if not missing:
                self.logger.info(f"Already have all backfill dates for {city}")
                return 0

            self.logger.info(f"Backfilling {len(missing)} days for {city}")
            current = await self.fetch_with_retry(city)
            batch = [
                current.model_copy(update={
                    "observed_at": datetime.combine(day, time.min, tzinfo=timezone.utc)
                })
                for day in missing
            ]
        else:
            batch = [await self.fetch_with_retry(city)]

        result = self.gateway.upsert_batch(batch)
        return result["inserted"]

    async def run_ingestion_cycle(
        self,
        cities: Sequence[str],
        mode: IngestionMode = IngestionMode.POLL,
        now: Optional[datetime] = None
    ) -> IngestionReport:
        """
        Run one ingestion pass over the given cities, sequentially.

        A failing city is recorded and the cycle moves on. Cancellation is
        checked before each city.

        Args:
            cities: Cities to ingest
            mode: POLL stores the latest reading, BACKFILL fills missing dates
            now: Reference time for backfill dates

        Returns:
            Report of succeeded and failed cities

        Raises:
            IngestionInProgressError: Another cycle is running
            IngestionCycleError: No city succeeded
        """
        if not cities:
            raise ValidationError("No cities to ingest")
        if self._lock.locked():
            raise IngestionInProgressError()

        async with self._lock:
            self._cancel_event.clear()
            now = now or datetime.now(timezone.utc)
            report = IngestionReport(mode=mode, started_at=datetime.now(timezone.utc))
            self.logger.info(f"Starting {mode.value} ingestion for {len(cities)} cities")

            for city in cities:
                if self._cancel_event.is_set():
                    self.logger.warning("Ingestion cycle cancelled")
                    report.cancelled = True
                    break

                try:
                    stored = await self._ingest_city(city, mode, now)
                except AirQualityException as e:
                    self.logger.error(f"Ingestion failed for {city}: {e.message}")
                    report.failed.append(IngestionFailure(
                        city=city, reason=e.message, error_type=type(e).__name__
                    ))
                    continue
                except Exception as e:
                    self.logger.exception(f"Unexpected error ingesting {city}: {e}")
                    report.failed.append(IngestionFailure(
                        city=city, reason=str(e), error_type=type(e).__name__
                    ))
                    continue

                report.succeeded.append(city)
                report.stored += stored
                self.logger.info(f"Ingested {city} ({stored} rows)")

            report.finished_at = datetime.now(timezone.utc)
            self.logger.info(
                f"Ingestion cycle {report.status}: {len(report.succeeded)} succeeded, "
                f"{len(report.failed)} failed"
            )

        if not report.succeeded and not report.cancelled:
            raise IngestionCycleError(report)
        return report

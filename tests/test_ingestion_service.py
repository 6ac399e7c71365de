"""Tests for the ingestion service."""
import asyncio
import pytest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

from conftest import SUPPORTED_CITIES, fetch_rows, make_measurement
from airhealth.config import Settings
from airhealth.exceptions import (
    IngestionCycleError,
    IngestionInProgressError,
    InvalidDataError,
    NetworkError,
    RateLimitError,
    StoreError,
    ValidationError,
)
from airhealth.models import IngestionMode
from airhealth.services.ingestion_service import IngestionService
from airhealth.storage.gateway import MeasurementStoreGateway

ALL_CITIES = list(SUPPORTED_CITIES)
NOW = datetime(2024, 5, 31, 15, tzinfo=timezone.utc)


def network_error(city="Boston"):
    return NetworkError("connection reset", api_name="WAQI", details={"city": city})


def fetcher_for(outcomes):
    """AsyncMock fetcher; outcomes maps city -> exception, anything else succeeds."""
    async def fetch_city(city):
        outcome = outcomes.get(city)
        if isinstance(outcome, Exception):
            raise outcome
        return make_measurement(city=city, observed_at=NOW, pm25=10.0)

    return AsyncMock(fetch_city=AsyncMock(side_effect=fetch_city))


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def gateway(db):
    return MeasurementStoreGateway(db)


class TestFetchWithRetry:
    """Test retry, backoff and rate-limit cooldown."""

    @pytest.mark.asyncio
    async def test_backoff_delays_double(self, gateway, settings, sleep):
        """Two network failures then success waits 1s then 2s."""
        fetcher = Mock()
        fetcher.fetch_city = AsyncMock(side_effect=[
            network_error(), network_error(), make_measurement(city="Boston")
        ])
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        measurement = await service.fetch_with_retry("Boston")

        assert measurement.city == "Boston"
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, gateway, settings, sleep):
        fetcher = Mock()
        fetcher.fetch_city = AsyncMock(side_effect=network_error())
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        with pytest.raises(NetworkError):
            await service.fetch_with_retry("Boston")

        assert fetcher.fetch_city.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_waits_cooldown_then_retries(self, gateway, settings, sleep):
        fetcher = Mock()
        fetcher.fetch_city = AsyncMock(side_effect=[
            RateLimitError("slow down"), make_measurement(city="Miami")
        ])
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        measurement = await service.fetch_with_retry("Miami")

        assert measurement.city == "Miami"
        sleep.assert_awaited_once_with(30.0)

    @pytest.mark.asyncio
    async def test_rate_limit_honours_longer_retry_after(self, gateway, settings, sleep):
        fetcher = Mock()
        fetcher.fetch_city = AsyncMock(side_effect=[
            RateLimitError("slow down", retry_after=45), make_measurement(city="Miami")
        ])
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        await service.fetch_with_retry("Miami")
        sleep.assert_awaited_once_with(45)

    @pytest.mark.asyncio
    async def test_second_rate_limit_propagates(self, gateway, settings, sleep):
        fetcher = Mock()
        fetcher.fetch_city = AsyncMock(side_effect=RateLimitError("slow down"))
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        with pytest.raises(RateLimitError):
            await service.fetch_with_retry("Miami")
        assert fetcher.fetch_city.await_count == 2

    @pytest.mark.asyncio
    async def test_invalid_data_not_retried(self, gateway, settings, sleep):
        fetcher = Mock()
        fetcher.fetch_city = AsyncMock(side_effect=InvalidDataError("no pollutant"))
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        with pytest.raises(InvalidDataError):
            await service.fetch_with_retry("Miami")
        assert fetcher.fetch_city.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slow_fetch_times_out(self, gateway, sleep):
        """A fetch exceeding the per-city timeout is a network failure."""
        settings = Settings(waqi_api_token="t", fetch_timeout_seconds=0.01, retry_attempts=1)

        async def slow_fetch(city):
            await asyncio.sleep(1)

        fetcher = Mock()
        fetcher.fetch_city = AsyncMock(side_effect=slow_fetch)
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        with pytest.raises(NetworkError):
            await service.fetch_with_retry("Dallas")


class TestIngestionCycle:
    """Test a full pass over all cities."""

    @pytest.mark.asyncio
    async def test_rate_limited_cities_do_not_abort_cycle(self, db, gateway, settings, sleep):
        """Nine cities with two rate-limited yields 7 succeeded and 2 failed."""
        limited = {
            "Calgary": RateLimitError("Over quota"),
            "Houston": RateLimitError("Over quota"),
        }
        service = IngestionService(fetcher_for(limited), gateway, settings, sleep=sleep)

        report = await service.run_ingestion_cycle(ALL_CITIES)

        assert len(report.succeeded) == 7
        assert len(report.failed) == 2
        assert {f.city for f in report.failed} == {"Calgary", "Houston"}
        assert all(f.error_type == "RateLimitError" for f in report.failed)
        assert report.status == "partial"
        assert report.stored == 7
        assert report.finished_at is not None

    @pytest.mark.asyncio
    async def test_all_cities_succeed(self, gateway, settings, sleep):
        service = IngestionService(fetcher_for({}), gateway, settings, sleep=sleep)

        report = await service.run_ingestion_cycle(ALL_CITIES)

        assert report.status == "completed"
        assert report.succeeded == ALL_CITIES

    @pytest.mark.asyncio
    async def test_cities_fetched_sequentially_in_order(self, gateway, settings, sleep):
        fetcher = fetcher_for({})
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        await service.run_ingestion_cycle(ALL_CITIES)

        called = [c.args[0] for c in fetcher.fetch_city.await_args_list]
        assert called == ALL_CITIES

    @pytest.mark.asyncio
    async def test_zero_successes_raises(self, gateway, settings, sleep):
        outcomes = {city: InvalidDataError("no pollutant") for city in ALL_CITIES}
        service = IngestionService(fetcher_for(outcomes), gateway, settings, sleep=sleep)

        with pytest.raises(IngestionCycleError) as exc_info:
            await service.run_ingestion_cycle(ALL_CITIES)

        assert len(exc_info.value.report.failed) == 9
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_unexpected_error_captured(self, gateway, settings, sleep):
        service = IngestionService(
            fetcher_for({"Boston": RuntimeError("boom")}), gateway, settings, sleep=sleep
        )

        report = await service.run_ingestion_cycle(["Boston", "Toronto"])

        assert report.succeeded == ["Toronto"]
        assert report.failed[0].error_type == "RuntimeError"

    @pytest.mark.asyncio
    async def test_store_failure_captured(self, settings, sleep):
        gateway = Mock()
        gateway.upsert_batch = Mock(side_effect=[StoreError("disk full"), {"inserted": 1, "rejected": 0}])
        service = IngestionService(fetcher_for({}), gateway, settings, sleep=sleep)

        report = await service.run_ingestion_cycle(["Boston", "Toronto"])

        assert report.succeeded == ["Toronto"]
        assert report.failed[0].city == "Boston"
        assert report.failed[0].error_type == "StoreError"

    @pytest.mark.asyncio
    async def test_empty_city_list_rejected(self, gateway, settings, sleep):
        service = IngestionService(fetcher_for({}), gateway, settings, sleep=sleep)
        with pytest.raises(ValidationError):
            await service.run_ingestion_cycle([])

    @pytest.mark.asyncio
    async def test_concurrent_cycle_rejected(self, gateway, settings, sleep):
        """A second cycle while one runs is refused, not queued."""
        release = asyncio.Event()

        async def blocking_fetch(city):
            await release.wait()
            return make_measurement(city=city, observed_at=NOW)

        fetcher = Mock()
        fetcher.fetch_city = AsyncMock(side_effect=blocking_fetch)
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        first = asyncio.create_task(service.run_ingestion_cycle(["Boston"]))
        await asyncio.sleep(0)
        assert service.is_running

        with pytest.raises(IngestionInProgressError):
            await service.run_ingestion_cycle(["Toronto"])

        release.set()
        report = await first
        assert report.succeeded == ["Boston"]
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_city(self, gateway, settings, sleep):
        service = None

        async def fetch_then_cancel(city):
            service.cancel()
            return make_measurement(city=city, observed_at=NOW)

        fetcher = Mock()
        fetcher.fetch_city = AsyncMock(side_effect=fetch_then_cancel)
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        report = await service.run_ingestion_cycle(ALL_CITIES)

        assert report.cancelled
        assert report.succeeded == ["Boston"]
        assert report.status == "partial"
        assert fetcher.fetch_city.await_count == 1

    @pytest.mark.asyncio
    async def test_poll_overwrites_same_day(self, db, gateway, settings, sleep):
        fetcher = Mock()
        fetcher.fetch_city = AsyncMock(side_effect=[
            make_measurement(city="Toronto", observed_at=NOW, pm25=10.0),
            make_measurement(city="Toronto", observed_at=NOW + timedelta(hours=2), pm25=25.0),
        ])
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        await service.run_ingestion_cycle(["Toronto"])
        await service.run_ingestion_cycle(["Toronto"])

        rows = fetch_rows(db, "SELECT pm25 FROM measurements WHERE city = 'Toronto'")
        assert len(rows) == 1
        assert rows[0][0] == 25.0


class TestBackfill:
    """Test backfill of missing dates."""

    @pytest.mark.asyncio
    async def test_fills_only_missing_dates(self, db, gateway, settings, sleep):
        existing = [
            make_measurement(city="Toronto", observed_at=datetime(2024, 5, day, 12, tzinfo=timezone.utc), pm25=8.0)
            for day in range(1, 29)
        ]
        db.upsert_measurements(existing)

        fetcher = fetcher_for({})
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        report = await service.run_ingestion_cycle(["Toronto"], mode=IngestionMode.BACKFILL, now=NOW)

        assert report.stored == 2
        assert fetcher.fetch_city.await_count == 1
        assert db.existing_dates("Toronto") == {date(2024, 5, day) for day in range(1, 31)}

        filled = db.latest_measurement("Toronto")
        assert filled.observed_at == datetime(2024, 5, 30, tzinfo=timezone.utc)
        assert filled.pm25 == 10.0

        untouched = db.measurements_between(
            "Toronto",
            datetime(2024, 5, 1, tzinfo=timezone.utc),
            datetime(2024, 5, 1, 23, tzinfo=timezone.utc),
        )
        assert untouched[0].pm25 == 8.0

    @pytest.mark.asyncio
    async def test_nothing_missing_skips_fetch(self, db, gateway, settings, sleep):
        db.upsert_measurements([
            make_measurement(city="Boston", observed_at=datetime(2024, 5, day, tzinfo=timezone.utc))
            for day in range(1, 31)
        ])
        fetcher = fetcher_for({})
        service = IngestionService(fetcher, gateway, settings, sleep=sleep)

        report = await service.run_ingestion_cycle(["Boston"], mode=IngestionMode.BACKFILL, now=NOW)

        fetcher.fetch_city.assert_not_awaited()
        assert report.succeeded == ["Boston"]
        assert report.stored == 0

    @pytest.mark.asyncio
    async def test_backfill_window_ends_yesterday(self, gateway, settings, sleep):
        service = IngestionService(fetcher_for({}), gateway, settings, sleep=sleep)
        dates = service._backfill_dates(NOW)

        assert len(dates) == 30
        assert max(dates) == date(2024, 5, 30)
        assert min(dates) == date(2024, 5, 1)

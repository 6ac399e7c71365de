"""Shared fixtures for the test suite."""
import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from airhealth.config import CityConfig, Settings
from airhealth.models import Measurement, UserContext
from airhealth.storage.database import Database

CONFIG_DIR = Path(__file__).parent.parent / "config"
SUPPORTED_CITIES = CityConfig(CONFIG_DIR).list_cities()


def fetch_rows(db: Database, sql: str, params: Optional[list] = None) -> List[tuple]:
    """Raw SQL read against the store's connection."""
    return db.conn.execute(sql, params or []).fetchall()


def make_measurement(city: str = "Toronto", observed_at: Optional[datetime] = None, **values) -> Measurement:
    """Measurement with a default PM2.5 reading unless one is given."""
    if not values:
        values = {"pm25": 12.0}
    return Measurement(
        city=city,
        observed_at=observed_at or datetime(2024, 5, 1, 12, tzinfo=timezone.utc),
        **values
    )


def daily_series(values: Iterable[Optional[float]], city: str = "Toronto", end: Optional[datetime] = None) -> List[Measurement]:
    """One measurement per day ascending, the last one at ``end``."""
    values = list(values)
    end = end or datetime(2024, 5, 31, 12, tzinfo=timezone.utc)
    return [
        Measurement(city=city, observed_at=end - timedelta(days=len(values) - 1 - i), pm25=v)
        for i, v in enumerate(values)
    ]


@pytest.fixture
def settings():
    """Settings with a token and the default retry policy."""
    return Settings(
        waqi_api_token="test-token",
        config_path=CONFIG_DIR,
        request_delay_seconds=2.0,
        rate_limit_cooldown_seconds=30.0,
        retry_attempts=3,
        retry_base_delay_seconds=1.0,
        retry_multiplier=2.0,
        backfill_days=30,
    )


@pytest.fixture
def city_config():
    return CityConfig(CONFIG_DIR)


@pytest.fixture
def db():
    """In-memory DuckDB database."""
    database = Database(":memory:")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def senior():
    return UserContext(city="Toronto", age=70)

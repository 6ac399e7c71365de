"""DuckDB store for measurements and risk algorithm definitions."""
import duckdb
from pathlib import Path
from typing import Iterable, List, Optional, Set, Union
from datetime import date, datetime, timezone

from airhealth.exceptions import StoreError
from airhealth.logging_config import get_logger
from airhealth.models import AlgorithmDefinition, Measurement

MEASUREMENT_COLUMNS = (
    "city", "obs_date", "observed_at", "pm25", "pm10", "o3", "co", "no2", "so2",
    "temperature", "air_quality_index", "station_id",
)

ALGORITHM_COLUMNS = (
    "code", "description", "family", "strategy", "period_days", "threshold",
    "base_ratio", "age_min", "age_max", "age_group",
)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Database:
    """DuckDB store for measurements and risk algorithm definitions."""

    def __init__(self, db_path: Union[Path, str]):
        """
        Initialize database connection.

        Args:
            db_path: Path to DuckDB database file, or ":memory:"
        """
        self.db_path = db_path
        self.conn: Optional[duckdb.DuckDBPyConnection] = None
        self._closed = False
        self.logger = get_logger("storage.database")

        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)

    def connect(self):
        """Open database connection."""
        if self.conn is None:
            self.conn = duckdb.connect(str(self.db_path))
            self._closed = False
            self._setup_schema()

    def close(self):
        """Close database connection. Later reads and writes raise StoreError."""
        if self.conn:
            self.conn.close()
            self.conn = None
        self._closed = True

    def _setup_schema(self):
        """Create measurement and algorithm tables."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS measurements (
                city VARCHAR NOT NULL,
                obs_date DATE NOT NULL,
                observed_at TIMESTAMP NOT NULL,
                pm25 DOUBLE,
                pm10 DOUBLE,
                o3 DOUBLE,
                co DOUBLE,
                no2 DOUBLE,
                so2 DOUBLE,
                temperature DOUBLE,
                air_quality_index DOUBLE,
                station_id VARCHAR,
                PRIMARY KEY (city, obs_date)
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS risk_algorithms (
                code VARCHAR PRIMARY KEY,
                description VARCHAR,
                family VARCHAR,
                strategy VARCHAR NOT NULL,
                period_days INTEGER NOT NULL,
                threshold DOUBLE NOT NULL,
                base_ratio DOUBLE NOT NULL,
                age_min INTEGER,
                age_max INTEGER,
                age_group VARCHAR
            )
        """)

    def _ensure_connected(self):
        if self._closed:
            raise StoreError("Database is closed", details={"path": str(self.db_path)})
        if not self.conn:
            self.connect()

    def upsert_measurements(self, measurements: Iterable[Measurement]) -> int:
        """
        Insert or overwrite measurements keyed by (city, obs_date).

        The batch runs in one transaction.

        Returns:
            Number of rows written
        """
        self._ensure_connected()

        rows = [
            (
                m.city, m.observed_date, _to_naive_utc(m.observed_at), m.pm25, m.pm10,
                m.o3, m.co, m.no2, m.so2, m.temperature, m.air_quality_index, m.station_id,
            )
            for m in measurements
        ]
        if not rows:
            return 0

        columns = ", ".join(MEASUREMENT_COLUMNS)
        placeholders = ", ".join("?" for _ in MEASUREMENT_COLUMNS)
        updates = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in MEASUREMENT_COLUMNS if col not in ("city", "obs_date")
        )
        sql = f"""
            INSERT INTO measurements ({columns}) VALUES ({placeholders})
            ON CONFLICT (city, obs_date) DO UPDATE SET {updates}
        """

        try:
            self.conn.execute("BEGIN TRANSACTION")
            self.conn.executemany(sql, rows)
            self.conn.execute("COMMIT")
            self.logger.debug(f"Upserted {len(rows)} measurement rows")
        except duckdb.Error as e:
            self.conn.execute("ROLLBACK")
            self.logger.error(f"Measurement upsert rolled back: {e}")
            raise StoreError(
                "Failed to upsert measurements",
                details={"error": str(e), "rows": len(rows)}
            ) from e

        return len(rows)

    def existing_dates(self, city: str) -> Set[date]:
        """Dates already stored for a city."""
        self._ensure_connected()
        rows = self.conn.execute(
            "SELECT obs_date FROM measurements WHERE city = ?", [city]
        ).fetchall()
        return {row[0] for row in rows}

    def _row_to_measurement(self, row: tuple) -> Measurement:
        record = dict(zip(MEASUREMENT_COLUMNS, row))
        record.pop("obs_date")
        record["observed_at"] = record["observed_at"].replace(tzinfo=timezone.utc)
        return Measurement(**record)

    def measurements_between(self, city: str, start: datetime, end: datetime) -> List[Measurement]:
        """Measurements for a city within [start, end], ascending by time."""
        self._ensure_connected()
        columns = ", ".join(MEASUREMENT_COLUMNS)
        rows = self.conn.execute(
            f"""
            SELECT {columns} FROM measurements
            WHERE city = ? AND observed_at BETWEEN ? AND ?
            ORDER BY observed_at
            """,
            [city, _to_naive_utc(start), _to_naive_utc(end)]
        ).fetchall()
        return [self._row_to_measurement(row) for row in rows]

    def latest_measurement(self, city: str) -> Optional[Measurement]:
        """Most recent measurement for a city."""
        self._ensure_connected()
        columns = ", ".join(MEASUREMENT_COLUMNS)
        row = self.conn.execute(
            f"SELECT {columns} FROM measurements WHERE city = ? ORDER BY observed_at DESC LIMIT 1",
            [city]
        ).fetchone()
        return self._row_to_measurement(row) if row else None

    def upsert_algorithms(self, definitions: Iterable[AlgorithmDefinition]) -> int:
        """Insert or replace algorithm definitions by code."""
        self._ensure_connected()
        rows = [
            (
                d.code, d.description, d.family, d.strategy.value, d.period_days,
                d.threshold, d.base_ratio, d.age_min, d.age_max, d.age_group,
            )
            for d in definitions
        ]
        if not rows:
            return 0

        columns = ", ".join(ALGORITHM_COLUMNS)
        placeholders = ", ".join("?" for _ in ALGORITHM_COLUMNS)
        try:
            self.conn.executemany(
                f"INSERT OR REPLACE INTO risk_algorithms ({columns}) VALUES ({placeholders})",
                rows
            )
        except duckdb.Error as e:
            raise StoreError("Failed to store algorithm definitions", details={"error": str(e)}) from e
        return len(rows)

    def load_algorithms(self) -> List[AlgorithmDefinition]:
        """All algorithm definitions."""
        self._ensure_connected()
        columns = ", ".join(ALGORITHM_COLUMNS)
        rows = self.conn.execute(
            f"SELECT {columns} FROM risk_algorithms ORDER BY code"
        ).fetchall()
        return [AlgorithmDefinition(**dict(zip(ALGORITHM_COLUMNS, row))) for row in rows]


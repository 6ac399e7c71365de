"""Data models for measurements, risk algorithms and scores."""
from datetime import date, datetime
from enum import Enum
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


POLLUTANT_FIELDS = ("pm25", "pm10", "o3", "co", "no2", "so2")

# A measurement is reportable only if one of these is present
REPORTABLE_FIELDS = ("pm25", "pm10", "air_quality_index")


class Measurement(BaseModel):
    """One provider reading for a city. Absent pollutants are None, never 0."""

    model_config = ConfigDict(frozen=True)

    city: str
    observed_at: datetime
    pm25: Optional[float] = None
    pm10: Optional[float] = None
    o3: Optional[float] = None
    co: Optional[float] = None
    no2: Optional[float] = None
    so2: Optional[float] = None
    temperature: Optional[float] = None
    air_quality_index: Optional[float] = None
    station_id: Optional[str] = None

    @property
    def observed_date(self) -> date:
        """Date part of the observation; the dedupe key with the city."""
        return self.observed_at.date()

    @property
    def key(self) -> tuple:
        return (self.city, self.observed_date)

    def is_reportable(self) -> bool:
        return any(getattr(self, name) is not None for name in REPORTABLE_FIELDS)


class ScoringStrategy(str, Enum):
    """How an adjusted rolling average becomes a risk score."""
    LINEAR_RATIO = "linear_ratio"
    EXPONENTIAL = "exponential"


class AlgorithmDefinition(BaseModel):
    """Named, parameterized risk formula with age eligibility."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., min_length=1)
    description: str = ""
    family: str = "anxiety"
    strategy: ScoringStrategy = ScoringStrategy.LINEAR_RATIO
    period_days: int = Field(..., ge=1)
    threshold: float = Field(..., gt=0)
    base_ratio: float = Field(default=1.0, ge=0)
    age_min: Optional[int] = Field(default=None, ge=0)
    age_max: Optional[int] = Field(default=None, ge=0)
    age_group: Optional[Literal["65+"]] = None

    @model_validator(mode="after")
    def _check_age_range(self) -> "AlgorithmDefinition":
        if self.age_min is not None and self.age_max is not None and self.age_min > self.age_max:
            raise ValueError("age_min must not exceed age_max")
        return self


class UserContext(BaseModel):
    """Per-request user profile. Never persisted by the engine."""

    city: str
    age: int = Field(..., ge=0, le=130)
    base_risk_level: int = Field(default=5, ge=1, le=10)
    has_hvac: bool = False
    has_air_purifier: bool = False
    windows_open: bool = False
    non_toxic_products: bool = False
    recent_filter_change: bool = False
    activity_level: int = Field(default=5, ge=1, le=10)
    sleep_level: int = Field(default=3, ge=1, le=5)


class RiskPoint(BaseModel):
    """One scored point of a risk series."""
    timestamp: datetime
    raw_value: Optional[float]
    rolling_average: float
    adjusted_value: float
    score: float


class HealthLevel(str, Enum):
    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"


class DomainHealthScore(BaseModel):
    """Normalized 0-100 score for one health domain."""
    domain: Literal["respiratory", "cardiovascular", "sleep"]
    score: float = Field(ge=0.0, le=100.0)
    level: HealthLevel


class IngestionMode(str, Enum):
    POLL = "poll"
    BACKFILL = "backfill"


class IngestionFailure(BaseModel):
    """A city that failed within a cycle."""
    city: str
    reason: str
    error_type: str


class IngestionReport(BaseModel):
    """Outcome of one ingestion cycle."""
    mode: IngestionMode = IngestionMode.POLL
    started_at: datetime
    finished_at: Optional[datetime] = None
    succeeded: List[str] = Field(default_factory=list)
    failed: List[IngestionFailure] = Field(default_factory=list)
    stored: int = 0
    cancelled: bool = False

    @property
    def status(self) -> str:
        if not self.succeeded:
            return "failed"
        if self.failed or self.cancelled:
            return "partial"
        return "completed"

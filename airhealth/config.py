"""Configuration management using Pydantic settings."""
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml

from airhealth.exceptions import ConfigurationError, ValidationError
from airhealth.models import AlgorithmDefinition, ScoringStrategy


class GuidelineConfig(BaseModel):
    """WHO reference concentrations in µg/m³."""

    pm25_24h: float = Field(default=15.0, gt=0)
    pm25_long_term: float = Field(default=10.0, gt=0)
    pm10_24h: float = Field(default=45.0, gt=0)

    def threshold_for(self, strategy: ScoringStrategy) -> float:
        """Default PM2.5 threshold for a scoring strategy."""
        if strategy == ScoringStrategy.EXPONENTIAL:
            return self.pm25_long_term
        return self.pm25_24h


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True)

    # API Keys
    waqi_api_token: str = Field(default="", alias="WAQI_API_TOKEN")
    waqi_base_url: str = Field(default="https://api.waqi.info")

    # Paths
    database_path: Path = Field(default=Path("data/airhealth.db"))
    config_path: Path = Field(default=Path("config"))

    # Application
    log_level: str = Field(default="INFO")
    log_file: Optional[Path] = Field(default=None)

    # Provider rate limits and retry policy
    request_delay_seconds: float = Field(default=2.0, ge=0)
    rate_limit_cooldown_seconds: float = Field(default=30.0, ge=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1)
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    fetch_timeout_seconds: float = Field(default=30.0, gt=0)

    # Scheduling
    ingest_cron_hours: str = Field(default="0,12")
    startup_delay_seconds: float = Field(default=5.0, ge=0)
    backfill_days: int = Field(default=30, ge=1)

    # WHO guidelines
    who_pm25_24h: float = Field(default=15.0, gt=0)
    who_pm25_long_term: float = Field(default=10.0, gt=0)
    who_pm10_24h: float = Field(default=45.0, gt=0)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    @property
    def guidelines(self) -> GuidelineConfig:
        return GuidelineConfig(
            pm25_24h=self.who_pm25_24h,
            pm25_long_term=self.who_pm25_long_term,
            pm10_24h=self.who_pm10_24h,
        )


def load_settings(**overrides: Any) -> Settings:
    """Build settings from the environment, applying explicit overrides."""
    return Settings(**overrides)


class CityConfig:
    """Supported-city configuration loaded from YAML."""

    def __init__(self, config_path: Path):
        self.config_path = config_path / "cities.yaml"
        self._cities = self._load_cities()

    def _load_cities(self) -> Dict[str, Dict[str, str]]:
        """Load city configurations from YAML."""
        if not self.config_path.exists():
            raise ConfigurationError(
                "City configuration not found",
                details={"path": str(self.config_path)}
            )

        with open(self.config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict) or not data:
            raise ConfigurationError(
                "cities.yaml must map city names to settings",
                details={"path": str(self.config_path)}
            )
        return {name: dict(cfg or {}) for name, cfg in data.items()}

    def get_city(self, city: str) -> Dict[str, str]:
        """Get configuration for a specific city."""
        if city not in self._cities:
            raise ValidationError(
                f"City '{city}' is not supported",
                details={"supported": self.list_cities()}
            )
        return self._cities[city]

    def feed_for(self, city: str) -> str:
        """Provider feed keyword for a city."""
        return self.get_city(city).get("feed") or city.lower()

    def list_cities(self) -> List[str]:
        """List all supported city names."""
        return list(self._cities.keys())


def load_algorithm_definitions(
    path: Path,
    guidelines: Optional[GuidelineConfig] = None
) -> List[AlgorithmDefinition]:
    """
    Load the risk algorithm seed catalog from YAML.

    Definitions without a threshold receive the WHO PM2.5 guideline that
    matches their scoring strategy.

    Args:
        path: Path to algorithms.yaml
        guidelines: WHO guideline constants

    Returns:
        List of algorithm definitions
    """
    guidelines = guidelines or GuidelineConfig()

    if not path.exists():
        raise ConfigurationError(
            "Algorithm catalog not found",
            details={"path": str(path)}
        )

    with open(path, 'r') as f:
        raw = yaml.safe_load(f) or []

    definitions = []
    for entry in raw:
        strategy = ScoringStrategy(entry.get("strategy", ScoringStrategy.LINEAR_RATIO.value))
        if entry.get("threshold") is None:
            entry = {**entry, "threshold": guidelines.threshold_for(strategy)}
        definitions.append(AlgorithmDefinition(**entry))

    return definitions

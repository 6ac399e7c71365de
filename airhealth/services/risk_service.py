"""Analysis facade over stored measurements."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from airhealth.analytics.health import CompositeHealthScorer
from airhealth.analytics.indoor import achievable_reduction_percent, apply_achievable_reduction
from airhealth.analytics.risk import AlgorithmRegistry, is_eligible, score_series
from airhealth.analytics.rolling import COMPARISON_PERIODS, period_comparison
from airhealth.config import CityConfig, GuidelineConfig
from airhealth.exceptions import DataNotFoundError, ValidationError
from airhealth.logging_config import get_logger
from airhealth.models import AlgorithmDefinition, RiskPoint, UserContext
from airhealth.storage.base import MeasurementStore


def _as_utc(value: Optional[datetime]) -> datetime:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RiskEngine:
    """
    Read-only scoring over whatever is already persisted.

    Holds its configuration and registry explicitly; never calls the network.
    """

    def __init__(
        self,
        store: MeasurementStore,
        registry: AlgorithmRegistry,
        city_config: CityConfig,
        guidelines: Optional[GuidelineConfig] = None,
        pollutant: str = "pm25"
    ):
        self.store = store
        self.registry = registry
        self.city_config = city_config
        self.guidelines = guidelines or GuidelineConfig()
        self.health_scorer = CompositeHealthScorer(self.guidelines)
        self.pollutant = pollutant
        self.logger = get_logger("services.risk")

    def _validate(self, city: str, user: Optional[UserContext]):
        self.city_config.get_city(city)
        if user is None:
            raise ValidationError("User context is required")

    def _select_algorithms(self, user: UserContext, codes: Optional[Sequence[str]]) -> List[AlgorithmDefinition]:
        if codes is None:
            return self.registry.eligible_algorithms(user.age)

        selected = []
        for code in codes:
            definition = self.registry.get(code)
            if not is_eligible(definition, user.age):
                raise ValidationError(
                    f"User is not eligible for algorithm '{code}'",
                    details={"code": code, "age": user.age}
                )
            selected.append(definition)
        return selected

    def risk_series(
        self,
        city: str,
        days: int,
        user: UserContext,
        codes: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, List[RiskPoint]]:
        """
        Risk scores over the last ``days`` days for each algorithm.

        History reaching back one extra longest period is loaded so the
        first points in the window have full rolling averages.

        Args:
            city: Supported city
            days: Length of the returned window
            user: User context
            codes: Algorithm codes; all eligible algorithms when omitted
            now: End of the window, UTC if naive

        Returns:
            Algorithm code -> time-ordered risk points
        """
        self._validate(city, user)
        if days < 1:
            raise ValidationError("days must be at least 1", details={"days": days})

        algorithms = self._select_algorithms(user, codes)
        if not algorithms:
            return {}

        now = _as_utc(now)
        window_start = now - timedelta(days=days)
        history_days = max(a.period_days for a in algorithms)
        series = self.store.measurements_between(city, window_start - timedelta(days=history_days), now)

        results = {}
        for definition in algorithms:
            points = score_series(definition, series, user, self.pollutant)
            results[definition.code] = [p for p in points if p.timestamp > window_start]

        self.logger.debug(f"Scored {len(results)} algorithms for {city} over {days} days")
        return results

    def period_comparison(
        self,
        city: str,
        now: Optional[datetime] = None,
        periods: Optional[Dict[str, int]] = None
    ) -> Dict[str, Dict[str, Optional[float]]]:
        """
        Current versus previous period means of the engine's pollutant.

        Loads two lengths of the longest period so every previous window is
        covered.
        """
        self.city_config.get_city(city)
        periods = periods or COMPARISON_PERIODS
        now = _as_utc(now)

        span = timedelta(days=2 * max(periods.values()))
        series = self.store.measurements_between(city, now - span, now)
        return period_comparison(series, now, self.pollutant, periods)

    def health_scores(self, city: str, user: UserContext) -> Dict[str, Any]:
        """
        Domain scores, recommendations and the projected effect of the
        user's behavioural changes for the latest reading of a city.
        """
        self._validate(city, user)

        latest = self.store.latest_measurement(city)
        if latest is None:
            raise DataNotFoundError(f"No measurements stored for {city}", details={"city": city})

        scores = self.health_scorer.score_domains(latest, user)
        return {
            "observed_at": latest.observed_at,
            "scores": scores,
            "recommendations": self.health_scorer.recommendations(scores),
            "achievable_reduction_percent": achievable_reduction_percent(user),
            "projected_scores": {
                s.domain: round(apply_achievable_reduction(s.score, user), 1) for s in scores
            },
        }

"""Risk algorithm registry and scoring strategies."""
import math
from types import MappingProxyType
from typing import Iterable, List, Mapping, Sequence

from airhealth.analytics.indoor import adjust_for_user
from airhealth.analytics.rolling import NO_DATA, rolling_averages
from airhealth.exceptions import UnknownAlgorithmError, ValidationError
from airhealth.logging_config import get_logger
from airhealth.models import (
    AlgorithmDefinition,
    Measurement,
    RiskPoint,
    ScoringStrategy,
    UserContext,
)
from airhealth.storage.base import AlgorithmStore

NEUTRAL_RISK_LEVEL = 5
RISK_LEVEL_STEP = 0.1

logger = get_logger("analytics.risk")


def user_modifier(base_risk_level: int) -> float:
    """Level 5 is neutral; each level above or below shifts the score by 10%."""
    return 1 + (base_risk_level - NEUTRAL_RISK_LEVEL) * RISK_LEVEL_STEP


def linear_ratio_score(adjusted_value: float, definition: AlgorithmDefinition, base_risk_level: int) -> float:
    """(adjusted / threshold) * base_ratio * user modifier."""
    return (adjusted_value / definition.threshold) * definition.base_ratio * user_modifier(base_risk_level)


def exponential_score(adjusted_value: float, threshold: float) -> float:
    """
    Ratio to threshold, amplified by log10 of the excess above it.

    Used for cognitive and other long-exposure algorithms.
    """
    base = adjusted_value / threshold
    if adjusted_value > threshold:
        return base * (1 + math.log10(adjusted_value / threshold))
    return base


def is_eligible(definition: AlgorithmDefinition, age: int) -> bool:
    """Age eligibility of a user for an algorithm."""
    if definition.age_group == "65+":
        return age >= 65
    if definition.age_min is not None and definition.age_max is not None:
        return definition.age_min <= age <= definition.age_max
    return True


class AlgorithmRegistry:
    """Read-only catalog of algorithm definitions keyed by code."""

    def __init__(self, definitions: Iterable[AlgorithmDefinition] = ()):
        self._algorithms: Mapping[str, AlgorithmDefinition] = MappingProxyType({})
        self.replace(definitions)

    def replace(self, definitions: Iterable[AlgorithmDefinition]):
        """Swap in a complete new catalog in one assignment."""
        catalog = {}
        for definition in definitions:
            if definition.code in catalog:
                raise ValidationError(
                    f"Duplicate algorithm code '{definition.code}'",
                    details={"code": definition.code}
                )
            catalog[definition.code] = definition
        self._algorithms = MappingProxyType(catalog)

    def refresh(self, store: AlgorithmStore) -> int:
        """Reload the catalog from the store."""
        definitions = store.load_algorithms()
        self.replace(definitions)
        logger.info(f"Loaded {len(definitions)} risk algorithms")
        return len(definitions)

    def get(self, code: str) -> AlgorithmDefinition:
        try:
            return self._algorithms[code]
        except KeyError:
            raise UnknownAlgorithmError(code) from None

    def all(self) -> List[AlgorithmDefinition]:
        return list(self._algorithms.values())

    def __len__(self) -> int:
        return len(self._algorithms)

    def __contains__(self, code: str) -> bool:
        return code in self._algorithms

    def eligible_algorithms(self, age: int) -> List[AlgorithmDefinition]:
        """Algorithms a user of this age may be scored with, shortest period first."""
        catalog = self._algorithms
        eligible = [d for d in catalog.values() if is_eligible(d, age)]
        return sorted(eligible, key=lambda d: (d.period_days, d.code))


def score_series(
    definition: AlgorithmDefinition,
    series: Sequence[Measurement],
    user: UserContext,
    pollutant: str = "pm25"
) -> List[RiskPoint]:
    """
    Score every point of a series with one algorithm.

    The rolling average is computed first and then indoor-adjusted. Points
    whose window holds no data are skipped.

    Args:
        definition: Algorithm to apply
        series: Measurements ascending by time
        user: User context supplying device flags and risk level
        pollutant: Measurement field to score

    Returns:
        One RiskPoint per scorable measurement
    """
    if user is None:
        raise ValidationError("User context is required for risk scoring")

    averages = rolling_averages(series, definition.period_days, pollutant)
    points = []

    for measurement, average in zip(series, averages):
        if average is NO_DATA:
            continue

        adjusted = adjust_for_user(average, user)
        if definition.strategy == ScoringStrategy.EXPONENTIAL:
            score = exponential_score(adjusted, definition.threshold)
        else:
            score = linear_ratio_score(adjusted, definition, user.base_risk_level)

        points.append(RiskPoint(
            timestamp=measurement.observed_at,
            raw_value=getattr(measurement, pollutant),
            rolling_average=average,
            adjusted_value=adjusted,
            score=score,
        ))

    return points

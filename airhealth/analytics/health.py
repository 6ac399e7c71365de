"""Composite 0-100 health scores per domain."""
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
import numpy as np

from airhealth.analytics.indoor import adjust_for_user
from airhealth.config import GuidelineConfig
from airhealth.models import DomainHealthScore, HealthLevel, Measurement, UserContext

HIGH_THRESHOLD = 80.0
MODERATE_THRESHOLD = 50.0
BEST_SLEEP_LEVEL = 5


@dataclass(frozen=True)
class DomainWeights:
    """Weights for one domain. Pollutant slopes are points per µg/m³."""
    base: float
    pm25_low: float
    pm25_high: float
    pm10_low: float
    pm10_high: float
    activity: float = 0.0
    anxiety: float = 0.0
    poor_sleep: float = 0.0


DOMAIN_WEIGHTS: Dict[str, DomainWeights] = {
    "respiratory": DomainWeights(
        base=10.0, pm25_low=1.5, pm25_high=2.5, pm10_low=0.3, pm10_high=0.6,
        activity=1.5, poor_sleep=2.0,
    ),
    "cardiovascular": DomainWeights(
        base=12.0, pm25_low=1.2, pm25_high=2.0, pm10_low=0.25, pm10_high=0.5,
        activity=2.0, poor_sleep=3.0,
    ),
    # Sleep uses anxiety in place of activity
    "sleep": DomainWeights(
        base=8.0, pm25_low=0.8, pm25_high=1.2, pm10_low=0.1, pm10_high=0.2,
        anxiety=3.0, poor_sleep=6.0,
    ),
}

DEFAULT_RECOMMENDATIONS = [
    "Use air purifiers in frequently used rooms",
    "Ventilate your home for 15-20 minutes twice daily when outdoor air quality is good",
    "Keep indoor humidity between 30-50% to prevent mold and allergens",
]

TARGETED_RECOMMENDATIONS = {
    "respiratory": "Run a HEPA air purifier in the rooms you use most to ease breathing and airway irritation",
    "cardiovascular": "Move exercise indoors on high-pollution days to reduce strain on your heart",
    "sleep": "Ventilate your bedroom before sleep and keep the window closed when outdoor air is poor",
}


def piecewise_contribution(value: float, guideline: float, low_slope: float, high_slope: float) -> float:
    """Linear up to the guideline, steeper above it."""
    below = min(value, guideline)
    above = max(value - guideline, 0.0)
    return below * low_slope + above * high_slope


def classify(score: float) -> HealthLevel:
    if score >= HIGH_THRESHOLD:
        return HealthLevel.HIGH
    if score >= MODERATE_THRESHOLD:
        return HealthLevel.MODERATE
    return HealthLevel.LOW


def _present(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


class CompositeHealthScorer:
    """Turns the latest reading and lifestyle attributes into domain scores."""

    def __init__(
        self,
        guidelines: Optional[GuidelineConfig] = None,
        weights: Optional[Dict[str, DomainWeights]] = None
    ):
        self.guidelines = guidelines or GuidelineConfig()
        self.weights = weights or DOMAIN_WEIGHTS

    def _domain_score(self, weights: DomainWeights, pm25: Optional[float], pm10: Optional[float], user: UserContext) -> float:
        score = weights.base
        if pm25 is not None:
            score += piecewise_contribution(pm25, self.guidelines.pm25_24h, weights.pm25_low, weights.pm25_high)
        if pm10 is not None:
            score += piecewise_contribution(pm10, self.guidelines.pm10_24h, weights.pm10_low, weights.pm10_high)
        score -= weights.activity * user.activity_level
        score += weights.anxiety * user.base_risk_level
        score += weights.poor_sleep * (BEST_SLEEP_LEVEL - user.sleep_level)
        return round(float(np.clip(score, 0.0, 100.0)), 1)

    def score_domains(self, latest: Measurement, user: UserContext) -> List[DomainHealthScore]:
        """
        Score each health domain from the indoor-adjusted latest reading.

        Returns an empty list when the reading has neither PM2.5 nor PM10.
        """
        has_pm25 = _present(latest.pm25)
        has_pm10 = _present(latest.pm10)
        if not has_pm25 and not has_pm10:
            return []

        pm25 = adjust_for_user(latest.pm25, user) if has_pm25 else None
        pm10 = adjust_for_user(latest.pm10, user) if has_pm10 else None

        results = []
        for domain, weights in self.weights.items():
            score = self._domain_score(weights, pm25, pm10, user)
            results.append(DomainHealthScore(domain=domain, score=score, level=classify(score)))
        return results

    def recommendations(self, scores: Sequence[DomainHealthScore]) -> List[str]:
        """One targeted tip per High domain, or the default list."""
        high = [s.domain for s in scores if s.level == HealthLevel.HIGH]
        if not high:
            return list(DEFAULT_RECOMMENDATIONS)
        return [TARGETED_RECOMMENDATIONS[domain] for domain in high]

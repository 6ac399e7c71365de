"""Trailing-window averages over measurement series."""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence
import pandas as pd

from airhealth.exceptions import ValidationError
from airhealth.models import Measurement, POLLUTANT_FIELDS

# Returned when every value in a window is absent; means "insufficient data"
NO_DATA = None

COMPARISON_PERIODS = {
    "week": 7,
    "month": 30,
    "six_month": 180,
    "year": 365,
    "four_year": 4 * 365,
}


def _check_pollutant(pollutant: str):
    if pollutant not in POLLUTANT_FIELDS:
        raise ValidationError(
            f"Unknown pollutant '{pollutant}'",
            details={"allowed": list(POLLUTANT_FIELDS)}
        )


def pollutant_values(series: Sequence[Measurement], pollutant: str = "pm25") -> pd.Series:
    """Pollutant readings as a float Series; absent readings become NaN."""
    _check_pollutant(pollutant)
    return pd.Series([getattr(m, pollutant) for m in series], dtype="float64")


def _or_no_data(value: float) -> Optional[float]:
    return NO_DATA if pd.isna(value) else float(value)


def rolling_average(
    series: Sequence[Measurement],
    index: int,
    period_days: int,
    pollutant: str = "pm25"
) -> Optional[float]:
    """
    Mean of the last ``period_days`` points up to and including ``index``.

    Uses fewer points when history is short. Absent values are ignored.

    Args:
        series: Measurements ascending by time
        index: Position of the window's last point
        period_days: Window length in points
        pollutant: Measurement field to average

    Returns:
        The average, or NO_DATA if the window holds no values
    """
    if period_days < 1:
        raise ValidationError("period_days must be at least 1", details={"period_days": period_days})
    if not 0 <= index < len(series):
        raise ValidationError(
            "Index outside series",
            details={"index": index, "length": len(series)}
        )

    return rolling_averages(series, period_days, pollutant)[index]


def rolling_averages(
    series: Sequence[Measurement],
    period_days: int,
    pollutant: str = "pm25"
) -> List[Optional[float]]:
    """rolling_average evaluated at every index of the series."""
    if period_days < 1:
        raise ValidationError("period_days must be at least 1", details={"period_days": period_days})
    if not series:
        return []

    values = pollutant_values(series, pollutant)
    rolled = values.rolling(window=period_days, min_periods=1).mean()
    return [_or_no_data(v) for v in rolled]


def period_comparison(
    series: Sequence[Measurement],
    now: datetime,
    pollutant: str = "pm25",
    periods: Optional[Dict[str, int]] = None
) -> Dict[str, Dict[str, Optional[float]]]:
    """
    Compare the current trailing window with the window before it.

    Args:
        series: Measurements covering at least twice the longest period
        now: End of the current window
        pollutant: Measurement field to average
        periods: Period name -> length in days

    Returns:
        {period: {"current": mean, "previous": mean}}, NO_DATA for empty windows
    """
    periods = periods or COMPARISON_PERIODS
    values = pollutant_values(series, pollutant)
    timestamps = pd.Series([m.observed_at for m in series])

    result = {}
    for name, days in periods.items():
        span = timedelta(days=days)
        current_mask = (timestamps > now - span) & (timestamps <= now)
        previous_mask = (timestamps > now - 2 * span) & (timestamps <= now - span)
        result[name] = {
            "current": _or_no_data(values[current_mask].mean()) if current_mask.any() else NO_DATA,
            "previous": _or_no_data(values[previous_mask].mean()) if previous_mask.any() else NO_DATA,
        }
    return result

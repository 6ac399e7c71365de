"""Indoor exposure model and the behavioural improvement calculator."""
import math
from typing import Dict

from airhealth.exceptions import ValidationError
from airhealth.models import UserContext

BASE_INDOOR_FACTOR = 0.7      # 30% reduction indoors
HVAC_FACTOR = 0.8             # additional 20% with HVAC only
AIR_PURIFIER_FACTOR = 0.6     # additional 40% with purifier only
COMBINED_DEVICE_FACTOR = 0.4  # flat factor with both devices, not 0.8 * 0.6

# Percentage points, used only by the improvement calculator
BEHAVIOUR_REDUCTIONS: Dict[str, int] = {
    "windows_open": 10,
    "non_toxic_products": 8,
    "recent_filter_change": 15,
}


def adjust_indoor(
    outdoor_value: float,
    has_hvac: bool = False,
    has_air_purifier: bool = False
) -> float:
    """
    Convert an outdoor concentration to an indoor-equivalent one.

    Args:
        outdoor_value: Outdoor pollutant concentration
        has_hvac: HVAC system present
        has_air_purifier: Air purifier present

    Returns:
        Indoor-equivalent concentration
    """
    if outdoor_value is None or not math.isfinite(outdoor_value):
        raise ValidationError("Outdoor value must be a finite number", details={"value": outdoor_value})

    indoor = outdoor_value * BASE_INDOOR_FACTOR

    if has_hvac and has_air_purifier:
        return indoor * COMBINED_DEVICE_FACTOR
    if has_hvac:
        return indoor * HVAC_FACTOR
    if has_air_purifier:
        return indoor * AIR_PURIFIER_FACTOR
    return indoor


def adjust_for_user(outdoor_value: float, user: UserContext) -> float:
    """adjust_indoor using the device flags of a user context."""
    return adjust_indoor(outdoor_value, user.has_hvac, user.has_air_purifier)


def achievable_reduction_percent(user: UserContext) -> int:
    """Total behavioural reduction in percentage points."""
    return sum(points for flag, points in BEHAVIOUR_REDUCTIONS.items() if getattr(user, flag))


def apply_achievable_reduction(value: float, user: UserContext) -> float:
    """Project a value (concentration or risk score) after behavioural changes."""
    return value * (1 - achievable_reduction_percent(user) / 100)

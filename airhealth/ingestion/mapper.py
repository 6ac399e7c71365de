"""Map WAQI feed payloads to canonical measurements."""
import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from airhealth.exceptions import InvalidDataError, RateLimitError
from airhealth.models import Measurement

# WAQI iaqi keys -> Measurement fields
IAQI_FIELDS = {
    "pm25": "pm25",
    "pm10": "pm10",
    "o3": "o3",
    "co": "co",
    "no2": "no2",
    "so2": "so2",
    "t": "temperature",
}

QUOTA_MESSAGES = ("over quota", "quota exceeded")


def _to_float(value: Any) -> Optional[float]:
    """Numeric reading or None. WAQI uses "-" for unavailable values."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _parse_time(data: Dict[str, Any]) -> Optional[datetime]:
    time_block = data.get("time") or {}
    iso = time_block.get("iso")
    if iso:
        try:
            parsed = datetime.fromisoformat(iso)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    epoch = time_block.get("v")
    if isinstance(epoch, (int, float)):
        return datetime.fromtimestamp(epoch, tz=timezone.utc)
    return None


def check_provider_status(payload: Any, city: str) -> Dict[str, Any]:
    """
    Validate the envelope of a WAQI response.

    Args:
        payload: Decoded JSON body
        city: City the request was made for

    Returns:
        The inner ``data`` object

    Raises:
        RateLimitError: Provider reports the quota is exhausted
        InvalidDataError: Any other error status or malformed envelope
    """
    if not isinstance(payload, dict):
        raise InvalidDataError(
            f"Unexpected payload type for {city}",
            details={"city": city, "type": type(payload).__name__}
        )

    status = payload.get("status")
    data = payload.get("data")

    if status != "ok":
        message = data if isinstance(data, str) else str(payload.get("message", ""))
        if any(marker in message.lower() for marker in QUOTA_MESSAGES):
            raise RateLimitError(f"Provider quota exceeded for {city}")
        raise InvalidDataError(
            f"Provider returned status '{status}' for {city}",
            details={"city": city, "message": message}
        )

    if not isinstance(data, dict):
        raise InvalidDataError(
            f"Missing data object for {city}",
            details={"city": city}
        )
    return data


def map_waqi_payload(
    city: str,
    payload: Any,
    fetched_at: Optional[datetime] = None
) -> Measurement:
    """
    Translate one WAQI feed response into a Measurement.

    Any pollutant the provider omits maps to None. A reading of 0 is kept
    as 0.

    Args:
        city: Supported city name
        payload: Decoded JSON body
        fetched_at: Fallback timestamp when the payload carries none

    Returns:
        Measurement for the city

    Raises:
        RateLimitError: Quota exceeded payload
        InvalidDataError: Bad envelope or no reportable pollutant
    """
    data = check_provider_status(payload, city)

    iaqi = data.get("iaqi") or {}
    if not isinstance(iaqi, dict):
        raise InvalidDataError(f"Malformed iaqi block for {city}", details={"city": city})

    values = {}
    for source_key, field in IAQI_FIELDS.items():
        reading = iaqi.get(source_key)
        values[field] = _to_float(reading.get("v")) if isinstance(reading, dict) else None

    observed_at = _parse_time(data) or fetched_at or datetime.now(timezone.utc)
    station = data.get("idx")

    measurement = Measurement(
        city=city,
        observed_at=observed_at,
        air_quality_index=_to_float(data.get("aqi")),
        station_id=str(station) if station is not None else None,
        **values
    )

    if not measurement.is_reportable():
        raise InvalidDataError(
            f"No usable pollutant reading for {city}",
            details={"city": city, "station_id": measurement.station_id}
        )

    return measurement

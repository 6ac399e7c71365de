"""WAQI API client with provider rate limiting."""
import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from urllib.parse import quote
import httpx

from airhealth.config import CityConfig
from airhealth.exceptions import (
    ConfigurationError,
    InvalidDataError,
    NetworkError,
    RateLimitError,
)
from airhealth.ingestion.mapper import map_waqi_payload
from airhealth.logging_config import get_logger
from airhealth.models import Measurement

API_NAME = "WAQI"


class WAQIClient:
    """Client for the WAQI city feed, one city per request."""

    def __init__(
        self,
        api_token: str,
        city_config: CityConfig,
        base_url: str = "https://api.waqi.info",
        min_interval: float = 2.0,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize WAQI client.

        Args:
            api_token: WAQI API token
            city_config: Supported cities and their feed keywords
            base_url: Provider base URL
            min_interval: Minimum seconds between consecutive requests
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests)
            sleep: Awaitable sleep used for throttling
            clock: Monotonic clock used for throttling
        """
        if not api_token:
            raise ConfigurationError(
                "WAQI API token not configured",
                details={"setting": "WAQI_API_TOKEN"}
            )

        self.api_token = api_token
        self.city_config = city_config
        self.base_url = base_url.rstrip("/")
        self.min_interval = min_interval
        self.timeout = timeout
        self.transport = transport
        self._sleep = sleep
        self._clock = clock
        self._last_request_at: Optional[float] = None
        self.logger = get_logger("ingestion.waqi")

    async def _throttle(self):
        """Wait until min_interval has passed since the previous request."""
        if self._last_request_at is None:
            return
        elapsed = self._clock() - self._last_request_at
        remaining = self.min_interval - elapsed
        if remaining > 0:
            await self._sleep(remaining)

    async def fetch_city(self, city: str) -> Measurement:
        """
        Fetch and map the current reading for one city.

        Args:
            city: Supported city name

        Returns:
            Mapped measurement

        Raises:
            RateLimitError: HTTP 429 or quota payload
            NetworkError: Connection failure, timeout or 5xx
            InvalidDataError: Undecodable or unusable payload
        """
        feed = quote(self.city_config.feed_for(city), safe="")
        url = f"{self.base_url}/feed/{feed}/"

        await self._throttle()

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url, params={"token": self.api_token})
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Timed out fetching {city}", api_name=API_NAME, details={"city": city}
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(
                f"Error fetching {city}: {e}", api_name=API_NAME, details={"city": city}
            ) from e
        finally:
            self._last_request_at = self._clock()

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                f"Rate limited fetching {city}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None
            )

        if response.status_code >= 500:
            raise NetworkError(
                f"Provider error {response.status_code} for {city}",
                api_name=API_NAME,
                details={"city": city, "status": response.status_code}
            )

        if response.status_code >= 400:
            raise InvalidDataError(
                f"Provider rejected request for {city} with {response.status_code}",
                details={"city": city, "status": response.status_code}
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise InvalidDataError(
                f"Response for {city} is not valid JSON", details={"city": city}
            ) from e

        measurement = map_waqi_payload(city, payload, fetched_at=datetime.now(timezone.utc))
        self.logger.debug(f"Fetched {city}: pm25={measurement.pm25} aqi={measurement.air_quality_index}")
        return measurement

"""Custom exceptions for the air quality health engine."""
from typing import Optional, Dict, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from airhealth.models import IngestionReport


class AirQualityException(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500
    ):
        """
        Initialize exception.

        Args:
            message: Human-readable error message
            details: Additional error details
            status_code: HTTP status code for API responses
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.status_code = status_code


class ValidationError(AirQualityException):
    """Raised when caller input is invalid."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, status_code=422)


class DataNotFoundError(AirQualityException):
    """Raised when requested data is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, status_code=404)


class UnknownAlgorithmError(DataNotFoundError):
    """Raised when an algorithm code is not in the registry."""

    def __init__(self, code: str):
        super().__init__(f"Unknown risk algorithm '{code}'", details={"code": code})
        self.code = code


class DatabaseError(AirQualityException):
    """Raised when database operations fail."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, status_code=500)


class StoreError(DatabaseError):
    """Raised when the store rejects a measurement batch."""


class ExternalAPIError(AirQualityException):
    """Raised when external API calls fail."""

    def __init__(
        self,
        message: str,
        api_name: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details, status_code=502)
        self.api_name = api_name


class NetworkError(ExternalAPIError):
    """Transient provider failure (connection, timeout, 5xx). Retryable."""


class ConfigurationError(AirQualityException):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, status_code=500)


class InvalidDataError(AirQualityException):
    """Raised when a payload is malformed or carries no usable pollutant."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, status_code=422)


class RateLimitError(AirQualityException):
    """Raised when the provider rate limit or quota is exceeded."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        details = {"retry_after": retry_after} if retry_after else {}
        super().__init__(message, details, status_code=429)
        self.retry_after = retry_after


class IngestionInProgressError(AirQualityException):
    """Raised when a cycle is triggered while another one is running."""

    def __init__(self, message: str = "An ingestion cycle is already running"):
        super().__init__(message, status_code=409)


class IngestionCycleError(AirQualityException):
    """Raised when an ingestion cycle finishes without a single success."""

    def __init__(self, report: "IngestionReport"):
        super().__init__(
            "Ingestion cycle failed for every city",
            details={"failed": [f.model_dump() for f in report.failed]},
            status_code=502
        )
        self.report = report

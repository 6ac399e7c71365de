"""Rate limiting configuration for API endpoints."""
from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request


def get_client_identifier(request: Request) -> str:
    """
    Get client identifier for rate limiting.

    Uses the first X-Forwarded-For address when behind a proxy, otherwise
    the direct client address.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def create_limiter() -> Limiter:
    """In-memory fixed-window limiter, one per application."""
    return Limiter(
        key_func=get_client_identifier,
        default_limits=["100/hour"],
        storage_uri="memory://",
        strategy="fixed-window",
    )


RATE_LIMITS = {
    # Each trigger walks every city under the provider's rate limit
    "ingest": "2/minute",

    "risk": "60/minute",
    "health": "60/minute",
    "comparison": "60/minute",
    "cities": "30/minute",
}

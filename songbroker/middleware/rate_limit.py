"""Rate limiting middleware using SlowAPI."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from songbroker.config import get_settings

settings = get_settings()


def get_owner_or_ip(request: Request) -> str:
    """
    Get rate limit key from the owner header or IP address.

    Manual status checks spend provider calls, so they are limited per owner.
    """
    owner_id = request.headers.get("x-owner-id")
    if owner_id:
        return f"owner:{owner_id}"

    return f"ip:{get_remote_address(request)}"


# Create limiter with Redis storage
limiter = Limiter(
    key_func=get_owner_or_ip,
    storage_uri=settings.redis_url,
    strategy="fixed-window",
    enabled=settings.rate_limit_enabled,
)


def rate_limit_checks():
    """Rate limit for endpoints that call the provider."""
    return limiter.limit(
        f"{max(1, settings.rate_limit_per_minute // 6)}/minute",
        key_func=get_owner_or_ip,
    )


def rate_limit_general():
    """Rate limit for general endpoints."""
    return limiter.limit(
        f"{settings.rate_limit_per_minute}/minute",
        key_func=get_owner_or_ip,
    )

# File: app/core/limiter.py

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.core.config import settings

# Client IP is the rate-limit key; storage is memory:// locally, redis:// in production.
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.rate_limit_storage_uri,
    default_limits=[settings.rate_limit_default],
    enabled=settings.rate_limit_enabled,
)


async def custom_rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """
    Custom exception handler for rate-limited requests, rendered in the
    standard response envelope.
    """
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "message": "You have made too many requests in a short period. Please try again later.",
            "errors": [
                {
                    "code": "RATE_LIMITED",
                    "detail": f"Rate limit exceeded ({exc.detail})",
                    "retryable": True,
                }
            ],
        },
    )

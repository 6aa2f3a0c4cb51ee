"""Request throttling for the public verification and issuance endpoints.

Limits are read from settings on every request, so operators can tune
them per deployment without touching route code. Counters live in
RATELIMIT_STORAGE_URI; memory:// counts per process, so each replica
enforces its own copy of every limit.
"""

import logging

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from core.config import get_settings

logger = logging.getLogger(__name__)


def client_key(request: Request) -> str:
    """Identify the caller a limit is counted against.

    Behind a trusted proxy the left-most X-Forwarded-For hop is the real
    client; otherwise the socket peer is used.
    """
    if get_settings().trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return get_remote_address(request)


def verify_limit() -> str:
    return get_settings().verify_rate_limit


def batch_verify_limit() -> str:
    return get_settings().batch_verify_rate_limit


def issue_limit() -> str:
    return get_settings().issue_rate_limit


def _build_limiter() -> Limiter:
    settings = get_settings()
    storage_uri = settings.ratelimit_storage_uri
    if settings.environment != "development" and storage_uri == "memory://":
        logger.warning(
            "ratelimit.memory_storage",
            extra={"environment": settings.environment},
        )
    return Limiter(
        key_func=client_key,
        default_limits=[settings.default_rate_limit],
        storage_uri=storage_uri,
        in_memory_fallback_enabled=storage_uri.startswith("redis://"),
        key_prefix="cred:",
    )


limiter = _build_limiter()


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Answer throttled requests with the same JSON error shape as other failures."""
    logger.warning(
        "ratelimit.exceeded",
        extra={
            "client": client_key(request),
            "path": request.url.path,
            "limit": exc.detail,
        },
    )
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded. Please slow down.",
            "code": "rate_limited",
            "retry_after": exc.detail,
        },
        headers={"Retry-After": str(getattr(exc, "retry_after", 60))},
    )

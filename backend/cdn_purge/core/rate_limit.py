"""Rate limiting for the submit endpoints using SlowAPI.

Limits are keyed on the calling tenant when the publish pipeline sends
``X-Tenant-ID`` so one busy tenant cannot starve the others; anonymous
callers fall back to their remote address.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address


def tenant_or_remote_address(request: Request) -> str:
    tenant = request.headers.get("X-Tenant-ID", "").strip()
    if tenant:
        return f"tenant:{tenant}"
    return get_remote_address(request)


limiter = Limiter(key_func=tenant_or_remote_address)


def init_rate_limiter(app: FastAPI) -> None:
    """Attach the rate limiter and exception handler to the FastAPI app."""

    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    async def rate_limit_exceeded_handler(request, exc):  # type: ignore[unused-arg]
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many invalidation requests"},
            headers={"Retry-After": "60"},
        )

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

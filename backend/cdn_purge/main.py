"""Application entry point for the CDN purge service."""

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from cdn_purge.api.routes.invalidations import router as invalidations_router
from cdn_purge.cdn.dispatcher import InvalidationDispatcher
from cdn_purge.cdn.provider_config import load_provider_config
from cdn_purge.cdn.store import SqlInvalidationStore
from cdn_purge.core.config import settings
from cdn_purge.core.db import SessionLocal, create_tables, get_session
from cdn_purge.core.logging import setup_logging
from cdn_purge.core.middleware import BodySizeLimitMiddleware, RequestContextLogMiddleware
from cdn_purge.core.rate_limit import init_rate_limiter

setup_logging()

app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)

init_rate_limiter(app)

app.add_middleware(RequestContextLogMiddleware)


def _cors_origins() -> list[str]:
    if settings.ENV == "prod":
        if not settings.CORS_ALLOWED_ORIGINS:
            raise RuntimeError("CORS_ALLOWED_ORIGINS must be configured for prod")
        return settings.CORS_ALLOWED_ORIGINS
    return settings.CORS_ALLOWED_ORIGINS or ["http://localhost:5173"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "Idempotency-Key",
        "X-Request-ID",
        "X-Tenant-ID",
    ],
)

app.add_middleware(BodySizeLimitMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.on_event("startup")
async def startup_event():
    """Create the ledger tables and start the dispatcher for the configured provider."""

    if settings.DB_AUTO_CREATE:
        await create_tables()
    provider_config = load_provider_config()
    app.state.dispatcher = InvalidationDispatcher(provider_config, SqlInvalidationStore(SessionLocal))
    logger.bind(provider=provider_config.provider_type.value).info("cdn_dispatcher_started")


@app.on_event("shutdown")
async def shutdown_event():
    """Give in-flight invalidations a chance to finish before the process exits."""

    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.aclose()


@app.get("/api/healthz", tags=["system"], summary="Liveness probe")
def healthz() -> dict[str, str]:
    """Simple liveness probe that load balancers and monitors can call."""

    return {"status": "ok"}


@app.get("/api/readyz", tags=["system"], summary="Readiness probe")
async def readyz(session: AsyncSession = Depends(get_session)):
    if getattr(app.state, "dispatcher", None) is None:
        raise HTTPException(status_code=503, detail="CDN dispatcher not started")
    try:
        await session.execute(text("SELECT 1"))
        return {"ready": True, "provider": app.state.dispatcher.provider_type.value}
    except Exception:
        raise HTTPException(status_code=503, detail="Database not reachable")


app.include_router(invalidations_router, prefix="/api")

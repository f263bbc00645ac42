"""
Outreach Pipeline - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from outreach.core.config import settings
from outreach.core.logging import setup_logging, get_logger
from outreach.core.middleware import setup_middleware, setup_exception_handlers
from outreach.api.routes import router as api_router
from outreach.db.database import AsyncSessionLocal, engine, Base
from outreach.db import models  # noqa: F401  registers tables for create_all
from outreach.runtime import build_pipeline

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {
        "name": "messaging",
        "description": "Queue, compliance and health views; alert acknowledgement.",
    },
    {"name": "webhooks", "description": "Gateway callbacks: delivery status, replies, connectivity."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Compliance-gated outbound WhatsApp messaging pipeline.",
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Admin-API-Key", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")

app.state.pipeline = build_pipeline(AsyncSessionLocal, settings)


@app.on_event("startup")
async def startup() -> None:
    """Create tables and start the queue and health tickers"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    app.state.pipeline.start()


@app.on_event("shutdown")
async def shutdown() -> None:
    """Stop tickers and release connections"""
    logger.info("Shutting down application")
    await app.state.pipeline.stop()
    from outreach.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Liveness probe, no dependency checks"""
    return {"status": "healthy"}


"""
Partner Sync - Main FastAPI Application
"""
from pathlib import Path

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from partner_sync.core.config import settings
from partner_sync.core.exceptions import AppException
from partner_sync.core.logging import setup_logging, get_logger
from partner_sync.core.middleware import setup_middleware, setup_exception_handlers
from partner_sync.api.routes import router as api_router
from partner_sync.db.database import engine, Base
from partner_sync.domain.services.runtime import get_job_scheduler, get_partner_client
from partner_sync.domain.services.sync_config import load_sync_jobs, register_builtin_jobs

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "Signed, encrypted partner webhooks feeding the work queue."},
    {"name": "Scheduler", "description": "Recurring sync jobs and partner authentication (X-Admin-API-Key)."},
    {"name": "Queue", "description": "Work queue inspection and manual retry/cancel (X-Admin-API-Key)."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Partner webhook ingestion into a durable work queue, plus a scheduler "
        "for recurring sync calls against the partner API."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, rate limit, security headers)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


def _ensure_sqlite_directory(url: str) -> None:
    # sqlite+aiosqlite:///./data/x.db needs ./data to exist
    prefix = "sqlite+aiosqlite:///"
    if url.startswith(prefix) and ":memory:" not in url:
        Path(url[len(prefix):]).parent.mkdir(parents=True, exist_ok=True)


@app.on_event("startup")
async def startup() -> None:
    """Create tables, authenticate against the partner and start the scheduler"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    _ensure_sqlite_directory(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    client = get_partner_client()
    if client.has_credentials:
        try:
            await client.login()
        except AppException as e:
            # the built-in refresh job retries on its next run
            logger.warning(
                "Initial partner login failed",
                extra_data={"error": e.message, "details": e.details},
            )
    else:
        logger.warning("Partner credentials not configured, jobs run without a token")

    scheduler = get_job_scheduler()
    if settings.SCHEDULER_LOAD_DEFAULT_JOBS:
        register_builtin_jobs(scheduler)
    load_sync_jobs(scheduler)

    if settings.SCHEDULER_ENABLED:
        scheduler.start()
    else:
        logger.info("Job scheduler disabled")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Stop the scheduler, log out and release database connections"""
    logger.info("Shutting down application")
    await get_job_scheduler().stop(grace_seconds=settings.SCHEDULER_SHUTDOWN_GRACE_SECONDS)
    await get_partner_client().logout()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up and answering. External dependencies are not checked.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description="Checks the database and the scheduler loop; 503 with details when degraded.",
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    result = {"status": "healthy", "db": "ok", "scheduler": "ok"}
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        result["db"] = f"error: {type(e).__name__}"

    if settings.SCHEDULER_ENABLED and not get_job_scheduler().is_running:
        result["scheduler"] = "stopped"

    if result["db"] != "ok" or result["scheduler"] != "ok":
        result["status"] = "degraded"
    return JSONResponse(content=result, status_code=200 if result["status"] == "healthy" else 503)

"""Main FastAPI application."""

import logging
import re
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from .api import chat_router, jobs_router, share_public_router, share_router, stream_router
from .core.config import ConfigurationError, Environment, settings
from .core.logging_config import setup_logging
from .core.services import build_services
from .database import DATABASE_URL, SessionLocal, engine, get_db, init_db
from .exceptions import RepoLensException
from .middleware.exception_handler import repolens_exception_handler
from .middleware.request_context import RequestContextMiddleware

VERSION = "1.0.0"

setup_logging(log_level=settings.log_level, log_format=settings.log_format)
logger = logging.getLogger(__name__)


def _mask_url(url: str) -> str:
    """Mask the password in a database URL for logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def _validate_database_connection() -> None:
    """Fail startup with an actionable message when the database is unreachable."""
    masked = _mask_url(DATABASE_URL)
    logger.info("Connecting to database: %s", masked)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        if DATABASE_URL.startswith("sqlite"):
            hint = "Check that the directory exists and is writable."
        else:
            hint = "Verify the database is running and DATABASE_URL is correct."
        logger.critical("Database connection failed.\n  DATABASE_URL: %s\n  %s\n  Error: %s", masked, hint, e)
        raise SystemExit(1) from e
    logger.info("Database connection verified")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle for the RepoLens API."""
    logger.info("Environment: %s", settings.environment.value)
    try:
        settings.validate_production_config()
    except ConfigurationError as e:
        logger.critical("STARTUP BLOCKED: %s", e)
        raise SystemExit(1) from e

    _validate_database_connection()
    init_db()

    if settings.environment == Environment.DEVELOPMENT:
        if not settings.sandbox_api_url or not settings.sandbox_api_key:
            logger.warning("SANDBOX_API_URL / SANDBOX_API_KEY not set: clone stages will fail")
        if not settings.agent_url or not settings.agent_api_key:
            logger.warning("AGENT_URL / AGENT_API_KEY not set: analysis stages will fail")

    # Tests install a container with fake gateways before startup.
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services(settings, SessionLocal)
        app.state.services = services

    logger.info(
        "RepoLens API started | env=%s | db=%s | cors=%s",
        settings.environment.value,
        "PostgreSQL" if DATABASE_URL.startswith("postgresql") else "SQLite",
        ",".join(settings.get_cors_origins()),
    )

    yield

    await services.shutdown()


app = FastAPI(
    title="RepoLens API",
    description=(
        "Submits repositories for staged analysis (clone, analysis, diagram, "
        "ownership, export), streams live progress over server-sent events, "
        "retries failed supplementary stages, and serves chat and exploration "
        "against the analysed repository."
    ),
    version=VERSION,
    license_info={"name": "MIT", "url": "https://opensource.org/licenses/MIT"},
    lifespan=lifespan,
)

# CORS wraps request context.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)
app.add_middleware(RequestContextMiddleware)

app.add_exception_handler(RepoLensException, repolens_exception_handler)

app.include_router(jobs_router)
app.include_router(stream_router)
app.include_router(chat_router)
app.include_router(share_router)
app.include_router(share_public_router)


@app.get("/")
def root():
    """Root endpoint."""
    return {"name": "RepoLens API", "version": VERSION, "status": "running"}


_startup_time = time.monotonic()


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Database status, uptime and job count.

    Never raises; reports ``degraded`` on database failure so load
    balancers can still check it without receiving 5xx.
    """
    db_status = "ok"
    job_count = 0
    try:
        db.execute(text("SELECT 1"))
        job_count = db.execute(text("SELECT COUNT(*) FROM analysis_jobs")).scalar() or 0
    except Exception:
        db_status = "error"

    return {
        "status": "healthy" if db_status == "ok" else "degraded",
        "db": db_status,
        "uptime_seconds": round(time.monotonic() - _startup_time),
        "version": VERSION,
        "job_count": job_count,
    }

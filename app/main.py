"""
GeoWork Tracking Engine - Main Application Entry Point
"""
import logging
import threading
from urllib.parse import urlparse, urlunparse

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi import HTTPException

from app.api.router import api_router
from app.core.config import settings
from app.core.deps import get_policy_cache, shutdown_tracking
from app.core.errors import (
    EngineError,
    engine_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from app.core.logging import setup_logging
from app.db.session import SessionLocal, init_sqlite_schema
from app.services.session_service import run_orchestrator_pass

# Setup logging first
setup_logging()
logger = logging.getLogger(__name__)

_orchestrator_stop = threading.Event()


def _mask_database_url(url: str) -> str:
    """Mask password in DATABASE_URL for safe logging; show full path for sqlite."""
    try:
        parsed = urlparse(url)
        if parsed.scheme == "sqlite":
            return url  # Safe to log path
        if parsed.password:
            netloc = f"{parsed.username}:****@{parsed.hostname or ''}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***"
    return url


# Create FastAPI app
app = FastAPI(
    title="GeoWork Tracking Engine",
    description="Schedule-driven geofenced time tracking and compliance",
    version=settings.VERSION or "1.0.0"
)

# Configure CORS - must be before other middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register exception handlers
app.add_exception_handler(EngineError, engine_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Include all API routes under /api/v1
app.include_router(api_router, prefix="/api/v1")


def _run_orchestrator() -> None:
    """Run orchestrator passes until shutdown."""
    interval = settings.ORCHESTRATOR_INTERVAL_SECONDS
    policy_cache = get_policy_cache()
    while not _orchestrator_stop.wait(interval):
        db = SessionLocal()
        try:
            run_orchestrator_pass(db, policy_cache=policy_cache)
        except Exception:
            db.rollback()
            logger.error("Orchestrator pass failed", exc_info=True)
        finally:
            db.close()


@app.on_event("startup")
def startup_log_config() -> None:
    """Log DATABASE_URL at startup so it can be verified against Alembic."""
    masked = _mask_database_url(settings.DATABASE_URL)
    logger.info("DATABASE_URL (app): %s", masked)


@app.on_event("startup")
def create_sqlite_schema() -> None:
    init_sqlite_schema()


@app.on_event("startup")
def start_orchestrator() -> None:
    if not settings.ORCHESTRATOR_ENABLED:
        logger.info("Orchestrator disabled (ORCHESTRATOR_ENABLED=false)")
        return
    _orchestrator_stop.clear()
    thread = threading.Thread(target=_run_orchestrator, name="orchestrator", daemon=True)
    thread.start()
    logger.info("Orchestrator started (every %s seconds)", settings.ORCHESTRATOR_INTERVAL_SECONDS)


@app.on_event("shutdown")
def stop_background_work() -> None:
    _orchestrator_stop.set()
    shutdown_tracking()

"""
FastAPI application for the email sync service.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mail_sync.config import settings
from mail_sync.core.database import Database
from mail_sync.core.logging import configure_logging, get_logger
from mail_sync.routers.email_sync import router as email_sync_router
from mail_sync.scheduler import start_scheduler, stop_scheduler

log = get_logger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    configure_logging(log_level=settings.log_level, json_output=settings.log_json)
    log.info("application_starting")

    db = Database()
    db.init_schema()

    if settings.scheduler_enabled:
        start_scheduler()
    else:
        log.info("scheduler_disabled", reason="trigger syncs through POST /email-sync")

    yield

    if settings.scheduler_enabled:
        stop_scheduler()
    log.info("application_stopped")


app = FastAPI(
    title="Email Sync",
    description="Gmail conversation sync for quotes",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "GET", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(email_sync_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "version": VERSION}


# Run with: uvicorn mail_sync.main:app --host 0.0.0.0 --port 8001

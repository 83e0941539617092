"""FastAPI application for Kickoff Notifier."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from kickoff.config import get_settings
from kickoff.database import close_db, init_db
from kickoff.remote import ConfigurationError
from kickoff.routes.admin import router as admin_router
from kickoff.routes.core import router as core_router
from kickoff.routes.webhook import router as webhook_router
from kickoff.scheduler import start_scheduler, stop_scheduler
from kickoff.security import limiter
from kickoff.telemetry.sentry import init_sentry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize Sentry for error tracking (before FastAPI app creation)
# Only activates if SENTRY_DSN is set in environment
init_sentry()

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Kickoff Notifier...")
    await init_db()

    if not settings.NOTIFICATIONS_ENABLED:
        logger.warning("NOTIFICATIONS_ENABLED=false: units will run but make no remote changes")
    start_scheduler()

    yield

    logger.info("Shutting down...")
    stop_scheduler()
    await close_db()


app = FastAPI(
    title="Kickoff Notifier",
    description="Pre-match push notification scheduling and reconciliation against Braze",
    version="1.0.0",
    lifespan=lifespan,
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# Include routers
app.include_router(core_router)
app.include_router(webhook_router)
app.include_router(admin_router)

"""
FastAPI Main Application Entry Point for the Ticketing Scheduler.

Hosts the background scheduling and escalation engine:
- H-1 / H-0 event reminders
- Notification retention cleanup
- Multi-level auto escalation
- Payment settlement monitoring
- Operator endpoints for the job scheduler
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.exceptions import SchedulerException
from app.api.routes import job_router


# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Build the task registry (invalid configuration fails startup)
    - Start background scheduler on the leader instance only

    Shutdown:
    - Stop scheduler
    """
    # Startup
    logger.info(f"🚀 Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Debug mode: {settings.debug}")
    logger.info(f"Scheduler enabled: {settings.enable_scheduler}")
    logger.info(f"Run scheduler (this instance): {settings.run_scheduler}")

    from app.services.scheduler import get_scheduler

    # ConfigurationError propagates: a bad schedule must stop the process
    app.state.scheduler = get_scheduler()

    # Only start timers if BOTH enabled AND run_scheduler is true.
    # Set RUN_SCHEDULER=true on only ONE worker/container in production
    should_run_scheduler = settings.enable_scheduler and settings.run_scheduler

    if should_run_scheduler:
        app.state.scheduler.start()
        logger.info("✅ Background scheduler started")
    else:
        logger.info("⏸️ Background scheduler not started on this instance")

    yield

    # Shutdown
    if app.state.scheduler and app.state.scheduler.is_running:
        app.state.scheduler.stop()
        logger.info("✅ Scheduler stopped")

    logger.info("👋 Shutting down...")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    # Ticketing Scheduler

    Background jobs for the event-ticketing platform.

    ## Jobs
    - **h1_reminder**: reminds participants the day before an event
    - **h0_reminder**: reminds participants an hour before an event
    - **notification_cleanup**: deletes notifications older than 30 days
    - **auto_escalation**: escalates stale events and organizer verifications
    - **payment_monitor**: reconciles pending payments with the settlement system

    Every job is safe to run twice: notifications carry dedup keys and state
    transitions are guarded.
    """,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# Global exception handler for SchedulerExceptions
@app.exception_handler(SchedulerException)
async def scheduler_exception_handler(request, exc: SchedulerException):
    """Handle all SchedulerException subclasses."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


# Include API routers
app.include_router(job_router)


# Health check endpoint
@app.get("/health", tags=["System"])
async def health_check():
    """
    Health check endpoint for monitoring.

    Returns service status and scheduler health.
    """
    scheduler = getattr(app.state, 'scheduler', None)
    scheduler_status = scheduler.get_health_status() if scheduler else {
        "status": "healthy",
        "is_running": False,
        "jobs": [],
        "failures": {},
    }

    return {
        "status": scheduler_status["status"],
        "service": settings.app_name,
        "version": settings.app_version,
        "debug": settings.debug,
        "scheduler": scheduler_status,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# Root endpoint
@app.get("/", tags=["System"])
async def root():
    """Service information and operator entry points."""
    scheduler = getattr(app.state, 'scheduler', None)
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "scheduler_running": bool(scheduler and scheduler.is_running),
        "endpoints": {
            "health": "/health",
            "jobs": "/api/jobs",
            "docs": "/docs" if settings.debug else None,
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )

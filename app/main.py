"""
API process: ops endpoints for the lifecycle automation engine.

The API produces jobs (stage transitions, manual sweeps) but does not
consume them; the worker process in app/jobs/worker.py runs the handlers.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.features.automation.api import router as automation
from app.features.automation.services.engine import AutomationEngine
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.queue import PostgresJobQueue
from app.routes import health

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    try:
        await db_pool.initialize()
    except Exception as e:
        logger.error("Failed to initialize services", error=str(e))
        raise

    engine = AutomationEngine(queue=PostgresJobQueue())
    app.state.automation_engine = engine
    logger.info("All services initialized successfully", services=["database_pool", "automation_engine"])

    yield

    logger.info("Application shutting down")
    app.state.automation_engine = None

    shutdown_errors = []
    try:
        # Producer only: closes the transport client, the queue was never started
        await engine.stop()
    except Exception as e:
        logger.error("Error stopping automation engine", error=str(e))
        shutdown_errors.append(f"Engine: {e}")

    try:
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="HR Lifecycle Automation",
    description="Queued stage emails, reminders, escalations and hire-flow automation",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(automation.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

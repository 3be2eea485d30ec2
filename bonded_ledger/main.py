"""
Bonded Ledger Service
FastAPI application entry point

- Batch job scheduler started/stopped with the app lifespan
- Admin API for job history, triggers and the recalculation queue
- Health endpoint with DB ping
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from bonded_ledger import __version__
from bonded_ledger.api.routes import admin_jobs
from bonded_ledger.core.config import settings
from bonded_ledger.core.database import AsyncSessionLocal, engine, init_models
from bonded_ledger.jobs.scheduler import job_scheduler

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Start the batch job scheduler on startup, drain it on shutdown.

    Tables are created automatically outside production only; production
    schema is managed by migrations.
    """
    if settings.ENVIRONMENT != "production":
        await init_models()

    if settings.SCHEDULER_ENABLED:
        await job_scheduler.start()
        logger.info("Batch job scheduler ENABLED - jobs will run automatically")
    else:
        logger.info("Batch job scheduler DISABLED via config")

    yield

    await job_scheduler.shutdown(timeout=settings.RECALC_TRANSACTION_TIMEOUT_SECONDS)
    await engine.dispose()
    logger.info("Bonded Ledger shutdown complete")


app = FastAPI(
    lifespan=lifespan,
    title="Bonded Ledger API",
    description="Ledger recalculation and batch scheduling for bonded-zone inventory reporting.",
    version=__version__,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)

app.include_router(admin_jobs.router, prefix="/api")


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check with DB ping. Returns 503 if the database is unreachable."""
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "scheduler": "running" if job_scheduler.is_running else "stopped",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {type(e).__name__}: {str(e)[:100]}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status

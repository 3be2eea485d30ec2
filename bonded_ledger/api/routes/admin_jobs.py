"""
Batch Job Admin API

Operator surface over the batch job scheduler, the job history and the
recalculation queue:
- Run history with pagination, scheduler status and statistics
- Manual job triggers and scheduler start/stop
- Manual recalculation requests
- Retention purge of finished runs

The operator name comes from the X-Operator header and is recorded as the
run's triggered_by. Authentication sits in front of this service.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from bonded_ledger.core.config import settings
from bonded_ledger.core.database import get_db
from bonded_ledger.core.exceptions import (
    ConflictError,
    LedgerBaseError,
    NotFoundError,
    RecalcTimeoutError,
    UnknownJobError,
    ValidationError,
)
from bonded_ledger.core.utils import local_today, utcnow
from bonded_ledger.jobs.scheduler import BatchJobScheduler, job_scheduler
from bonded_ledger.models.batch_job import JobStatus, JobType
from bonded_ledger.schemas.jobs import (
    BatchJobRunResponse,
    EnqueueRecalcRequest,
    EnqueueRecalcResponse,
    JobHistoryResponse,
    PurgeResponse,
    QueueDepthResponse,
    RunResultResponse,
    TriggerJobRequest,
)
from bonded_ledger.services.job_history import JobHistoryService
from bonded_ledger.services.keys import QueueKey, priority_for
from bonded_ledger.services.recalc_queue import RecalcQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/jobs", tags=["Batch Jobs Admin"])


def get_scheduler() -> BatchJobScheduler:
    return job_scheduler


def get_operator(x_operator: Optional[str] = Header(None, alias="X-Operator")) -> str:
    return (x_operator or "").strip()[:100] or "ADMIN"


def to_http_exception(error: LedgerBaseError) -> HTTPException:
    if isinstance(error, (ValidationError, UnknownJobError)):
        status_code = 400
    elif isinstance(error, NotFoundError):
        status_code = 404
    elif isinstance(error, ConflictError):
        status_code = 409
    elif isinstance(error, RecalcTimeoutError):
        status_code = 503
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=error.to_dict())


# ==============================================================================
# History & Status
# ==============================================================================

@router.get("/", response_model=JobHistoryResponse)
async def list_job_runs(
    job_type: Optional[JobType] = Query(None, description="Filter by job type"),
    status: Optional[JobStatus] = Query(None, description="Filter by run status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    scheduler: BatchJobScheduler = Depends(get_scheduler),
):
    """Run history (newest first) with scheduler status and statistics."""
    history = JobHistoryService(db)
    try:
        runs, total = await history.list_runs(job_type=job_type, status=status, limit=limit, offset=offset)
    except LedgerBaseError as e:
        raise to_http_exception(e)

    return JobHistoryResponse(
        runs=[BatchJobRunResponse.model_validate(run) for run in runs],
        total=total,
        limit=limit,
        offset=offset,
        scheduler=await scheduler.get_status(),
        statistics=await history.get_statistics(),
    )


@router.get("/status")
async def get_scheduler_status(scheduler: BatchJobScheduler = Depends(get_scheduler)):
    return await scheduler.get_status()


@router.get("/queue/depth", response_model=QueueDepthResponse)
async def get_queue_depth(
    company_code: Optional[str] = Query(None, max_length=20),
    item_type: Optional[str] = Query(None, max_length=20),
    db: AsyncSession = Depends(get_db),
):
    pending = await JobHistoryService(db).queue_depth(company_code=company_code, item_type=item_type)
    return QueueDepthResponse(pending=pending, company_code=company_code, item_type=item_type)


# ==============================================================================
# Actions
# ==============================================================================

@router.post("/trigger", response_model=RunResultResponse)
async def trigger_job(
    request: TriggerJobRequest,
    scheduler: BatchJobScheduler = Depends(get_scheduler),
    operator: str = Depends(get_operator),
):
    """Run a job now. 409 when a run of the same type is already in progress."""
    try:
        result = await scheduler.trigger_job(request.job_type, triggered_by=operator)
    except LedgerBaseError as e:
        raise to_http_exception(e)

    if result.skipped:
        raise HTTPException(
            status_code=409,
            detail={
                "code": "JOB_ALREADY_RUNNING",
                "message": f"{request.job_type.value} is already running",
            },
        )
    return RunResultResponse(**result.to_dict())


@router.post("/scheduler/start")
async def start_scheduler(
    scheduler: BatchJobScheduler = Depends(get_scheduler),
    operator: str = Depends(get_operator),
):
    await scheduler.start()
    logger.info(f"[AdminJobs] Scheduler started by {operator}")
    return {"running": scheduler.is_running}


@router.post("/scheduler/stop")
async def stop_scheduler(
    scheduler: BatchJobScheduler = Depends(get_scheduler),
    operator: str = Depends(get_operator),
):
    await scheduler.stop()
    logger.info(f"[AdminJobs] Scheduler stopped by {operator}")
    return {"running": scheduler.is_running}


@router.post("/queue", response_model=EnqueueRecalcResponse)
async def enqueue_recalculation(
    request: EnqueueRecalcRequest,
    db: AsyncSession = Depends(get_db),
    operator: str = Depends(get_operator),
):
    """Queue a recalculation. Priority defaults from the date (backdated = URGENT)."""
    try:
        key = QueueKey.build(request.company_code, request.item_type, request.item_code, request.recalc_date)
        priority = request.priority
        if priority is None:
            priority = int(priority_for(key.recalc_date, local_today(utcnow(), settings.SCHEDULER_TIMEZONE)))
        queue = RecalcQueue(db)
        entry_id = await queue.enqueue(key, priority, reason=request.reason or f"Manual request by {operator}")
        depth = await queue.depth()
    except LedgerBaseError as e:
        raise to_http_exception(e)

    logger.info(f"[AdminJobs] {operator} queued {key} priority={priority}")
    return EnqueueRecalcResponse(entry_id=entry_id, priority=priority, queue_depth=depth)


@router.delete("/", response_model=PurgeResponse)
async def purge_job_runs(
    older_than: int = Query(settings.JOB_HISTORY_RETENTION_DAYS, ge=1, description="Age in days"),
    db: AsyncSession = Depends(get_db),
    operator: str = Depends(get_operator),
):
    """Delete finished runs older than ``older_than`` days. RUNNING runs are kept."""
    try:
        deleted = await JobHistoryService(db).purge_runs(older_than)
    except LedgerBaseError as e:
        raise to_http_exception(e)

    logger.info(f"[AdminJobs] {operator} purged {deleted} run(s) older than {older_than} days")
    return PurgeResponse(deleted=deleted, older_than_days=older_than)

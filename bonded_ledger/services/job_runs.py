"""
Batch job run lifecycle.

Every execution gets a BatchJobRun row created RUNNING before the job body
starts and finalized exactly once afterwards.
"""
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bonded_ledger.core.utils import as_aware, utcnow
from bonded_ledger.models.batch_job import BatchJobRun, JobStatus, JobType

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 4000


async def start_run(db: AsyncSession, job_type: JobType, triggered_by: str = "SCHEDULER") -> BatchJobRun:
    """Create the RUNNING row for a new execution."""
    run = BatchJobRun(
        job_type=job_type,
        status=JobStatus.RUNNING,
        started_at=utcnow(),
        successful_records=0,
        failed_records=0,
        triggered_by=triggered_by,
    )
    db.add(run)
    await db.flush()
    logger.info(f"[JobRuns] Started {job_type.value} run {run.id} (triggered by {triggered_by})")
    return run


async def finish_run(
    db: AsyncSession,
    run_id: int,
    status: JobStatus,
    successful_records: int = 0,
    failed_records: int = 0,
    error_message: Optional[str] = None,
    details: Optional[dict] = None,
) -> Optional[BatchJobRun]:
    """Move a RUNNING run to its terminal status; a finalized run is left alone."""
    result = await db.execute(select(BatchJobRun).where(BatchJobRun.id == run_id))
    run = result.scalar_one_or_none()
    if run is None:
        logger.error(f"[JobRuns] Run {run_id} vanished before it could be finalized")
        return None
    if run.status != JobStatus.RUNNING:
        logger.warning(f"[JobRuns] Run {run_id} already finalized as {run.status.value}")
        return run

    completed_at = utcnow()
    run.status = status
    run.completed_at = completed_at
    run.successful_records = successful_records
    run.failed_records = failed_records
    if error_message:
        run.error_message = error_message[:MAX_ERROR_LENGTH]

    run_details = dict(details or {})
    run_details["duration_seconds"] = round((completed_at - as_aware(run.started_at)).total_seconds(), 3)
    run.details = run_details

    await db.flush()
    logger.info(
        f"[JobRuns] {run.job_type.value} run {run_id} finished {status.value}: "
        f"{successful_records} ok, {failed_records} failed"
    )
    return run


async def cancel_orphaned_runs(db: AsyncSession, exclude_ids=()) -> int:
    """
    Mark runs left RUNNING by a crashed process as CANCELLED.

    ``exclude_ids`` are runs still in flight in this process.
    """
    now = utcnow()
    stmt = update(BatchJobRun).where(BatchJobRun.status == JobStatus.RUNNING)
    if exclude_ids:
        stmt = stmt.where(BatchJobRun.id.notin_(list(exclude_ids)))
    result = await db.execute(
        stmt
        .values(
            status=JobStatus.CANCELLED,
            completed_at=now,
            error_message="Cancelled at scheduler start: run was orphaned by a previous process",
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.warning(f"[JobRuns] Cancelled {result.rowcount} orphaned run(s)")
    return result.rowcount

"""
Hourly Batch

Queue housekeeping between drains:
- PROCESSING entries whose claim is older than RECALC_STALE_PROCESSING_MINUTES
  (a drain that died mid-batch) go back to PENDING
- DEFERRED entries whose date rolled into the past become URGENT
"""
import logging
from datetime import timedelta

from bonded_ledger.core.utils import utcnow
from bonded_ledger.jobs.context import JobContext, JobReport
from bonded_ledger.services.recalc_queue import RecalcQueue

logger = logging.getLogger(__name__)


async def run_hourly_batch_job(ctx: JobContext) -> JobReport:
    today = ctx.today()
    reclaimed = 0

    async with ctx.session_factory() as session:
        async with session.begin():
            queue = RecalcQueue(session)
            if ctx.config.RECALC_RECLAIM_STALE_ENABLED:
                cutoff = utcnow() - timedelta(minutes=ctx.config.RECALC_STALE_PROCESSING_MINUTES)
                reclaimed = await queue.reclaim_stale(cutoff)
            promoted = await queue.promote_backdated(today)
            pending = await queue.depth()

    logger.info(f"[Hourly] reclaimed={reclaimed} promoted={promoted} pending={pending}")
    return JobReport(
        successful_records=reclaimed + promoted,
        details={
            "reclaimed_stale": reclaimed,
            "promoted_backdated": promoted,
            "pending_queue": pending,
            "business_date": today.isoformat(),
        },
    )

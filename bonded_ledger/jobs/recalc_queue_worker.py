"""
Recalculation Queue Drain

Claims PENDING entries in priority order and recomputes each item's chain
from the entry's date. Every entry runs in its own transaction; one entry's
failure (timeout, conflict, missing item or anything unexpected) marks that
entry FAILED and the drain moves on.

The drain stops when the queue is empty, when the per-run cap is reached, or
at the soft deadline. Entries claimed but not started by the deadline go
back to PENDING for the next run.
"""
import logging
from collections import Counter
from typing import Optional

from bonded_ledger.core.exceptions import LedgerBaseError
from bonded_ledger.jobs.context import JobContext, JobReport
from bonded_ledger.models.recalc_queue import RecalcQueueEntry
from bonded_ledger.services.keys import ItemKey
from bonded_ledger.services.recalc_queue import RecalcQueue

logger = logging.getLogger(__name__)


async def process_entry(ctx: JobContext, entry: RecalcQueueEntry) -> Optional[str]:
    """Recalculate one claimed entry and finalize it. Returns the error code on failure."""
    item = ItemKey(entry.company_code, entry.item_type, entry.item_code)
    error_code = None
    error_message = None

    try:
        outcome = await ctx.recalculator.recalculate_from_history(item, entry.recalc_date)
        logger.debug(f"[RecalcDrain] {entry.label}: {outcome.records_updated} record(s) updated")
    except LedgerBaseError as e:
        error_code = e.code
        error_message = f"{e.code}: {e.message}"
        logger.warning(f"[RecalcDrain] {entry.label} failed: {error_message}")
    except Exception as e:
        error_code = "UNEXPECTED"
        error_message = f"{type(e).__name__}: {e}"
        logger.exception(f"[RecalcDrain] {entry.label} failed unexpectedly")

    async with ctx.session_factory() as session:
        async with session.begin():
            queue = RecalcQueue(session)
            if error_code is None:
                await queue.mark_completed(entry)
            else:
                await queue.mark_failed(entry, error_message)

    return error_code


async def run_recalc_queue_job(
    ctx: JobContext,
    batch_size: Optional[int] = None,
    max_entries: Optional[int] = None,
    soft_deadline_seconds: Optional[float] = None,
) -> JobReport:
    """Drain the recalculation queue."""
    batch_size = batch_size or ctx.config.RECALC_BATCH_SIZE
    max_entries = max_entries or ctx.config.RECALC_MAX_ENTRIES_PER_RUN
    if soft_deadline_seconds is None:
        soft_deadline_seconds = ctx.config.RECALC_DRAIN_SOFT_DEADLINE_SECONDS
    deadline = ctx.monotonic() + soft_deadline_seconds

    report = JobReport()
    errors = Counter()
    claimed = 0
    released = 0
    stop_reason = "queue_empty"

    while True:
        if claimed >= max_entries:
            stop_reason = "max_entries"
            break
        if ctx.monotonic() >= deadline:
            stop_reason = "soft_deadline"
            break

        async with ctx.session_factory() as session:
            async with session.begin():
                batch = await RecalcQueue(session).dequeue_batch(min(batch_size, max_entries - claimed))
        if not batch:
            break
        claimed += len(batch)

        for index, entry in enumerate(batch):
            if ctx.monotonic() >= deadline:
                async with ctx.session_factory() as session:
                    async with session.begin():
                        released += await RecalcQueue(session).release(batch[index:])
                stop_reason = "soft_deadline"
                break

            error_code = await process_entry(ctx, entry)
            if error_code is None:
                report.successful_records += 1
            else:
                report.failed_records += 1
                errors[error_code] += 1

        if stop_reason == "soft_deadline":
            break

    report.details = {
        "claimed": claimed,
        "released": released,
        "stop_reason": stop_reason,
        "errors": dict(errors),
    }
    logger.info(
        f"[RecalcDrain] Done ({stop_reason}): {report.successful_records} completed, "
        f"{report.failed_records} failed, {released} released"
    )
    return report

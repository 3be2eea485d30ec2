"""
End-of-Day Snapshot

Closes the previous business day (reference time zone) for every item with
ledger history: carries the balance into a zero-movement record when the
item had no activity that day, recomputes the chain from that day, and
completes queued requests the recomputation already covered.
"""
import logging
from collections import Counter
from datetime import date, timedelta
from typing import Optional

from bonded_ledger.core.exceptions import LedgerBaseError
from bonded_ledger.jobs.context import JobContext, JobReport
from bonded_ledger.services.recalc_queue import RecalcQueue

logger = logging.getLogger(__name__)


async def run_eod_snapshot_job(ctx: JobContext, business_day: Optional[date] = None) -> JobReport:
    day = business_day or ctx.today() - timedelta(days=1)
    items = await ctx.recalculator.list_items()
    logger.info(f"[EOD] Closing {day.isoformat()} for {len(items)} item(s)")

    report = JobReport()
    errors = Counter()
    snapshots = 0
    covered = 0

    for item in items:
        started = ctx.clock()
        try:
            outcome = await ctx.recalculator.close_day(item, day)
        except LedgerBaseError as e:
            report.failed_records += 1
            errors[e.code] += 1
            logger.warning(f"[EOD] {item} failed: {e.code}: {e.message}")
            continue
        except Exception:
            report.failed_records += 1
            errors["UNEXPECTED"] += 1
            logger.exception(f"[EOD] {item} failed unexpectedly")
            continue

        report.successful_records += 1
        if outcome.snapshot_created:
            snapshots += 1

        async with ctx.session_factory() as session:
            async with session.begin():
                covered += await RecalcQueue(session).complete_covered(item, day, started)

    report.details = {
        "business_day": day.isoformat(),
        "items": len(items),
        "snapshots_created": snapshots,
        "queue_entries_covered": covered,
        "errors": dict(errors),
    }
    logger.info(
        f"[EOD] {day.isoformat()} closed: {report.successful_records} ok, "
        f"{report.failed_records} failed, {snapshots} snapshot(s)"
    )
    return report

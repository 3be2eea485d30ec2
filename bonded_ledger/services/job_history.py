"""
Job History & Statistics

Read-mostly view over BatchJobRun rows and the recalculation queue for the
admin surface, plus the operator-driven retention purge.
"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bonded_ledger.core.exceptions import ValidationError
from bonded_ledger.core.utils import as_aware, utcnow
from bonded_ledger.models.batch_job import (
    TERMINAL_JOB_STATUSES,
    BatchJobRun,
    JobStatus,
    JobType,
)
from bonded_ledger.services.recalc_queue import RecalcQueue

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


class JobHistoryService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_runs(
        self,
        job_type: Optional[JobType] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[BatchJobRun], int]:
        """Runs newest first, with the total matching the filters."""
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
        if offset < 0:
            raise ValidationError("offset must not be negative", field="offset")

        filters = []
        if job_type is not None:
            filters.append(BatchJobRun.job_type == job_type)
        if status is not None:
            filters.append(BatchJobRun.status == status)

        total_result = await self.db.execute(select(func.count(BatchJobRun.id)).where(*filters))
        total = total_result.scalar() or 0

        result = await self.db.execute(
            select(BatchJobRun)
            .where(*filters)
            .order_by(BatchJobRun.started_at.desc(), BatchJobRun.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def get_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Aggregate view used by the admin dashboard.

        - by_type_status: run counts grouped by job type and status
        - avg_duration_seconds: per type, completed runs of the last 24h
        - last_success: latest COMPLETED run per type
        - pending_queue: current queue depth
        - last_24h: totals of runs started in the last 24h
        """
        now = now or utcnow()
        since = now - timedelta(hours=24)

        grouped = await self.db.execute(
            select(BatchJobRun.job_type, BatchJobRun.status, func.count(BatchJobRun.id))
            .group_by(BatchJobRun.job_type, BatchJobRun.status)
        )
        by_type_status: Dict[str, Dict[str, int]] = defaultdict(dict)
        for job_type, status, count in grouped.all():
            by_type_status[job_type.value][status.value] = count

        recent = await self.db.execute(
            select(BatchJobRun).where(BatchJobRun.started_at >= since)
        )
        recent_runs = list(recent.scalars().all())

        durations: Dict[str, List[float]] = defaultdict(list)
        last_24h = {"total": 0, "completed": 0, "failed": 0, "running": 0, "cancelled": 0}
        for run in recent_runs:
            last_24h["total"] += 1
            last_24h[run.status.value.lower()] += 1
            if run.status == JobStatus.COMPLETED and run.completed_at is not None:
                elapsed = (as_aware(run.completed_at) - as_aware(run.started_at)).total_seconds()
                durations[run.job_type.value].append(elapsed)

        avg_duration = {
            job_type: round(sum(values) / len(values), 3)
            for job_type, values in durations.items()
        }

        last_success = {}
        for job_type in JobType:
            result = await self.db.execute(
                select(BatchJobRun)
                .where(BatchJobRun.job_type == job_type, BatchJobRun.status == JobStatus.COMPLETED)
                .order_by(BatchJobRun.completed_at.desc())
                .limit(1)
            )
            run = result.scalar_one_or_none()
            last_success[job_type.value] = {
                "run_id": run.id,
                "completed_at": as_aware(run.completed_at).isoformat() if run.completed_at else None,
                "successful_records": run.successful_records,
            } if run else None

        return {
            "timestamp": now.isoformat(),
            "by_type_status": dict(by_type_status),
            "avg_duration_seconds": avg_duration,
            "last_success": last_success,
            "pending_queue": await self.queue_depth(),
            "last_24h": last_24h,
        }

    async def queue_depth(self, company_code: Optional[str] = None, item_type: Optional[str] = None) -> int:
        return await RecalcQueue(self.db).depth(company_code=company_code, item_type=item_type)

    async def purge_runs(self, older_than_days: int, now: Optional[datetime] = None) -> int:
        """Delete terminal runs started more than ``older_than_days`` ago."""
        if older_than_days < 1:
            raise ValidationError("older_than_days must be at least 1", field="older_than_days")

        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        result = await self.db.execute(
            delete(BatchJobRun)
            .where(
                BatchJobRun.started_at < cutoff,
                BatchJobRun.status.in_(TERMINAL_JOB_STATUSES),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(f"[JobHistory] Purged {result.rowcount} run(s) older than {older_than_days} days")
        return result.rowcount

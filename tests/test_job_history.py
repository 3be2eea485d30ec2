"""
Tests for job history listing, statistics and retention purge.
"""
from datetime import date, datetime, timedelta, timezone

import pytest

from bonded_ledger.core.exceptions import ValidationError
from bonded_ledger.models import BatchJobRun, JobStatus, JobType
from bonded_ledger.services.job_history import JobHistoryService
from bonded_ledger.services.keys import QueueKey, RecalcPriority
from bonded_ledger.services.recalc_queue import RecalcQueue

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def run(job_type, status, started, seconds=None, ok=0, failed=0):
    return BatchJobRun(
        job_type=job_type,
        status=status,
        started_at=started,
        completed_at=started + timedelta(seconds=seconds) if seconds is not None else None,
        successful_records=ok,
        failed_records=failed,
        triggered_by="SCHEDULER",
    )


@pytest.fixture
def seed_runs(session_factory):
    async def _seed():
        async with session_factory() as session:
            async with session.begin():
                session.add_all([
                    run(JobType.RECALC_QUEUE, JobStatus.COMPLETED, NOW - timedelta(hours=1), seconds=10, ok=5),
                    run(JobType.RECALC_QUEUE, JobStatus.COMPLETED, NOW - timedelta(hours=2), seconds=20, ok=3),
                    run(JobType.RECALC_QUEUE, JobStatus.FAILED, NOW - timedelta(hours=3), seconds=1),
                    run(JobType.EOD_SNAPSHOT, JobStatus.COMPLETED, NOW - timedelta(days=2), seconds=60, ok=40),
                    run(JobType.HOURLY_BATCH, JobStatus.RUNNING, NOW - timedelta(minutes=5)),
                    run(JobType.HOURLY_BATCH, JobStatus.CANCELLED, NOW - timedelta(days=120), seconds=2),
                    run(JobType.RECALC_QUEUE, JobStatus.RUNNING, NOW - timedelta(days=150)),
                ])
    return _seed


class TestListRuns:

    @pytest.mark.asyncio
    async def test_filters_and_pagination(self, session_factory, seed_runs):
        await seed_runs()
        async with session_factory() as session:
            history = JobHistoryService(session)

            runs, total = await history.list_runs(job_type=JobType.RECALC_QUEUE, limit=2)
            assert total == 4
            assert len(runs) == 2
            assert runs[0].started_at > runs[1].started_at

            runs, total = await history.list_runs(status=JobStatus.FAILED)
            assert total == 1
            assert runs[0].job_type == JobType.RECALC_QUEUE

            runs, total = await history.list_runs(limit=50, offset=6)
            assert total == 7
            assert len(runs) == 1

    @pytest.mark.asyncio
    async def test_page_size_capped(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await JobHistoryService(session).list_runs(limit=201)


class TestStatistics:

    @pytest.mark.asyncio
    async def test_statistics(self, session_factory, seed_runs):
        await seed_runs()
        async with session_factory() as session:
            async with session.begin():
                await RecalcQueue(session).enqueue(
                    QueueKey.build("BZ01", "ROH", "ITEM-1", date(2024, 3, 9)), RecalcPriority.URGENT
                )

        async with session_factory() as session:
            stats = await JobHistoryService(session).get_statistics(now=NOW)

        assert stats["by_type_status"]["RECALC_QUEUE"] == {"COMPLETED": 2, "FAILED": 1, "RUNNING": 1}
        assert stats["avg_duration_seconds"] == {"RECALC_QUEUE": 15.0}
        assert stats["last_success"]["EOD_SNAPSHOT"]["successful_records"] == 40
        assert stats["last_success"]["RECALC_QUEUE"]["successful_records"] == 5
        assert stats["last_success"]["HOURLY_BATCH"] is None
        assert stats["pending_queue"] == 1
        assert stats["last_24h"] == {"total": 4, "completed": 2, "failed": 1, "running": 1, "cancelled": 0}


class TestPurge:

    @pytest.mark.asyncio
    async def test_purge_keeps_running_and_recent_runs(self, session_factory, seed_runs):
        await seed_runs()
        async with session_factory() as session:
            async with session.begin():
                deleted = await JobHistoryService(session).purge_runs(90, now=NOW)

        async with session_factory() as session:
            runs, total = await JobHistoryService(session).list_runs(limit=50)

        assert deleted == 1
        assert total == 6
        assert sum(1 for r in runs if r.status == JobStatus.RUNNING) == 2

    @pytest.mark.asyncio
    async def test_purge_rejects_non_positive_age(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await JobHistoryService(session).purge_runs(0)

"""
Tests for the end-of-day snapshot and hourly batch job bodies.
"""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select, update

from bonded_ledger.core.config import settings
from bonded_ledger.core.exceptions import ConflictError
from bonded_ledger.jobs.context import JobContext
from bonded_ledger.jobs.eod_snapshot import run_eod_snapshot_job
from bonded_ledger.jobs.hourly_batch import run_hourly_batch_job
from bonded_ledger.models import MutationRecord, RecalcQueueEntry, RecalcStatus
from bonded_ledger.services.keys import ItemKey, QueueKey, RecalcPriority
from bonded_ledger.services.ledger import LedgerRecalculator, RecalcOutcome
from bonded_ledger.services.recalc_queue import RecalcQueue


def fixed_clock(value):
    return lambda: value


class TestEodSnapshot:

    @pytest.mark.asyncio
    async def test_closes_previous_business_day(self, session_factory, seed_chain, item, day):
        await seed_chain(item, [(day(1), 10, 0)], opening=Decimal("5"))
        async with session_factory() as session:
            async with session.begin():
                await RecalcQueue(session).enqueue(
                    QueueKey(item=item, recalc_date=day(2)), RecalcPriority.DEFERRED, "same-day posting"
                )
                await session.execute(
                    update(RecalcQueueEntry).values(queued_at=datetime(2024, 3, 2, 10, 0, tzinfo=timezone.utc))
                )

        # 2024-03-03 01:00 WIB; business day is 2024-03-02
        ctx = JobContext(
            session_factory=session_factory,
            recalculator=LedgerRecalculator(session_factory),
            clock=fixed_clock(datetime(2024, 3, 2, 18, 0, tzinfo=timezone.utc)),
        )
        report = await run_eod_snapshot_job(ctx)

        async with session_factory() as session:
            records = (await session.execute(
                select(MutationRecord).order_by(MutationRecord.mutation_date)
            )).scalars().all()
            entry = (await session.execute(select(RecalcQueueEntry))).scalar_one()

        assert report.details["business_day"] == "2024-03-02"
        assert report.successful_records == 1
        assert report.details["snapshots_created"] == 1
        assert records[-1].mutation_date == day(2)
        assert records[-1].opening_balance == Decimal("15")
        assert records[-1].closing_balance == Decimal("15")
        assert entry.status == RecalcStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_item_failure_is_counted_not_fatal(self, session_factory, day):
        items = [ItemKey.build("BZ01", "ROH", "A"), ItemKey.build("BZ01", "ROH", "B")]

        async def close_day(item, business_day):
            if item.item_code == "A":
                raise ConflictError("Concurrent modification", item=str(item))
            return RecalcOutcome(item=item, from_date=business_day, records_updated=1)

        recalculator = AsyncMock()
        recalculator.list_items = AsyncMock(return_value=items)
        recalculator.close_day = AsyncMock(side_effect=close_day)
        ctx = JobContext(session_factory=session_factory, recalculator=recalculator, config=settings)

        report = await run_eod_snapshot_job(ctx, business_day=day(2))

        assert report.successful_records == 1
        assert report.failed_records == 1
        assert report.details["errors"] == {"RECALC_CONFLICT": 1}

    @pytest.mark.asyncio
    async def test_unexpected_item_error_does_not_stop_the_run(self, session_factory, day):
        items = [
            ItemKey.build("BZ01", "ROH", "A"),
            ItemKey.build("BZ01", "ROH", "B"),
            ItemKey.build("BZ01", "ROH", "C"),
        ]

        async def close_day(item, business_day):
            if item.item_code == "A":
                raise RuntimeError("unique constraint failed")
            return RecalcOutcome(item=item, from_date=business_day, records_updated=1)

        recalculator = AsyncMock()
        recalculator.list_items = AsyncMock(return_value=items)
        recalculator.close_day = AsyncMock(side_effect=close_day)
        ctx = JobContext(session_factory=session_factory, recalculator=recalculator)

        report = await run_eod_snapshot_job(ctx, business_day=day(2))

        assert recalculator.close_day.await_count == 3
        assert report.successful_records == 2
        assert report.failed_records == 1
        assert report.details["errors"] == {"UNEXPECTED": 1}

    @pytest.mark.asyncio
    async def test_requests_queued_after_the_close_stay_pending(self, session_factory, seed_chain, item, day):
        await seed_chain(item, [(day(1), 10, 0)], opening=Decimal("5"))
        async with session_factory() as session:
            async with session.begin():
                await RecalcQueue(session).enqueue(
                    QueueKey(item=item, recalc_date=day(2)), RecalcPriority.DEFERRED, "late posting"
                )
                await session.execute(
                    update(RecalcQueueEntry).values(queued_at=datetime(2024, 3, 2, 19, 0, tzinfo=timezone.utc))
                )

        ctx = JobContext(
            session_factory=session_factory,
            recalculator=LedgerRecalculator(session_factory),
            clock=fixed_clock(datetime(2024, 3, 2, 18, 0, tzinfo=timezone.utc)),
        )
        report = await run_eod_snapshot_job(ctx)

        async with session_factory() as session:
            entry = (await session.execute(select(RecalcQueueEntry))).scalar_one()
        assert report.details["queue_entries_covered"] == 0
        assert entry.status == RecalcStatus.PENDING


class TestJobContext:

    def test_defaults_to_application_settings(self, session_factory):
        ctx = JobContext(session_factory=session_factory, recalculator=AsyncMock())

        assert ctx.config is settings
        assert ctx.tz_name == "Asia/Jakarta"

    def test_today_uses_reference_time_zone(self, session_factory):
        # 2024-03-02 18:00 UTC is already 2024-03-03 in Jakarta
        ctx = JobContext(
            session_factory=session_factory,
            recalculator=AsyncMock(),
            clock=fixed_clock(datetime(2024, 3, 2, 18, 0, tzinfo=timezone.utc)),
        )

        assert ctx.today() == date(2024, 3, 3)


class TestHourlyBatch:

    @pytest.mark.asyncio
    async def test_reclaims_stale_and_promotes_backdated(self, session_factory):
        async with session_factory() as session:
            async with session.begin():
                queue = RecalcQueue(session)
                await queue.enqueue(QueueKey.build("BZ01", "ROH", "STUCK", date(2024, 3, 5)), RecalcPriority.URGENT)
                await queue.enqueue(QueueKey.build("BZ01", "ROH", "OLD", date(2024, 3, 1)), RecalcPriority.DEFERRED)
                await queue.enqueue(QueueKey.build("BZ01", "ROH", "NEW", date(2024, 3, 5)), RecalcPriority.DEFERRED)
                await session.execute(
                    update(RecalcQueueEntry)
                    .where(RecalcQueueEntry.item_code == "STUCK")
                    .values(
                        status=RecalcStatus.PROCESSING,
                        started_at=datetime.now(timezone.utc) - timedelta(hours=5),
                    )
                )

        # 2024-03-05 10:00 WIB
        ctx = JobContext(
            session_factory=session_factory,
            recalculator=AsyncMock(),
            config=settings,
            clock=fixed_clock(datetime(2024, 3, 5, 3, 0, tzinfo=timezone.utc)),
        )
        report = await run_hourly_batch_job(ctx)

        async with session_factory() as session:
            entries = {
                e.item_code: e
                for e in (await session.execute(select(RecalcQueueEntry))).scalars().all()
            }
        assert report.details["reclaimed_stale"] == 1
        assert report.details["promoted_backdated"] == 1
        assert report.details["pending_queue"] == 3
        assert entries["STUCK"].status == RecalcStatus.PENDING
        assert entries["OLD"].priority == RecalcPriority.URGENT
        assert entries["NEW"].priority == RecalcPriority.DEFERRED

    @pytest.mark.asyncio
    async def test_reclaim_can_be_disabled(self, session_factory):
        async with session_factory() as session:
            async with session.begin():
                await RecalcQueue(session).enqueue(
                    QueueKey.build("BZ01", "ROH", "STUCK", date(2024, 3, 5)), RecalcPriority.URGENT
                )
                await session.execute(
                    update(RecalcQueueEntry).values(
                        status=RecalcStatus.PROCESSING,
                        started_at=datetime.now(timezone.utc) - timedelta(hours=5),
                    )
                )

        config = settings.model_copy(update={"RECALC_RECLAIM_STALE_ENABLED": False})
        ctx = JobContext(session_factory=session_factory, recalculator=AsyncMock(), config=config)
        report = await run_hourly_batch_job(ctx)

        assert report.details["reclaimed_stale"] == 0

"""
Tests for the recalculation queue drain job.
"""
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from bonded_ledger.core.config import settings
from bonded_ledger.core.exceptions import NotFoundError, RecalcTimeoutError
from bonded_ledger.jobs.context import JobContext
from bonded_ledger.jobs.recalc_queue_worker import run_recalc_queue_job
from bonded_ledger.models import MutationRecord, RecalcQueueEntry, RecalcStatus
from bonded_ledger.services.keys import QueueKey, RecalcPriority
from bonded_ledger.services.ledger import LedgerRecalculator, RecalcOutcome
from bonded_ledger.services.recalc_queue import RecalcQueue


async def fill_queue(session_factory, codes, day=date(2024, 3, 1)):
    async with session_factory() as session:
        async with session.begin():
            queue = RecalcQueue(session)
            for code in codes:
                await queue.enqueue(QueueKey.build("BZ01", "ROH", code, day), RecalcPriority.URGENT)


async def entries_by_code(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(RecalcQueueEntry))
        return {e.item_code: e for e in result.scalars().all()}


def make_ctx(session_factory, recalculator, monotonic=None):
    ctx = JobContext(session_factory=session_factory, recalculator=recalculator, config=settings)
    if monotonic is not None:
        ctx.monotonic = monotonic
    return ctx


def fake_recalculator(failures=None):
    """AsyncMock recalculator; ``failures`` maps item code -> exception."""
    failures = failures or {}

    async def recalculate_from_history(item, from_date):
        if item.item_code in failures:
            raise failures[item.item_code]
        return RecalcOutcome(item=item, from_date=from_date, records_updated=1)

    recalculator = AsyncMock()
    recalculator.recalculate_from_history = AsyncMock(side_effect=recalculate_from_history)
    return recalculator


class TestRecalcDrain:

    @pytest.mark.asyncio
    async def test_one_timeout_does_not_stop_the_drain(self, session_factory):
        codes = [f"ITEM-{n}" for n in range(1, 6)]
        await fill_queue(session_factory, codes)
        recalculator = fake_recalculator({
            "ITEM-3": RecalcTimeoutError("Recalculation exceeded 30s", timeout_seconds=30.0),
        })

        report = await run_recalc_queue_job(make_ctx(session_factory, recalculator), batch_size=10)

        assert report.successful_records == 4
        assert report.failed_records == 1
        assert report.successful_records + report.failed_records == 5
        assert report.details["errors"] == {"RECALC_TIMEOUT": 1}
        assert recalculator.recalculate_from_history.await_count == 5

        entries = await entries_by_code(session_factory)
        assert entries["ITEM-3"].status == RecalcStatus.FAILED
        assert entries["ITEM-3"].last_error.startswith("RECALC_TIMEOUT")
        assert all(entries[c].status == RecalcStatus.COMPLETED for c in codes if c != "ITEM-3")

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded_and_skipped(self, session_factory):
        await fill_queue(session_factory, ["A", "B"])
        recalculator = fake_recalculator({"A": RuntimeError("boom")})

        report = await run_recalc_queue_job(make_ctx(session_factory, recalculator))

        entries = await entries_by_code(session_factory)
        assert report.successful_records == 1
        assert report.failed_records == 1
        assert entries["A"].status == RecalcStatus.FAILED
        assert "RuntimeError: boom" in entries["A"].last_error
        assert entries["B"].status == RecalcStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_missing_item_fails_entry(self, session_factory):
        await fill_queue(session_factory, ["GHOST"])
        recalculator = fake_recalculator({"GHOST": NotFoundError("No mutation history")})

        report = await run_recalc_queue_job(make_ctx(session_factory, recalculator))

        assert report.details["errors"] == {"RECALC_ITEM_NOT_FOUND": 1}

    @pytest.mark.asyncio
    async def test_drains_across_batches(self, session_factory):
        codes = [f"ITEM-{n:02d}" for n in range(12)]
        await fill_queue(session_factory, codes)

        report = await run_recalc_queue_job(make_ctx(session_factory, fake_recalculator()), batch_size=5)

        assert report.successful_records == 12
        assert report.details["claimed"] == 12
        assert report.details["stop_reason"] == "queue_empty"

    @pytest.mark.asyncio
    async def test_stops_at_per_run_cap(self, session_factory):
        await fill_queue(session_factory, [f"ITEM-{n}" for n in range(5)])

        report = await run_recalc_queue_job(
            make_ctx(session_factory, fake_recalculator()), batch_size=2, max_entries=3
        )

        entries = await entries_by_code(session_factory)
        assert report.successful_records == 3
        assert report.details["stop_reason"] == "max_entries"
        assert sum(1 for e in entries.values() if e.status == RecalcStatus.PENDING) == 2

    @pytest.mark.asyncio
    async def test_soft_deadline_releases_unstarted_entries(self, session_factory):
        await fill_queue(session_factory, [f"ITEM-{n}" for n in range(5)])
        # deadline set, loop check, first entry check; then time is up
        ticks = [0.0, 0.0, 0.0]

        def fake_monotonic():
            return ticks.pop(0) if ticks else 100.0

        report = await run_recalc_queue_job(
            make_ctx(session_factory, fake_recalculator(), monotonic=fake_monotonic),
            batch_size=5,
            soft_deadline_seconds=50.0,
        )

        entries = await entries_by_code(session_factory)
        statuses = sorted(e.status.value for e in entries.values())
        assert report.successful_records == 1
        assert report.details["released"] == 4
        assert report.details["stop_reason"] == "soft_deadline"
        assert statuses == ["COMPLETED", "PENDING", "PENDING", "PENDING", "PENDING"]

    @pytest.mark.asyncio
    async def test_empty_queue(self, session_factory):
        report = await run_recalc_queue_job(make_ctx(session_factory, fake_recalculator()))
        assert report.successful_records == 0
        assert report.failed_records == 0
        assert report.details["stop_reason"] == "queue_empty"

    @pytest.mark.asyncio
    async def test_end_to_end_repairs_chain(self, session_factory, seed_chain, item, day):
        await seed_chain(item, [(day(1), 10, 0), (day(3), 5, 0)], opening=Decimal("100"))
        async with session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(MutationRecord).where(MutationRecord.mutation_date == day(1))
                )
                record = result.scalar_one()
                record.incoming_qty = Decimal("30")
                record.closing_balance = Decimal("130")
                await RecalcQueue(session).enqueue(
                    QueueKey(item=item, recalc_date=day(1)), RecalcPriority.URGENT, "backdated receipt"
                )

        report = await run_recalc_queue_job(make_ctx(session_factory, LedgerRecalculator(session_factory)))

        async with session_factory() as session:
            result = await session.execute(
                select(MutationRecord).where(MutationRecord.mutation_date == day(3))
            )
            later = result.scalar_one()
        assert report.successful_records == 1
        assert later.opening_balance == Decimal("130")
        assert later.closing_balance == Decimal("135")

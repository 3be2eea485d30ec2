"""
Recalculation Queue Service

Durable work list of "recompute item X from date D onward" requests.

Producers (write paths, admin API) upsert on the natural key
(company, item type, item code, date); repeated requests for the same key
collapse into one row. The recalc-queue job claims rows in priority order
(priority DESC, queued_at ASC, id ASC) with one conditional UPDATE, so two
concurrent drains never claim the same row.

Lifecycle:
    PENDING -> PROCESSING -> COMPLETED | FAILED
    any state -> PENDING on re-enqueue
"""
import logging
from datetime import date, datetime
from typing import List, Optional, Sequence

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from bonded_ledger.core.config import settings
from bonded_ledger.core.database import get_db_session
from bonded_ledger.core.exceptions import ValidationError
from bonded_ledger.core.utils import local_today, utcnow
from bonded_ledger.models.recalc_queue import RecalcQueueEntry, RecalcStatus
from bonded_ledger.services.keys import (
    ItemKey,
    QueueKey,
    RecalcPriority,
    priority_for,
    validate_priority,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class RecalcQueue:
    """
    Queue operations bound to a session.

    The caller owns the transaction; nothing here commits.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # =========================================================================
    # PRODUCER SIDE
    # =========================================================================

    async def enqueue(self, key: QueueKey, priority, reason: Optional[str] = None) -> int:
        """
        Upsert a recalculation request; returns the entry id.

        A PENDING row keeps the higher of the two priorities. A row in any
        other state goes back to PENDING with the new priority.
        """
        if not isinstance(key, QueueKey):
            raise ValidationError("key must be a QueueKey", field="key")
        priority = validate_priority(priority)

        table = RecalcQueueEntry.__table__
        insert = self._insert_for_dialect()
        now = utcnow()

        stmt = insert(table).values(
            company_code=key.item.company_code,
            item_type=key.item.item_type,
            item_code=key.item.item_code,
            recalc_date=key.recalc_date,
            status=RecalcStatus.PENDING,
            priority=priority,
            reason=reason,
            queued_at=now,
        )
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.company_code, table.c.item_type, table.c.item_code, table.c.recalc_date],
            set_={
                "priority": case(
                    (
                        and_(table.c.status == RecalcStatus.PENDING, table.c.priority > excluded.priority),
                        table.c.priority,
                    ),
                    else_=excluded.priority,
                ),
                "status": RecalcStatus.PENDING,
                "reason": excluded.reason,
                "queued_at": excluded.queued_at,
                "started_at": None,
                "processed_at": None,
                "last_error": None,
            },
        ).returning(table.c.id)

        result = await self.session.execute(stmt)
        entry_id = result.scalar_one()
        logger.debug(f"[RecalcQueue] Enqueued {key} priority={priority} (id={entry_id})")
        return entry_id

    # =========================================================================
    # CONSUMER SIDE
    # =========================================================================

    async def dequeue_batch(self, limit: int) -> List[RecalcQueueEntry]:
        """Claim up to ``limit`` PENDING entries, highest priority first."""
        if limit < 1:
            return []

        candidates = (
            select(RecalcQueueEntry.id)
            .where(RecalcQueueEntry.status == RecalcStatus.PENDING)
            .order_by(
                RecalcQueueEntry.priority.desc(),
                RecalcQueueEntry.queued_at.asc(),
                RecalcQueueEntry.id.asc(),
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(RecalcQueueEntry)
            .where(
                RecalcQueueEntry.id.in_(candidates),
                RecalcQueueEntry.status == RecalcStatus.PENDING,
            )
            .values(status=RecalcStatus.PROCESSING, started_at=utcnow())
            .returning(RecalcQueueEntry)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self.session.execute(stmt)
        entries = list(result.scalars().all())
        # RETURNING order is not guaranteed
        entries.sort(key=lambda e: (-e.priority, e.queued_at, e.id))
        if entries:
            logger.info(f"[RecalcQueue] Claimed {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")
        return entries

    async def mark_processing(self, entry: RecalcQueueEntry) -> bool:
        """Claim one specific entry; False if it is no longer PENDING."""
        started = utcnow()
        result = await self.session.execute(
            update(RecalcQueueEntry)
            .where(RecalcQueueEntry.id == entry.id, RecalcQueueEntry.status == RecalcStatus.PENDING)
            .values(status=RecalcStatus.PROCESSING, started_at=started)
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        if claimed:
            entry.status = RecalcStatus.PROCESSING
            entry.started_at = started
        return claimed

    async def mark_completed(self, entry: RecalcQueueEntry) -> bool:
        """
        Finalize a claimed entry as COMPLETED.

        Returns False (and changes nothing) when the entry was re-enqueued or
        reclaimed after this claim; the newer request then stays queued.
        """
        return await self._finish(entry, RecalcStatus.COMPLETED, None)

    async def mark_failed(self, entry: RecalcQueueEntry, error) -> bool:
        """Finalize a claimed entry as FAILED with ``error`` recorded."""
        message = str(error) if error is not None else "unknown error"
        if len(message) > MAX_ERROR_LENGTH:
            message = message[:MAX_ERROR_LENGTH]
        return await self._finish(entry, RecalcStatus.FAILED, message)

    async def release(self, entries: Sequence[RecalcQueueEntry]) -> int:
        """Return claimed but unprocessed entries to PENDING."""
        released = 0
        for entry in entries:
            result = await self.session.execute(
                update(RecalcQueueEntry)
                .where(self._claim_clause(entry))
                .values(status=RecalcStatus.PENDING, started_at=None)
                .execution_options(synchronize_session=False)
            )
            released += result.rowcount
        if released:
            logger.info(f"[RecalcQueue] Released {released} unprocessed entr{'y' if released == 1 else 'ies'}")
        return released

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def reclaim_stale(self, older_than: datetime) -> int:
        """PROCESSING entries claimed before ``older_than`` go back to PENDING."""
        result = await self.session.execute(
            update(RecalcQueueEntry)
            .where(
                RecalcQueueEntry.status == RecalcStatus.PROCESSING,
                RecalcQueueEntry.started_at < older_than,
            )
            .values(
                status=RecalcStatus.PENDING,
                started_at=None,
                last_error=f"Reclaimed stale claim at {utcnow().isoformat()}",
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.warning(f"[RecalcQueue] Reclaimed {result.rowcount} stale PROCESSING entr{'y' if result.rowcount == 1 else 'ies'}")
        return result.rowcount

    async def promote_backdated(self, today: date) -> int:
        """Deferred entries whose date has rolled into the past become urgent."""
        result = await self.session.execute(
            update(RecalcQueueEntry)
            .where(
                RecalcQueueEntry.status == RecalcStatus.PENDING,
                RecalcQueueEntry.priority < int(RecalcPriority.URGENT),
                RecalcQueueEntry.recalc_date < today,
            )
            .values(priority=int(RecalcPriority.URGENT))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"[RecalcQueue] Promoted {result.rowcount} backdated entr{'y' if result.rowcount == 1 else 'ies'} to URGENT")
        return result.rowcount

    async def complete_covered(self, item: ItemKey, from_date: date, queued_before: datetime) -> int:
        """
        Complete PENDING entries a cascade from ``from_date`` already covered.

        Only entries queued before ``queued_before`` (the moment the covering
        recomputation started) are touched; later requests stay queued.
        """
        result = await self.session.execute(
            update(RecalcQueueEntry)
            .where(
                RecalcQueueEntry.company_code == item.company_code,
                RecalcQueueEntry.item_type == item.item_type,
                RecalcQueueEntry.item_code == item.item_code,
                RecalcQueueEntry.status == RecalcStatus.PENDING,
                RecalcQueueEntry.recalc_date >= from_date,
                RecalcQueueEntry.queued_at <= queued_before,
            )
            .values(status=RecalcStatus.COMPLETED, processed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def depth(self, company_code: Optional[str] = None, item_type: Optional[str] = None) -> int:
        """Number of PENDING entries, optionally filtered."""
        stmt = select(func.count(RecalcQueueEntry.id)).where(RecalcQueueEntry.status == RecalcStatus.PENDING)
        if company_code is not None:
            stmt = stmt.where(RecalcQueueEntry.company_code == company_code)
        if item_type is not None:
            stmt = stmt.where(RecalcQueueEntry.item_type == item_type.upper())
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _insert_for_dialect(self):
        dialect = self.session.get_bind().dialect.name
        try:
            return _UPSERT_DIALECTS[dialect]
        except KeyError:
            raise NotImplementedError(f"Queue upsert is not supported on dialect {dialect!r}") from None

    @staticmethod
    def _claim_clause(entry: RecalcQueueEntry):
        # started_at identifies the claim; a re-claim after re-enqueue gets a new one
        return and_(
            RecalcQueueEntry.id == entry.id,
            RecalcQueueEntry.status == RecalcStatus.PROCESSING,
            RecalcQueueEntry.started_at == entry.started_at,
        )

    async def _finish(self, entry: RecalcQueueEntry, status: RecalcStatus, error: Optional[str]) -> bool:
        processed = utcnow()
        result = await self.session.execute(
            update(RecalcQueueEntry)
            .where(self._claim_clause(entry))
            .values(status=status, processed_at=processed, last_error=error)
            .execution_options(synchronize_session=False)
        )
        finished = result.rowcount == 1
        if finished:
            entry.status = status
            entry.processed_at = processed
            entry.last_error = error
        else:
            logger.info(f"[RecalcQueue] {entry.label} was re-queued during processing; leaving it PENDING")
        return finished


async def enqueue_recalculation(
    company_code: str,
    item_type: str,
    item_code: str,
    recalc_date,
    reason: Optional[str] = None,
    today: Optional[date] = None,
    session: Optional[AsyncSession] = None,
) -> int:
    """
    Write-path entry point: request a recalculation for one item from a date.

    Backdated dates are queued URGENT, same-day dates DEFERRED. When
    ``session`` is given the request joins the caller's transaction;
    otherwise it is committed on its own.
    """
    key = QueueKey.build(company_code, item_type, item_code, recalc_date)
    if today is None:
        today = local_today(utcnow(), settings.SCHEDULER_TIMEZONE)
    priority = priority_for(key.recalc_date, today)

    if session is not None:
        return await RecalcQueue(session).enqueue(key, priority, reason)

    async with get_db_session() as db:
        return await RecalcQueue(db).enqueue(key, priority, reason)

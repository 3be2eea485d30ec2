"""
Ledger posting (write path).

Records stock movements and physical counts against an item's daily
MutationRecord. Only the touched record is rebalanced inline; when later
records exist their balances are now stale, and a recalculation from the
posting date is queued in the same transaction (URGENT when backdated,
DEFERRED for today). An immediate posting still queues first and completes
the request once its own cascade succeeds.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from bonded_ledger.core.config import settings
from bonded_ledger.core.database import AsyncSessionLocal
from bonded_ledger.core.exceptions import LedgerBaseError, ValidationError
from bonded_ledger.core.utils import local_today, utcnow
from bonded_ledger.models.ledger import MutationRecord
from bonded_ledger.services.keys import ItemKey, QueueKey, priority_for
from bonded_ledger.services.ledger import (
    ZERO,
    LedgerRecalculator,
    apply_balances,
    get_record,
    new_record,
    opening_balance_at,
    to_decimal,
)
from bonded_ledger.services.recalc_queue import RecalcQueue

logger = logging.getLogger(__name__)


@dataclass
class PostingResult:
    item: ItemKey
    mutation_date: date
    opening_balance: Decimal
    closing_balance: Decimal
    variance_qty: Decimal
    queue_entry_id: Optional[int] = None
    recalculated: bool = False


class LedgerPostingService:
    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        recalculator: Optional[LedgerRecalculator] = None,
        clock: Callable[[], datetime] = utcnow,
        tz_name: str = settings.SCHEDULER_TIMEZONE,
    ):
        self._session_factory = session_factory
        self._recalculator = recalculator or LedgerRecalculator(session_factory)
        self._clock = clock
        self._tz_name = tz_name

    async def record_movement(
        self,
        company_code: str,
        item_type: str,
        item_code: str,
        mutation_date,
        incoming=0,
        outgoing=0,
        adjustment=0,
        physical_count=None,
        remark: Optional[str] = None,
        immediate: bool = False,
    ) -> PostingResult:
        """
        Add movements to the item's record for ``mutation_date``.

        ``physical_count`` replaces the recorded stock opname when given.
        With ``immediate`` the later records are cascaded right away instead
        of being queued.
        """
        key = QueueKey.build(company_code, item_type, item_code, mutation_date)
        item, day = key.item, key.recalc_date

        incoming, outgoing, adjustment = to_decimal(incoming), to_decimal(outgoing), to_decimal(adjustment)
        if incoming < ZERO:
            raise ValidationError("incoming must not be negative", field="incoming")
        if outgoing < ZERO:
            raise ValidationError("outgoing must not be negative", field="outgoing")
        if physical_count is not None:
            physical_count = to_decimal(physical_count)
            if physical_count < ZERO:
                raise ValidationError("physical_count must not be negative", field="physical_count")

        async with self._session_factory() as session:
            async with session.begin():
                record = await get_record(session, item, day)
                if record is None:
                    opening = await opening_balance_at(session, item, day)
                    record = new_record(item, day, opening if opening is not None else ZERO)
                    session.add(record)

                record.incoming_qty = to_decimal(record.incoming_qty) + incoming
                record.outgoing_qty = to_decimal(record.outgoing_qty) + outgoing
                record.adjustment_qty = to_decimal(record.adjustment_qty) + adjustment
                if physical_count is not None:
                    record.physical_count_qty = physical_count
                if remark:
                    record.remark = remark
                apply_balances(record, record.opening_balance)
                await session.flush()

                result = PostingResult(
                    item=item,
                    mutation_date=day,
                    opening_balance=record.opening_balance,
                    closing_balance=record.closing_balance,
                    variance_qty=record.variance_qty,
                )

                later = await session.execute(
                    select(exists().where(
                        MutationRecord.for_item(item),
                        MutationRecord.mutation_date > day,
                    ))
                )
                stale_chain = bool(later.scalar())
                if stale_chain:
                    today = local_today(self._clock(), self._tz_name)
                    result.queue_entry_id = await RecalcQueue(session).enqueue(
                        key,
                        priority_for(day, today),
                        reason=remark or "Stock movement posted",
                    )

        if stale_chain and immediate:
            result.recalculated = await self._cascade_now(item, day)

        logger.info(
            f"[Posting] {item} {day}: +{incoming} -{outgoing} adj {adjustment} "
            f"-> closing {result.closing_balance}"
            + (f" (queued #{result.queue_entry_id})" if result.queue_entry_id else "")
        )
        return result

    async def _cascade_now(self, item: ItemKey, day: date) -> bool:
        """
        Cascade right away and complete the queued request it covers.

        On failure the request stays PENDING for the recalc drain.
        """
        # Queue timestamps come from utcnow, so the cutoff must too
        started = utcnow()
        try:
            await self._recalculator.recalculate_from_history(item, day)
        except LedgerBaseError as e:
            logger.warning(f"[Posting] Immediate recalc of {item} from {day} failed, left queued: {e.code}: {e.message}")
            return False

        async with self._session_factory() as session:
            async with session.begin():
                await RecalcQueue(session).complete_covered(item, day, started)
        return True

"""
Ledger Recalculator

Keeps each item's chain of daily MutationRecords consistent:

    closing  = opening + incoming - outgoing + adjustment
    variance = physical_count - closing   (0 when not counted)
    next.opening == prev.closing          (by date order)

A correction at any date cascades forward through every later record of the
same item. The cascade is sequential by construction and runs as one
SERIALIZABLE transaction with a hard timeout; on timeout or conflict the
whole transaction rolls back and the chain keeps its previous, consistent
state.

This module is the only writer of balance fields.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from sqlalchemy import select, exists
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import text

from bonded_ledger.core.config import settings
from bonded_ledger.core.database import AsyncSessionLocal
from bonded_ledger.core.exceptions import (
    ConflictError,
    NotFoundError,
    RecalcTimeoutError,
    ValidationError,
)
from bonded_ledger.models.ledger import BeginningBalance, MutationRecord
from bonded_ledger.services.keys import ItemKey

logger = logging.getLogger(__name__)

T = TypeVar("T")

ZERO = Decimal("0")

# SQLSTATEs: serialization_failure, deadlock_detected, lock_not_available
CONFLICT_SQLSTATES = {"40001", "40P01", "55P03"}
CONFLICT_MESSAGES = (
    "could not serialize access",
    "deadlock detected",
    "database is locked",
)


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def compute_closing(opening, incoming, outgoing, adjustment) -> Decimal:
    return to_decimal(opening) + to_decimal(incoming) - to_decimal(outgoing) + to_decimal(adjustment)


def compute_variance(physical_count, closing) -> Decimal:
    counted = to_decimal(physical_count)
    if counted > ZERO:
        return counted - to_decimal(closing)
    return ZERO


@dataclass
class BalanceChange:
    """New balances for one record."""
    mutation_date: date
    opening_balance: Decimal
    closing_balance: Decimal
    variance_qty: Decimal


def cascade_balances(records: Sequence, opening_balance) -> List[BalanceChange]:
    """
    Recompute a date-ordered run of records from ``opening_balance``.

    ``records`` must be one item's records sorted by ascending date. Each
    step depends on the previous step's closing, so this is strictly
    sequential.
    """
    changes = []
    running = to_decimal(opening_balance)
    previous_date = None
    for record in records:
        if previous_date is not None and record.mutation_date <= previous_date:
            raise ValueError("records must be in strictly increasing date order")
        closing = compute_closing(running, record.incoming_qty, record.outgoing_qty, record.adjustment_qty)
        changes.append(BalanceChange(
            mutation_date=record.mutation_date,
            opening_balance=running,
            closing_balance=closing,
            variance_qty=compute_variance(record.physical_count_qty, closing),
        ))
        running = closing
        previous_date = record.mutation_date
    return changes


def apply_balances(record: MutationRecord, opening_balance) -> MutationRecord:
    """Set one record's balance fields from its movements."""
    record.opening_balance = to_decimal(opening_balance)
    record.closing_balance = compute_closing(
        record.opening_balance, record.incoming_qty, record.outgoing_qty, record.adjustment_qty
    )
    record.variance_qty = compute_variance(record.physical_count_qty, record.closing_balance)
    return record


@dataclass
class RecalcOutcome:
    """Result of one recalculation."""
    item: ItemKey
    from_date: date
    records_updated: int = 0
    opening_balance: Optional[Decimal] = None
    closing_balance: Optional[Decimal] = None
    last_date: Optional[date] = None
    snapshot_created: bool = False

    def to_dict(self) -> dict:
        return {
            "item": str(self.item),
            "from_date": self.from_date.isoformat(),
            "records_updated": self.records_updated,
            "opening_balance": str(self.opening_balance) if self.opening_balance is not None else None,
            "closing_balance": str(self.closing_balance) if self.closing_balance is not None else None,
            "last_date": self.last_date.isoformat() if self.last_date else None,
            "snapshot_created": self.snapshot_created,
        }


def is_conflict_error(error: DBAPIError) -> bool:
    """Serialization failures, deadlocks and busy locks are retryable conflicts."""
    orig = getattr(error, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in CONFLICT_SQLSTATES:
        return True
    message = str(orig if orig is not None else error).lower()
    return any(fragment in message for fragment in CONFLICT_MESSAGES)


# =============================================================================
# IN-TRANSACTION HELPERS (shared with the posting write path)
# =============================================================================

async def load_chain(session: AsyncSession, item: ItemKey, from_date: date, lock: bool = True) -> List[MutationRecord]:
    """Records for ``item`` dated on/after ``from_date``, ascending."""
    stmt = (
        select(MutationRecord)
        .where(MutationRecord.for_item(item), MutationRecord.mutation_date >= from_date)
        .order_by(MutationRecord.mutation_date.asc())
    )
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def has_history(session: AsyncSession, item: ItemKey) -> bool:
    result = await session.execute(select(exists().where(MutationRecord.for_item(item))))
    return bool(result.scalar())


async def opening_balance_at(session: AsyncSession, item: ItemKey, day: date) -> Optional[Decimal]:
    """
    Opening balance an item carries into ``day``.

    The closing of the latest record before ``day``; otherwise the latest
    beginning balance dated on/before ``day``; otherwise None.
    """
    result = await session.execute(
        select(MutationRecord.closing_balance)
        .where(MutationRecord.for_item(item), MutationRecord.mutation_date < day)
        .order_by(MutationRecord.mutation_date.desc())
        .limit(1)
    )
    previous_closing = result.scalar_one_or_none()
    if previous_closing is not None:
        return to_decimal(previous_closing)

    result = await session.execute(
        select(BeginningBalance.balance_qty)
        .where(BeginningBalance.for_item(item), BeginningBalance.balance_date <= day)
        .order_by(BeginningBalance.balance_date.desc())
        .limit(1)
    )
    balance = result.scalar_one_or_none()
    return to_decimal(balance) if balance is not None else None


async def get_record(session: AsyncSession, item: ItemKey, day: date, lock: bool = True) -> Optional[MutationRecord]:
    stmt = select(MutationRecord).where(MutationRecord.for_item(item), MutationRecord.mutation_date == day)
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def new_record(item: ItemKey, day: date, opening_balance, remark: Optional[str] = None) -> MutationRecord:
    record = MutationRecord(
        company_code=item.company_code,
        item_type=item.item_type,
        item_code=item.item_code,
        mutation_date=day,
        incoming_qty=ZERO,
        outgoing_qty=ZERO,
        adjustment_qty=ZERO,
        physical_count_qty=ZERO,
        remark=remark,
    )
    return apply_balances(record, opening_balance)


async def snapshot_day(session: AsyncSession, item: ItemKey, day: date) -> bool:
    if await get_record(session, item, day) is not None:
        return False
    opening = await opening_balance_at(session, item, day)
    if opening is None:
        return False
    session.add(new_record(item, day, opening, remark="End-of-day snapshot"))
    await session.flush()
    return True


async def cascade_from(
    session: AsyncSession,
    item: ItemKey,
    from_date: date,
    new_opening_balance=None,
) -> RecalcOutcome:
    """
    Core cascade inside an open transaction.

    With ``new_opening_balance`` None the opening is derived from history at
    the first affected record; a chain seed with nothing before it keeps its
    stored opening.

    Raises NotFoundError when the item has no history at all; a chain with
    nothing on/after ``from_date`` is a successful no-op.
    """
    outcome = RecalcOutcome(item=item, from_date=from_date)
    records = await load_chain(session, item, from_date)

    if not records:
        if not await has_history(session, item):
            raise NotFoundError(f"No mutation history for item {item}", item=str(item))
        return outcome

    if new_opening_balance is None:
        new_opening_balance = await opening_balance_at(session, item, records[0].mutation_date)
        if new_opening_balance is None:
            new_opening_balance = records[0].opening_balance

    outcome.opening_balance = to_decimal(new_opening_balance)
    changes = cascade_balances(records, new_opening_balance)
    for record, change in zip(records, changes):
        record.opening_balance = change.opening_balance
        record.closing_balance = change.closing_balance
        record.variance_qty = change.variance_qty

    outcome.records_updated = len(records)
    outcome.closing_balance = changes[-1].closing_balance
    outcome.last_date = changes[-1].mutation_date
    return outcome


# =============================================================================
# RECALCULATOR
# =============================================================================

class LedgerRecalculator:
    """
    Transactional entry points for cascading balance corrections.

    Each public method runs in its own SERIALIZABLE transaction bounded by
    ``timeout_seconds``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        timeout_seconds: float = settings.RECALC_TRANSACTION_TIMEOUT_SECONDS,
    ):
        self._session_factory = session_factory
        self.timeout_seconds = timeout_seconds

    async def recalculate(self, item: ItemKey, from_date: date, new_opening_balance) -> RecalcOutcome:
        """Apply ``new_opening_balance`` at ``from_date`` and cascade forward."""
        if new_opening_balance is None:
            raise ValidationError("new_opening_balance is required", field="new_opening_balance")

        async def work(session: AsyncSession) -> RecalcOutcome:
            return await cascade_from(session, item, from_date, new_opening_balance)

        outcome = await self._run_transaction(item, work)
        logger.info(
            f"[Ledger] Recalculated {item} from {from_date}: "
            f"{outcome.records_updated} record(s), closing={outcome.closing_balance}"
        )
        return outcome

    async def recalculate_from_history(self, item: ItemKey, from_date: date) -> RecalcOutcome:
        """Cascade from ``from_date`` using the balance the chain carries into it."""
        async def work(session: AsyncSession) -> RecalcOutcome:
            return await cascade_from(session, item, from_date)

        outcome = await self._run_transaction(item, work)
        logger.info(
            f"[Ledger] Recalculated {item} from history at {from_date}: "
            f"{outcome.records_updated} record(s)"
        )
        return outcome

    async def apply_beginning_balance(
        self,
        item: ItemKey,
        balance_date: date,
        balance,
        remark: Optional[str] = None,
    ) -> RecalcOutcome:
        """
        Record an item's beginning balance and re-seed its chain.

        Creates the record at ``balance_date`` if it does not exist, then
        cascades every later record. The balance must not be dated after
        existing history, otherwise the chain would break at that date.
        """
        balance = to_decimal(balance)
        if balance < ZERO:
            raise ValidationError("beginning balance must not be negative", field="balance")

        async def work(session: AsyncSession) -> RecalcOutcome:
            earlier = await session.execute(
                select(exists().where(
                    MutationRecord.for_item(item),
                    MutationRecord.mutation_date < balance_date,
                ))
            )
            if earlier.scalar():
                raise ValidationError(
                    f"Beginning balance for {item} must not be dated after existing history",
                    field="balance_date",
                )

            result = await session.execute(
                select(BeginningBalance)
                .where(BeginningBalance.for_item(item), BeginningBalance.balance_date == balance_date)
                .with_for_update()
            )
            entry = result.scalar_one_or_none()
            if entry is None:
                session.add(BeginningBalance(
                    company_code=item.company_code,
                    item_type=item.item_type,
                    item_code=item.item_code,
                    balance_date=balance_date,
                    balance_qty=balance,
                    remark=remark,
                ))
            else:
                entry.balance_qty = balance
                entry.remark = remark

            created = False
            if await get_record(session, item, balance_date) is None:
                session.add(new_record(item, balance_date, balance, remark="Beginning balance"))
                await session.flush()
                created = True

            outcome = await cascade_from(session, item, balance_date, balance)
            outcome.snapshot_created = created
            return outcome

        outcome = await self._run_transaction(item, work)
        logger.info(f"[Ledger] Beginning balance {balance} applied to {item} at {balance_date}")
        return outcome

    async def ensure_snapshot(self, item: ItemKey, day: date) -> bool:
        """
        Carry the balance forward into a zero-movement record for ``day``.

        Returns True when a record was created. Nothing is created when the
        item already has a record on ``day`` or has no balance before it.
        """
        async def work(session: AsyncSession) -> bool:
            return await snapshot_day(session, item, day)

        return await self._run_transaction(item, work)

    async def close_day(self, item: ItemKey, day: date) -> RecalcOutcome:
        """End-of-day pass for one item: snapshot ``day`` then recompute from it."""
        async def work(session: AsyncSession) -> RecalcOutcome:
            created = await snapshot_day(session, item, day)
            outcome = await cascade_from(session, item, day)
            outcome.snapshot_created = created
            return outcome

        return await self._run_transaction(item, work)

    async def list_items(self, company_code: Optional[str] = None) -> List[ItemKey]:
        """Every item that has ledger history, optionally for one company."""
        stmt = select(
            MutationRecord.company_code,
            MutationRecord.item_type,
            MutationRecord.item_code,
        ).distinct().order_by(
            MutationRecord.company_code,
            MutationRecord.item_type,
            MutationRecord.item_code,
        )
        if company_code is not None:
            stmt = stmt.where(MutationRecord.company_code == company_code)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [ItemKey(*row) for row in result.all()]

    async def list_companies(self) -> List[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(MutationRecord.company_code).distinct().order_by(MutationRecord.company_code)
            )
            return list(result.scalars().all())

    async def _run_transaction(self, item: ItemKey, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run ``work`` in one SERIALIZABLE transaction under the hard timeout."""
        async def body() -> T:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._prepare_transaction(session)
                    return await work(session)

        try:
            return await asyncio.wait_for(body(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning(f"[Ledger] Recalculation of {item} exceeded {self.timeout_seconds}s, rolled back")
            raise RecalcTimeoutError(
                f"Recalculation of {item} exceeded {self.timeout_seconds}s",
                timeout_seconds=self.timeout_seconds,
                item=str(item),
            ) from e
        except DBAPIError as e:
            if is_conflict_error(e):
                logger.warning(f"[Ledger] Concurrent modification of {item}: {e.orig}")
                raise ConflictError(
                    f"Concurrent modification of {item}",
                    item=str(item),
                    details={"db_error": str(e.orig)[:500]},
                ) from e
            raise

    async def _prepare_transaction(self, session: AsyncSession) -> None:
        connection = await session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
        if connection.dialect.name == "postgresql":
            # Server-side guard in addition to the client-side timeout
            timeout_ms = max(1, int(self.timeout_seconds * 1000))
            await session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))

"""
Pytest configuration and fixtures for Bonded Ledger tests.
"""
import os
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from bonded_ledger.core.database import Base  # noqa: E402
from bonded_ledger.models import MutationRecord  # noqa: E402
from bonded_ledger.services.keys import ItemKey  # noqa: E402
from bonded_ledger.services.ledger import apply_balances  # noqa: E402


@pytest.fixture
def mock_db() -> AsyncMock:
    """Create mock async database session."""
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.execute = AsyncMock()
    return db


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions get their own connections."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def item() -> ItemKey:
    return ItemKey.build("BZ01", "roh", "ITEM-001")


@pytest.fixture
def seed_chain(session_factory):
    """
    Insert a consistent chain for an item.

    rows: [(date, incoming, outgoing), ...] in date order; the first row
    opens at ``opening``.
    """
    async def _seed(item: ItemKey, rows, opening=Decimal("0"), adjustment=Decimal("0")):
        async with session_factory() as session:
            async with session.begin():
                running = Decimal(opening)
                for day, incoming, outgoing in rows:
                    record = MutationRecord(
                        company_code=item.company_code,
                        item_type=item.item_type,
                        item_code=item.item_code,
                        mutation_date=day,
                        incoming_qty=Decimal(incoming),
                        outgoing_qty=Decimal(outgoing),
                        adjustment_qty=Decimal(adjustment),
                        physical_count_qty=Decimal("0"),
                    )
                    apply_balances(record, running)
                    running = record.closing_balance
                    session.add(record)
    return _seed


@pytest.fixture
def day():
    """Dates in a fixed month: day(5) -> 2024-03-05."""
    return lambda n: date(2024, 3, n)

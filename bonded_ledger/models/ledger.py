"""
Ledger Models

- MutationRecord: one row per (item, date) holding the running stock balance
- BeginningBalance: operator-entered opening stock that seeds an item's chain

Balance fields on MutationRecord are written only by
bonded_ledger.services.ledger; write paths enqueue recalculation instead.
"""
from sqlalchemy import (
    Column, Integer, String, Text, Date, DateTime, Numeric,
    Index, UniqueConstraint, CheckConstraint, and_,
)

from bonded_ledger.core.database import Base
from bonded_ledger.core.utils import utcnow

QTY = Numeric(18, 4)


class ItemColumnsMixin:
    """Item identity shared by every per-item table."""

    company_code = Column(String(20), nullable=False)
    item_type = Column(String(20), nullable=False)  # ROH, HALB, FERT, SCRAP, HIBE, ...
    item_code = Column(String(50), nullable=False)

    @classmethod
    def for_item(cls, item):
        """WHERE clause selecting one item's rows."""
        return and_(
            cls.company_code == item.company_code,
            cls.item_type == item.item_type,
            cls.item_code == item.item_code,
        )


class MutationRecord(ItemColumnsMixin, Base):
    """
    Daily stock mutation for one item.

    closing  = opening + incoming - outgoing + adjustment
    variance = physical_count - closing when physical_count > 0, else 0
    """
    __tablename__ = "stock_mutations"

    id = Column(Integer, primary_key=True)
    mutation_date = Column(Date, nullable=False)

    opening_balance = Column(QTY, nullable=False, default=0)
    incoming_qty = Column(QTY, nullable=False, default=0)
    outgoing_qty = Column(QTY, nullable=False, default=0)
    adjustment_qty = Column(QTY, nullable=False, default=0)  # signed
    closing_balance = Column(QTY, nullable=False, default=0)

    # Stock opname; 0 means "not counted"
    physical_count_qty = Column(QTY, nullable=False, default=0)
    variance_qty = Column(QTY, nullable=False, default=0)

    remark = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "company_code", "item_type", "item_code", "mutation_date",
            name="uq_stock_mutations_item_date",
        ),
        Index("ix_stock_mutations_item_date", "company_code", "item_type", "item_code", "mutation_date"),
        CheckConstraint("incoming_qty >= 0", name="chk_stock_mutations_incoming_nonneg"),
        CheckConstraint("outgoing_qty >= 0", name="chk_stock_mutations_outgoing_nonneg"),
        CheckConstraint("physical_count_qty >= 0", name="chk_stock_mutations_count_nonneg"),
    )

    def __repr__(self):
        return (
            f"<MutationRecord {self.company_code}/{self.item_type}/{self.item_code} "
            f"{self.mutation_date}: {self.opening_balance} -> {self.closing_balance}>"
        )


class BeginningBalance(ItemColumnsMixin, Base):
    """Opening stock entered for an item at a date."""
    __tablename__ = "beginning_balances"

    id = Column(Integer, primary_key=True)
    balance_date = Column(Date, nullable=False)
    balance_qty = Column(QTY, nullable=False)
    remark = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "company_code", "item_type", "item_code", "balance_date",
            name="uq_beginning_balances_item_date",
        ),
    )

    def __repr__(self):
        return f"<BeginningBalance {self.company_code}/{self.item_code} {self.balance_date}: {self.balance_qty}>"

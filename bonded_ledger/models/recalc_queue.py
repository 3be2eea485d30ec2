"""
Recalculation Queue Model

One row per (company, item type, item code, date). Producers upsert on that
natural key; the recalc-queue job claims rows PENDING -> PROCESSING and
finalizes them COMPLETED / FAILED.
"""
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Text, Date, DateTime,
    Index, UniqueConstraint, CheckConstraint, Enum as SQLAEnum,
)

from bonded_ledger.core.database import Base
from bonded_ledger.core.utils import utcnow


class RecalcStatus(str, Enum):
    """Queue entry status."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RecalcQueueEntry(Base):
    """Pending recalculation request for one item from one date onward."""
    __tablename__ = "recalc_queue"

    id = Column(Integer, primary_key=True)

    # Natural key
    company_code = Column(String(20), nullable=False)
    item_type = Column(String(20), nullable=False)
    item_code = Column(String(50), nullable=False)
    recalc_date = Column(Date, nullable=False)

    status = Column(SQLAEnum(RecalcStatus, name="recalc_status"), nullable=False, default=RecalcStatus.PENDING)
    priority = Column(Integer, nullable=False, default=0)  # higher = more urgent
    reason = Column(Text, nullable=True)  # audit trail

    queued_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "company_code", "item_type", "item_code", "recalc_date",
            name="uq_recalc_queue_natural_key",
        ),
        CheckConstraint("priority >= 0", name="chk_recalc_queue_priority_nonneg"),
        Index("ix_recalc_queue_dequeue", "status", "priority", "queued_at"),
        Index("ix_recalc_queue_started", "status", "started_at"),
    )

    @property
    def label(self) -> str:
        return f"{self.company_code}/{self.item_type}/{self.item_code}@{self.recalc_date}"

    def __repr__(self):
        return f"<RecalcQueueEntry {self.id}: {self.label} {self.status} p={self.priority}>"

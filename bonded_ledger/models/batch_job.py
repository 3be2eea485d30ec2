"""
Batch Job Run Model

One row per execution attempt of a scheduled or manually triggered job.
Created RUNNING when the run starts, moved to a terminal status when it ends.
Owned by the batch job scheduler.
"""
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, JSON,
    Index, Enum as SQLAEnum,
)

from bonded_ledger.core.database import Base
from bonded_ledger.core.utils import utcnow


class JobType(str, Enum):
    """Recurring job definitions owned by the scheduler."""
    HOURLY_BATCH = "HOURLY_BATCH"
    EOD_SNAPSHOT = "EOD_SNAPSHOT"
    RECALC_QUEUE = "RECALC_QUEUE"


class JobStatus(str, Enum):
    """Run status."""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class BatchJobRun(Base):
    """Audit row for one job execution."""
    __tablename__ = "batch_job_runs"

    id = Column(Integer, primary_key=True)

    job_type = Column(SQLAEnum(JobType, name="batch_job_type"), nullable=False)
    status = Column(SQLAEnum(JobStatus, name="batch_job_status"), nullable=False, default=JobStatus.RUNNING)

    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    successful_records = Column(Integer, nullable=False, default=0)
    failed_records = Column(Integer, nullable=False, default=0)

    # "SCHEDULER" for timer firings, operator name for manual triggers
    triggered_by = Column(String(100), nullable=False, default="SCHEDULER")

    error_message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_batch_job_runs_type_started", "job_type", "started_at"),
        Index("ix_batch_job_runs_status", "status"),
    )

    @property
    def duration_seconds(self):
        if self.completed_at is None or self.started_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_type": self.job_type.value if self.job_type else None,
            "status": self.status.value if self.status else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "triggered_by": self.triggered_by,
            "error_message": self.error_message,
            "details": self.details,
        }

    def __repr__(self):
        return f"<BatchJobRun {self.id}: {self.job_type} {self.status}>"

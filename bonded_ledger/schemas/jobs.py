"""
Batch Job Admin Schemas

Pydantic models for the /api/admin/jobs requests and responses.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bonded_ledger.models.batch_job import JobStatus, JobType


# ==================== Requests ====================


class TriggerJobRequest(BaseModel):
    """Run a job now."""
    job_type: JobType


class EnqueueRecalcRequest(BaseModel):
    """Queue a recalculation for one item from a date onward."""
    company_code: str = Field(..., min_length=1, max_length=20)
    item_type: str = Field(..., min_length=1, max_length=20)
    item_code: str = Field(..., min_length=1, max_length=50)
    recalc_date: date
    reason: Optional[str] = Field(None, max_length=500)
    # Defaults to URGENT/DEFERRED from the date when omitted
    priority: Optional[int] = Field(None, ge=0)

    @field_validator("item_type")
    @classmethod
    def normalize_item_type(cls, v):
        return v.strip().upper()


# ==================== Responses ====================


class BatchJobRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_type: JobType
    status: JobStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    successful_records: int = 0
    failed_records: int = 0
    triggered_by: str
    error_message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class JobHistoryResponse(BaseModel):
    runs: List[BatchJobRunResponse]
    total: int
    limit: int
    offset: int
    scheduler: Dict[str, Any]
    statistics: Dict[str, Any]


class RunResultResponse(BaseModel):
    job_type: JobType
    skipped: bool
    run_id: Optional[int] = None
    status: Optional[JobStatus] = None
    successful_records: int = 0
    failed_records: int = 0
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class EnqueueRecalcResponse(BaseModel):
    entry_id: int
    priority: int
    queue_depth: int


class QueueDepthResponse(BaseModel):
    pending: int
    company_code: Optional[str] = None
    item_type: Optional[str] = None


class PurgeResponse(BaseModel):
    deleted: int
    older_than_days: int

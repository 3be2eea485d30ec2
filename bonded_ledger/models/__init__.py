from bonded_ledger.models.ledger import MutationRecord, BeginningBalance
from bonded_ledger.models.recalc_queue import RecalcQueueEntry, RecalcStatus
from bonded_ledger.models.batch_job import (
    BatchJobRun,
    JobType,
    JobStatus,
    TERMINAL_JOB_STATUSES,
)

__all__ = [
    "MutationRecord",
    "BeginningBalance",
    "RecalcQueueEntry",
    "RecalcStatus",
    "BatchJobRun",
    "JobType",
    "JobStatus",
    "TERMINAL_JOB_STATUSES",
]

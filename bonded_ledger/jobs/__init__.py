"""
Jobs Package

Recurring ledger jobs and the in-process scheduler that runs them.
"""
from bonded_ledger.jobs.context import JobContext, JobReport
from bonded_ledger.jobs.eod_snapshot import run_eod_snapshot_job
from bonded_ledger.jobs.hourly_batch import run_hourly_batch_job
from bonded_ledger.jobs.recalc_queue_worker import run_recalc_queue_job
from bonded_ledger.jobs.scheduler import (
    BatchJobScheduler,
    JobDefinition,
    JobSchedule,
    JobState,
    RunResult,
    build_default_registry,
    job_scheduler,
)

__all__ = [
    "JobContext",
    "JobReport",
    "run_eod_snapshot_job",
    "run_hourly_batch_job",
    "run_recalc_queue_job",
    "BatchJobScheduler",
    "JobDefinition",
    "JobSchedule",
    "JobState",
    "RunResult",
    "build_default_registry",
    "job_scheduler",
]

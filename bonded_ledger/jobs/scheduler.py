"""
Batch Job Scheduler

Runs the recurring ledger jobs on wall-clock schedules in the reference time
zone and records every execution as a BatchJobRun.

Jobs:
1. Hourly Batch     - queue housekeeping, every hour at HOURLY_BATCH_MINUTE
2. EOD Snapshot     - close the previous business day, daily at
                      EOD_SNAPSHOT_HOUR:EOD_SNAPSHOT_MINUTE
3. Recalc Queue     - drain the recalculation queue every
                      RECALC_QUEUE_INTERVAL_MINUTES

At most one run per job type executes at a time in this process. A timer
firing or manual trigger that would overlap is skipped, not queued.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from bonded_ledger.core.config import Settings, settings
from bonded_ledger.core.database import AsyncSessionLocal
from bonded_ledger.core.exceptions import UnknownJobError
from bonded_ledger.core.utils import as_aware, utcnow
from bonded_ledger.jobs.context import JobContext, JobReport
from bonded_ledger.jobs.eod_snapshot import run_eod_snapshot_job
from bonded_ledger.jobs.hourly_batch import run_hourly_batch_job
from bonded_ledger.jobs.recalc_queue_worker import run_recalc_queue_job
from bonded_ledger.models.batch_job import BatchJobRun, JobStatus, JobType
from bonded_ledger.services.job_runs import cancel_orphaned_runs, finish_run, start_run
from bonded_ledger.services.ledger import LedgerRecalculator

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
TIMER_RETRY_SECONDS = 60


# =============================================================================
# SCHEDULES
# =============================================================================

@dataclass(frozen=True)
class JobSchedule:
    """Wall-clock schedule: hourly at a minute, daily at a time, or every N minutes."""
    kind: str
    minute: int = 0
    hour: int = 0
    interval_minutes: int = 0

    @classmethod
    def hourly(cls, minute: int) -> "JobSchedule":
        return cls(kind="hourly", minute=minute)

    @classmethod
    def daily(cls, hour: int, minute: int) -> "JobSchedule":
        return cls(kind="daily", hour=hour, minute=minute)

    @classmethod
    def every(cls, minutes: int) -> "JobSchedule":
        if minutes < 1:
            raise ValueError("interval must be at least one minute")
        return cls(kind="interval", interval_minutes=minutes)

    def next_due(self, after: datetime, tz: ZoneInfo) -> datetime:
        """First firing strictly after ``after``, returned in UTC."""
        local = as_aware(after).astimezone(tz)

        if self.kind == "hourly":
            candidate = local.replace(minute=self.minute, second=0, microsecond=0)
            if candidate <= local:
                candidate += timedelta(hours=1)
        elif self.kind == "daily":
            candidate = local.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
            if candidate <= local:
                candidate += timedelta(days=1)
        else:
            midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
            elapsed = local.hour * 60 + local.minute
            next_slot = (elapsed // self.interval_minutes + 1) * self.interval_minutes
            if next_slot >= MINUTES_PER_DAY:
                candidate = midnight + timedelta(days=1)
            else:
                candidate = midnight + timedelta(minutes=next_slot)

        return candidate.astimezone(timezone.utc)

    def describe(self) -> str:
        if self.kind == "hourly":
            return f"hourly at :{self.minute:02d}"
        if self.kind == "daily":
            return f"daily at {self.hour:02d}:{self.minute:02d}"
        return f"every {self.interval_minutes} minutes"


JobHandler = Callable[[JobContext], Awaitable[JobReport]]


@dataclass
class JobDefinition:
    job_type: JobType
    schedule: JobSchedule
    handler: JobHandler


class JobState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    FAILED_IDLE = "FAILED_IDLE"


@dataclass
class RunResult:
    """Outcome of one execution request."""
    job_type: JobType
    skipped: bool = False
    run_id: Optional[int] = None
    status: Optional[JobStatus] = None
    successful_records: int = 0
    failed_records: int = 0
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "job_type": self.job_type.value,
            "skipped": self.skipped,
            "run_id": self.run_id,
            "status": self.status.value if self.status else None,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "error": self.error,
            "details": self.details,
        }


def build_default_registry(config: Settings = settings) -> Dict[JobType, JobDefinition]:
    return {
        JobType.HOURLY_BATCH: JobDefinition(
            JobType.HOURLY_BATCH,
            JobSchedule.hourly(config.HOURLY_BATCH_MINUTE),
            run_hourly_batch_job,
        ),
        JobType.EOD_SNAPSHOT: JobDefinition(
            JobType.EOD_SNAPSHOT,
            JobSchedule.daily(config.EOD_SNAPSHOT_HOUR, config.EOD_SNAPSHOT_MINUTE),
            run_eod_snapshot_job,
        ),
        JobType.RECALC_QUEUE: JobDefinition(
            JobType.RECALC_QUEUE,
            JobSchedule.every(config.RECALC_QUEUE_INTERVAL_MINUTES),
            run_recalc_queue_job,
        ),
    }


# =============================================================================
# MAIN SCHEDULER
# =============================================================================

class BatchJobScheduler:
    """
    In-process scheduler for the ledger batch jobs.

    Call start() to begin background scheduling. stop() only halts the
    timers; manual triggers keep working and in-flight runs finish.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        registry: Optional[Dict[JobType, JobDefinition]] = None,
        clock: Callable[[], datetime] = utcnow,
        tz_name: str = settings.SCHEDULER_TIMEZONE,
        config: Settings = settings,
        recalculator: Optional[LedgerRecalculator] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._registry = registry if registry is not None else build_default_registry(config)
        self._clock = clock
        self._tz_name = tz_name
        self._tz = ZoneInfo(tz_name)
        self._config = config
        self._recalculator = recalculator or LedgerRecalculator(
            session_factory, timeout_seconds=config.RECALC_TRANSACTION_TIMEOUT_SECONDS
        )
        self._sleep = sleep

        self._running = False
        self._timers: Dict[JobType, asyncio.Task] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._active: Set[JobType] = set()
        self._active_runs: Dict[JobType, int] = {}
        self._next_due: Dict[JobType, datetime] = {}
        self._state: Dict[JobType, JobState] = {job_type: JobState.IDLE for job_type in self._registry}

    @property
    def is_running(self) -> bool:
        return self._running

    def is_active(self, job_type: JobType) -> bool:
        return job_type in self._active

    def state(self, job_type: JobType) -> JobState:
        return self._state.get(job_type, JobState.IDLE)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self):
        """Start timers for every registered job."""
        if self._running:
            logger.info("[SCHEDULER] Batch job scheduler already running")
            return

        self._running = True
        logger.info("[SCHEDULER] BATCH JOB SCHEDULER STARTED")

        # Runs left RUNNING by a crashed process
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    cancelled = await cancel_orphaned_runs(db, exclude_ids=self._active_runs.values())
            if cancelled:
                logger.warning(f"[SCHEDULER] Cancelled {cancelled} orphaned run(s)")
        except Exception as e:
            logger.warning(f"[SCHEDULER] Could not check for orphaned runs: {e}")

        for job_type, definition in self._registry.items():
            self._timers[job_type] = asyncio.create_task(
                self._timer_loop(definition), name=f"timer-{job_type.value}"
            )
            logger.info(f"[SCHEDULER]   - {job_type.value}: {definition.schedule.describe()} ({self._tz_name})")

    async def stop(self):
        """Stop the timers. Idempotent; in-flight runs are not interrupted."""
        if not self._running:
            return

        self._running = False
        timers = list(self._timers.values())
        for task in timers:
            task.cancel()
        for task in timers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._timers = {}
        self._next_due.clear()
        logger.info("[SCHEDULER] Batch job scheduler stopped")

    async def shutdown(self, timeout: Optional[float] = None):
        """Stop the timers and wait for in-flight runs to finish."""
        await self.stop()
        if self._inflight:
            logger.info(f"[SCHEDULER] Waiting for {len(self._inflight)} in-flight run(s)")
            await asyncio.wait(set(self._inflight), timeout=timeout)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def trigger_job(self, job_type, triggered_by: str = "ADMIN") -> RunResult:
        """Run a job now and wait for it. Overlapping requests are skipped."""
        definition = self._definition(job_type)
        logger.info(f"[SCHEDULER] Manual trigger: {definition.job_type.value} by {triggered_by}")
        return await self._execute(definition, triggered_by)

    def _definition(self, job_type) -> JobDefinition:
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise UnknownJobError(
                f"Unknown job: {job_type}. Available: {[jt.value for jt in self._registry]}",
                details={"job_type": str(job_type)},
            ) from None
        if job_type not in self._registry:
            raise UnknownJobError(f"Job {job_type.value} is not registered", details={"job_type": job_type.value})
        return self._registry[job_type]

    async def _timer_loop(self, definition: JobDefinition):
        """Fire ``definition`` at each due time until stopped."""
        job_type = definition.job_type
        last_due = None

        while self._running:
            try:
                now = self._clock()
                after = max(now, last_due) if last_due is not None else now
                due = definition.schedule.next_due(after, self._tz)
                self._next_due[job_type] = due

                delay = max(0.0, (due - now).total_seconds())
                await self._sleep(delay)
                if not self._running:
                    break

                last_due = due
                self._launch(definition, "SCHEDULER")
            except Exception:
                logger.exception(f"[SCHEDULER] Timer for {job_type.value} failed, retrying in {TIMER_RETRY_SECONDS}s")
                self._next_due.pop(job_type, None)
                await self._sleep(TIMER_RETRY_SECONDS)

    def _launch(self, definition: JobDefinition, triggered_by: str) -> asyncio.Task:
        task = asyncio.create_task(
            self._execute(definition, triggered_by), name=f"run-{definition.job_type.value}"
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _execute(self, definition: JobDefinition, triggered_by: str) -> RunResult:
        job_type = definition.job_type

        # Check-and-claim with no await in between
        if job_type in self._active:
            logger.warning(f"[SCHEDULER] {job_type.value} already running, skipping ({triggered_by})")
            return RunResult(job_type=job_type, skipped=True)
        self._active.add(job_type)
        self._state[job_type] = JobState.RUNNING

        try:
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        run = await start_run(db, job_type, triggered_by)
                        run_id = run.id
            except Exception as e:
                logger.exception(f"[SCHEDULER] Could not record start of {job_type.value}")
                self._state[job_type] = JobState.FAILED_IDLE
                return RunResult(job_type=job_type, error=str(e))

            self._active_runs[job_type] = run_id
            ctx = JobContext(
                session_factory=self._session_factory,
                recalculator=self._recalculator,
                config=self._config,
                clock=self._clock,
                tz_name=self._tz_name,
                run_id=run_id,
            )

            try:
                report = await definition.handler(ctx)
            except asyncio.CancelledError:
                await self._finalize(run_id, JobStatus.CANCELLED, error="Run cancelled")
                self._state[job_type] = JobState.FAILED_IDLE
                raise
            except Exception as e:
                logger.exception(f"[SCHEDULER] Job {job_type.value} failed")
                await self._finalize(run_id, JobStatus.FAILED, error=f"{type(e).__name__}: {e}")
                self._state[job_type] = JobState.FAILED_IDLE
                return RunResult(job_type=job_type, run_id=run_id, status=JobStatus.FAILED, error=str(e))

            await self._finalize(run_id, JobStatus.COMPLETED, report=report)
            self._state[job_type] = JobState.IDLE
            return RunResult(
                job_type=job_type,
                run_id=run_id,
                status=JobStatus.COMPLETED,
                successful_records=report.successful_records,
                failed_records=report.failed_records,
                details=report.details,
            )
        finally:
            self._active.discard(job_type)
            self._active_runs.pop(job_type, None)

    async def _finalize(
        self,
        run_id: int,
        status: JobStatus,
        report: Optional[JobReport] = None,
        error: Optional[str] = None,
    ):
        report = report or JobReport()
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    await finish_run(
                        db,
                        run_id,
                        status,
                        successful_records=report.successful_records,
                        failed_records=report.failed_records,
                        error_message=error,
                        details=report.details,
                    )
        except Exception:
            # Left RUNNING; the next start() cancels it as orphaned
            logger.exception(f"[SCHEDULER] Could not finalize run {run_id} as {status.value}")

    # =========================================================================
    # STATUS
    # =========================================================================

    async def get_status(self) -> Dict[str, Any]:
        """Running flag plus schedule, next due time and last run per job."""
        jobs = {}
        async with self._session_factory() as db:
            for job_type, definition in self._registry.items():
                result = await db.execute(
                    select(BatchJobRun)
                    .where(BatchJobRun.job_type == job_type)
                    .order_by(BatchJobRun.started_at.desc(), BatchJobRun.id.desc())
                    .limit(1)
                )
                last_run = result.scalar_one_or_none()
                next_due = self._next_due.get(job_type)
                jobs[job_type.value] = {
                    "schedule": definition.schedule.describe(),
                    "next_due": next_due.isoformat() if next_due else None,
                    "active": job_type in self._active,
                    "state": self.state(job_type).value,
                    "last_run": {
                        "run_id": last_run.id,
                        "status": last_run.status.value,
                        "started_at": as_aware(last_run.started_at).isoformat(),
                        "completed_at": as_aware(last_run.completed_at).isoformat() if last_run.completed_at else None,
                        "triggered_by": last_run.triggered_by,
                    } if last_run else None,
                }

        return {
            "running": self._running,
            "timezone": self._tz_name,
            "jobs": jobs,
        }


# Global scheduler instance
job_scheduler = BatchJobScheduler()

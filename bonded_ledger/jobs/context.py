"""
Shared plumbing handed to every job body by the scheduler.
"""
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from bonded_ledger.core.config import Settings, settings
from bonded_ledger.core.utils import local_today, utcnow
from bonded_ledger.services.ledger import LedgerRecalculator


@dataclass
class JobContext:
    session_factory: async_sessionmaker
    recalculator: LedgerRecalculator
    config: Settings = field(default_factory=lambda: settings)
    clock: Callable[[], datetime] = utcnow
    monotonic: Callable[[], float] = time.monotonic
    tz_name: str = settings.SCHEDULER_TIMEZONE
    run_id: Optional[int] = None

    def today(self) -> date:
        """Business date in the reference time zone."""
        return local_today(self.clock(), self.tz_name)


@dataclass
class JobReport:
    """What a job body hands back for its BatchJobRun row."""
    successful_records: int = 0
    failed_records: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

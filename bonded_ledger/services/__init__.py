# Services layer for ledger and queue logic
from bonded_ledger.services.keys import ItemKey, QueueKey, RecalcPriority, priority_for
from bonded_ledger.services.ledger import LedgerRecalculator, RecalcOutcome, cascade_balances
from bonded_ledger.services.ledger_posting import LedgerPostingService, PostingResult
from bonded_ledger.services.recalc_queue import RecalcQueue, enqueue_recalculation
from bonded_ledger.services.job_history import JobHistoryService

__all__ = [
    "ItemKey",
    "QueueKey",
    "RecalcPriority",
    "priority_for",
    "LedgerRecalculator",
    "RecalcOutcome",
    "cascade_balances",
    "LedgerPostingService",
    "PostingResult",
    "RecalcQueue",
    "enqueue_recalculation",
    "JobHistoryService",
]

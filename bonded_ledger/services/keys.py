"""
Item and queue keys, and the recalculation priority policy.
"""
from dataclasses import dataclass
from datetime import date, datetime
from enum import IntEnum

from bonded_ledger.core.exceptions import ValidationError

MAX_COMPANY_CODE = 20
MAX_ITEM_TYPE = 20
MAX_ITEM_CODE = 50


def _clean(value, field: str, max_len: int) -> str:
    if value is None:
        raise ValidationError(f"{field} is required", field=field)
    cleaned = str(value).strip()
    if not cleaned:
        raise ValidationError(f"{field} must not be empty", field=field)
    if len(cleaned) > max_len:
        raise ValidationError(f"{field} exceeds {max_len} characters", field=field)
    return cleaned


@dataclass(frozen=True)
class ItemKey:
    """Identity of one item's ledger chain."""
    company_code: str
    item_type: str
    item_code: str

    @classmethod
    def build(cls, company_code, item_type, item_code) -> "ItemKey":
        return cls(
            company_code=_clean(company_code, "company_code", MAX_COMPANY_CODE),
            item_type=_clean(item_type, "item_type", MAX_ITEM_TYPE).upper(),
            item_code=_clean(item_code, "item_code", MAX_ITEM_CODE),
        )

    def __str__(self) -> str:
        return f"{self.company_code}/{self.item_type}/{self.item_code}"


@dataclass(frozen=True)
class QueueKey:
    """Natural key of a recalculation queue entry."""
    item: ItemKey
    recalc_date: date

    @classmethod
    def build(cls, company_code, item_type, item_code, recalc_date) -> "QueueKey":
        if isinstance(recalc_date, datetime):
            recalc_date = recalc_date.date()
        if not isinstance(recalc_date, date):
            raise ValidationError("recalc_date must be a date", field="recalc_date")
        return cls(item=ItemKey.build(company_code, item_type, item_code), recalc_date=recalc_date)

    def __str__(self) -> str:
        return f"{self.item}@{self.recalc_date.isoformat()}"


class RecalcPriority(IntEnum):
    """
    Two-level priority. Stored as the integer value; higher drains first.

    URGENT   - backdated change, later reports already used a stale chain
    DEFERRED - same-day change, the end-of-day job recomputes it anyway
    """
    DEFERRED = 0
    URGENT = 1


def priority_for(effective_date: date, today: date) -> RecalcPriority:
    """Backdated changes are urgent; same-day (or future) changes are deferred."""
    if effective_date < today:
        return RecalcPriority.URGENT
    return RecalcPriority.DEFERRED


def validate_priority(priority) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError("priority must be an integer", field="priority")
    if priority < 0:
        raise ValidationError("priority must not be negative", field="priority")
    return int(priority)

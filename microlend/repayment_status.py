"""
Repayment status resolution.

The persisted installment status is only ever "pending" or "paid". What a
lender or admin sees (Pending, Due soon, Overdue, Paid) is derived on every
read from the raw status, the due date and the current time, and is never
written back to storage.
"""

import math
from datetime import date, datetime, timezone
from enum import Enum
from typing import Union

from .amortization import InstallmentStatus


DEFAULT_DUE_SOON_DAYS = 7


class DisplayStatus(Enum):
    """Derived installment status shown to users"""
    PAID = "Paid"
    OVERDUE = "Overdue"
    DUE_SOON = "Due soon"
    PENDING = "Pending"


def _as_utc(value: Union[date, datetime]) -> datetime:
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def days_until_due(due_date: Union[date, datetime], now: datetime) -> int:
    """Whole days until the due date, rounded up. Negative once the due date has passed."""
    delta = _as_utc(due_date) - _as_utc(now)
    return math.ceil(delta.total_seconds() / 86400)


def resolve_status(raw_status: Union[str, InstallmentStatus],
                   due_date: Union[date, datetime],
                   now: datetime,
                   due_soon_days: int = DEFAULT_DUE_SOON_DAYS) -> DisplayStatus:
    """
    Derive the display status of an installment.

    A paid installment is always Paid, even if it was paid late. Otherwise the
    whole days until due decide: negative is Overdue, up to due_soon_days is
    Due soon, anything later is Pending.
    """
    if isinstance(raw_status, InstallmentStatus):
        raw_status = raw_status.value
    if str(raw_status).lower() == InstallmentStatus.PAID.value:
        return DisplayStatus.PAID

    days = days_until_due(due_date, now)
    if days < 0:
        return DisplayStatus.OVERDUE
    if days <= due_soon_days:
        return DisplayStatus.DUE_SOON
    return DisplayStatus.PENDING

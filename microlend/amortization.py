"""
Amortization Module

Fixed-payment (annuity) schedule generation. Pure computation: no storage,
no clock reads. Every monetary value is rounded half-up to the currency
precision at each row. The final row repays whatever principal is left and
keeps the fixed payment, taking the rounding residue into its interest, so
the schedule always ends at exactly zero.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from enum import Enum
import calendar

from .currency import Money, Currency, money_to_fields, money_from_fields
from .errors import AlreadyPaidError, ValidationError


DateLike = Union[date, datetime]


class InstallmentStatus(Enum):
    """Raw, persisted installment status"""
    PENDING = "pending"
    PAID = "paid"


@dataclass
class Installment:
    """Single scheduled payment within a repayment schedule"""
    installment_number: int
    due_date: DateLike
    total_payment: Money
    principal_payment: Money
    interest_payment: Money
    remaining_balance: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[datetime] = None

    def __post_init__(self):
        calculated = self.principal_payment + self.interest_payment
        if calculated != self.total_payment:
            raise ValueError(f"Installment {self.installment_number}: payment "
                             f"{self.total_payment.to_string()} does not equal principal "
                             f"{self.principal_payment.to_string()} + interest "
                             f"{self.interest_payment.to_string()}")
        if self.remaining_balance.is_negative():
            raise ValueError(f"Installment {self.installment_number}: remaining balance is negative")

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    def mark_paid(self, paid_at: datetime) -> None:
        """
        Move the raw status from pending to paid.

        Raises:
            AlreadyPaidError: If the installment was settled before
        """
        if self.is_paid:
            raise AlreadyPaidError(f"Installment {self.installment_number} is already paid")
        self.status = InstallmentStatus.PAID
        self.paid_date = paid_at

    def to_dict(self) -> Dict:
        result = {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'status': self.status.value,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
        }
        result.update(money_to_fields('total_payment', self.total_payment))
        result.update(money_to_fields('principal_payment', self.principal_payment))
        result.update(money_to_fields('interest_payment', self.interest_payment))
        result.update(money_to_fields('remaining_balance', self.remaining_balance))
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Installment':
        return cls(
            installment_number=data['installment_number'],
            due_date=datetime.fromisoformat(data['due_date']),
            total_payment=money_from_fields('total_payment', data),
            principal_payment=money_from_fields('principal_payment', data),
            interest_payment=money_from_fields('interest_payment', data),
            remaining_balance=money_from_fields('remaining_balance', data),
            status=InstallmentStatus(data['status']),
            paid_date=datetime.fromisoformat(data['paid_date']) if data.get('paid_date') else None,
        )


def add_months(start: DateLike, months: int) -> DateLike:
    """Add calendar months to a date or datetime, clamping to the last day of short months"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """Convert an annual percentage (12 for 12%) to a monthly fraction"""
    return Decimal(str(annual_rate_percent)) / Decimal('100') / Decimal('12')


def calculate_monthly_payment(principal: Money, annual_rate_percent: Decimal,
                              term_months: int) -> Money:
    """
    Fixed monthly payment for a fully amortizing loan.

    Standard formula: P * [r(1+r)^n] / [(1+r)^n - 1], or P / n when the rate
    is zero. The result is rounded to the currency precision.
    """
    _validate_terms(principal, annual_rate_percent, term_months)

    rate = monthly_rate(annual_rate_percent)
    if rate == Decimal('0'):
        return principal / Decimal(term_months)

    factor = (Decimal('1') + rate) ** term_months
    return Money(principal.amount * (rate * factor) / (factor - Decimal('1')), principal.currency)


def generate_schedule(principal: Money, annual_rate_percent: Decimal, term_months: int,
                      start_date: DateLike) -> List[Installment]:
    """
    Generate an equal-installment amortization schedule.

    Args:
        principal: Amount lent, must be positive
        annual_rate_percent: Annual interest rate as a percentage, >= 0
        term_months: Number of monthly installments, >= 1
        start_date: Funding date; installment N falls due N calendar months later

    Returns:
        Exactly term_months installments ordered by installment number

    Raises:
        ValidationError: On non-positive principal, negative rate or term < 1
    """
    payment = calculate_monthly_payment(principal, annual_rate_percent, term_months)
    rate = monthly_rate(annual_rate_percent)
    currency = principal.currency

    schedule = []
    remaining = principal

    for number in range(1, term_months + 1):
        interest = remaining * rate
        principal_part = payment - interest

        if number == term_months:
            # Final row keeps the fixed payment; rounding residue lands in interest
            principal_part = remaining
            interest = max(payment - remaining, Money.zero(currency))
        elif principal_part > remaining:
            principal_part = remaining

        remaining = remaining - principal_part

        schedule.append(Installment(
            installment_number=number,
            due_date=add_months(start_date, number),
            total_payment=principal_part + interest,
            principal_payment=principal_part,
            interest_payment=interest,
            remaining_balance=remaining,
        ))

    return schedule


def total_payments(installments: List[Installment], currency: Currency) -> Money:
    """Sum of every installment's total payment"""
    total = Money.zero(currency)
    for installment in installments:
        total = total + installment.total_payment
    return total


def _validate_terms(principal: Money, annual_rate_percent, term_months) -> None:
    if not isinstance(principal, Money) or not principal.is_positive():
        raise ValidationError(f"Principal must be a positive amount, got {principal}")
    if not isinstance(term_months, int) or isinstance(term_months, bool) or term_months < 1:
        raise ValidationError(f"Term must be at least one month, got {term_months}")
    if Decimal(str(annual_rate_percent)) < Decimal('0'):
        raise ValidationError(f"Annual rate cannot be negative, got {annual_rate_percent}")

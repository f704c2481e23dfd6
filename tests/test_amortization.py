"""
Test suite for amortization module

Tests fixed-payment schedule generation and the rounding rules: every row is
rounded to currency precision and the final row keeps the fixed payment while
repaying the remaining principal, so the schedule ends at exactly zero.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from microlend.currency import Money, Currency
from microlend.amortization import (
    Installment, InstallmentStatus, add_months, monthly_rate,
    calculate_monthly_payment, generate_schedule, total_payments
)
from microlend.errors import AlreadyPaidError, ValidationError


def lkr(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.LKR)


START = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


class TestMonthlyPayment:
    """Test the annuity payment formula"""

    def test_worked_example(self):
        """100,000 at 12% over 6 months"""
        payment = calculate_monthly_payment(lkr(100000), Decimal('12'), 6)
        assert payment == lkr('17254.84')

    def test_zero_rate_splits_principal_evenly(self):
        assert calculate_monthly_payment(lkr(1200), Decimal('0'), 12) == lkr(100)

    def test_monthly_rate_is_percent_over_twelve(self):
        assert monthly_rate(Decimal('12')) == Decimal('0.01')

    @pytest.mark.parametrize("principal,rate,term", [
        (lkr(0), Decimal('12'), 6),
        (lkr(-100), Decimal('12'), 6),
        (lkr(1000), Decimal('-1'), 6),
        (lkr(1000), Decimal('12'), 0),
    ])
    def test_invalid_terms_rejected(self, principal, rate, term):
        with pytest.raises(ValidationError):
            calculate_monthly_payment(principal, rate, term)


class TestGenerateSchedule:
    """Test full schedule generation"""

    def test_worked_example_rows(self):
        schedule = generate_schedule(lkr(100000), Decimal('12'), 6, START)

        assert len(schedule) == 6
        assert [i.installment_number for i in schedule] == [1, 2, 3, 4, 5, 6]

        first = schedule[0]
        assert first.interest_payment == lkr('1000.00')
        assert first.principal_payment == lkr('16254.84')
        assert first.remaining_balance == lkr('83745.16')

        assert schedule[1].interest_payment == lkr('837.45')
        assert schedule[1].remaining_balance == lkr('67327.77')

        last = schedule[-1]
        assert last.principal_payment == lkr('17083.98')
        assert last.interest_payment == lkr('170.86')
        assert last.total_payment == lkr('17254.84')
        assert last.remaining_balance.is_zero()

    def test_worked_example_totals(self):
        schedule = generate_schedule(lkr(100000), Decimal('12'), 6, START)
        total = total_payments(schedule, Currency.LKR)

        assert total == lkr('103529.04')
        assert total - lkr(100000) == lkr('3529.04')

        principal_sum = Money.zero(Currency.LKR)
        for installment in schedule:
            principal_sum = principal_sum + installment.principal_payment
        assert principal_sum == lkr(100000)

    @pytest.mark.parametrize("principal,rate,term", [
        (lkr(100000), Decimal('12'), 6),
        (lkr('25000'), Decimal('18.5'), 24),
        (lkr('7350.55'), Decimal('9.75'), 11),
    ])
    def test_every_row_pays_the_fixed_payment(self, principal, rate, term):
        payment = calculate_monthly_payment(principal, rate, term)
        schedule = generate_schedule(principal, rate, term, START)

        assert [i.total_payment for i in schedule] == [payment] * term
        assert schedule[-1].remaining_balance.is_zero()

    def test_zero_rate_residue_stays_principal(self):
        schedule = generate_schedule(lkr(1000), Decimal('0'), 3, START)

        assert [i.total_payment for i in schedule] == [lkr('333.33'), lkr('333.33'), lkr('333.34')]
        assert schedule[-1].interest_payment.is_zero()

    def test_every_row_adds_up(self):
        for installment in generate_schedule(lkr('25000'), Decimal('18.5'), 24, START):
            assert installment.total_payment == installment.principal_payment + installment.interest_payment
            assert not installment.remaining_balance.is_negative()

    def test_single_month_term(self):
        schedule = generate_schedule(lkr(5000), Decimal('12'), 1, START)

        assert len(schedule) == 1
        assert schedule[0].principal_payment == lkr(5000)
        assert schedule[0].interest_payment == lkr(50)
        assert schedule[0].remaining_balance.is_zero()

    def test_zero_rate_has_no_interest(self):
        schedule = generate_schedule(lkr(1000), Decimal('0'), 3, START)

        assert all(i.interest_payment.is_zero() for i in schedule)
        assert total_payments(schedule, Currency.LKR) == lkr(1000)

    def test_due_dates_are_calendar_months_from_start(self):
        schedule = generate_schedule(lkr(100000), Decimal('12'), 6, START)

        assert schedule[0].due_date == datetime(2024, 2, 15, 9, 0, tzinfo=timezone.utc)
        assert schedule[5].due_date == datetime(2024, 7, 15, 9, 0, tzinfo=timezone.utc)

    def test_new_installments_are_pending(self):
        schedule = generate_schedule(lkr(1000), Decimal('10'), 2, START)
        assert all(i.status == InstallmentStatus.PENDING and i.paid_date is None for i in schedule)


class TestAddMonths:
    """Test calendar month arithmetic"""

    def test_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)

    def test_rolls_over_year(self):
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)

    def test_keeps_time_of_day(self):
        assert add_months(START, 12) == datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


class TestInstallment:
    """Test installment invariants and persistence"""

    def test_mismatched_total_rejected(self):
        with pytest.raises(ValueError):
            Installment(1, START, lkr(100), lkr(60), lkr(30), lkr(0))

    def test_negative_balance_rejected(self):
        with pytest.raises(ValueError):
            Installment(1, START, lkr(100), lkr(70), lkr(30), lkr(-1))

    def test_mark_paid_once(self):
        installment = generate_schedule(lkr(1000), Decimal('10'), 2, START)[0]
        paid_at = datetime(2024, 2, 10, tzinfo=timezone.utc)

        installment.mark_paid(paid_at)
        assert installment.is_paid
        assert installment.paid_date == paid_at

        with pytest.raises(AlreadyPaidError):
            installment.mark_paid(paid_at)

    def test_dict_roundtrip(self):
        installment = generate_schedule(lkr(100000), Decimal('12'), 6, START)[2]
        installment.mark_paid(datetime(2024, 4, 1, tzinfo=timezone.utc))

        restored = Installment.from_dict(installment.to_dict())

        assert restored == installment

"""
Test suite for loans module

Tests loan applications, listing and the status transition graph.
"""

import pytest
from decimal import Decimal

from microlend.loans import LoanBook, LoanStatus
from microlend.errors import InvalidStateError, NotFoundError, ValidationError

from conftest import lkr


@pytest.fixture
def book(storage, clock):
    return LoanBook(storage, clock)


@pytest.fixture
def loan(book):
    return book.apply_for_loan("borrower-1", lkr(50000), Decimal("15"), 12, "Sewing machine")


class TestLoanApplication:
    """Borrower applications"""

    def test_apply_creates_pending_loan(self, book, loan):
        loaded = book.get_loan(loan.id)

        assert loaded.status == LoanStatus.PENDING
        assert loaded.requested_amount == lkr(50000)
        assert loaded.annual_interest_rate == Decimal("15")
        assert loaded.term_months == 12
        assert loaded.purpose == "Sewing machine"
        assert loaded.lender_id is None
        assert loaded.outstanding_amount == lkr(50000)
        assert not loaded.is_funded

    @pytest.mark.parametrize("amount,rate,term", [
        (lkr(0), Decimal("10"), 12),
        (lkr(1000), Decimal("-0.5"), 12),
        (lkr(1000), Decimal("10"), 0),
    ])
    def test_invalid_application_rejected(self, book, amount, rate, term):
        with pytest.raises(ValidationError):
            book.apply_for_loan("borrower-1", amount, rate, term)

    def test_missing_loan(self, book):
        with pytest.raises(NotFoundError):
            book.get_loan("missing")


class TestLoanListing:
    """Queries over the loan book"""

    def test_list_by_status_and_party(self, book, loan):
        other = book.apply_for_loan("borrower-2", lkr(1000), Decimal("10"), 3)
        book.transition(other.id, LoanStatus.FUNDING, lender_id="lender-1", funded_amount=lkr(1000))

        assert [l.id for l in book.list_loans(LoanStatus.PENDING)] == [loan.id]
        assert [l.id for l in book.list_lender_loans("lender-1")] == [other.id]
        assert book.list_lender_loans("lender-1", LoanStatus.COMPLETED) == []
        assert [l.id for l in book.list_borrower_loans("borrower-1")] == [loan.id]
        assert len(book.list_loans()) == 2


class TestLoanTransitions:
    """Status graph"""

    def test_full_lifecycle(self, book, loan):
        book.transition(loan.id, LoanStatus.FUNDING, lender_id="lender-1", funded_amount=lkr(50000))
        book.transition(loan.id, LoanStatus.REPAYING)
        completed = book.transition(loan.id, LoanStatus.COMPLETED, total_return=lkr(54000))

        assert completed.status == LoanStatus.COMPLETED
        assert completed.total_return == lkr(54000)
        assert book.get_loan(loan.id).funded_amount == lkr(50000)

    @pytest.mark.parametrize("target", [LoanStatus.REPAYING, LoanStatus.COMPLETED, LoanStatus.PENDING])
    def test_illegal_transitions_from_pending(self, book, loan, target):
        with pytest.raises(InvalidStateError):
            book.transition(loan.id, target)

    def test_completed_is_terminal(self, book, loan):
        book.transition(loan.id, LoanStatus.FUNDING)
        book.transition(loan.id, LoanStatus.REPAYING)
        book.transition(loan.id, LoanStatus.COMPLETED)

        for target in LoanStatus:
            with pytest.raises(InvalidStateError):
                book.transition(loan.id, target)

    def test_back_to_pending_clears_funding_fields(self, book, loan):
        book.transition(loan.id, LoanStatus.FUNDING, lender_id="lender-1",
                        funded_amount=lkr(50000), escrow_id="escrow-1",
                        repayment_schedule_id="schedule-1")

        reopened = book.transition(loan.id, LoanStatus.PENDING)

        assert reopened.status == LoanStatus.PENDING
        assert reopened.lender_id is None
        assert reopened.funded_amount is None
        assert reopened.escrow_id is None
        assert reopened.repayment_schedule_id is None
        assert book.get_loan(loan.id).outstanding_amount == lkr(50000)

    def test_unknown_field_rejected(self, book, loan):
        with pytest.raises(ValueError):
            book.transition(loan.id, LoanStatus.FUNDING, colour="blue")
        assert book.get_loan(loan.id).status == LoanStatus.PENDING

    def test_partial_funding_outstanding(self, book, loan):
        funded = book.transition(loan.id, LoanStatus.FUNDING, funded_amount=lkr(20000))
        assert funded.outstanding_amount == lkr(30000)
        assert funded.is_funded

"""
Test suite for transaction history module
"""

import pytest

from microlend.transactions import TransactionHistory, TransactionType, TransactionStatus
from microlend.errors import ValidationError

from conftest import lkr


@pytest.fixture
def history(storage, clock):
    return TransactionHistory(storage, clock)


class TestTransactionHistory:
    """Recording and listing history entries"""

    def test_record_topup(self, history):
        transaction = history.record("lender-1", lkr(5000), TransactionType.TOPUP)

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.loan_id is None
        assert history.list_for_user("lender-1")[0].amount == lkr(5000)

    def test_loan_types_require_loan_id(self, history):
        for transaction_type in (TransactionType.INVESTMENT, TransactionType.REPAYMENT,
                                 TransactionType.REFUND, TransactionType.DISBURSEMENT):
            with pytest.raises(ValidationError):
                history.record("lender-1", lkr(100), transaction_type)

    def test_amount_must_be_positive(self, history):
        with pytest.raises(ValidationError):
            history.record("lender-1", lkr(0), TransactionType.TOPUP)

    def test_newest_first_with_limit(self, history, clock):
        for amount in (100, 200, 300):
            history.record("lender-1", lkr(amount), TransactionType.TOPUP)
            clock.advance(seconds=1)

        entries = history.list_for_user("lender-1")
        assert [e.amount for e in entries] == [lkr(300), lkr(200), lkr(100)]
        assert len(history.list_for_user("lender-1", limit=2)) == 2

    def test_list_for_loan(self, history):
        history.record("lender-1", lkr(1000), TransactionType.INVESTMENT, loan_id="loan-1",
                       description="Investment in loan #loan-1")
        history.record("borrower-1", lkr(1000), TransactionType.DISBURSEMENT, loan_id="loan-1")
        history.record("lender-1", lkr(50), TransactionType.INVESTMENT, loan_id="loan-2")

        entries = history.list_for_loan("loan-1")
        assert {e.user_id for e in entries} == {"lender-1", "borrower-1"}

    def test_status_roundtrip(self, history):
        history.record("lender-1", lkr(10), TransactionType.WITHDRAW, status=TransactionStatus.PENDING)
        assert history.list_for_user("lender-1")[0].status == TransactionStatus.PENDING

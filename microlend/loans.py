"""
Loan Module

Borrower applications and the loan status machine:

    pending -> funding -> repaying -> completed
                  |
                  +-> pending   (escrow refunded)

Only the funding orchestrator and the settlement service move a loan between
statuses; everything else reads.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import logging
import uuid

from .currency import Money, money_to_fields, money_from_fields
from .storage import StorageInterface, StorageRecord
from .clock import Clock, SystemClock
from .errors import InvalidStateError, NotFoundError, ValidationError
from .logging_config import log_action


logger = logging.getLogger("microlend.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Application open for funding
    FUNDING = "funding"        # Lender committed, funds held in escrow
    REPAYING = "repaying"      # Escrow released, installments running
    COMPLETED = "completed"    # Every installment paid


ALLOWED_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.FUNDING},
    LoanStatus.FUNDING: {LoanStatus.REPAYING, LoanStatus.PENDING},
    LoanStatus.REPAYING: {LoanStatus.COMPLETED},
    LoanStatus.COMPLETED: set(),
}

# Fields that only carry a value once a lender has funded the loan
FUNDING_FIELDS = ('lender_id', 'funded_amount', 'funded_at', 'escrow_id', 'repayment_schedule_id')

_MONEY_FIELDS = ('funded_amount', 'total_return', 'interest_earned')
_TIMESTAMP_FIELDS = ('funded_at', 'disbursed_at', 'completed_at')


@dataclass
class Loan(StorageRecord):
    """A borrower's loan request and its funding state"""
    borrower_id: str
    requested_amount: Money
    annual_interest_rate: Decimal       # Percent, e.g. 12 for 12%
    term_months: int
    purpose: str = ""
    status: LoanStatus = LoanStatus.PENDING

    # Set when a lender funds the loan
    lender_id: Optional[str] = None
    funded_amount: Optional[Money] = None
    funded_at: Optional[datetime] = None
    escrow_id: Optional[str] = None
    repayment_schedule_id: Optional[str] = None

    # Set later in the lifecycle
    disbursed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_return: Optional[Money] = None
    interest_earned: Optional[Money] = None

    @property
    def outstanding_amount(self) -> Money:
        """Requested amount not yet covered by a lender"""
        if self.funded_amount is None:
            return self.requested_amount
        return self.requested_amount - self.funded_amount

    @property
    def is_funded(self) -> bool:
        return self.status in (LoanStatus.FUNDING, LoanStatus.REPAYING, LoanStatus.COMPLETED)


class LoanBook:
    """
    Stores loans and enforces their status transitions
    """

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()

        self.loans_table = "loans"

    def apply_for_loan(
        self,
        borrower_id: str,
        requested_amount: Money,
        annual_interest_rate: Decimal,
        term_months: int,
        purpose: str = ""
    ) -> Loan:
        """
        Open a loan application in pending status

        Args:
            borrower_id: Applicant
            requested_amount: Amount requested, must be positive
            annual_interest_rate: Annual rate as a percentage, >= 0
            term_months: Repayment term, >= 1
            purpose: Free text shown to lenders

        Returns:
            Created Loan
        """
        if not isinstance(requested_amount, Money) or not requested_amount.is_positive():
            raise ValidationError(f"Requested amount must be positive, got {requested_amount}")
        annual_interest_rate = Decimal(str(annual_interest_rate))
        if annual_interest_rate < Decimal('0'):
            raise ValidationError(f"Interest rate cannot be negative, got {annual_interest_rate}")
        if not isinstance(term_months, int) or term_months < 1:
            raise ValidationError(f"Term must be at least one month, got {term_months}")

        now = self.clock.now()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_id=borrower_id,
            requested_amount=requested_amount,
            annual_interest_rate=annual_interest_rate,
            term_months=term_months,
            purpose=purpose,
        )
        self._save_loan(loan)

        log_action(logger, "info", "Loan application created", user_id=borrower_id,
                   loan_id=loan.id, action="loan_applied",
                   extra={"amount": str(requested_amount.amount), "term_months": term_months,
                          "annual_interest_rate": str(annual_interest_rate)})
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """
        Raises:
            NotFoundError: If the loan does not exist
        """
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError("Loan", loan_id)
        return self._loan_from_dict(data)

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        """All loans, optionally filtered by status, oldest first"""
        filters = {"status": status.value} if status else {}
        return self._find(filters)

    def list_lender_loans(self, lender_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        """Loans funded by a lender"""
        filters = {"lender_id": lender_id}
        if status:
            filters["status"] = status.value
        return self._find(filters)

    def list_borrower_loans(self, borrower_id: str) -> List[Loan]:
        return self._find({"borrower_id": borrower_id})

    def transition(self, loan_id: str, new_status: LoanStatus, **changes) -> Loan:
        """
        Move a loan to a new status and apply field changes in the same write

        Callers serialise on the loan lock. Moving back to pending clears every
        funding field so the loan can be funded again.

        Raises:
            NotFoundError: If the loan does not exist
            InvalidStateError: If the transition is not allowed
        """
        loan = self.get_loan(loan_id)

        if new_status not in ALLOWED_TRANSITIONS[loan.status]:
            raise InvalidStateError(
                f"Loan {loan_id} cannot move from {loan.status.value} to {new_status.value}"
            )

        for name, value in changes.items():
            if not hasattr(loan, name) or name in ('id', 'created_at', 'status'):
                raise ValueError(f"Unknown loan field: {name}")
            setattr(loan, name, value)

        if new_status == LoanStatus.PENDING:
            for name in FUNDING_FIELDS:
                setattr(loan, name, None)

        previous = loan.status
        loan.status = new_status
        loan.updated_at = self.clock.now()
        self._save_loan(loan)

        log_action(logger, "info", f"Loan {previous.value} -> {new_status.value}",
                   user_id=loan.lender_id or loan.borrower_id, loan_id=loan.id,
                   action="loan_status_changed",
                   extra={"from": previous.value, "to": new_status.value})
        return loan

    def _find(self, filters: Dict) -> List[Loan]:
        loans = [self._loan_from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        result = {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'borrower_id': loan.borrower_id,
            'annual_interest_rate': str(loan.annual_interest_rate),
            'term_months': loan.term_months,
            'purpose': loan.purpose,
            'status': loan.status.value,
            'lender_id': loan.lender_id,
            'escrow_id': loan.escrow_id,
            'repayment_schedule_id': loan.repayment_schedule_id,
        }
        result.update(money_to_fields('requested', loan.requested_amount))

        # Convert optional money amounts
        for field in _MONEY_FIELDS:
            amount = getattr(loan, field)
            if amount is not None:
                result.update(money_to_fields(field, amount))

        # Convert timestamps
        for field in _TIMESTAMP_FIELDS:
            value = getattr(loan, field)
            result[field] = value.isoformat() if value else None

        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        optional = {}
        for field in _MONEY_FIELDS:
            optional[field] = money_from_fields(field, data) if data.get(f'{field}_amount') else None
        for field in _TIMESTAMP_FIELDS:
            optional[field] = datetime.fromisoformat(data[field]) if data.get(field) else None

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_id=data['borrower_id'],
            requested_amount=money_from_fields('requested', data),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            term_months=data['term_months'],
            purpose=data.get('purpose', ""),
            status=LoanStatus(data['status']),
            lender_id=data.get('lender_id'),
            escrow_id=data.get('escrow_id'),
            repayment_schedule_id=data.get('repayment_schedule_id'),
            **optional
        )

"""
Transaction History Module

User-facing history of money movements: wallet top-ups and withdrawals,
investments into loans, disbursements, refunds and repayments. History rows
describe what the ledgers already did; writing one never moves money, and the
workflows record them as advisory side effects.
"""

from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import logging
import uuid

from .currency import Money, money_to_fields, money_from_fields
from .storage import StorageInterface, StorageRecord
from .clock import Clock, SystemClock
from .errors import ValidationError


logger = logging.getLogger("microlend.transactions")


class TransactionType(Enum):
    """Types of wallet history entries"""
    TOPUP = "topup"                    # Money added to a wallet
    WITHDRAW = "withdraw"              # Money taken out of a wallet
    INVESTMENT = "investment"          # Lender funded a loan
    REPAYMENT = "repayment"            # Installment settled
    REFUND = "refund"                  # Escrow returned to the lender
    DISBURSEMENT = "disbursement"      # Escrow paid out to the borrower


class TransactionStatus(Enum):
    """States of a history entry"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# Entries of these types always refer to a loan
LOAN_TRANSACTION_TYPES = {
    TransactionType.INVESTMENT,
    TransactionType.REPAYMENT,
    TransactionType.REFUND,
    TransactionType.DISBURSEMENT,
}


@dataclass
class Transaction(StorageRecord):
    """A single history entry"""
    user_id: str
    transaction_type: TransactionType
    amount: Money
    status: TransactionStatus = TransactionStatus.COMPLETED
    loan_id: Optional[str] = None
    description: str = ""

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValidationError("Transaction amount must be positive")

        if self.transaction_type in LOAN_TRANSACTION_TYPES and not self.loan_id:
            raise ValidationError(f"{self.transaction_type.value} transactions require a loan_id")


class TransactionHistory:
    """
    Records and lists wallet history entries
    """

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()

        self.transactions_table = "transactions"

    def record(
        self,
        user_id: str,
        amount: Money,
        transaction_type: TransactionType,
        loan_id: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        description: str = ""
    ) -> Transaction:
        """
        Record a history entry

        Raises:
            ValidationError: If the amount is not positive or a loan entry has no loan_id
        """
        now = self.clock.now()
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            status=status,
            loan_id=loan_id,
            description=description,
        )
        self.storage.save(self.transactions_table, transaction.id,
                          self._transaction_to_dict(transaction))

        logger.debug("Recorded %s of %s for %s", transaction_type.value, amount.to_string(), user_id)
        return transaction

    def list_for_user(self, user_id: str, limit: int = 100) -> List[Transaction]:
        """History of a user, newest first"""
        return self._find({"user_id": user_id})[:limit]

    def list_for_loan(self, loan_id: str) -> List[Transaction]:
        return self._find({"loan_id": loan_id})

    def _find(self, filters: Dict) -> List[Transaction]:
        transactions = [
            self._transaction_from_dict(data)
            for data in self.storage.find(self.transactions_table, filters)
        ]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        """Convert transaction to dictionary"""
        result = {
            'id': transaction.id,
            'created_at': transaction.created_at.isoformat(),
            'updated_at': transaction.updated_at.isoformat(),
            'user_id': transaction.user_id,
            'transaction_type': transaction.transaction_type.value,
            'status': transaction.status.value,
            'loan_id': transaction.loan_id,
            'description': transaction.description,
        }
        result.update(money_to_fields('amount', transaction.amount))
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to transaction"""
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=money_from_fields('amount', data),
            status=TransactionStatus(data['status']),
            loan_id=data.get('loan_id'),
            description=data.get('description', ""),
        )

"""
Escrow Module

Holds lender funds committed to a loan until an admin releases them to the
borrower or refunds them to the lender. The escrowed amount is fixed when the
escrow is opened; only the status ever changes.

Releasing credits the borrower's wallet and refunding credits the lender's
wallet, in both cases before the new status is written. If the wallet credit
fails the status stays where it was, so a refund is never recorded without
the money having moved back. If the status write fails after the credit,
the credit is debited back before the error propagates.
"""

from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import logging
import uuid

from .currency import Money, money_to_fields, money_from_fields
from .storage import StorageInterface, StorageRecord
from .wallet import WalletLedger
from .clock import Clock, SystemClock
from .locks import KeyedLock
from .errors import CompensationError, InvalidStateError, NotFoundError, ValidationError
from .logging_config import log_action


logger = logging.getLogger("microlend.escrow")


class EscrowStatus(Enum):
    """Escrow lifecycle states"""
    PENDING = "pending"      # Funds held, waiting for admin review
    APPROVED = "approved"    # Admin approved, not yet disbursed
    RELEASED = "released"    # Funds paid out to the borrower
    REFUNDED = "refunded"    # Funds returned to the lender


ALLOWED_TRANSITIONS = {
    EscrowStatus.PENDING: {EscrowStatus.APPROVED, EscrowStatus.RELEASED, EscrowStatus.REFUNDED},
    EscrowStatus.APPROVED: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED},
    EscrowStatus.RELEASED: set(),
    EscrowStatus.REFUNDED: set(),
}


@dataclass
class Escrow(StorageRecord):
    """Funds held against a single funding event"""
    loan_id: str
    lender_id: str
    borrower_id: str
    amount: Money
    status: EscrowStatus = EscrowStatus.PENDING
    approved_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]


class EscrowLedger:
    """
    Owns escrow records and the wallet movements their transitions cause
    """

    def __init__(
        self,
        storage: StorageInterface,
        wallet_ledger: WalletLedger,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLock] = None
    ):
        self.storage = storage
        self.wallet_ledger = wallet_ledger
        self.clock = clock or SystemClock()
        self.locks = locks or KeyedLock()

        self.escrows_table = "escrows"

    def open(self, loan_id: str, lender_id: str, borrower_id: str, amount: Money) -> Escrow:
        """
        Open a pending escrow

        Args:
            loan_id: Loan being funded
            lender_id: Lender whose wallet was debited
            borrower_id: Borrower who receives the funds on release
            amount: Amount held, must be positive

        Returns:
            Created Escrow
        """
        if not isinstance(amount, Money) or not amount.is_positive():
            raise ValidationError(f"Escrow amount must be positive, got {amount}")

        now = self.clock.now()
        escrow = Escrow(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            lender_id=lender_id,
            borrower_id=borrower_id,
            amount=amount,
        )
        self._save_escrow(escrow)

        log_action(logger, "info", "Escrow opened", user_id=lender_id, loan_id=loan_id,
                   action="escrow_opened", resource=escrow.id,
                   extra={"amount": str(amount.amount), "currency": amount.currency.code})
        return escrow

    def get_escrow(self, escrow_id: str) -> Escrow:
        """
        Raises:
            NotFoundError: If the escrow does not exist
        """
        data = self.storage.load(self.escrows_table, escrow_id)
        if not data:
            raise NotFoundError("Escrow", escrow_id)
        return self._escrow_from_dict(data)

    def list_escrows(self, status: Optional[EscrowStatus] = None) -> List[Escrow]:
        """List escrows, optionally filtered by status, oldest first"""
        if status:
            records = self.storage.find(self.escrows_table, {"status": status.value})
        else:
            records = self.storage.load_all(self.escrows_table)
        escrows = [self._escrow_from_dict(data) for data in records]
        escrows.sort(key=lambda e: e.created_at)
        return escrows

    def transition(self, escrow_id: str, new_status: EscrowStatus) -> Escrow:
        """
        Move an escrow to a new status

        Releasing credits the borrower and refunding credits the lender with
        the escrowed amount. The credit and the status write happen inside one
        storage transaction and the status is written only after the credit
        succeeds. A failed status write debits the credit back.

        Raises:
            NotFoundError: If the escrow does not exist
            InvalidStateError: If the transition is not allowed from the current status
            CompensationError: If the status write failed and the credit could not be reversed
        """
        with self.locks.hold(f"escrow:{escrow_id}"):
            escrow = self.get_escrow(escrow_id)

            if new_status not in ALLOWED_TRANSITIONS[escrow.status]:
                raise InvalidStateError(
                    f"Escrow {escrow_id} cannot move from {escrow.status.value} to {new_status.value}"
                )

            now = self.clock.now()
            credited_user = None
            with self.storage.atomic():
                if new_status == EscrowStatus.RELEASED:
                    self.wallet_ledger.credit(escrow.borrower_id, escrow.amount,
                                              reason=f"escrow release {escrow.id}")
                    credited_user = escrow.borrower_id
                    escrow.released_at = now
                elif new_status == EscrowStatus.REFUNDED:
                    self.wallet_ledger.credit(escrow.lender_id, escrow.amount,
                                              reason=f"escrow refund {escrow.id}")
                    credited_user = escrow.lender_id
                    escrow.refunded_at = now
                else:
                    escrow.approved_at = now

                escrow.status = new_status
                escrow.updated_at = now
                try:
                    self._save_escrow(escrow)
                except Exception as exc:
                    if credited_user is not None:
                        self._reverse_credit(escrow, credited_user, exc)
                    raise

        log_action(logger, "info", f"Escrow {new_status.value}", user_id=escrow.lender_id,
                   loan_id=escrow.loan_id, action=f"escrow_{new_status.value}", resource=escrow.id,
                   extra={"amount": str(escrow.amount.amount)})
        return escrow

    def _reverse_credit(self, escrow: Escrow, user_id: str, cause: Exception) -> None:
        log_action(logger, "error", "Escrow status write failed, debiting credit back",
                   user_id=user_id, loan_id=escrow.loan_id, action="escrow_compensation",
                   resource=escrow.id, extra={"error": str(cause)})
        try:
            self.wallet_ledger.debit(user_id, escrow.amount,
                                     reason=f"reverse escrow credit {escrow.id}")
        except Exception as exc:
            log_action(logger, "critical", "Escrow credit could not be reversed",
                       user_id=user_id, loan_id=escrow.loan_id, action="compensation_failed",
                       resource=escrow.id, extra={"amount": str(escrow.amount.amount), "error": str(exc)},
                       exc_info=exc)
            raise CompensationError(
                f"Escrow {escrow.id} status write failed and the credit to {user_id} could not be reversed",
                original=cause, compensation=exc,
            ) from exc

    def _save_escrow(self, escrow: Escrow) -> None:
        self.storage.save(self.escrows_table, escrow.id, self._escrow_to_dict(escrow))

    def _escrow_to_dict(self, escrow: Escrow) -> Dict:
        """Convert escrow to dictionary"""
        result = {
            'id': escrow.id,
            'created_at': escrow.created_at.isoformat(),
            'updated_at': escrow.updated_at.isoformat(),
            'loan_id': escrow.loan_id,
            'lender_id': escrow.lender_id,
            'borrower_id': escrow.borrower_id,
            'status': escrow.status.value,
        }
        result.update(money_to_fields('amount', escrow.amount))

        for field in ['approved_at', 'released_at', 'refunded_at']:
            value = getattr(escrow, field)
            result[field] = value.isoformat() if value else None

        return result

    def _escrow_from_dict(self, data: Dict) -> Escrow:
        """Convert dictionary to escrow"""
        timestamps = {}
        for field in ['approved_at', 'released_at', 'refunded_at']:
            value = data.get(field)
            timestamps[field] = datetime.fromisoformat(value) if value else None

        return Escrow(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            lender_id=data['lender_id'],
            borrower_id=data['borrower_id'],
            amount=money_from_fields('amount', data),
            status=EscrowStatus(data['status']),
            **timestamps
        )

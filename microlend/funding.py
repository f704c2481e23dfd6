"""
Funding Orchestrator

Moves a loan from application to repayment:

    fund_loan       pending  -> funding   (wallet debit, escrow, schedule)
    release_escrow  funding  -> repaying  (escrow paid out to the borrower)
    refund_escrow   funding  -> pending   (escrow returned to the lender)

fund_loan runs as a saga. The wallet debit, escrow, schedule and loan update
must either all stand or all be undone: a failure after the debit credits the
lender back, a failure after the escrow is opened discards the schedule and
refunds the escrow. Admin and lender notifications and history rows are
advisory and never fail the workflow.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import logging

from .currency import Money
from .wallet import WalletLedger
from .escrow import Escrow, EscrowLedger, EscrowStatus
from .loans import Loan, LoanBook, LoanStatus
from .repayments import RepaymentSchedule, RepaymentScheduleStore
from .transactions import TransactionHistory, TransactionType
from .notifications import NotificationDispatcher, NotificationType, NotificationPriority
from .directory import AdminDirectory
from .clock import Clock, SystemClock
from .locks import KeyedLock
from .errors import CompensationError, InvalidStateError, ValidationError
from .side_effects import run_advisory
from .logging_config import log_action


logger = logging.getLogger("microlend.funding")

FUNDED_MESSAGE = "Loan funded successfully! Awaiting admin approval."


@dataclass
class FundingResult:
    """Outcome of a successful fund_loan call"""
    loan_id: str
    escrow_id: str
    repayment_schedule_id: str
    new_wallet_balance: Money
    funded_amount: Money
    success: bool = True
    message: str = FUNDED_MESSAGE
    warnings: List[str] = field(default_factory=list)


@dataclass
class EscrowActionResult:
    """Outcome of an admin escrow action"""
    escrow: Escrow
    loan: Loan
    warnings: List[str] = field(default_factory=list)


class FundingOrchestrator:
    """
    Coordinates wallets, escrows, schedules and loan status for funding
    """

    def __init__(
        self,
        wallet_ledger: WalletLedger,
        escrow_ledger: EscrowLedger,
        loan_book: LoanBook,
        schedule_store: RepaymentScheduleStore,
        transactions: TransactionHistory,
        notifier: NotificationDispatcher,
        admin_directory: AdminDirectory,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLock] = None
    ):
        self.wallet_ledger = wallet_ledger
        self.escrow_ledger = escrow_ledger
        self.loan_book = loan_book
        self.schedule_store = schedule_store
        self.transactions = transactions
        self.notifier = notifier
        self.admin_directory = admin_directory
        self.clock = clock or SystemClock()
        self.locks = locks or KeyedLock()

    def fund_loan(self, loan_id: str, lender_id: str, borrower_id: str, amount: Money) -> FundingResult:
        """
        Fund a pending loan from the lender's wallet

        Args:
            loan_id: Loan to fund
            lender_id: Lender whose wallet is debited
            borrower_id: Borrower of the loan, must match the loan record
            amount: Amount to commit, at most the outstanding requested amount

        Returns:
            FundingResult with the lender's new wallet balance

        Raises:
            NotFoundError: If the loan or the lender's wallet does not exist
            InvalidStateError: If the loan is not pending
            ValidationError: If the amount or parties do not match the loan
            InsufficientFundsError: If the lender's balance is below the amount
            CompensationError: If a step failed and undoing earlier steps also failed
        """
        with self.locks.hold(f"loan:{loan_id}"):
            loan = self.loan_book.get_loan(loan_id)
            self._validate_funding(loan, lender_id, borrower_id, amount)

            log_action(logger, "info", "Funding started", user_id=lender_id, loan_id=loan_id,
                       action="funding_started", extra={"amount": str(amount.amount)})

            new_balance = self.wallet_ledger.debit(lender_id, amount, reason=f"fund loan {loan_id}")

            try:
                escrow = self.escrow_ledger.open(loan_id, lender_id, borrower_id, amount)
            except Exception as exc:
                self._reverse_debit(loan_id, lender_id, amount, exc)
                raise

            warnings: List[str] = []
            self._notify_admins(loan, escrow, warnings)

            schedule: Optional[RepaymentSchedule] = None
            try:
                now = self.clock.now()
                schedule = self.schedule_store.create_schedule(
                    loan_id=loan_id,
                    borrower_id=borrower_id,
                    lender_id=lender_id,
                    principal=amount,
                    annual_interest_rate=loan.annual_interest_rate,
                    term_months=loan.term_months,
                    start_date=now,
                )
                loan = self.loan_book.transition(
                    loan_id, LoanStatus.FUNDING,
                    lender_id=lender_id,
                    funded_amount=amount,
                    funded_at=now,
                    escrow_id=escrow.id,
                    repayment_schedule_id=schedule.id,
                )
            except Exception as exc:
                self._unwind_escrow(loan_id, escrow, schedule, exc)
                raise

            run_advisory(
                "investment transaction record", self._record_history,
                lender_id, amount, TransactionType.INVESTMENT, loan_id,
                f"Investment in loan #{loan_id}",
                warnings=warnings, loan_id=loan_id,
            )

            run_advisory(
                "funding confirmation", self.notifier.notify,
                lender_id, NotificationType.FUNDING_CONFIRMED,
                "Funding confirmed",
                f"You funded loan #{loan_id} with {amount.to_string()}. "
                f"The funds are held in escrow awaiting admin approval.",
                NotificationPriority.HIGH,
                {"loan_id": loan_id, "escrow_id": escrow.id, "amount": str(amount.amount)},
                warnings=warnings, loan_id=loan_id,
            )

        log_action(logger, "info", "Loan funded", user_id=lender_id, loan_id=loan_id,
                   action="loan_funded", resource=escrow.id,
                   extra={"amount": str(amount.amount), "schedule_id": schedule.id,
                          "wallet_balance": str(new_balance.amount), "warnings": len(warnings)})

        return FundingResult(
            loan_id=loan_id,
            escrow_id=escrow.id,
            repayment_schedule_id=schedule.id,
            new_wallet_balance=new_balance,
            funded_amount=amount,
            warnings=warnings,
        )

    def approve_escrow(self, escrow_id: str) -> EscrowActionResult:
        """Admin approval of a pending escrow; no money moves"""
        escrow = self.escrow_ledger.get_escrow(escrow_id)
        with self.locks.hold(f"loan:{escrow.loan_id}"):
            loan = self._funding_loan_for(escrow)
            escrow = self.escrow_ledger.transition(escrow_id, EscrowStatus.APPROVED)

            warnings: List[str] = []
            run_advisory(
                "escrow approval notice", self.notifier.notify,
                escrow.lender_id, NotificationType.ESCROW_APPROVED,
                "Escrow approved",
                f"Your escrow of {escrow.amount.to_string()} for loan #{escrow.loan_id} has been approved.",
                NotificationPriority.MEDIUM,
                {"loan_id": escrow.loan_id, "escrow_id": escrow.id, "amount": str(escrow.amount.amount)},
                warnings=warnings, loan_id=escrow.loan_id,
            )
        return EscrowActionResult(escrow=escrow, loan=loan, warnings=warnings)

    def release_escrow(self, escrow_id: str) -> EscrowActionResult:
        """
        Pay escrowed funds out to the borrower and start repayment

        Raises:
            InvalidStateError: If the escrow is terminal or the loan is not in funding
        """
        escrow = self.escrow_ledger.get_escrow(escrow_id)
        with self.locks.hold(f"loan:{escrow.loan_id}"):
            self._funding_loan_for(escrow)
            escrow = self.escrow_ledger.transition(escrow_id, EscrowStatus.RELEASED)
            loan = self.loan_book.transition(escrow.loan_id, LoanStatus.REPAYING,
                                             disbursed_at=escrow.released_at)

            warnings: List[str] = []
            first_due = None
            if loan.repayment_schedule_id:
                first_due = self.schedule_store.get_schedule(loan.repayment_schedule_id).first_due_date

            due_text = f" First payment due on {first_due.strftime('%b %d, %Y')}." if first_due else ""
            run_advisory(
                "loan active notice", self.notifier.notify,
                escrow.lender_id, NotificationType.LOAN_ACTIVE,
                "Loan active",
                f"Loan #{loan.id} is now active.{due_text}",
                NotificationPriority.MEDIUM,
                {"loan_id": loan.id, "first_due_date": first_due.isoformat() if first_due else None},
                warnings=warnings, loan_id=loan.id,
            )
            run_advisory(
                "disbursement notice", self.notifier.notify,
                escrow.borrower_id, NotificationType.LOAN_DISBURSED,
                "Funds disbursed",
                f"Funds of {escrow.amount.to_string()} for your loan #{loan.id} have been disbursed.",
                NotificationPriority.HIGH,
                {"loan_id": loan.id, "amount": str(escrow.amount.amount)},
                warnings=warnings, loan_id=loan.id,
            )
            run_advisory(
                "disbursement transaction record", self._record_history,
                escrow.borrower_id, escrow.amount, TransactionType.DISBURSEMENT, loan.id,
                f"Disbursement for loan #{loan.id}",
                warnings=warnings, loan_id=loan.id,
            )

        log_action(logger, "info", "Escrow released to borrower", user_id=escrow.borrower_id,
                   loan_id=loan.id, action="escrow_released", resource=escrow.id)
        return EscrowActionResult(escrow=escrow, loan=loan, warnings=warnings)

    def refund_escrow(self, escrow_id: str) -> EscrowActionResult:
        """
        Return escrowed funds to the lender and reopen the loan for funding

        The lender credit is part of the escrow transition; if it fails the
        escrow stays unrefunded and the loan is untouched.

        Raises:
            InvalidStateError: If the escrow is terminal or the loan is not in funding
        """
        escrow = self.escrow_ledger.get_escrow(escrow_id)
        with self.locks.hold(f"loan:{escrow.loan_id}"):
            loan = self._funding_loan_for(escrow)
            schedule_id = loan.repayment_schedule_id

            escrow = self.escrow_ledger.transition(escrow_id, EscrowStatus.REFUNDED)
            if schedule_id:
                self.schedule_store.cancel_schedule(schedule_id)
            loan = self.loan_book.transition(escrow.loan_id, LoanStatus.PENDING)

            warnings: List[str] = []
            run_advisory(
                "refund notice", self.notifier.notify,
                escrow.lender_id, NotificationType.FUNDS_REFUNDED,
                "Funds refunded",
                f"Your escrow of {escrow.amount.to_string()} for loan #{escrow.loan_id} "
                f"has been refunded to your wallet.",
                NotificationPriority.HIGH,
                {"loan_id": escrow.loan_id, "escrow_id": escrow.id, "amount": str(escrow.amount.amount)},
                warnings=warnings, loan_id=escrow.loan_id,
            )
            run_advisory(
                "refund transaction record", self._record_history,
                escrow.lender_id, escrow.amount, TransactionType.REFUND, escrow.loan_id,
                f"Escrow refund for loan #{escrow.loan_id}",
                warnings=warnings, loan_id=escrow.loan_id,
            )

        log_action(logger, "info", "Escrow refunded to lender", user_id=escrow.lender_id,
                   loan_id=escrow.loan_id, action="escrow_refunded", resource=escrow.id)
        return EscrowActionResult(escrow=escrow, loan=loan, warnings=warnings)

    def _validate_funding(self, loan: Loan, lender_id: str, borrower_id: str, amount: Money) -> None:
        if loan.status != LoanStatus.PENDING:
            raise InvalidStateError(f"Loan {loan.id} is {loan.status.value}, only pending loans can be funded")
        if loan.borrower_id != borrower_id:
            raise ValidationError(f"Loan {loan.id} does not belong to borrower {borrower_id}")
        if lender_id == borrower_id:
            raise ValidationError("A borrower cannot fund their own loan")
        if not isinstance(amount, Money) or not amount.is_positive():
            raise ValidationError(f"Funding amount must be positive, got {amount}")
        if amount.currency != loan.requested_amount.currency:
            raise ValidationError(
                f"Loan {loan.id} is in {loan.requested_amount.currency.code}, got {amount.currency.code}"
            )
        if amount > loan.outstanding_amount:
            raise ValidationError(
                f"Funding amount {amount.to_string()} exceeds outstanding "
                f"{loan.outstanding_amount.to_string()}"
            )

    def _funding_loan_for(self, escrow: Escrow) -> Loan:
        loan = self.loan_book.get_loan(escrow.loan_id)
        if loan.status != LoanStatus.FUNDING or loan.escrow_id != escrow.id:
            raise InvalidStateError(
                f"Escrow {escrow.id} is {escrow.status.value} and loan {loan.id} is {loan.status.value}"
            )
        return loan

    def _notify_admins(self, loan: Loan, escrow: Escrow, warnings: List[str]) -> None:
        def broadcast():
            for admin_id in self.admin_directory.list_admin_user_ids():
                run_advisory(
                    "admin escrow notice", self.notifier.notify,
                    admin_id, NotificationType.ESCROW_PENDING_APPROVAL,
                    "Escrow approval required",
                    f"Loan #{loan.id} was funded with {escrow.amount.to_string()}. "
                    f"Escrow {escrow.id} is waiting for approval.",
                    NotificationPriority.HIGH,
                    {"loan_id": loan.id, "escrow_id": escrow.id, "amount": str(escrow.amount.amount)},
                    warnings=warnings, loan_id=loan.id,
                )

        run_advisory("admin directory lookup", broadcast, warnings=warnings, loan_id=loan.id)

    def _record_history(self, user_id: str, amount: Money, transaction_type: TransactionType,
                        loan_id: str, description: str) -> None:
        self.transactions.record(user_id, amount, transaction_type,
                                 loan_id=loan_id, description=description)

    def _reverse_debit(self, loan_id: str, lender_id: str, amount: Money, cause: Exception) -> None:
        log_action(logger, "error", "Escrow could not be opened, crediting lender back",
                   user_id=lender_id, loan_id=loan_id, action="funding_compensation",
                   extra={"error": str(cause)})
        try:
            self.wallet_ledger.credit(lender_id, amount, reason=f"reverse funding of loan {loan_id}")
        except Exception as exc:
            log_action(logger, "critical", "Lender credit-back failed after escrow error",
                       user_id=lender_id, loan_id=loan_id, action="compensation_failed",
                       extra={"amount": str(amount.amount), "error": str(exc)}, exc_info=exc)
            raise CompensationError(
                f"Funding of loan {loan_id} failed and the lender debit could not be reversed",
                original=cause, compensation=exc,
            ) from exc

    def _unwind_escrow(self, loan_id: str, escrow: Escrow,
                       schedule: Optional[RepaymentSchedule], cause: Exception) -> None:
        log_action(logger, "error", "Funding failed after escrow opened, refunding escrow",
                   user_id=escrow.lender_id, loan_id=loan_id, action="funding_compensation",
                   resource=escrow.id, extra={"error": str(cause)})
        try:
            if schedule is not None:
                self.schedule_store.discard_schedule(schedule.id)
            self.escrow_ledger.transition(escrow.id, EscrowStatus.REFUNDED)
        except Exception as exc:
            log_action(logger, "critical", "Escrow refund failed during funding compensation",
                       user_id=escrow.lender_id, loan_id=loan_id, action="compensation_failed",
                       resource=escrow.id, extra={"amount": str(escrow.amount.amount), "error": str(exc)},
                       exc_info=exc)
            raise CompensationError(
                f"Funding of loan {loan_id} failed and escrow {escrow.id} could not be refunded",
                original=cause, compensation=exc,
            ) from exc

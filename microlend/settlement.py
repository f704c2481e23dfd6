"""
Installment Settlement Service

Marks a single installment paid and, when that settles the last outstanding
installment, completes the loan: status change, return computation, lender
notification and ROI milestone check.

Completion is decided from the schedule's installments every time, never
from a stored flag. Settling an installment that is already paid changes
nothing and sends nothing.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import List, Optional
import logging

from .currency import Money
from .amortization import Installment
from .loans import Loan, LoanBook, LoanStatus
from .repayments import RepaymentSchedule, RepaymentScheduleStore, ScheduleStatus
from .transactions import TransactionHistory, TransactionType
from .notifications import NotificationDispatcher, NotificationType, NotificationPriority
from .milestones import MilestoneTracker
from .clock import Clock, SystemClock
from .locks import KeyedLock
from .errors import AlreadyPaidError, InvalidStateError, NotFoundError
from .side_effects import run_advisory
from .logging_config import log_action


logger = logging.getLogger("microlend.settlement")


@dataclass
class SettlementResult:
    """Outcome of mark_paid"""
    success: bool
    loan_completed: bool
    already_paid: bool = False
    installment_number: Optional[int] = None
    paid_on_time: Optional[bool] = None
    total_return: Optional[Money] = None
    interest_earned: Optional[Money] = None
    warnings: List[str] = field(default_factory=list)


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class InstallmentSettlementService:
    """
    Settles installments and completes fully repaid loans
    """

    def __init__(
        self,
        loan_book: LoanBook,
        schedule_store: RepaymentScheduleStore,
        transactions: TransactionHistory,
        notifier: NotificationDispatcher,
        milestone_tracker: Optional[MilestoneTracker] = None,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLock] = None
    ):
        self.loan_book = loan_book
        self.schedule_store = schedule_store
        self.transactions = transactions
        self.notifier = notifier
        self.milestone_tracker = milestone_tracker
        self.clock = clock or SystemClock()
        self.locks = locks or KeyedLock()

    def mark_paid(self, schedule_id: str, installment_number: int,
                  strict: bool = False) -> SettlementResult:
        """
        Mark one installment paid

        Args:
            schedule_id: Repayment schedule
            installment_number: 1-based installment number
            strict: Raise AlreadyPaidError instead of returning a no-op result
                when the installment was paid before

        Returns:
            SettlementResult; loan_completed is True only on the call that
            completed the loan

        Raises:
            NotFoundError: If the schedule or installment does not exist
            InvalidStateError: If the schedule was cancelled or the loan is not repaying
            AlreadyPaidError: If strict and the installment is already paid
        """
        loan_id = self.schedule_store.get_schedule(schedule_id).loan_id

        with self.locks.hold(f"loan:{loan_id}"):
            schedule = self.schedule_store.get_schedule(schedule_id)
            if schedule.status == ScheduleStatus.CANCELLED:
                raise InvalidStateError(f"Schedule {schedule_id} was cancelled")

            installment = schedule.get_installment(installment_number)
            if installment is None:
                raise NotFoundError("Installment", f"{schedule_id}#{installment_number}")

            loan = self.loan_book.get_loan(loan_id)

            if installment.is_paid:
                if strict:
                    raise AlreadyPaidError(f"Installment {installment_number} of {schedule_id} is already paid")
                return self._already_paid(loan, schedule, installment)

            if loan.status != LoanStatus.REPAYING:
                raise InvalidStateError(
                    f"Loan {loan.id} is {loan.status.value}, installments can only be settled while repaying"
                )

            paid_at = self.clock.now()
            installment.mark_paid(paid_at)
            schedule.updated_at = paid_at
            self.schedule_store.save_schedule(schedule)

            on_time = _utc(paid_at) <= _utc(installment.due_date)
            log_action(logger, "info", f"Installment {installment_number} paid",
                       user_id=schedule.lender_id, loan_id=loan.id, action="installment_paid",
                       resource=schedule.id,
                       extra={"amount": str(installment.total_payment.amount), "on_time": on_time})

            result = SettlementResult(success=True, loan_completed=False,
                                      installment_number=installment_number, paid_on_time=on_time)
            self._payment_side_effects(loan, schedule, installment, on_time, result.warnings)

            if schedule.is_complete:
                self._complete_loan(loan, schedule, result)

        return result

    def _already_paid(self, loan: Loan, schedule: RepaymentSchedule,
                      installment: Installment) -> SettlementResult:
        logger.info("Installment %s of %s already paid, nothing to do",
                    installment.installment_number, schedule.id)
        result = SettlementResult(success=True, loan_completed=False, already_paid=True,
                                  installment_number=installment.installment_number)

        # A complete schedule whose loan is still repaying means an earlier
        # completion write did not land
        if schedule.is_complete and loan.status == LoanStatus.REPAYING:
            self._complete_loan(loan, schedule, result)
        return result

    def _payment_side_effects(self, loan: Loan, schedule: RepaymentSchedule,
                              installment: Installment, on_time: bool, warnings: List[str]) -> None:
        timing = "on time" if on_time else "late"
        run_advisory(
            "payment received notice", self.notifier.notify,
            schedule.lender_id, NotificationType.PAYMENT_RECEIVED,
            "Payment received",
            f"Installment {installment.installment_number} of {installment.total_payment.to_string()} "
            f"for loan #{loan.id} was paid {timing}.",
            NotificationPriority.MEDIUM,
            {"loan_id": loan.id, "installment_number": installment.installment_number,
             "amount": str(installment.total_payment.amount), "on_time": on_time},
            warnings=warnings, loan_id=loan.id,
        )
        run_advisory(
            "repayment transaction record", self._record_repayment,
            schedule.lender_id, installment, loan.id,
            warnings=warnings, loan_id=loan.id,
        )

    def _record_repayment(self, lender_id: str, installment: Installment, loan_id: str) -> None:
        self.transactions.record(
            lender_id, installment.total_payment, TransactionType.REPAYMENT,
            loan_id=loan_id,
            description=f"Installment {installment.installment_number} of loan #{loan_id}",
        )

    def _complete_loan(self, loan: Loan, schedule: RepaymentSchedule, result: SettlementResult) -> None:
        total_return = schedule.total_payable
        principal = loan.funded_amount or schedule.total_amount
        interest_earned = total_return - principal

        loan = self.loan_book.transition(
            loan.id, LoanStatus.COMPLETED,
            completed_at=self.clock.now(),
            total_return=total_return,
            interest_earned=interest_earned,
        )
        result.loan_completed = True
        result.total_return = total_return
        result.interest_earned = interest_earned

        log_action(logger, "info", "Loan completed", user_id=schedule.lender_id, loan_id=loan.id,
                   action="loan_completed",
                   extra={"total_return": str(total_return.amount),
                          "interest_earned": str(interest_earned.amount)})

        run_advisory(
            "loan completed notice", self.notifier.notify,
            schedule.lender_id, NotificationType.LOAN_COMPLETED,
            "Loan completed",
            f"Loan #{loan.id} has been fully repaid. Total return {total_return.to_string()}, "
            f"interest earned {interest_earned.to_string()}.",
            NotificationPriority.HIGH,
            {"loan_id": loan.id, "total_return": str(total_return.amount),
             "interest_earned": str(interest_earned.amount)},
            warnings=result.warnings, loan_id=loan.id,
        )

        if self.milestone_tracker is not None:
            run_advisory(
                "ROI milestone check", self._check_milestones,
                schedule.lender_id, result, warnings=result.warnings, loan_id=loan.id,
            )

    def _check_milestones(self, lender_id: str, result: SettlementResult) -> None:
        outcome = self.milestone_tracker.check_and_notify(lender_id)
        if outcome.warning:
            result.warnings.append(outcome.warning)

"""
Repayment Schedule Module

Stores the amortized installment plan of each funded loan and serves the read
models built on top of it: a per-schedule view with derived display statuses,
and the admin overview of overdue, due-soon and upcoming installments.

Only the raw installment status is persisted. Display status, days late and
days left are recomputed from the clock on every read.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from enum import Enum
import logging
import uuid

from .amortization import Installment, generate_schedule, total_payments
from .currency import Money, money_to_fields, money_from_fields
from .storage import StorageInterface, StorageRecord
from .clock import Clock, SystemClock
from .errors import NotFoundError
from .repayment_status import DisplayStatus, resolve_status, days_until_due, DEFAULT_DUE_SOON_DAYS
from .notifications import NotificationDispatcher, NotificationType, NotificationPriority
from .side_effects import run_advisory
from .logging_config import log_action


logger = logging.getLogger("microlend.repayments")


class ScheduleStatus(Enum):
    """Persisted schedule status. Completion is derived, never stored."""
    ACTIVE = "active"
    CANCELLED = "cancelled"    # Escrow refunded before disbursement


@dataclass
class RepaymentSchedule(StorageRecord):
    """Installment plan owned by exactly one loan"""
    loan_id: str
    borrower_id: str
    lender_id: str
    total_amount: Money
    annual_interest_rate: Decimal
    term_months: int
    installments: List[Installment] = field(default_factory=list)
    status: ScheduleStatus = ScheduleStatus.ACTIVE

    @property
    def is_complete(self) -> bool:
        """True once every installment has been paid"""
        return bool(self.installments) and all(i.is_paid for i in self.installments)

    @property
    def total_payable(self) -> Money:
        return total_payments(self.installments, self.total_amount.currency)

    @property
    def first_due_date(self) -> Optional[datetime]:
        return self.installments[0].due_date if self.installments else None

    def get_installment(self, installment_number: int) -> Optional[Installment]:
        for installment in self.installments:
            if installment.installment_number == installment_number:
                return installment
        return None


@dataclass
class InstallmentView:
    """An installment as seen at a point in time"""
    installment: Installment
    display_status: DisplayStatus
    days_late: int
    days_left: int


@dataclass
class ScheduleView:
    """Read model of a schedule with derived statuses"""
    schedule: RepaymentSchedule
    installments: List[InstallmentView]
    as_of: datetime

    @property
    def is_complete(self) -> bool:
        return self.schedule.is_complete

    @property
    def paid_count(self) -> int:
        return sum(1 for view in self.installments if view.installment.is_paid)


@dataclass
class OverviewItem:
    """One unpaid installment in the admin repayment overview"""
    schedule_id: str
    loan_id: str
    borrower_id: str
    lender_id: str
    installment_number: int
    due_date: datetime
    amount: Money
    display_status: DisplayStatus
    days_late: int
    days_left: int


def _view_installment(installment: Installment, now: datetime, due_soon_days: int) -> InstallmentView:
    status = resolve_status(installment.status, installment.due_date, now, due_soon_days)
    if installment.is_paid:
        return InstallmentView(installment, status, 0, 0)
    days = days_until_due(installment.due_date, now)
    return InstallmentView(
        installment=installment,
        display_status=status,
        days_late=-days if days < 0 else 0,
        days_left=days if days >= 0 else 0,
    )


class RepaymentScheduleStore:
    """
    Persists repayment schedules and serves their read views
    """

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None,
                 due_soon_days: int = DEFAULT_DUE_SOON_DAYS):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.due_soon_days = due_soon_days

        self.schedules_table = "repayment_schedules"

    def create_schedule(
        self,
        loan_id: str,
        borrower_id: str,
        lender_id: str,
        principal: Money,
        annual_interest_rate: Decimal,
        term_months: int,
        start_date: datetime
    ) -> RepaymentSchedule:
        """
        Generate and persist the amortized schedule for a funded loan

        Raises:
            ValidationError: If the loan terms cannot be amortized
        """
        installments = generate_schedule(principal, annual_interest_rate, term_months, start_date)

        now = self.clock.now()
        schedule = RepaymentSchedule(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            borrower_id=borrower_id,
            lender_id=lender_id,
            total_amount=principal,
            annual_interest_rate=Decimal(str(annual_interest_rate)),
            term_months=term_months,
            installments=installments,
        )
        self.save_schedule(schedule)

        log_action(logger, "info", "Repayment schedule created", user_id=lender_id,
                   loan_id=loan_id, action="schedule_created", resource=schedule.id,
                   extra={"installments": len(installments),
                          "monthly_payment": str(installments[0].total_payment.amount),
                          "total_payable": str(schedule.total_payable.amount)})
        return schedule

    def get_schedule(self, schedule_id: str) -> RepaymentSchedule:
        """
        Raises:
            NotFoundError: If the schedule does not exist
        """
        data = self.storage.load(self.schedules_table, schedule_id)
        if not data:
            raise NotFoundError("RepaymentSchedule", schedule_id)
        return self._schedule_from_dict(data)

    def save_schedule(self, schedule: RepaymentSchedule) -> None:
        self.storage.save(self.schedules_table, schedule.id, self._schedule_to_dict(schedule))

    def view_schedule(self, schedule_id: str, now: Optional[datetime] = None) -> ScheduleView:
        """Schedule with every installment's display status, days late and days left"""
        schedule = self.get_schedule(schedule_id)
        now = now or self.clock.now()
        views = [_view_installment(i, now, self.due_soon_days) for i in schedule.installments]
        return ScheduleView(schedule=schedule, installments=views, as_of=now)

    def list_schedules(self, status: Optional[ScheduleStatus] = None) -> List[RepaymentSchedule]:
        filters = {"status": status.value} if status else {}
        return self._find(filters)

    def list_lender_schedules(self, lender_id: str) -> List[RepaymentSchedule]:
        return self._find({"lender_id": lender_id})

    def find_by_loan(self, loan_id: str) -> Optional[RepaymentSchedule]:
        """Active schedule of a loan, if any"""
        schedules = self._find({"loan_id": loan_id, "status": ScheduleStatus.ACTIVE.value})
        return schedules[-1] if schedules else None

    def cancel_schedule(self, schedule_id: str) -> RepaymentSchedule:
        """Mark a schedule cancelled; its installments can no longer be settled"""
        schedule = self.get_schedule(schedule_id)
        schedule.status = ScheduleStatus.CANCELLED
        schedule.updated_at = self.clock.now()
        self.save_schedule(schedule)

        log_action(logger, "info", "Repayment schedule cancelled", loan_id=schedule.loan_id,
                   action="schedule_cancelled", resource=schedule.id)
        return schedule

    def discard_schedule(self, schedule_id: str) -> bool:
        """Remove a schedule written by a funding attempt that did not complete"""
        removed = self.storage.delete(self.schedules_table, schedule_id)
        if removed:
            logger.info("Repayment schedule %s discarded", schedule_id)
        return removed

    def _find(self, filters: Dict) -> List[RepaymentSchedule]:
        records = self.storage.find(self.schedules_table, filters)
        schedules = [self._schedule_from_dict(data) for data in records]
        schedules.sort(key=lambda s: s.created_at)
        return schedules

    def _schedule_to_dict(self, schedule: RepaymentSchedule) -> Dict:
        """Convert schedule to dictionary"""
        result = {
            'id': schedule.id,
            'created_at': schedule.created_at.isoformat(),
            'updated_at': schedule.updated_at.isoformat(),
            'loan_id': schedule.loan_id,
            'borrower_id': schedule.borrower_id,
            'lender_id': schedule.lender_id,
            'annual_interest_rate': str(schedule.annual_interest_rate),
            'term_months': schedule.term_months,
            'status': schedule.status.value,
            'installments': [installment.to_dict() for installment in schedule.installments],
        }
        result.update(money_to_fields('total', schedule.total_amount))
        return result

    def _schedule_from_dict(self, data: Dict) -> RepaymentSchedule:
        """Convert dictionary to schedule"""
        installments = [Installment.from_dict(item) for item in data.get('installments', [])]
        installments.sort(key=lambda i: i.installment_number)

        return RepaymentSchedule(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            borrower_id=data['borrower_id'],
            lender_id=data['lender_id'],
            total_amount=money_from_fields('total', data),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            term_months=data['term_months'],
            installments=installments,
            status=ScheduleStatus(data['status']),
        )


class RepaymentOverview:
    """
    Admin read model of unpaid installments across all active schedules
    """

    def __init__(self, schedule_store: RepaymentScheduleStore, clock: Optional[Clock] = None,
                 notifier: Optional[NotificationDispatcher] = None):
        self.schedule_store = schedule_store
        self.clock = clock or schedule_store.clock
        self.notifier = notifier

    def build(self, now: Optional[datetime] = None) -> Dict[str, List[OverviewItem]]:
        """
        Group unpaid installments into "overdue", "due_soon" and "upcoming"

        Overdue items are ordered most late first, the others by due date.
        """
        now = now or self.clock.now()
        groups = {"overdue": [], "due_soon": [], "upcoming": []}

        for schedule in self.schedule_store.list_schedules(ScheduleStatus.ACTIVE):
            for installment in schedule.installments:
                if installment.is_paid:
                    continue
                view = _view_installment(installment, now, self.schedule_store.due_soon_days)
                item = OverviewItem(
                    schedule_id=schedule.id,
                    loan_id=schedule.loan_id,
                    borrower_id=schedule.borrower_id,
                    lender_id=schedule.lender_id,
                    installment_number=installment.installment_number,
                    due_date=installment.due_date,
                    amount=installment.total_payment,
                    display_status=view.display_status,
                    days_late=view.days_late,
                    days_left=view.days_left,
                )
                if view.display_status == DisplayStatus.OVERDUE:
                    groups["overdue"].append(item)
                elif view.display_status == DisplayStatus.DUE_SOON:
                    groups["due_soon"].append(item)
                else:
                    groups["upcoming"].append(item)

        groups["overdue"].sort(key=lambda item: item.days_late, reverse=True)
        groups["due_soon"].sort(key=lambda item: item.due_date)
        groups["upcoming"].sort(key=lambda item: item.due_date)
        return groups

    def send_overdue_reminders(self, now: Optional[datetime] = None) -> int:
        """
        Remind the borrower of every overdue installment

        Returns:
            Number of reminders that were delivered without error
        """
        if self.notifier is None:
            raise ValueError("No notifier configured for repayment reminders")

        sent = 0
        for item in self.build(now)["overdue"]:
            failure = run_advisory(
                "overdue reminder", self.notifier.notify,
                item.borrower_id, NotificationType.PAYMENT_REMINDER,
                "Payment overdue",
                f"Installment {item.installment_number} of {item.amount.to_string()} was due on "
                f"{item.due_date.date().isoformat()}. Overdue by {item.days_late} day(s). "
                f"Please make the payment.",
                NotificationPriority.HIGH,
                {"loan_id": item.loan_id, "installment_number": item.installment_number,
                 "amount": str(item.amount.amount), "days_late": item.days_late},
                loan_id=item.loan_id,
            )
            if failure is None:
                sent += 1
        return sent

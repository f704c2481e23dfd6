"""
ROI Milestone Module

Tracks cumulative portfolio return on investment for each lender across their
completed loans, and notifies a lender once when their ROI first crosses one
of the configured thresholds.

The set of reached thresholds is persisted per lender. Recording new
thresholds is a single compare-and-set, so when two loans of the same lender
complete concurrently only one caller wins the update and sends the
notification. A notice that fails after the update is logged as a warning
naming the milestone; the milestone stays recorded.
"""

from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass
from typing import List, Optional, Sequence
import logging

from .storage import StorageInterface
from .loans import LoanBook, LoanStatus
from .repayments import RepaymentScheduleStore
from .notifications import NotificationDispatcher, NotificationType, NotificationPriority
from .clock import Clock, SystemClock
from .errors import NotFoundError
from .logging_config import log_action
from .side_effects import run_advisory


logger = logging.getLogger("microlend.milestones")

DEFAULT_THRESHOLDS = (10, 15, 20, 25, 30)


@dataclass
class PortfolioROI:
    """Return on investment over a lender's completed loans"""
    roi: Decimal                # Percent, rounded to 2 places
    total_invested: Decimal
    total_returns: Decimal


@dataclass
class MilestoneResult:
    """Outcome of a milestone check"""
    roi: Decimal
    milestone: Optional[int] = None          # Highest newly crossed threshold, if any
    newly_reached: Sequence[int] = ()
    warning: Optional[str] = None            # Set when the milestone was recorded but the notice failed


class MilestoneTracker:
    """
    Computes portfolio ROI and records crossed ROI thresholds
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_book: LoanBook,
        schedule_store: RepaymentScheduleStore,
        notifier: NotificationDispatcher,
        thresholds: Sequence[int] = DEFAULT_THRESHOLDS,
        clock: Optional[Clock] = None,
        max_retries: int = 5
    ):
        self.storage = storage
        self.loan_book = loan_book
        self.schedule_store = schedule_store
        self.notifier = notifier
        self.thresholds = sorted(thresholds)
        self.clock = clock or SystemClock()
        self.max_retries = max_retries

        self.milestones_table = "lender_milestones"

    def calculate_portfolio_roi(self, lender_id: str) -> PortfolioROI:
        """
        ROI = (returns - invested) / invested * 100 over completed loans

        Returns are the scheduled total payments of each completed loan. A
        completed loan without a readable schedule falls back to its funded
        amount grown by its annual rate.
        """
        invested = Decimal('0')
        returns = Decimal('0')

        for loan in self.loan_book.list_lender_loans(lender_id, LoanStatus.COMPLETED):
            principal = (loan.funded_amount or loan.requested_amount).amount
            invested += principal

            schedule = None
            if loan.repayment_schedule_id:
                try:
                    schedule = self.schedule_store.get_schedule(loan.repayment_schedule_id)
                except NotFoundError:
                    logger.warning("Schedule %s of completed loan %s is missing",
                                   loan.repayment_schedule_id, loan.id)

            if schedule is not None:
                returns += schedule.total_payable.amount
            else:
                returns += principal * (Decimal('1') + loan.annual_interest_rate / Decimal('100'))

        if invested == Decimal('0'):
            roi = Decimal('0')
        else:
            roi = (returns - invested) / invested * Decimal('100')

        return PortfolioROI(
            roi=roi.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP),
            total_invested=invested,
            total_returns=returns,
        )

    def get_reached_milestones(self, lender_id: str) -> List[int]:
        data = self.storage.load(self.milestones_table, lender_id)
        return sorted(data.get("reached", [])) if data else []

    def check_and_notify(self, lender_id: str) -> MilestoneResult:
        """
        Record every threshold the lender's ROI has crossed for the first time
        and notify the lender of the highest one

        Returns:
            MilestoneResult; milestone is None when nothing new was crossed or
            another caller already recorded it
        """
        portfolio = self.calculate_portfolio_roi(lender_id)
        crossed = [t for t in self.thresholds if portfolio.roi >= Decimal(t)]
        if not crossed:
            return MilestoneResult(roi=portfolio.roi)

        for _ in range(self.max_retries):
            current = self.storage.load(self.milestones_table, lender_id)
            reached = set(current.get("reached", [])) if current else set()
            new = sorted(t for t in crossed if t not in reached)
            if not new:
                return MilestoneResult(roi=portfolio.roi)

            now = self.clock.now()
            updated = {
                "id": lender_id,
                "lender_id": lender_id,
                "reached": sorted(reached | set(new)),
                "version": (current or {}).get("version", 0) + 1,
                "created_at": (current or {}).get("created_at", now.isoformat()),
                "updated_at": now.isoformat(),
            }
            expected = {"version": current.get("version", 0)} if current else None
            if self.storage.compare_and_set(self.milestones_table, lender_id, expected, updated):
                break
        else:
            logger.warning("Could not record ROI milestones for %s after %d attempts",
                           lender_id, self.max_retries)
            return MilestoneResult(roi=portfolio.roi)

        milestone = new[-1]
        log_action(logger, "info", f"ROI milestone {milestone}% reached", user_id=lender_id,
                   action="roi_milestone", extra={"roi": str(portfolio.roi), "new": new})

        warning = run_advisory(
            f"{milestone}% ROI milestone notice", self.notifier.notify,
            lender_id,
            NotificationType.ROI_MILESTONE,
            f"{milestone}% ROI milestone reached!",
            f"Congratulations! Your portfolio ROI is now {portfolio.roi}%. "
            f"Total returns {self._format(portfolio.total_returns)} on "
            f"{self._format(portfolio.total_invested)} invested.",
            NotificationPriority.MEDIUM,
            {"milestone": milestone, "roi": str(portfolio.roi),
             "total_invested": str(portfolio.total_invested),
             "total_returns": str(portfolio.total_returns)},
        )
        return MilestoneResult(roi=portfolio.roi, milestone=milestone,
                               newly_reached=tuple(new), warning=warning)

    def _format(self, amount: Decimal) -> str:
        return f"{amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):,}"

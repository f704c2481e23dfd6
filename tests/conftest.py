"""
Shared fixtures for the lending engine test suite
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from microlend.config import MicrolendConfig
from microlend.currency import Money, Currency
from microlend.storage import InMemoryStorage
from microlend.clock import FixedClock
from microlend.directory import StaticAdminDirectory
from microlend.notifications import NotificationDispatcher
from microlend.system import LendingSystem


START = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


def lkr(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.LKR)


class RecordingNotifier(NotificationDispatcher):
    """Notifier fake that keeps every call and can be told to fail"""

    def __init__(self):
        self.sent = []
        self.fail_types = set()

    def notify(self, user_id, notification_type, title, body, priority=None, context=None):
        if notification_type in self.fail_types:
            raise RuntimeError(f"{notification_type.value} delivery down")
        self.sent.append({
            "user_id": user_id,
            "type": notification_type,
            "title": title,
            "body": body,
            "priority": priority,
            "context": context or {},
        })

    def of_type(self, notification_type):
        return [n for n in self.sent if n["type"] == notification_type]


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config():
    return MicrolendConfig(storage_backend="memory", default_currency="LKR")


@pytest.fixture
def system(config, storage, clock, notifier):
    lending = LendingSystem(
        config=config,
        storage=storage,
        clock=clock,
        notifier=notifier,
        admin_directory=StaticAdminDirectory(["admin-1", "admin-2"]),
    )
    yield lending
    lending.close()


@pytest.fixture
def pending_loan(system):
    """A 100,000 LKR, 12%, 6-month application by borrower-1"""
    return system.loan_book.apply_for_loan(
        borrower_id="borrower-1",
        requested_amount=lkr("100000"),
        annual_interest_rate=Decimal("12"),
        term_months=6,
        purpose="Stock for grocery shop",
    )


@pytest.fixture
def funded(system, pending_loan):
    """pending_loan fully funded by lender-1"""
    system.wallet_ledger.open_wallet("lender-1", lkr("150000"))
    return system.funding.fund_loan(pending_loan.id, "lender-1", "borrower-1", lkr("100000"))


@pytest.fixture
def repaying(system, funded):
    """funded loan with its escrow released to the borrower"""
    system.funding.release_escrow(funded.escrow_id)
    return funded

"""
Lending System Context

Builds every component of the lending engine from configuration and wires
them together. The HTTP adapter and the tests both start from here.
"""

from typing import Optional
import logging

from .config import MicrolendConfig, get_config
from .currency import Currency, Money
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage
from .clock import Clock, SystemClock
from .locks import KeyedLock
from .wallet import WalletLedger
from .escrow import EscrowLedger
from .loans import LoanBook
from .repayments import RepaymentScheduleStore, RepaymentOverview
from .transactions import TransactionHistory, TransactionType
from .notifications import (
    NotificationDispatcher, NotificationEngine, LogChannelProvider, WebhookChannelProvider
)
from .directory import AdminDirectory, StorageAdminDirectory
from .milestones import MilestoneTracker
from .funding import FundingOrchestrator
from .settlement import InstallmentSettlementService
from .side_effects import run_advisory


logger = logging.getLogger("microlend.system")


def create_storage(config: MicrolendConfig) -> StorageInterface:
    """Storage backend selected by configuration"""
    if config.storage_backend == "sqlite":
        return SQLiteStorage(config.database_path)
    if config.storage_backend == "memory":
        return InMemoryStorage()
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")


class LendingSystem:
    """Lending engine with all components initialized"""

    def __init__(
        self,
        config: Optional[MicrolendConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[NotificationDispatcher] = None,
        admin_directory: Optional[AdminDirectory] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config)
        self.clock = clock or SystemClock()
        self.locks = KeyedLock()
        self.currency = Currency[self.config.default_currency]

        # Notifications
        providers = [LogChannelProvider()]
        if self.config.notification_webhook_url:
            providers.append(WebhookChannelProvider(
                self.config.notification_webhook_url,
                timeout=self.config.notification_webhook_timeout
            ))
        self.notification_engine = NotificationEngine(
            self.storage, self.clock, providers,
            delivery_workers=self.config.notification_delivery_workers
        )
        self.notifier = notifier or self.notification_engine
        self.admin_directory = admin_directory or StorageAdminDirectory(self.storage, self.clock)

        # Ledgers and stores
        self.wallet_ledger = WalletLedger(
            self.storage, self.clock,
            default_currency=self.currency,
            max_retries=self.config.wallet_max_retries
        )
        self.escrow_ledger = EscrowLedger(self.storage, self.wallet_ledger, self.clock, self.locks)
        self.loan_book = LoanBook(self.storage, self.clock)
        self.schedule_store = RepaymentScheduleStore(
            self.storage, self.clock, due_soon_days=self.config.due_soon_days
        )
        self.transactions = TransactionHistory(self.storage, self.clock)

        # Workflows
        self.milestone_tracker = MilestoneTracker(
            self.storage, self.loan_book, self.schedule_store, self.notifier,
            thresholds=self.config.roi_milestone_thresholds,
            clock=self.clock
        )
        self.funding = FundingOrchestrator(
            self.wallet_ledger, self.escrow_ledger, self.loan_book, self.schedule_store,
            self.transactions, self.notifier, self.admin_directory,
            clock=self.clock, locks=self.locks
        )
        self.settlement = InstallmentSettlementService(
            self.loan_book, self.schedule_store, self.transactions, self.notifier,
            milestone_tracker=self.milestone_tracker,
            clock=self.clock, locks=self.locks
        )
        self.repayment_overview = RepaymentOverview(self.schedule_store, self.clock, self.notifier)

    def top_up(self, user_id: str, amount: Money) -> Money:
        """Add money to a user's wallet and record it in their history"""
        balance = self.wallet_ledger.credit(user_id, amount, reason="wallet top-up")
        run_advisory("top-up transaction record", self.transactions.record,
                     user_id, amount, TransactionType.TOPUP, None)
        return balance

    def withdraw(self, user_id: str, amount: Money) -> Money:
        """Take money out of a user's wallet and record it in their history"""
        balance = self.wallet_ledger.debit(user_id, amount, reason="wallet withdrawal")
        run_advisory("withdrawal transaction record", self.transactions.record,
                     user_id, amount, TransactionType.WITHDRAW, None)
        return balance

    def close(self) -> None:
        self.notification_engine.close()
        self.storage.close()

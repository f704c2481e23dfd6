"""
Wallet Module

Per-user balances. The balance only moves through debit and credit, each of
which is a compare-and-set on the wallet's version number, retried a bounded
number of times when another writer got there first. Balances never go
negative: a debit larger than the balance fails closed.
"""

from datetime import datetime
from dataclasses import dataclass
from typing import Dict, Optional
import logging

from .currency import Money, Currency, money_to_fields, money_from_fields
from .storage import StorageInterface, StorageRecord
from .clock import Clock, SystemClock
from .errors import InsufficientFundsError, NotFoundError, ValidationError, InvalidStateError
from .logging_config import log_action


logger = logging.getLogger("microlend.wallet")


@dataclass
class Wallet(StorageRecord):
    """A user's spendable balance"""
    user_id: str
    balance: Money
    version: int = 0


class WalletLedger:
    """
    Owns every wallet balance change
    """

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None,
                 default_currency: Currency = Currency.LKR, max_retries: int = 5):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.default_currency = default_currency
        self.max_retries = max_retries

        self.wallets_table = "wallets"

    def open_wallet(self, user_id: str, initial_balance: Optional[Money] = None,
                    currency: Optional[Currency] = None) -> Wallet:
        """
        Create a wallet for a user, or return the existing one unchanged

        Args:
            user_id: Wallet owner
            initial_balance: Opening balance, zero when omitted
            currency: Wallet currency when no opening balance is given,
                defaults to the ledger's default currency

        Returns:
            The user's wallet
        """
        if initial_balance is None:
            initial_balance = Money.zero(currency or self.default_currency)
        elif initial_balance.is_negative():
            raise ValidationError(f"Opening balance cannot be negative, got {initial_balance.to_string()}")
        now = self.clock.now()
        wallet = Wallet(
            id=user_id,
            created_at=now,
            updated_at=now,
            user_id=user_id,
            balance=initial_balance,
        )
        if self.storage.compare_and_set(self.wallets_table, user_id, None, self._wallet_to_dict(wallet)):
            log_action(logger, "info", "Wallet opened", user_id=user_id, action="wallet_opened",
                       extra={"currency": initial_balance.currency.code,
                              "balance": str(initial_balance.amount)})
            return wallet
        return self.get_wallet(user_id)

    def get_wallet(self, user_id: str) -> Wallet:
        """
        Raises:
            NotFoundError: If the user has no wallet
        """
        data = self.storage.load(self.wallets_table, user_id)
        if not data:
            raise NotFoundError("Wallet", user_id)
        return self._wallet_from_dict(data)

    def get_balance(self, user_id: str) -> Money:
        return self.get_wallet(user_id).balance

    def debit(self, user_id: str, amount: Money, reason: str) -> Money:
        """
        Take money out of a wallet

        Args:
            user_id: Wallet owner
            amount: Positive amount in the wallet's currency
            reason: Reference recorded in the log for this movement

        Returns:
            New balance

        Raises:
            NotFoundError: If the user has no wallet
            InsufficientFundsError: If the amount exceeds the balance
        """
        self._validate_amount(amount)
        return self._apply(user_id, -amount, reason, create_missing=False)

    def credit(self, user_id: str, amount: Money, reason: str) -> Money:
        """
        Add money to a wallet, opening it first if the user has none

        Returns:
            New balance
        """
        self._validate_amount(amount)
        return self._apply(user_id, amount, reason, create_missing=True)

    def _apply(self, user_id: str, delta: Money, reason: str, create_missing: bool) -> Money:
        direction = "credit" if delta.is_positive() else "debit"

        for attempt in range(1, self.max_retries + 1):
            data = self.storage.load(self.wallets_table, user_id)
            if data is None:
                if not create_missing:
                    raise NotFoundError("Wallet", user_id)
                wallet = self.open_wallet(user_id, currency=delta.currency)
            else:
                wallet = self._wallet_from_dict(data)

            if wallet.balance.currency != delta.currency:
                raise ValidationError(
                    f"Wallet {user_id} holds {wallet.balance.currency.code}, "
                    f"cannot {direction} {delta.currency.code}"
                )

            new_balance = wallet.balance + delta
            if new_balance.is_negative():
                raise InsufficientFundsError(user_id, -delta, wallet.balance)

            expected_version = wallet.version
            wallet.balance = new_balance
            wallet.version = expected_version + 1
            wallet.updated_at = self.clock.now()

            if self.storage.compare_and_set(
                self.wallets_table, user_id,
                {"version": expected_version},
                self._wallet_to_dict(wallet)
            ):
                log_action(
                    logger, "info", f"Wallet {direction}", user_id=user_id,
                    action=f"wallet_{direction}",
                    extra={"amount": str(abs(delta.amount)), "currency": delta.currency.code,
                           "balance": str(new_balance.amount), "reason": reason},
                )
                return new_balance

            logger.debug("Wallet %s changed concurrently, retry %d", user_id, attempt)

        raise InvalidStateError(f"Wallet {user_id} is too contended, gave up after {self.max_retries} attempts")

    @staticmethod
    def _validate_amount(amount: Money) -> None:
        if not isinstance(amount, Money) or not amount.is_positive():
            raise ValidationError(f"Amount must be positive, got {amount}")

    def _wallet_to_dict(self, wallet: Wallet) -> Dict:
        """Convert wallet to dictionary"""
        result = {
            'id': wallet.id,
            'created_at': wallet.created_at.isoformat(),
            'updated_at': wallet.updated_at.isoformat(),
            'user_id': wallet.user_id,
            'version': wallet.version,
        }
        result.update(money_to_fields('balance', wallet.balance))
        return result

    def _wallet_from_dict(self, data: Dict) -> Wallet:
        """Convert dictionary to wallet"""
        return Wallet(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            balance=money_from_fields('balance', data),
            version=data.get('version', 0),
        )

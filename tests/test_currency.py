"""
Test suite for currency module

Tests the Money value, currency precision and the storage field helpers.
All monetary calculations must use Decimal precision.
"""

import pytest
from decimal import Decimal

from microlend.currency import (
    Money, Currency, to_decimal, money_to_fields, money_from_fields
)


class TestMoney:
    """Test Money class operations"""

    def test_money_creation(self):
        """Test Money creation rounds half-up to currency precision"""
        money = Money(Decimal('100.50'), Currency.LKR)
        assert money.amount == Decimal('100.50')
        assert money.currency == Currency.LKR

        assert Money(Decimal('100.555'), Currency.LKR).amount == Decimal('100.56')
        assert Money(Decimal('100.545'), Currency.USD).amount == Decimal('100.55')
        assert Money(Decimal('100.5'), Currency.JPY).amount == Decimal('101')

    def test_non_decimal_amount_is_converted(self):
        money = Money("25.10", Currency.LKR)
        assert money.amount == Decimal('25.10')

    def test_money_arithmetic(self):
        """Test Money arithmetic operations"""
        money1 = Money(Decimal('100.50'), Currency.LKR)
        money2 = Money(Decimal('50.25'), Currency.LKR)

        assert (money1 + money2).amount == Decimal('150.75')
        assert (money1 - money2).amount == Decimal('50.25')
        assert (money1 * Decimal('2')).amount == Decimal('201.00')
        assert (money1 / Decimal('3')).amount == Decimal('33.50')
        assert (-money1).amount == Decimal('-100.50')

    def test_mixed_currency_arithmetic_rejected(self):
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.LKR) + Money(Decimal('1'), Currency.USD)

    def test_money_comparison(self):
        """Test Money comparison operations"""
        money1 = Money(Decimal('100.00'), Currency.LKR)
        money2 = Money(Decimal('50.00'), Currency.LKR)

        assert money1 == Money(Decimal('100'), Currency.LKR)
        assert money1 != money2
        assert money2 < money1
        assert money1 >= money2
        assert money1 != Money(Decimal('100.00'), Currency.USD)

    def test_sign_checks(self):
        assert Money.zero(Currency.LKR).is_zero()
        assert Money(Decimal('0.01'), Currency.LKR).is_positive()
        assert Money(Decimal('-0.01'), Currency.LKR).is_negative()

    def test_to_string(self):
        assert Money(Decimal('103529.02'), Currency.LKR).to_string() == "LKR 103,529.02"
        assert Money(Decimal('1500'), Currency.JPY).to_string() == "JPY 1,500"


class TestDecimalHelpers:
    """Test conversion and storage helpers"""

    def test_to_decimal(self):
        assert to_decimal("12.5") == Decimal("12.5")
        assert to_decimal(7) == Decimal("7")
        assert to_decimal(Decimal("1.10")) == Decimal("1.10")

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", ""])
    def test_to_decimal_rejects_non_numbers(self, value):
        with pytest.raises(ValueError):
            to_decimal(value)

    def test_money_fields(self):
        money = Money(Decimal('17254.84'), Currency.LKR)
        fields = money_to_fields('payment', money)

        assert fields == {'payment_amount': '17254.84', 'payment_currency': 'LKR'}
        assert money_from_fields('payment', fields) == money

"""
Test suite for currency module

Tests Money arithmetic, precision handling, rounding, and minor-unit
conversion. All monetary values must stay exact.
"""

import pytest
from decimal import Decimal

from lending_core.currency import (
    Money, Currency, money_sum, decimal_from_string, validate_decimal_precision
)


class TestCurrency:
    """Test Currency enum functionality"""

    def test_currency_properties(self):
        """Test currency code and precision properties"""
        assert Currency.INR.code == "INR"
        assert Currency.INR.precision == 2
        assert Currency.JPY.precision == 0

    def test_quantum(self):
        assert Currency.INR.quantum == Decimal('0.01')
        assert Currency.JPY.quantum == Decimal('1')


class TestMoney:
    """Test Money class functionality"""

    def test_default_currency_is_inr(self):
        assert Money(Decimal('100')).currency == Currency.INR

    def test_precision_rounding_half_up(self):
        """Amounts are quantized to minor units with ROUND_HALF_UP"""
        assert Money(Decimal('10.005')).amount == Decimal('10.01')
        assert Money(Decimal('10.004')).amount == Decimal('10.00')
        assert Money(Decimal('-10.005')).amount == Decimal('-10.01')
        assert Money(Decimal('123.5'), Currency.JPY).amount == Decimal('124')

    def test_string_and_int_amounts(self):
        assert Money('250.5').amount == Decimal('250.50')
        assert Money(7).amount == Decimal('7.00')

    def test_float_rejected(self):
        with pytest.raises(TypeError):
            Money(100.5)

    def test_addition_and_subtraction(self):
        a = Money(Decimal('100.25'))
        b = Money(Decimal('50.10'))
        assert a + b == Money(Decimal('150.35'))
        assert a - b == Money(Decimal('50.15'))

    def test_currency_mismatch(self):
        """Mixed currencies cannot be combined or compared"""
        inr = Money(Decimal('1'), Currency.INR)
        usd = Money(Decimal('1'), Currency.USD)
        with pytest.raises(ValueError, match="Cannot add"):
            inr + usd
        with pytest.raises(ValueError, match="Cannot subtract"):
            inr - usd
        with pytest.raises(ValueError, match="Cannot compare"):
            inr < usd

    def test_multiplication_and_division(self):
        money = Money(Decimal('100.00'))
        assert money * Decimal('0.12') == Money(Decimal('12.00'))
        assert money / Decimal('3') == Money(Decimal('33.33'))
        assert money * 2 == Money(Decimal('200.00'))

    def test_comparisons(self):
        small = Money(Decimal('10'))
        large = Money(Decimal('20'))
        assert small < large
        assert large >= small
        assert small <= Money(Decimal('10.00'))
        assert not small > large

    def test_equality_and_hash(self):
        a = Money(Decimal('10.00'))
        b = Money(Decimal('10'))
        assert a == b
        assert hash(a) == hash(b)
        assert a != Money(Decimal('10'), Currency.USD)
        assert a != Decimal('10')

    def test_predicates(self):
        assert Money.zero().is_zero()
        assert Money(Decimal('0.01')).is_positive()
        assert Money(Decimal('-0.01')).is_negative()
        assert abs(Money(Decimal('-5'))) == Money(Decimal('5'))
        assert -Money(Decimal('5')) == Money(Decimal('-5'))

    def test_minor_units(self):
        """Conversion to and from paise is exact"""
        money = Money(Decimal('1234.56'))
        assert money.to_minor_units() == 123456
        assert Money.from_minor_units(123456) == money
        assert Money.from_minor_units(500, Currency.JPY) == Money(Decimal('500'), Currency.JPY)

    def test_to_string(self):
        assert Money(Decimal('1000')).to_string() == "INR 1,000.00"
        assert Money(Decimal('1500'), Currency.JPY).to_string() == "JPY 1,500"


class TestHelpers:
    """Test module-level helpers"""

    def test_money_sum(self):
        values = [Money(Decimal('0.10')), Money(Decimal('0.20')), Money(Decimal('0.30'))]
        assert money_sum(values) == Money(Decimal('0.60'))

    def test_money_sum_empty_uses_currency(self):
        assert money_sum([], Currency.USD) == Money.zero(Currency.USD)

    def test_decimal_from_string_formats(self):
        assert decimal_from_string("1,00,000.50") == Decimal('100000.50')
        assert decimal_from_string("₹ 2,500") == Decimal('2500')
        assert decimal_from_string("12.5") == Decimal('12.5')
        assert decimal_from_string("10,5") == Decimal('10.5')

    def test_decimal_from_string_invalid(self):
        with pytest.raises(ValueError):
            decimal_from_string("")
        with pytest.raises(ValueError):
            decimal_from_string("abc")

    def test_validate_decimal_precision(self):
        assert validate_decimal_precision(Decimal('1.234'), Currency.INR) == Decimal('1.23')
        assert validate_decimal_precision(Decimal('1.235'), Currency.INR) == Decimal('1.24')
        assert validate_decimal_precision(Decimal('99.5'), Currency.JPY) == Decimal('100')

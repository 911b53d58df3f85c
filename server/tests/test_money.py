"""Fixed-point money and minor-unit conversion."""

from decimal import Decimal

import pytest

from paygate.core.exceptions import ValidationError
from paygate.integrations.payment_gateways.money import (
    Money,
    currency_exponent,
    from_minor_units,
    to_minor_units,
)


class TestMinorUnitConversion:
    @pytest.mark.parametrize(
        "amount,currency,expected",
        [
            ("99.99", "USD", 9999),
            (Decimal("50"), "USD", 5000),
            (150000, "COP", 15000000),
            ("1500", "JPY", 1500),
            ("1.234", "KWD", 1234),
        ],
    )
    def test_to_minor_units(self, amount, currency, expected):
        assert to_minor_units(amount, currency) == expected

    def test_excess_precision_is_rejected_not_rounded(self):
        with pytest.raises(ValidationError):
            to_minor_units("1.001", "USD")
        with pytest.raises(ValidationError):
            to_minor_units("10.5", "JPY")

    def test_floats_are_refused(self):
        with pytest.raises(ValidationError):
            to_minor_units(19.99, "USD")

    @pytest.mark.parametrize("amount", ["abc", "NaN", "Infinity"])
    def test_invalid_amounts(self, amount):
        with pytest.raises(ValidationError):
            to_minor_units(amount, "USD")

    def test_from_minor_units_is_quantized_to_the_currency(self):
        assert str(from_minor_units(5000, "USD")) == "50.00"
        assert str(from_minor_units(1500, "JPY")) == "1500"
        assert str(from_minor_units(1, "BHD")) == "0.001"

    def test_currency_exponents(self):
        assert currency_exponent("usd") == 2
        assert currency_exponent("CLP") == 0
        assert currency_exponent("OMR") == 3


class TestMoney:
    def test_currency_is_normalized(self):
        assert Money(100, "usd").currency == "USD"

    @pytest.mark.parametrize("currency", ["", "US", "USDX", "12$"])
    def test_invalid_currency_codes(self, currency):
        with pytest.raises(ValidationError):
            Money(100, currency)

    def test_negative_amounts_are_rejected(self):
        with pytest.raises(ValidationError):
            Money(-1, "USD")

    def test_non_integer_minor_units_are_rejected(self):
        with pytest.raises(ValidationError):
            Money(Decimal("10.5"), "USD")
        with pytest.raises(ValidationError):
            Money(True, "USD")

    def test_from_major_and_back(self):
        money = Money.from_major("99.99", "USD")
        assert money.amount_minor == 9999
        assert money.to_major() == Decimal("99.99")
        assert money.format_major() == "99.99"
        assert str(money) == "99.99 USD"

    def test_zero_decimal_formatting(self):
        assert Money.from_major("1500", "JPY").format_major() == "1500"

    def test_arithmetic_and_comparison(self):
        total = Money(5000, "USD")
        part = Money(2500, "USD")
        assert total - part == part
        assert part + part == total
        assert part < total
        assert total >= part
        assert Money.zero("USD").is_zero()

    def test_subtraction_cannot_go_negative(self):
        with pytest.raises(ValidationError):
            Money(100, "USD") - Money(200, "USD")

    def test_mixed_currencies_do_not_combine(self):
        with pytest.raises(ValidationError):
            Money(100, "USD") + Money(100, "EUR")
        with pytest.raises(ValidationError):
            Money(100, "USD") < Money(100, "EUR")

"""
Fixed-point money.

Amounts live as integer minor units everywhere inside the system. The helpers
in this module are the only place where a Decimal (major units) is turned into
minor units or back; adapters call them at the provider boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Union

from paygate.core.exceptions import ValidationError

MajorAmount = Union[Decimal, str, int]

# ISO-4217 minor unit exponents that differ from the default of 2.
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG",
    "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})
THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"})


def currency_exponent(currency: str) -> int:
    code = normalize_currency(currency)
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def normalize_currency(currency: str) -> str:
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError(f"Invalid ISO-4217 currency code: {currency!r}")
    return code


def to_minor_units(amount: MajorAmount, currency: str) -> int:
    """
    Convert a major-unit amount into integer minor units.

    Floats are refused; amounts with more decimals than the currency allows
    raise instead of being rounded.
    """
    if isinstance(amount, float):
        raise ValidationError("Float amounts are not accepted; pass a Decimal or string")
    try:
        value = Decimal(str(amount)) if not isinstance(amount, Decimal) else amount
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")

    scaled = value.scaleb(currency_exponent(currency))
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            f"Amount {amount} has more precision than {normalize_currency(currency)} allows"
        )
    return int(scaled)


def from_minor_units(amount_minor: int, currency: str) -> Decimal:
    """Convert minor units into a Decimal quantized to the currency exponent."""
    exponent = currency_exponent(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return Decimal(int(amount_minor)).scaleb(-exponent).quantize(quantum)


@dataclass(frozen=True)
class Money:
    amount_minor: int
    currency: str

    def __post_init__(self) -> None:
        if isinstance(self.amount_minor, bool) or not isinstance(self.amount_minor, int):
            raise ValidationError(f"amount_minor must be an int, got {type(self.amount_minor).__name__}")
        if self.amount_minor < 0:
            raise ValidationError("Money amounts cannot be negative")
        object.__setattr__(self, "currency", normalize_currency(self.currency))

    @classmethod
    def from_major(cls, amount: MajorAmount, currency: str) -> "Money":
        return cls(to_minor_units(amount, currency), currency)

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(0, currency)

    def to_major(self) -> Decimal:
        return from_minor_units(self.amount_minor, self.currency)

    def format_major(self) -> str:
        """Plain decimal string, e.g. ``"99.99"`` or ``"1500"`` for JPY."""
        return format(self.to_major(), "f")

    def is_zero(self) -> bool:
        return self.amount_minor == 0

    def _check_currency(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise ValidationError(f"Currency mismatch: {self.currency} vs {other.currency}")

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount_minor + other.amount_minor, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        if other.amount_minor > self.amount_minor:
            raise ValidationError("Money subtraction would go negative")
        return Money(self.amount_minor - other.amount_minor, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_minor < other.amount_minor

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_minor <= other.amount_minor

    def __gt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_minor > other.amount_minor

    def __ge__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_minor >= other.amount_minor

    def __str__(self) -> str:
        return f"{self.format_major()} {self.currency}"

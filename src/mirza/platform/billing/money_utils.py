"""
Money and currency utilities using py-moneyed and Babel.

Money is an exact fixed-point value stored in minor units. Decimal
precision comes from an immutable CurrencyTable built once at process start;
ISO 4217 codes outside the table are validated with py-moneyed and take
their precision from Babel's CLDR data.
"""

from collections.abc import Sequence
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import get_currency
from moneyed.classes import CurrencyDoesNotExist
from pydantic import BaseModel, ConfigDict, Field

from .exceptions import CurrencyMismatchError, ValidationError

# Default locale for formatting
DEFAULT_LOCALE = "en_US"

# Currencies whose precision differs from CLDR or that are not ISO 4217 at all.
DEFAULT_PRECISIONS: dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "IRR": 2,
    "IQD": 3,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "JOD": 3,
    "LYD": 3,
    "TND": 3,
    # crypto
    "BTC": 8,
    "ETH": 8,
    "LTC": 8,
    "TRX": 6,
    "USDT": 6,
}

AmountLike = int | float | Decimal | str


def _to_decimal(value: AmountLike) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {value!r}", field="amount") from exc


class Money(BaseModel):
    """Immutable amount of a single currency, held in minor units."""

    model_config = ConfigDict(frozen=True)

    minor_units: int = Field(description="Amount in minor units (cents, satoshi, ...)")
    currency: str = Field(pattern=r"^[A-Z]{3,5}$", description="Currency code")
    precision: int = Field(ge=0, le=18, description="Decimal places of the currency")

    @property
    def amount(self) -> Decimal:
        return Decimal(self.minor_units).scaleb(-self.precision)

    def _with(self, minor_units: int) -> "Money":
        return Money(minor_units=minor_units, currency=self.currency, precision=self.precision)

    def _assert_same_currency(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(self.currency, other.currency)
        if other.precision != self.precision:
            raise ValidationError(
                f"Precision mismatch for {self.currency}: {self.precision} != {other.precision}"
            )

    # Arithmetic

    def add(self, other: "Money") -> "Money":
        self._assert_same_currency(other)
        return self._with(self.minor_units + other.minor_units)

    def subtract(self, other: "Money") -> "Money":
        self._assert_same_currency(other)
        return self._with(self.minor_units - other.minor_units)

    def multiply(self, factor: AmountLike) -> "Money":
        """Multiply, rounding half-up to the currency precision."""
        raw = Decimal(self.minor_units) * _to_decimal(factor)
        return self._with(int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP)))

    def percentage(self, percent: AmountLike) -> "Money":
        return self.multiply(_to_decimal(percent) / Decimal(100))

    def allocate(self, ratios: Sequence[int]) -> list["Money"]:
        """Split into parts proportional to ratios without losing minor units."""
        total = sum(ratios)
        if not ratios or total <= 0 or any(r < 0 for r in ratios):
            raise ValidationError("Allocation ratios must be non-negative with a positive sum")

        shares = [self.minor_units * r // total for r in ratios]
        remainder = self.minor_units - sum(shares)
        for i in range(remainder):
            shares[i % len(shares)] += 1
        return [self._with(share) for share in shares]

    def negate(self) -> "Money":
        return self._with(-self.minor_units)

    def abs(self) -> "Money":
        return self._with(abs(self.minor_units))

    def __add__(self, other: "Money") -> "Money":
        return self.add(other)

    def __sub__(self, other: "Money") -> "Money":
        return self.subtract(other)

    # Comparisons (same currency only)

    def __lt__(self, other: "Money") -> bool:
        self._assert_same_currency(other)
        return self.minor_units < other.minor_units

    def __le__(self, other: "Money") -> bool:
        self._assert_same_currency(other)
        return self.minor_units <= other.minor_units

    def __gt__(self, other: "Money") -> bool:
        self._assert_same_currency(other)
        return self.minor_units > other.minor_units

    def __ge__(self, other: "Money") -> bool:
        self._assert_same_currency(other)
        return self.minor_units >= other.minor_units

    def equals(self, other: "Money") -> bool:
        """Currency-checked equality; ``==`` stays structural."""
        self._assert_same_currency(other)
        return self.minor_units == other.minor_units

    def is_zero(self) -> bool:
        return self.minor_units == 0

    def is_positive(self) -> bool:
        return self.minor_units > 0

    def is_negative(self) -> bool:
        return self.minor_units < 0

    # Presentation

    def format(self, locale: str = DEFAULT_LOCALE, **kwargs: Any) -> str:
        """Format with locale-aware formatting; crypto codes use a plain layout."""
        try:
            get_currency(self.currency)
            return format_currency(
                number=self.amount,
                currency=self.currency,
                locale=locale,
                currency_digits=False,
                format_type="standard",
                decimal_quantization=False,
                **kwargs,
            )
        except (CurrencyDoesNotExist, UnknownLocaleError, TypeError, ValueError):
            return f"{self.amount} {self.currency}"

    def to_dict(self) -> dict[str, Any]:
        """Convert Money to dictionary for serialization."""
        return {
            "amount": str(self.amount),
            "currency": self.currency,
            "minor_units": self.minor_units,
        }

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"


class CurrencyTable(BaseModel):
    """Read-only currency precision table, loaded once and injected."""

    model_config = ConfigDict(frozen=True)

    precisions: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_PRECISIONS))

    def precision(self, currency_code: str) -> int:
        """Get decimal precision for a currency."""
        code = currency_code.upper()
        if code in self.precisions:
            return self.precisions[code]
        try:
            get_currency(code)
        except CurrencyDoesNotExist:
            raise ValidationError(f"Invalid currency code: {currency_code}", field="currency")
        return get_currency_precision(code)

    def supports(self, currency_code: str) -> bool:
        try:
            self.precision(currency_code)
        except ValidationError:
            return False
        return True

    def money(self, amount: AmountLike, currency: str) -> Money:
        """Create Money from a major-unit amount, rounding half-up to precision."""
        code = currency.upper()
        precision = self.precision(code)
        scaled = (_to_decimal(amount) * (Decimal(10) ** precision)).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        )
        return Money(minor_units=int(scaled), currency=code, precision=precision)

    def from_minor_units(self, minor_units: int, currency: str) -> Money:
        code = currency.upper()
        return Money(minor_units=minor_units, currency=code, precision=self.precision(code))

    def zero(self, currency: str) -> Money:
        return self.from_minor_units(0, currency)

    def from_dict(self, data: dict[str, Any]) -> Money:
        """Create Money from dictionary."""
        if "minor_units" in data:
            return self.from_minor_units(int(data["minor_units"]), data["currency"])
        return self.money(data["amount"], data["currency"])


DEFAULT_CURRENCY_TABLE = CurrencyTable()


def create_money(
    amount: AmountLike, currency: str = "USD", table: CurrencyTable | None = None
) -> Money:
    """Create Money object with the default table."""
    return (table or DEFAULT_CURRENCY_TABLE).money(amount, currency)


def convert_money(
    money: Money,
    target_currency: str,
    rate: AmountLike,
    table: CurrencyTable | None = None,
    truncate: bool = False,
) -> Money:
    """
    Convert money with an explicit exchange rate (target units per source unit).

    Exchange rates come from the gateway at request time; nothing is cached here.
    """
    table = table or DEFAULT_CURRENCY_TABLE
    rate_decimal = _to_decimal(rate)
    if rate_decimal <= 0:
        raise ValidationError(f"Exchange rate must be positive, got {rate}", field="rate")

    converted = money.amount * rate_decimal
    if truncate:
        precision = table.precision(target_currency)
        converted = converted.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_DOWN)
    return table.money(converted, target_currency)


__all__ = [
    "DEFAULT_PRECISIONS",
    "DEFAULT_CURRENCY_TABLE",
    "Money",
    "CurrencyTable",
    "create_money",
    "convert_money",
]

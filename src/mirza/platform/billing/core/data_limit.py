"""
Data quota value object.

A DataLimit is either a non-negative byte count or unlimited. Unlimited is
an explicit flag, so a zero quota and an unlimited quota stay distinct.
"""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..exceptions import ValidationError

BYTES_PER_KB = 1024
BYTES_PER_MB = 1024**2
BYTES_PER_GB = 1024**3
BYTES_PER_TB = 1024**4

_UNITS: dict[str, int] = {
    "b": 1,
    "kb": BYTES_PER_KB,
    "mb": BYTES_PER_MB,
    "gb": BYTES_PER_GB,
    "tb": BYTES_PER_TB,
}

_FORMAT_UNITS = (
    ("TB", BYTES_PER_TB),
    ("GB", BYTES_PER_GB),
    ("MB", BYTES_PER_MB),
    ("KB", BYTES_PER_KB),
)

_LIMIT_PATTERN = re.compile(r"^(\d*\.?\d+)\s*(b|kb|mb|gb|tb)?$")


def _scale(amount: int | float | Decimal | str, factor: int) -> int:
    try:
        value = Decimal(str(amount)) * factor
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid data amount: {amount!r}", field="data_limit") from exc
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _trim(value: Decimal, precision: int) -> str:
    rounded = value.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)
    text = format(rounded, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


class DataLimit(BaseModel):
    """Byte quota or the unlimited sentinel."""

    model_config = ConfigDict(frozen=True)

    byte_count: int = Field(0, ge=0, description="Quota in bytes (ignored when unlimited)")
    is_unlimited: bool = Field(False, description="Unlimited quota")

    @model_validator(mode="after")
    def _normalize_unlimited(self) -> "DataLimit":
        if self.is_unlimited and self.byte_count != 0:
            raise ValueError("Unlimited data limit carries no byte count")
        return self

    # Construction

    @classmethod
    def unlimited(cls) -> "DataLimit":
        return cls(byte_count=0, is_unlimited=True)

    @classmethod
    def zero(cls) -> "DataLimit":
        return cls(byte_count=0)

    @classmethod
    def from_bytes(cls, byte_count: int) -> "DataLimit":
        if byte_count < 0:
            raise ValidationError("Data amount cannot be negative", field="data_limit")
        return cls(byte_count=byte_count)

    @classmethod
    def from_kilobytes(cls, amount: int | float | Decimal | str) -> "DataLimit":
        return cls.from_bytes(_scale(amount, BYTES_PER_KB))

    @classmethod
    def from_megabytes(cls, amount: int | float | Decimal | str) -> "DataLimit":
        return cls.from_bytes(_scale(amount, BYTES_PER_MB))

    @classmethod
    def from_gigabytes(cls, amount: int | float | Decimal | str) -> "DataLimit":
        return cls.from_bytes(_scale(amount, BYTES_PER_GB))

    @classmethod
    def from_terabytes(cls, amount: int | float | Decimal | str) -> "DataLimit":
        return cls.from_bytes(_scale(amount, BYTES_PER_TB))

    @classmethod
    def parse(cls, value: str) -> "DataLimit":
        """Parse ``"10GB"``, ``"500 MB"``, ``"1.5tb"`` or ``"unlimited"``."""
        text = value.strip().lower()
        if text == "unlimited":
            return cls.unlimited()

        match = _LIMIT_PATTERN.match(text)
        if not match:
            raise ValidationError(f"Invalid data limit format: {value}", field="data_limit")

        amount, unit = match.group(1), match.group(2) or "b"
        return cls.from_bytes(_scale(amount, _UNITS[unit]))

    # Arithmetic

    def add(self, other: "DataLimit") -> "DataLimit":
        if self.is_unlimited or other.is_unlimited:
            return DataLimit.unlimited()
        return DataLimit(byte_count=self.byte_count + other.byte_count)

    def subtract(self, other: "DataLimit") -> "DataLimit":
        """Subtract, clamping at zero."""
        if self.is_unlimited:
            return DataLimit.unlimited()
        if other.is_unlimited:
            raise ValidationError("Cannot subtract unlimited from a limited amount")
        return DataLimit(byte_count=max(0, self.byte_count - other.byte_count))

    def multiply(self, factor: int | float | Decimal) -> "DataLimit":
        if self.is_unlimited:
            return DataLimit.unlimited()
        if factor < 0:
            raise ValidationError("Factor cannot be negative")
        return DataLimit(byte_count=_scale(factor, self.byte_count))

    def percentage_of(self, total: "DataLimit") -> float:
        """Share of ``total`` consumed by this amount, in percent."""
        if total.is_unlimited:
            return 0.0
        if self.is_unlimited:
            return 100.0
        if total.byte_count == 0:
            return 0.0
        return self.byte_count / total.byte_count * 100

    def exceeds(self, limit: "DataLimit") -> bool:
        """True when this amount reaches a finite limit."""
        if limit.is_unlimited:
            return False
        if self.is_unlimited:
            return True
        return self.byte_count >= limit.byte_count

    # Comparisons; unlimited sorts above every finite amount

    def _key(self) -> tuple[int, int]:
        return (1, 0) if self.is_unlimited else (0, self.byte_count)

    def __lt__(self, other: "DataLimit") -> bool:
        return self._key() < other._key()

    def __le__(self, other: "DataLimit") -> bool:
        return self._key() <= other._key()

    def __gt__(self, other: "DataLimit") -> bool:
        return self._key() > other._key()

    def __ge__(self, other: "DataLimit") -> bool:
        return self._key() >= other._key()

    def is_zero(self) -> bool:
        return not self.is_unlimited and self.byte_count == 0

    def is_positive(self) -> bool:
        return self.is_unlimited or self.byte_count > 0

    @property
    def gigabytes(self) -> Decimal | None:
        if self.is_unlimited:
            return None
        return Decimal(self.byte_count) / BYTES_PER_GB

    # Presentation

    def format(self, precision: int = 2) -> str:
        if self.is_unlimited:
            return "Unlimited"
        for unit, factor in _FORMAT_UNITS:
            if self.byte_count >= factor:
                return f"{_trim(Decimal(self.byte_count) / factor, precision)} {unit}"
        return f"{self.byte_count} B"

    def to_dict(self) -> dict[str, Any]:
        return {
            "bytes": None if self.is_unlimited else self.byte_count,
            "unlimited": self.is_unlimited,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DataLimit":
        if data.get("unlimited"):
            return cls.unlimited()
        return cls.from_bytes(int(data["bytes"]))

    def __str__(self) -> str:
        return self.format()


__all__ = [
    "BYTES_PER_KB",
    "BYTES_PER_MB",
    "BYTES_PER_GB",
    "BYTES_PER_TB",
    "DataLimit",
]

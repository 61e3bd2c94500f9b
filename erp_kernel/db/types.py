"""
Module: erp_kernel.db.types
Responsibility: Decimal column type and the rounding helpers for quantities,
    unit costs and money.  Centralizes precision so that every model, engine
    and service quantizes identically.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere in the kernel.  ExactDecimal refuses float binds and
      keeps values exact on backends without a native decimal type.
    - round_money() is the ONLY sanctioned rounding function for money;
      round_cost() for weighted-average unit costs; round_quantity() for
      stock quantities.
    - Timestamps are stored in UTC and always read back timezone-aware.

Failure modes:
    - TypeError when a float is bound to a decimal column.
    - ValueError from to_decimal() on floats or non-numeric strings.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy import DateTime, Numeric, String
from sqlalchemy.types import TypeDecorator

MONEY_DECIMAL_PLACES = 2
COST_DECIMAL_PLACES = 6
QUANTITY_DECIMAL_PLACES = 4
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")


class ExactDecimal(TypeDecorator):
    """
    Decimal stored without binary floating point on every backend.

    Contract:
        Numeric(38, 9) on databases with a native decimal type.  SQLite has
        none (its NUMERIC affinity round-trips through REAL), so values are
        stored there as canonical decimal strings.

    Guarantees:
        - Reads always return ``Decimal``.
        - Binding a ``float`` raises TypeError.

    Non-goals:
        - SQL-side arithmetic or ordering on SQLite; aggregate in Python.
    """

    impl = Numeric(38, 9)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(38, 9, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError(f"float is not accepted for decimal columns: {value!r}")
        value = Decimal(value)
        if dialect.name == "sqlite":
            return format(value, "f")
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp stored in UTC.

    SQLite has no timezone support and returns naive values, so the offset
    is dropped on write after converting to UTC and re-attached on read.
    Naive values bound from Python are taken to be UTC already.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """
    Convert an int, str or Decimal to Decimal, refusing floats.

    Raises:
        ValueError: on float input or a string that is not a number.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"{field} must be a decimal string or integer, got {value!r}")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"{field} is not a number: {value!r}") from exc
        if not result.is_finite():
            raise ValueError(f"{field} must be finite: {value!r}")
        return result
    raise ValueError(f"{field} has unsupported type {type(value).__name__}")


def _quantize(value: Decimal, decimal_places: int, rounding: str) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-decimal_places), rounding=rounding)


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the smallest currency unit.

    This is the ONLY sanctioned rounding function for money.  Journal
    amounts, stock values and COGS all pass through it.
    """
    return _quantize(value, decimal_places, rounding)


def round_cost(value: Decimal, rounding: str = DEFAULT_ROUNDING) -> Decimal:
    """Round a unit cost (weighted-average precision)."""
    return _quantize(value, COST_DECIMAL_PLACES, rounding)


def round_quantity(value: Decimal, rounding: str = DEFAULT_ROUNDING) -> Decimal:
    """Round a stock quantity."""
    return _quantize(value, QUANTITY_DECIMAL_PLACES, rounding)


def has_precision(value: Decimal, decimal_places: int) -> bool:
    """True when ``value`` needs no more than ``decimal_places`` decimals."""
    return _quantize(value, decimal_places, DEFAULT_ROUNDING) == value

"""Money and date formatting shared by every output path.

Amounts are integer minor units (cents). Grouping uses a plain space as the
thousands separator and a dot as the decimal separator; rounding is half-up.
"""

from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

INVALID_DATE = "invalid date"

MONTH_ABBREVIATIONS = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)


def cents_to_units(cents: int) -> float:
    return cents / 100


def _units(cents: int) -> Decimal:
    return Decimal(cents) / Decimal(100)


def format_amount(cents: int, currency: str, *, negative: bool = False) -> str:
    """Whole units, space-grouped, with a currency suffix: ``-1 500 FCFA``."""
    whole = int(_units(abs(cents)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    grouped = f"{whole:,}".replace(",", " ")
    sign = "-" if negative or cents < 0 else ""
    if whole == 0:
        sign = ""
    return f"{sign}{grouped} {currency}".rstrip()


def format_decimal(cents: int) -> str:
    """Two-decimal rendering without grouping: ``-50.00``."""
    value = _units(cents).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{value:.2f}"


def format_date(value: Optional[Union[date, datetime]]) -> str:
    if value is None:
        return INVALID_DATE
    if isinstance(value, datetime):
        value = value.date()
    if not isinstance(value, date):
        return INVALID_DATE
    return value.strftime("%d-%m-%Y")


def month_label(year: int, month: int) -> str:
    return f"{MONTH_ABBREVIATIONS[month - 1]} {year:04d}"


def round1(value: Union[float, Decimal]) -> float:
    return float(
        Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    )

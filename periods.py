from dataclasses import dataclass
from datetime import date
from typing import Optional

from errors import ValidationError


MIN_YEAR = 1970
MAX_YEAR = 3000


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def _validate_year(year: int) -> None:
    if year < MIN_YEAR or year > MAX_YEAR:
        raise ValidationError(f"Year must be between {MIN_YEAR} and {MAX_YEAR}")


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def month_period(year: int, month: int) -> Period:
    _validate_year(year)
    if month < 1 or month > 12:
        raise ValidationError("Month must be between 1 and 12")
    return Period(f"{year:04d}-{month:02d}", date(year, month, 1), month_end(year, month))


def year_period(year: int) -> Period:
    _validate_year(year)
    return Period(f"{year:04d}", date(year, 1, 1), date(year, 12, 31))


def add_months(year: int, month: int, count: int) -> tuple[int, int]:
    month_index = (year * 12) + (month - 1) + count
    return month_index // 12, (month_index % 12) + 1


def parse_month(value: Optional[str]) -> tuple[int, int]:
    """Parse a ``YYYY-MM`` string into ``(year, month)``."""
    if not value:
        raise ValidationError("The month parameter is required (format: YYYY-MM)")
    parts = value.strip().split("-")
    if len(parts) != 2:
        raise ValidationError("Invalid month format, use YYYY-MM")
    try:
        year, month = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise ValidationError("Invalid month format, use YYYY-MM") from exc
    period = month_period(year, month)
    return period.start.year, period.start.month


def parse_range(start: Optional[str], end: Optional[str]) -> Period:
    if not start or not end:
        raise ValidationError("Start date and end date are required")
    try:
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
    except ValueError as exc:
        raise ValidationError("Dates must use the YYYY-MM-DD format") from exc
    if start_date > end_date:
        raise ValidationError("Start date must be before end date")
    return Period("custom", start_date, end_date)


def resolve_period(
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    """Explicit range when both bounds are given, the current month otherwise."""
    if start and end:
        return parse_range(start, end)
    today = today or date.today()
    current = month_period(today.year, today.month)
    return Period("this_month", current.start, current.end)

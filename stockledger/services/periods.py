import calendar
from datetime import date, datetime

from stockledger.core.errors import LedgerValidationError

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

MIN_YEAR = 2000
MAX_YEAR = 2100


def validate_period(year: int, month: int) -> None:
    if isinstance(year, bool) or not isinstance(year, int) or not MIN_YEAR <= year <= MAX_YEAR:
        raise LedgerValidationError(f"Year must be an integer between {MIN_YEAR} and {MAX_YEAR}")
    if isinstance(month, bool) or not isinstance(month, int) or not 1 <= month <= 12:
        raise LedgerValidationError("Month must be an integer between 1 and 12")


def month_name(month: int) -> str:
    return MONTH_NAMES[month - 1]


def previous_period(year: int, month: int) -> tuple[int, int]:
    if month == 1:
        return year - 1, 12
    return year, month - 1


def next_period(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def period_of(value: date) -> tuple[int, int]:
    return value.year, value.month


def month_bounds(year: int, month: int) -> tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def periods_between(start: tuple[int, int], end: tuple[int, int]) -> list[tuple[int, int]]:
    """Periods strictly after ``start`` and strictly before ``end``."""
    periods = []
    current = next_period(*start)
    while current < end:
        periods.append(current)
        current = next_period(*current)
    return periods


def as_date(value: date | datetime | str, field: str = "date") -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError as exc:
            raise LedgerValidationError(f"{field} must be an ISO date (YYYY-MM-DD)") from exc
    raise LedgerValidationError(f"{field} is required")

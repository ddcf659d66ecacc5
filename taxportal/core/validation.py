"""
Input coercion shared by the ledger services.

Callers pass plain scalars (often straight from a request body); these
helpers turn them into typed values or raise ValidationError. Nothing here
guesses or clamps: bad input is rejected outright.
"""

import calendar
import re
from datetime import date, datetime
from typing import Optional, Tuple, Union

from taxportal.core.errors import ValidationError

_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")

DateLike = Union[date, str]


def parse_date(value: DateLike, field: str = "date") -> date:
    """Accept a date (or datetime) or an ISO YYYY-MM-DD string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"{field} must be a date in YYYY-MM-DD format", code="invalid_date")


def parse_optional_date(value: Optional[DateLike], field: str = "date") -> Optional[date]:
    if value is None:
        return None
    return parse_date(value, field)


def month_bounds(day: date) -> Tuple[date, date]:
    """First and last calendar day of the month containing day."""
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last)


def parse_year_month(value: str) -> date:
    """Parse YYYY-MM and return the first day of that month."""
    match = _YEAR_MONTH_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValidationError("year_month must be in YYYY-MM format", code="invalid_date")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValidationError("year_month must be in YYYY-MM format", code="invalid_date")
    return date(year, month, 1)


def require_positive_minutes(minutes, field: str = "minutes") -> int:
    # bool is an int subclass; True is not a duration
    if isinstance(minutes, bool) or not isinstance(minutes, int):
        raise ValidationError(f"{field} must be an integer")
    if minutes <= 0:
        raise ValidationError(f"{field} must be greater than 0")
    return minutes


def require_text(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", code="required_field")
    return str(value).strip()


def check_page(limit: int, offset: int, max_limit: int = 500) -> None:
    if limit <= 0 or limit > max_limit:
        raise ValidationError(f"limit must be between 1 and {max_limit}")
    if offset < 0:
        raise ValidationError("offset must not be negative")

"""
Date Utilities for verification input and quota accounting.

Provides centralized date parsing (birth dates arrive in several formats
from forms) and the single day-bucket definition used by the quota guard.

Usage:
    from utils.date_utils import parse_birth_date, day_bucket, next_day_boundary

    birth = parse_birth_date("12/05/1990")    # -> date(1990, 5, 12)
    bucket = day_bucket(datetime.now(timezone.utc))
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union


# =============================================================================
# STANDARD FORMAT CONSTANT
# =============================================================================
STANDARD_DATE_FORMAT = "%Y-%m-%d"

# Common input formats to try when parsing user input
# Order matters: more specific formats first to avoid ambiguity
INPUT_FORMATS = [
    "%Y-%m-%d",   # 1990-05-12 (ISO standard, our output format)
    "%Y/%m/%d",   # 1990/05/12
    "%d/%m/%Y",   # 12/05/1990 (European)
    "%d-%m-%Y",   # 12-05-1990
    "%d.%m.%Y",   # 12.05.1990
    "%Y%m%d",     # 19900512 (compact)
]


def format_date(date_obj: Union[date, datetime]) -> str:
    """Convert a date to the application-wide YYYY-MM-DD format."""
    return date_obj.strftime(STANDARD_DATE_FORMAT)


def parse_birth_date(value: Union[str, date, None]) -> Optional[date]:
    """
    Parse a birth date from any supported format.

    Returns None if the value is empty or no format matches.

    Example:
        >>> parse_birth_date("12/05/1990")
        datetime.date(1990, 5, 12)
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    value = value.strip()
    if not value:
        return None

    for fmt in INPUT_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue

    return None


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


# =============================================================================
# QUOTA DAY BOUNDARY
# =============================================================================
# One global definition: the quota day starts at 00:00 UTC for every caller.

def day_bucket(moment: datetime) -> date:
    """Return the UTC calendar day a moment belongs to."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).date()


def next_day_boundary(moment: datetime) -> datetime:
    """Return the UTC midnight at which the bucket of `moment` rolls over."""
    bucket = day_bucket(moment)
    return datetime.combine(bucket + timedelta(days=1), time.min, tzinfo=timezone.utc)

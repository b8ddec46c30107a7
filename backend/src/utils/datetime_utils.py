"""
Datetime utilities for consistent timezone handling across the application.

All business timestamps are timezone-aware and expressed in Moscow time (UTC+3).
"""

import logging
from datetime import datetime, timezone, timedelta, date
from typing import Optional

logger = logging.getLogger(__name__)

# Moscow timezone constant (UTC+3, no DST)
MOSCOW_TZ = timezone(timedelta(hours=3))


def moscow_now() -> datetime:
    """
    Get current Moscow datetime (UTC+3).

    Returns:
        Current datetime with Moscow timezone
    """
    return datetime.now(MOSCOW_TZ)


def ensure_moscow(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is timezone-aware with Moscow timezone.

    Naive datetimes (e.g. read back from SQLite) are assumed to already be in
    Moscow time.

    Args:
        dt: Datetime to normalize

    Returns:
        Timezone-aware datetime in Moscow timezone, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=MOSCOW_TZ)
    return dt.astimezone(MOSCOW_TZ)


def epoch_millis(dt: datetime) -> int:
    """Milliseconds since the Unix epoch for a (possibly naive Moscow) datetime."""
    aware = ensure_moscow(dt)
    assert aware is not None
    return int(aware.timestamp() * 1000)


def parse_visit_date(date_str: str) -> date:
    """
    Parse a visit date as written in clinic reports.

    Accepts:
    - DD.MM.YYYY (e.g., "05.03.2025", "5.3.2025") - the usual clinic format
    - YYYY-MM-DD (e.g., "2025-03-05")
    - YYYY/MM/DD (e.g., "2025/03/05")

    Args:
        date_str: Date string

    Returns:
        Date object

    Raises:
        ValueError: If date string cannot be parsed
    """
    if not date_str or not date_str.strip():
        raise ValueError("Date string cannot be empty")

    date_str = date_str.strip()

    if '.' in date_str:
        parts = date_str.split('.')
        if len(parts) != 3:
            raise ValueError(f"Invalid date format (expected DD.MM.YYYY): {date_str}")
        day, month, year = parts
    elif '/' in date_str or '-' in date_str:
        parts = date_str.replace('/', '-').split('-')
        if len(parts) != 3:
            raise ValueError(f"Invalid date format (expected YYYY-MM-DD): {date_str}")
        year, month, day = parts
    else:
        raise ValueError(f"Invalid date format: {date_str}")

    normalized = f"{year.zfill(4)}-{month.zfill(2)}-{day.zfill(2)}"

    try:
        return datetime.strptime(normalized, '%Y-%m-%d').date()
    except ValueError as e:
        raise ValueError(f"Invalid date: {date_str}") from e


def parse_visit_date_optional(date_str: Optional[str]) -> Optional[date]:
    """Like parse_visit_date, but returns None for empty or unparseable input."""
    if not date_str or not date_str.strip():
        return None
    try:
        return parse_visit_date(date_str)
    except ValueError:
        logger.warning(f"Unparseable visit date: {date_str!r}")
        return None

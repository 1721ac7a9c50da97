"""
Centralized business day logic for the stock ledger.

Handles the restaurant industry standard of "4 AM day start" to properly
attribute late-night sales and counts to the correct business day.

Example: A sale at 2:00 AM on Jan 2nd belongs to the Jan 1st business day,
         so it is part of the Jan 1st reconciliation window.

All timestamps stored in the ledger are naive UTC.
"""
from datetime import datetime, date, time, timedelta, timezone
from typing import Optional, Tuple
import pytz


# Restaurant business day starts at 4:00 AM
BUSINESS_DAY_START_HOUR = 4


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the ledger's storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC already."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(pytz.UTC).replace(tzinfo=None)


def get_business_date(
    dt: datetime,
    location_timezone: Optional[str] = None,
    start_hour: int = BUSINESS_DAY_START_HOUR,
) -> date:
    """
    Convert a datetime to its business date, respecting the 4 AM cutoff.

    Args:
        dt: The datetime to convert (naive values are treated as UTC when a
            timezone is given, otherwise as local time)
        location_timezone: IANA timezone string (e.g., "Africa/Nairobi")
        start_hour: Hour at which the business day starts

    Returns:
        The business date this event belongs to

    Examples:
        >>> get_business_date(datetime(2024, 1, 2, 2, 0))
        datetime.date(2024, 1, 1)
        >>> get_business_date(datetime(2024, 1, 2, 5, 0))
        datetime.date(2024, 1, 2)
    """
    if location_timezone:
        if dt.tzinfo is None:
            dt = pytz.UTC.localize(dt)
        dt_local = dt.astimezone(pytz.timezone(location_timezone))
    else:
        dt_local = dt

    if dt_local.hour < start_hour:
        return dt_local.date() - timedelta(days=1)
    return dt_local.date()


def business_day_window(
    business_date: date,
    location_timezone: Optional[str] = None,
    start_hour: int = BUSINESS_DAY_START_HOUR,
) -> Tuple[datetime, datetime]:
    """
    Half-open [start, end) window of a business date, as naive UTC datetimes.

    Args:
        business_date: The business date
        location_timezone: IANA timezone of the location; None means the
            ledger clock (UTC) is the local clock
        start_hour: Hour at which the business day starts

    Returns:
        (start, end) where end is the start of the next business day

    Examples:
        >>> business_day_window(date(2024, 1, 1))
        (datetime.datetime(2024, 1, 1, 4, 0), datetime.datetime(2024, 1, 2, 4, 0))
    """
    local_start = datetime.combine(business_date, time(start_hour, 0))
    local_end = datetime.combine(business_date + timedelta(days=1), time(start_hour, 0))

    if not location_timezone:
        return local_start, local_end

    # localize each boundary separately so DST transitions give 23h/25h days
    tz = pytz.timezone(location_timezone)
    start = tz.localize(local_start).astimezone(pytz.UTC).replace(tzinfo=None)
    end = tz.localize(local_end).astimezone(pytz.UTC).replace(tzinfo=None)
    return start, end

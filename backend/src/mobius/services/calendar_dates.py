"""Meeting date selection for remediation events.

Remediation meetings land on a fixed weekday so users see them on a
predictable weekly cadence.
"""

from datetime import date, datetime, time, timedelta, tzinfo

# Monday is 0
PREFERRED_WEEKDAY = 1  # Tuesday


def next_preferred_date(year: int, month: int, day: int) -> date:
    """Return the earliest preferred weekday on or after ``year-month-day``.

    Crosses month and year boundaries (Dec 31 rolls into January).

    Raises:
        ValueError: If the arguments do not form a valid calendar date.
    """
    start = date(year, month, day)
    offset = (PREFERRED_WEEKDAY - start.weekday()) % 7
    return start + timedelta(days=offset)


def event_time_range(
    now: datetime,
    *,
    start_hour: int,
    duration_minutes: int,
    tz: tzinfo,
) -> tuple[datetime, datetime]:
    """Compute the start and end of a new remediation event.

    The event starts at ``start_hour`` in ``tz`` on the preferred date
    relative to ``now``. When that date is today and the start time has
    already passed, the following week's preferred date is used instead.
    """
    local_now = now.astimezone(tz)
    preferred = next_preferred_date(local_now.year, local_now.month, local_now.day)
    start = datetime.combine(preferred, time(hour=start_hour), tzinfo=tz)
    if start <= local_now:
        following = preferred + timedelta(days=1)
        preferred = next_preferred_date(following.year, following.month, following.day)
        start = datetime.combine(preferred, time(hour=start_hour), tzinfo=tz)
    return start, start + timedelta(minutes=duration_minutes)

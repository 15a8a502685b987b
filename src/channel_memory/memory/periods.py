"""
Calendar identifiers used to name tier artifacts.

- daily:   YYYY-MM-DD
- weekly:  YYYY-Www (ISO 8601 week)
- monthly: YYYY-MM
"""

from datetime import date, datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def day_id(day: date) -> str:
    return day.isoformat()


def week_id(day: date) -> str:
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def month_id(day: date) -> str:
    return f"{day.year}-{day.month:02d}"


def parse_day(identifier: str) -> date:
    return date.fromisoformat(identifier)


def yesterday(today: date) -> date:
    return today - timedelta(days=1)


def previous_week(today: date) -> str:
    """ISO week identifier of the week before the one containing today."""
    return week_id(today - timedelta(days=7))


def previous_month(today: date) -> str:
    first = today.replace(day=1)
    return month_id(first - timedelta(days=1))


def is_week_boundary(today: date) -> bool:
    return today.weekday() == 0


def is_month_boundary(today: date) -> bool:
    return today.day == 1


def day_in_week(identifier: str, week: str) -> bool:
    """True if the YYYY-MM-DD identifier falls inside the given ISO week."""
    try:
        return week_id(parse_day(identifier)) == week
    except ValueError:
        return False

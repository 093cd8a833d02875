from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

# Departure dates are local to the operator.
IST = ZoneInfo("Asia/Kolkata")


def utc_now_naive() -> datetime:
    """Timestamps are stored as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def today_ist() -> date:
    return datetime.now(IST).date()


def age_on(date_of_birth: date, today: date) -> int:
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age

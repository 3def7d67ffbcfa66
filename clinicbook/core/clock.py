"""Civil clock for the clinic.

Every "today", past/future and day-of-week decision in the service goes through
this module so that a host running in any OS timezone makes the same
scheduling decisions.
"""
import re
from datetime import UTC, date, datetime, time, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

from clinicbook.core.config import settings
from clinicbook.core.errors import ValidationFailure

_HHMM_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")


@lru_cache(maxsize=1)
def clinic_tz() -> ZoneInfo:
    return ZoneInfo(settings.clinic_timezone)


def now() -> datetime:
    """Current instant as an aware datetime in the clinic timezone."""
    return datetime.now(clinic_tz())


def today() -> date:
    return now().date()


def utc_now() -> datetime:
    """Aware UTC instant for created_at / updated_at columns."""
    return datetime.now(UTC)


def to_civil(dt: datetime) -> datetime:
    """Convert an instant to the clinic timezone. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=ZoneInfo("UTC"))
    return dt.astimezone(clinic_tz())


def start_of_day(d: date | datetime) -> datetime:
    """Civil midnight of `d` in the clinic timezone."""
    if isinstance(d, datetime):
        d = to_civil(d).date()
    return datetime.combine(d, time.min, tzinfo=clinic_tz())


def day_of_week(d: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (d.weekday() + 1) % 7


def is_past(d: date) -> bool:
    return d < today()


def is_today(d: date) -> bool:
    return d == today()


def date_range(start: date, end: date) -> list[date]:
    """Inclusive list of dates from start to end."""
    if end < start:
        return []
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def window(days: int, start: date | None = None) -> list[date]:
    """`days` consecutive dates beginning at `start` (default today)."""
    first = start or today()
    return [first + timedelta(days=i) for i in range(max(days, 0))]


def parse_flexible_date(value: str) -> date:
    """Parse `dd/mm/yyyy` or an ISO date (or ISO datetime) string.

    Raises ValidationFailure for anything else, including impossible dates
    such as 31/02/2025. Never falls back to a default.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailure("Date is required")
    raw = value.strip()
    if "/" in raw:
        parts = raw.split("/")
        if len(parts) != 3 or not all(p.isdigit() for p in parts):
            raise ValidationFailure(f"Malformed date {value!r}: expected dd/mm/yyyy")
        day, month, year = (int(p) for p in parts)
        if not 1900 <= year <= 2100:
            raise ValidationFailure(f"Malformed date {value!r}: year out of range")
        try:
            return date(year, month, day)
        except ValueError as e:
            raise ValidationFailure(f"Malformed date {value!r}: {e}") from e
    try:
        return date.fromisoformat(raw)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationFailure(
            f"Malformed date {value!r}: expected dd/mm/yyyy or an ISO date"
        ) from e
    if parsed.tzinfo is not None:
        return to_civil(parsed).date()
    return parsed.date()


def parse_hhmm(value: str) -> str:
    """Validate an HH:MM time of day and return it zero-padded."""
    m = _HHMM_RE.match(value.strip()) if isinstance(value, str) else None
    if not m:
        raise ValidationFailure(f"Malformed time {value!r}: expected HH:MM")
    return f"{int(m.group(1)):02d}:{m.group(2)}"


def hhmm_to_minutes(value: str) -> int:
    hours, minutes = parse_hhmm(value).split(":")
    return int(hours) * 60 + int(minutes)


def minutes_to_hhmm(total: int) -> str:
    return f"{total // 60:02d}:{total % 60:02d}"


def combine(d: date, hhmm: str) -> datetime:
    """Civil instant for a date and HH:MM time of day."""
    hours, minutes = parse_hhmm(hhmm).split(":")
    return datetime.combine(d, time(int(hours), int(minutes)), tzinfo=clinic_tz())

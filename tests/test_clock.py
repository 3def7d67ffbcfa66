from datetime import date, datetime, timedelta, timezone

import pytest

from clinicbook.core import clock
from clinicbook.core.errors import ValidationFailure


def test_day_of_week_counts_from_sunday() -> None:
    assert clock.day_of_week(date(2025, 6, 15)) == 0  # Sunday
    assert clock.day_of_week(date(2025, 6, 16)) == 1  # Monday
    assert clock.day_of_week(date(2025, 6, 21)) == 6  # Saturday


def test_today_follows_clinic_timezone_not_utc(monkeypatch: pytest.MonkeyPatch) -> None:
    # 20:00 UTC on the 10th is already the 11th in the clinic
    late_utc = datetime(2025, 6, 10, 20, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(clock, "now", lambda: clock.to_civil(late_utc))

    assert clock.today() == date(2025, 6, 11)
    assert clock.is_past(date(2025, 6, 10))
    assert clock.is_today(date(2025, 6, 11))


def test_to_civil_treats_naive_values_as_utc() -> None:
    civil = clock.to_civil(datetime(2025, 6, 10, 0, 0))

    assert civil.hour == 5
    assert civil.minute == 30


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("10/06/2025", date(2025, 6, 10)),
        ("1/2/2025", date(2025, 2, 1)),
        ("2025-06-10", date(2025, 6, 10)),
        ("2025-06-10T23:00:00Z", date(2025, 6, 11)),
        ("2025-06-10T10:00:00", date(2025, 6, 10)),
    ],
)
def test_parse_flexible_date_accepts_supported_formats(raw: str, expected: date) -> None:
    assert clock.parse_flexible_date(raw) == expected


@pytest.mark.parametrize("raw", ["", "31/02/2025", "10/06/1800", "06-10-2025", "tomorrow", "10/06"])
def test_parse_flexible_date_rejects_malformed_input(raw: str) -> None:
    with pytest.raises(ValidationFailure):
        clock.parse_flexible_date(raw)


def test_parse_hhmm_zero_pads_and_rejects_garbage() -> None:
    assert clock.parse_hhmm("9:05") == "09:05"
    assert clock.parse_hhmm("23:59") == "23:59"
    for raw in ("24:00", "9:5", "09:60", "noon"):
        with pytest.raises(ValidationFailure):
            clock.parse_hhmm(raw)


def test_combine_returns_aware_civil_instant() -> None:
    start = clock.combine(date(2025, 6, 10), "09:30")

    assert start.utcoffset() == timedelta(hours=5, minutes=30)
    assert (start.hour, start.minute) == (9, 30)


def test_window_and_date_range_are_inclusive_and_ordered() -> None:
    days = clock.window(7)

    assert days[0] == date(2025, 6, 10)
    assert days[-1] == date(2025, 6, 16)
    assert clock.date_range(date(2025, 6, 10), date(2025, 6, 12)) == days[:3]
    assert clock.date_range(date(2025, 6, 12), date(2025, 6, 10)) == []


def test_utc_now_is_timezone_aware() -> None:
    stamp = clock.utc_now()

    assert stamp.utcoffset() == timedelta(0)

import pytest

from clinicbook.core.schedule import (
    DEFAULT_CATALOG,
    FRIDAY,
    LOCATION_CODES,
    MON_TO_SAT,
    SUNDAY,
    ClinicLocation,
    ScheduleCatalog,
    TimeSlot,
    split_range,
)


def test_split_range_drops_partial_tail() -> None:
    assert split_range("07:00", "08:30", 30) == [
        TimeSlot("07:00", "07:30"),
        TimeSlot("07:30", "08:00"),
        TimeSlot("08:00", "08:30"),
    ]
    assert split_range("09:00", "09:45", 30) == [TimeSlot("09:00", "09:30")]


def test_default_catalog_weekday_hours() -> None:
    ghodasar = DEFAULT_CATALOG.time_slots_for("ghodasar", FRIDAY)
    vastral = DEFAULT_CATALOG.time_slots_for("vastral", FRIDAY)

    assert len(ghodasar) == 15
    assert ghodasar[0] == TimeSlot("07:00", "07:30")
    assert ghodasar[-1] == TimeSlot("22:00", "22:30")
    assert [s.start for s in vastral] == ["16:00", "16:30", "17:00", "17:30", "18:00", "18:30"]
    assert DEFAULT_CATALOG.time_slots_for("gandhinagar", FRIDAY) == []
    assert DEFAULT_CATALOG.slots_per_day(FRIDAY) == 21


def test_default_catalog_sunday_is_gandhinagar_only() -> None:
    open_codes = [loc.code for loc in DEFAULT_CATALOG.open_locations(SUNDAY)]

    assert open_codes == ["gandhinagar"]
    assert DEFAULT_CATALOG.slots_per_day(SUNDAY) == 10


def test_intervals_are_sorted_and_non_overlapping() -> None:
    for day in range(7):
        for code in DEFAULT_CATALOG.location_codes:
            slots = DEFAULT_CATALOG.time_slots_for(code, day)
            for earlier, later in zip(slots, slots[1:]):
                assert earlier.end <= later.start
            assert all(s.duration_minutes == 30 for s in slots)


def test_location_notes_and_extra_codes() -> None:
    vastral = DEFAULT_CATALOG.get("vastral")

    assert vastral.notes.startswith("Vastral Clinic - ")
    assert "online" in LOCATION_CODES
    assert "ghodasar" in LOCATION_CODES
    assert DEFAULT_CATALOG.get("online") is None


def test_catalog_rejects_overlapping_hours() -> None:
    overlapping = ClinicLocation(
        code="a",
        name="Clinic A",
        address="Main Road",
        hours={d: (("09:00", "10:00"), ("09:30", "11:00")) for d in MON_TO_SAT},
    )

    with pytest.raises(ValueError):
        ScheduleCatalog([overlapping])


def test_unknown_location_has_no_slots() -> None:
    assert DEFAULT_CATALOG.time_slots_for("nowhere", FRIDAY) == []

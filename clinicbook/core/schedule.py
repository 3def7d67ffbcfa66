"""Clinic locations and the hours each one offers, by day of week.

Changes to clinic hours are changes to `CLINIC_HOURS` only. Days use the
0 = Sunday ... 6 = Saturday convention from `clinicbook.core.clock.day_of_week`.
"""
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from clinicbook.core.clock import hhmm_to_minutes, minutes_to_hhmm

SUNDAY, MONDAY, TUESDAY, WEDNESDAY, THURSDAY, FRIDAY, SATURDAY = range(7)
MON_TO_SAT = (MONDAY, TUESDAY, WEDNESDAY, THURSDAY, FRIDAY, SATURDAY)

# Codes accepted on admin-created slots in addition to the catalog clinics
EXTRA_LOCATION_CODES = ("clinic", "hospital", "home", "online")


@dataclass(frozen=True)
class TimeSlot:
    start: str
    end: str

    @property
    def duration_minutes(self) -> int:
        return hhmm_to_minutes(self.end) - hhmm_to_minutes(self.start)


@dataclass(frozen=True)
class ClinicLocation:
    code: str
    name: str
    address: str
    # day of week -> opening ranges as (start, end) HH:MM pairs
    hours: Mapping[int, tuple[tuple[str, str], ...]] = field(default_factory=dict)

    @property
    def notes(self) -> str:
        return f"{self.name} - {self.address}"


def split_range(start: str, end: str, step_minutes: int) -> list[TimeSlot]:
    """Cut an opening range into consecutive intervals of `step_minutes`."""
    out: list[TimeSlot] = []
    current = hhmm_to_minutes(start)
    stop = hhmm_to_minutes(end)
    while current + step_minutes <= stop:
        out.append(TimeSlot(minutes_to_hhmm(current), minutes_to_hhmm(current + step_minutes)))
        current += step_minutes
    return out


def _every(days: Iterable[int], *ranges: tuple[str, str]) -> dict[int, tuple[tuple[str, str], ...]]:
    return {d: tuple(ranges) for d in days}


class ScheduleCatalog:
    """Static mapping from location code to the intervals offered per weekday."""

    def __init__(self, locations: Iterable[ClinicLocation], step_minutes: int = 30) -> None:
        self._locations = {loc.code: loc for loc in locations}
        self.step_minutes = step_minutes
        for loc in self._locations.values():
            for day, ranges in loc.hours.items():
                self._check_non_overlapping(loc.code, day, ranges)

    def _check_non_overlapping(self, code: str, day: int, ranges: Iterable[tuple[str, str]]) -> None:
        bounds = sorted((hhmm_to_minutes(s), hhmm_to_minutes(e)) for s, e in ranges)
        for (s1, e1), (s2, _) in zip(bounds, bounds[1:]):
            if s2 < e1:
                raise ValueError(f"Overlapping hours for {code!r} on day {day}")
        for s, e in bounds:
            if e <= s:
                raise ValueError(f"Empty or inverted range for {code!r} on day {day}")

    @property
    def locations(self) -> list[ClinicLocation]:
        return list(self._locations.values())

    @property
    def location_codes(self) -> tuple[str, ...]:
        return tuple(self._locations)

    def get(self, code: str) -> ClinicLocation | None:
        return self._locations.get(code)

    def time_slots_for(self, location_code: str, day_of_week: int) -> list[TimeSlot]:
        """Ordered, non-overlapping intervals offered at a location on a weekday."""
        loc = self._locations.get(location_code)
        if loc is None:
            return []
        slots: list[TimeSlot] = []
        for start, end in sorted(loc.hours.get(day_of_week, ()), key=lambda r: hhmm_to_minutes(r[0])):
            slots.extend(split_range(start, end, self.step_minutes))
        return slots

    def open_locations(self, day_of_week: int) -> list[ClinicLocation]:
        return [loc for loc in self._locations.values() if loc.hours.get(day_of_week)]

    def slots_per_day(self, day_of_week: int) -> int:
        return sum(len(self.time_slots_for(loc.code, day_of_week)) for loc in self.locations)


CLINIC_HOURS: tuple[ClinicLocation, ...] = (
    ClinicLocation(
        code="ghodasar",
        name="Ghodasar Clinic",
        address="R/1, Annapurna Society, Ghodasar, Ahmedabad - 380050",
        hours=_every(
            MON_TO_SAT,
            ("07:00", "08:30"),
            ("09:00", "12:00"),
            ("13:00", "14:00"),
            ("20:30", "22:30"),
        ),
    ),
    ClinicLocation(
        code="vastral",
        name="Vastral Clinic",
        address="Vastral Cross Road, Vastral, Ahmedabad - 382418",
        hours=_every(MON_TO_SAT, ("16:00", "19:00")),
    ),
    ClinicLocation(
        code="gandhinagar",
        name="Gandhinagar Clinic",
        address="122/2, Sector 4/A, Gandhinagar, Gujarat",
        # Sunday only
        hours=_every((SUNDAY,), ("12:00", "17:00")),
    ),
)

DEFAULT_CATALOG = ScheduleCatalog(CLINIC_HOURS)

LOCATION_CODES: tuple[str, ...] = DEFAULT_CATALOG.location_codes + EXTRA_LOCATION_CODES

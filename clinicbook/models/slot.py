from datetime import date, datetime

from pydantic import field_validator, model_validator
from sqlalchemy import CheckConstraint, DateTime, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from clinicbook.core import clock
from clinicbook.core.schedule import LOCATION_CODES

MIN_SLOT_MINUTES = 15
MAX_SLOT_MINUTES = 240

# A slot is booked exactly when it points at both a patient and an appointment
BOOKING_BINDING_SQL = (
    "(is_booked AND booked_by_id IS NOT NULL AND appointment_id IS NOT NULL) OR "
    "(NOT is_booked AND booked_by_id IS NULL AND appointment_id IS NULL)"
)


class Slot(SQLModel, table=True):
    __tablename__ = "slots"
    __table_args__ = (
        UniqueConstraint(
            "doctor_id", "slot_date", "start_time", "location",
            name="uq_slots_doctor_date_start_location",
        ),
        CheckConstraint(BOOKING_BINDING_SQL, name="ck_slots_booking_binding"),
        Index("ix_slots_date_available_booked", "slot_date", "is_available", "is_booked"),
    )

    id: int | None = Field(default=None, primary_key=True)
    doctor_id: int = Field(foreign_key="users.id", index=True)
    slot_date: date = Field(index=True)
    start_time: str = Field(max_length=5)  # HH:MM, clinic civil time
    end_time: str = Field(max_length=5)
    duration: int = 30  # minutes
    location: str = Field(default="clinic", max_length=32)
    is_available: bool = True  # False = withdrawn by admin without deleting
    is_booked: bool = False
    booked_by_id: int | None = Field(default=None, foreign_key="users.id")
    # Back-reference only; appointments are hard-deleted so this may dangle (orphan)
    appointment_id: int | None = Field(default=None, index=True)
    notes: str | None = None
    created_by_id: int = Field(foreign_key="users.id")
    created_at: datetime = Field(default_factory=clock.utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=clock.utc_now, sa_type=DateTime(timezone=True))

    @property
    def start_datetime(self) -> datetime:
        return clock.combine(self.slot_date, self.start_time)

    @property
    def end_datetime(self) -> datetime:
        return clock.combine(self.slot_date, self.end_time)


def slot_duration(start_time: str, end_time: str) -> int:
    """Return the duration implied by start/end or raise ValueError."""
    duration = clock.hhmm_to_minutes(end_time) - clock.hhmm_to_minutes(start_time)
    if duration <= 0:
        raise ValueError("End time must be after start time")
    if not MIN_SLOT_MINUTES <= duration <= MAX_SLOT_MINUTES:
        raise ValueError(
            f"Slot duration must be between {MIN_SLOT_MINUTES} and {MAX_SLOT_MINUTES} minutes"
        )
    return duration


class SlotCreate(SQLModel):
    slot_date: date
    start_time: str
    end_time: str
    location: str = "clinic"
    notes: str | None = None
    is_available: bool = True

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_hhmm(cls, value: str) -> str:
        return clock.parse_hhmm(value)

    @field_validator("location")
    @classmethod
    def validate_location(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in LOCATION_CODES:
            raise ValueError(f"Unknown location {value!r}")
        return normalized

    @model_validator(mode="after")
    def validate_range(self) -> "SlotCreate":
        slot_duration(self.start_time, self.end_time)
        return self

    @property
    def duration(self) -> int:
        return slot_duration(self.start_time, self.end_time)


class SlotUpdate(SQLModel):
    slot_date: date | None = None
    start_time: str | None = None
    end_time: str | None = None
    location: str | None = None
    notes: str | None = None
    is_available: bool | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_hhmm(cls, value: str | None) -> str | None:
        return clock.parse_hhmm(value) if value is not None else None

    @field_validator("location")
    @classmethod
    def validate_location(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in LOCATION_CODES:
            raise ValueError(f"Unknown location {value!r}")
        return normalized


class SlotPublic(SQLModel):
    id: int
    doctor_id: int
    slot_date: date
    start_time: str
    end_time: str
    duration: int
    location: str
    is_available: bool
    is_booked: bool
    booked_by_id: int | None = None
    appointment_id: int | None = None
    notes: str | None = None


def slot_to_public(slot: Slot, is_booked: bool | None = None) -> SlotPublic:
    """Public shape; `is_booked` overrides the stored flag (orphans report unbooked)."""
    booked = slot.is_booked if is_booked is None else is_booked
    return SlotPublic(
        id=slot.id,
        doctor_id=slot.doctor_id,
        slot_date=slot.slot_date,
        start_time=slot.start_time,
        end_time=slot.end_time,
        duration=slot.duration,
        location=slot.location,
        is_available=slot.is_available,
        is_booked=booked,
        booked_by_id=slot.booked_by_id if booked else None,
        appointment_id=slot.appointment_id if booked else None,
        notes=slot.notes,
    )

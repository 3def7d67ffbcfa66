from datetime import date
from typing import Any

from pydantic import BaseModel, field_validator, model_validator

from clinicbook.core import clock
from clinicbook.models.appointment import (
    AppointmentDetails,
    AppointmentDetailsUpdate,
    AppointmentPublic,
    AppointmentStatus,
)
from clinicbook.models.slot import SlotPublic


def _parse_date(value: Any) -> Any:
    if isinstance(value, str):
        return clock.parse_flexible_date(value)
    return value


class BookAppointmentRequest(AppointmentDetails):
    """Either `slot_id`, or `appointment_date` + `appointment_time` (HH:MM)."""

    slot_id: int | None = None
    appointment_date: date | None = None
    appointment_time: str | None = None
    # Staff only: book on behalf of this patient
    patient_id: int | None = None

    @field_validator("appointment_date", mode="before")
    @classmethod
    def parse_date(cls, value: Any) -> Any:
        return _parse_date(value)

    @field_validator("appointment_time")
    @classmethod
    def parse_time(cls, value: str | None) -> str | None:
        return clock.parse_hhmm(value) if value is not None else None

    @model_validator(mode="after")
    def require_target(self) -> "BookAppointmentRequest":
        if self.slot_id is None and (self.appointment_date is None or self.appointment_time is None):
            raise ValueError("Provide either slot_id or appointment_date and appointment_time")
        return self


class RescheduleRequest(AppointmentDetailsUpdate):
    slot_id: int | None = None
    new_date: date | None = None
    new_time: str | None = None

    @field_validator("new_date", mode="before")
    @classmethod
    def parse_date(cls, value: Any) -> Any:
        return _parse_date(value)

    @field_validator("new_time")
    @classmethod
    def parse_time(cls, value: str | None) -> str | None:
        return clock.parse_hhmm(value) if value is not None else None

    @model_validator(mode="after")
    def require_target(self) -> "RescheduleRequest":
        if self.slot_id is None and (self.new_date is None or self.new_time is None):
            raise ValueError("Provide either slot_id or new_date and new_time")
        return self

    def details_update(self) -> AppointmentDetailsUpdate:
        return AppointmentDetailsUpdate.model_validate(
            self.model_dump(exclude={"slot_id", "new_date", "new_time"}, exclude_unset=True)
        )


class StatusUpdateRequest(BaseModel):
    status: AppointmentStatus


class RejectRequest(BaseModel):
    reason: str | None = None


class BookingResponse(BaseModel):
    appointment: AppointmentPublic
    slot: SlotPublic | None = None


class RemovedAppointmentResponse(BaseModel):
    message: str
    appointment_id: int
    status: AppointmentStatus
    released_slot: SlotPublic | None = None

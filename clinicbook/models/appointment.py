from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import field_validator
from sqlalchemy import JSON, Column, DateTime, Index, String, text
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel

from clinicbook.core import clock
from clinicbook.core.errors import InvalidTransition


def _value_enum(enum_cls: type[Enum], length: int) -> SAEnum:
    """Store enum values (not names) in a plain VARCHAR column."""
    return SAEnum(enum_cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=length)


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"
    REJECTED = "rejected"


class AppointmentAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"
    SET_STATUS = "set_status"


class ServiceType(str, Enum):
    GYNAECOLOGICAL = "Gynaecological Problems"
    DERMATOLOGIST = "Dermatologist Problems"
    ORTHO = "Ortho Problems"
    PAEDIATRIC = "Paediatric Problems"
    SKIN = "Skin Related Issues"
    SEXUAL_HEALTH = "Sex Related Problems"
    UROLOGY = "Urology Problems"
    AYURVEDIC = "Ayurvedic Treatment"
    HOMOEOPATHIC = "Homoepathic Medicine"
    OTHER = "Other"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


_S = AppointmentStatus
_A = AppointmentAction

# Statuses that hold the doctor's time; at most one per (doctor, date, time)
ACTIVE_STATUSES = frozenset({_S.SCHEDULED, _S.CONFIRMED, _S.IN_PROGRESS})
# Never stored: reaching one of these deletes the appointment
REMOVED_STATUSES = frozenset({_S.CANCELLED, _S.REJECTED})
STORED_STATUSES = frozenset(_S) - REMOVED_STATUSES
_NOT_CANCELLABLE = frozenset({_S.COMPLETED, _S.CANCELLED, _S.NO_SHOW})


def _build_transitions() -> dict[tuple[AppointmentStatus, AppointmentAction], frozenset[AppointmentStatus]]:
    table: dict[tuple[AppointmentStatus, AppointmentAction], frozenset[AppointmentStatus]] = {
        (_S.PENDING, _A.APPROVE): frozenset({_S.CONFIRMED}),
        (_S.PENDING, _A.REJECT): frozenset({_S.REJECTED}),
        (_S.PENDING, _A.SET_STATUS): frozenset({_S.PENDING, _S.CONFIRMED, _S.REJECTED, _S.CANCELLED}),
    }
    for status in _S:
        # No time-based restriction: past-dated appointments stay cancellable
        if status not in _NOT_CANCELLABLE:
            table[(status, _A.CANCEL)] = frozenset({_S.CANCELLED})
            if status is not _S.IN_PROGRESS:
                table[(status, _A.RESCHEDULE)] = frozenset({_S.CONFIRMED})
    # Staff may move an active appointment to any status; rejected stays pending-only
    for status in ACTIVE_STATUSES:
        table[(status, _A.SET_STATUS)] = STORED_STATUSES | {_S.CANCELLED}
    # Corrections of a finished appointment; it is not cancellable from here
    for status in _NOT_CANCELLABLE - REMOVED_STATUSES:
        table[(status, _A.SET_STATUS)] = STORED_STATUSES
    return table


TRANSITIONS = _build_transitions()


def transition(
    current: AppointmentStatus | str,
    action: AppointmentAction,
    target: AppointmentStatus | None = None,
) -> AppointmentStatus:
    """Resulting status for `action` from `current`, or InvalidTransition.

    A result in REMOVED_STATUSES means the appointment is deleted.
    """
    status = AppointmentStatus(current)
    allowed = TRANSITIONS.get((status, action), frozenset())
    if target is None:
        if len(allowed) != 1:
            raise InvalidTransition(status.value, action.value)
        return next(iter(allowed))
    if target not in allowed:
        raise InvalidTransition(status.value, action.value, target.value)
    return target


_ACTIVE_SQL = "status IN ({})".format(", ".join(f"'{s.value}'" for s in sorted(ACTIVE_STATUSES)))


class Payment(SQLModel):
    amount: float | None = Field(default=None, ge=0)
    currency: str = "INR"
    status: str = "pending"
    method: str | None = None
    transaction_id: str | None = None
    paid_at: datetime | None = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        if value not in ("INR", "USD"):
            raise ValueError("Currency must be INR or USD")
        return value

    @field_validator("status")
    @classmethod
    def validate_status(cls, value: str) -> str:
        if value not in ("pending", "paid", "partially-paid", "refunded", "cancelled"):
            raise ValueError(f"Invalid payment status {value!r}")
        return value

    @field_validator("method")
    @classmethod
    def validate_method(cls, value: str | None) -> str | None:
        if value is not None and value not in ("cash", "card", "insurance", "online", "bank-transfer"):
            raise ValueError(f"Invalid payment method {value!r}")
        return value


class Appointment(SQLModel, table=True):
    """A patient's reservation, denormalized from the slot it was booked against."""

    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            "uq_appointments_doctor_active_time",
            "doctor_id", "appointment_date", "appointment_time",
            unique=True,
            postgresql_where=text(_ACTIVE_SQL),
            sqlite_where=text(_ACTIVE_SQL),
        ),
        Index("ix_appointments_patient_date", "patient_id", "appointment_date"),
    )

    id: int | None = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="users.id", index=True)
    doctor_id: int = Field(foreign_key="users.id", index=True)
    appointment_date: date = Field(index=True)
    appointment_time: str = Field(max_length=5)  # HH:MM, clinic civil time
    duration: int = 30
    service: ServiceType = Field(sa_column=Column(_value_enum(ServiceType, 64), nullable=False))
    status: AppointmentStatus = Field(
        default=AppointmentStatus.CONFIRMED,
        sa_column=Column(_value_enum(AppointmentStatus, 16), nullable=False, index=True),
    )
    priority: Priority = Field(
        default=Priority.NORMAL,
        sa_column=Column(_value_enum(Priority, 16), nullable=False),
    )
    reason: str = Field(max_length=500)
    symptoms: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    patient_notes: str | None = None
    doctor_notes: str | None = None
    payment: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    is_emergency: bool = False
    location: str = Field(default="clinic", sa_column=Column(String(32), nullable=False))
    created_by_id: int | None = Field(default=None, foreign_key="users.id")
    updated_by_id: int | None = Field(default=None, foreign_key="users.id")
    created_at: datetime = Field(default_factory=clock.utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=clock.utc_now, sa_type=DateTime(timezone=True))

    @property
    def start_datetime(self) -> datetime:
        return clock.combine(self.appointment_date, self.appointment_time)

    @property
    def end_datetime(self) -> datetime:
        return self.start_datetime + timedelta(minutes=self.duration)

    def can_be_cancelled(self) -> bool:
        return (AppointmentStatus(self.status), AppointmentAction.CANCEL) in TRANSITIONS

    def can_be_rescheduled(self) -> bool:
        return (AppointmentStatus(self.status), AppointmentAction.RESCHEDULE) in TRANSITIONS


class AppointmentDetails(SQLModel):
    """Patient-supplied details carried onto a booked appointment."""

    service: ServiceType
    reason: str
    symptoms: list[str] = Field(default_factory=list)
    priority: Priority = Priority.NORMAL
    duration: int | None = Field(default=None, ge=15, le=240)
    is_emergency: bool = False
    patient_notes: str | None = None
    payment: Payment | None = None

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Reason for appointment is required")
        if len(normalized) > 500:
            raise ValueError("Reason cannot exceed 500 characters")
        return normalized


class AppointmentDetailsUpdate(SQLModel):
    """Optional overrides applied on reschedule; unset fields keep their value."""

    service: ServiceType | None = None
    reason: str | None = Field(default=None, max_length=500)
    symptoms: list[str] | None = None
    priority: Priority | None = None
    duration: int | None = Field(default=None, ge=15, le=240)


class AppointmentPublic(SQLModel):
    id: int
    patient_id: int
    doctor_id: int
    appointment_date: date
    appointment_time: str
    duration: int
    service: ServiceType
    status: AppointmentStatus
    priority: Priority
    reason: str
    symptoms: list[str] = []
    patient_notes: str | None = None
    doctor_notes: str | None = None
    payment: dict[str, Any] | None = None
    is_emergency: bool = False
    location: str
    can_be_cancelled: bool
    can_be_rescheduled: bool
    created_at: datetime
    updated_at: datetime


def appointment_to_public(a: Appointment) -> AppointmentPublic:
    return AppointmentPublic(
        id=a.id,
        patient_id=a.patient_id,
        doctor_id=a.doctor_id,
        appointment_date=a.appointment_date,
        appointment_time=a.appointment_time,
        duration=a.duration,
        service=a.service,
        status=a.status,
        priority=a.priority,
        reason=a.reason,
        symptoms=list(a.symptoms or []),
        patient_notes=a.patient_notes,
        doctor_notes=a.doctor_notes,
        payment=a.payment,
        is_emergency=a.is_emergency,
        location=a.location,
        can_be_cancelled=a.can_be_cancelled(),
        can_be_rescheduled=a.can_be_rescheduled(),
        created_at=a.created_at,
        updated_at=a.updated_at,
    )

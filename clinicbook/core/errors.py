from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_TRANSITION = "invalid_transition"


class BookingFailure(str, Enum):
    """Expected, user-facing outcomes of booking operations."""

    SLOT_NOT_FOUND = "slot_not_found"
    APPOINTMENT_NOT_FOUND = "appointment_not_found"
    PRACTITIONER_NOT_FOUND = "practitioner_not_found"
    SLOT_UNAVAILABLE = "slot_unavailable"
    DOCTOR_CONFLICT = "doctor_conflict"
    SLOT_EXISTS = "slot_exists"
    SLOT_BOOKED = "slot_booked"
    INVALID_TRANSITION = "invalid_transition"

    @property
    def kind(self) -> ErrorKind:
        if self in (
            BookingFailure.SLOT_NOT_FOUND,
            BookingFailure.APPOINTMENT_NOT_FOUND,
            BookingFailure.PRACTITIONER_NOT_FOUND,
        ):
            return ErrorKind.NOT_FOUND
        if self is BookingFailure.INVALID_TRANSITION:
            return ErrorKind.INVALID_TRANSITION
        return ErrorKind.CONFLICT

    @property
    def is_conflict(self) -> bool:
        return self.kind is ErrorKind.CONFLICT


@dataclass
class BookingResult:
    """Outcome of a booking operation: either the bound records or a failure."""

    appointment: Any = None
    slot: Any = None
    failure: BookingFailure | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def fail(cls, failure: BookingFailure, detail: str) -> "BookingResult":
        return cls(failure=failure, detail=detail)


class ValidationFailure(ValueError):
    """Malformed date, time or field value. Rejected, never coerced."""


class StorageFailure(Exception):
    """Transient storage problem (timeout, lost connection). Safe to retry."""


class InvalidTransition(Exception):
    def __init__(self, current: str, action: str, target: str | None = None) -> None:
        self.current = current
        self.action = action
        self.target = target
        msg = f"Cannot {action} an appointment in status {current!r}"
        if target:
            msg += f" (to {target!r})"
        super().__init__(msg)


class PractitionerNotFound(LookupError):
    pass

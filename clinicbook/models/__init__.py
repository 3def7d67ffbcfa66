from clinicbook.models.user import User, UserRole
from clinicbook.models.slot import Slot, SlotCreate, SlotPublic, SlotUpdate
from clinicbook.models.appointment import (
    Appointment,
    AppointmentDetails,
    AppointmentPublic,
    AppointmentStatus,
)

__all__ = [
    "User",
    "UserRole",
    "Slot",
    "SlotCreate",
    "SlotPublic",
    "SlotUpdate",
    "Appointment",
    "AppointmentDetails",
    "AppointmentPublic",
    "AppointmentStatus",
]

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbook.api.deps import get_current_user, get_session, raise_for_failure, require_roles
from clinicbook.api.schemas.appointment import (
    BookAppointmentRequest,
    BookingResponse,
    RejectRequest,
    RemovedAppointmentResponse,
    RescheduleRequest,
    StatusUpdateRequest,
)
from clinicbook.core import clock
from clinicbook.core.db import storage_guard
from clinicbook.core.errors import BookingFailure, BookingResult
from clinicbook.models.appointment import (
    Appointment,
    AppointmentDetails,
    AppointmentPublic,
    AppointmentStatus,
    appointment_to_public,
)
from clinicbook.models.slot import slot_to_public
from clinicbook.models.user import PRACTITIONER_ROLES, STAFF_ROLES, User, UserRole
from clinicbook.services import appointment_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/appointments", tags=["appointments"])

require_staff = require_roles(*STAFF_ROLES)
require_admin = require_roles(UserRole.ADMIN)


def _booking_response(result: BookingResult) -> BookingResponse:
    return BookingResponse(
        appointment=appointment_to_public(result.appointment),
        slot=slot_to_public(result.slot) if result.slot is not None else None,
    )


def _removed_response(
    result: BookingResult, status_value: AppointmentStatus, message: str
) -> RemovedAppointmentResponse:
    return RemovedAppointmentResponse(
        message=message,
        appointment_id=result.appointment.id,
        status=status_value,
        released_slot=slot_to_public(result.slot) if result.slot is not None else None,
    )


async def _load_owned(session: AsyncSession, appointment_id: int, user: User) -> Appointment:
    """Fetch an appointment the user may act on: their own, or any for staff."""
    appointment = await appointment_service.get_appointment(session, appointment_id)
    if appointment is None:
        raise_for_failure(BookingResult.fail(BookingFailure.APPOINTMENT_NOT_FOUND, "Appointment not found"))
    if not user.is_staff and appointment.patient_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to access this appointment",
        )
    return appointment


async def _resolve_patient(session: AsyncSession, body: BookAppointmentRequest, user: User) -> int:
    if body.patient_id is None or body.patient_id == user.id:
        if user.role in PRACTITIONER_ROLES:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Doctors and admins cannot book appointments for themselves",
            )
        return user.id
    if not user.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Patients can only book appointments for themselves",
        )
    patient = await session.get(User, body.patient_id)
    if patient is None or not patient.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    return patient.id


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    body: BookAppointmentRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> BookingResponse:
    details = AppointmentDetails.model_validate(
        body.model_dump(exclude={"slot_id", "appointment_date", "appointment_time", "patient_id"})
    )
    async with storage_guard():
        patient_id = await _resolve_patient(session, body, current_user)
        result = await appointment_service.book_appointment(
            session,
            patient_id,
            details,
            slot_id=body.slot_id,
            appointment_date=body.appointment_date,
            appointment_time=body.appointment_time,
            created_by_id=current_user.id,
        )
        raise_for_failure(result)
        await session.commit()
    return _booking_response(result)


@router.get("", response_model=list[AppointmentPublic])
async def list_appointments(
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    from_date: str | None = Query(None),
    to_date: str | None = Query(None),
    patient_id: int | None = Query(None),
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> list[AppointmentPublic]:
    """Patients see their own appointments; staff see all, optionally for one patient."""
    start = clock.parse_flexible_date(from_date) if from_date else None
    end = clock.parse_flexible_date(to_date) if to_date else None
    owner = patient_id if current_user.is_staff else current_user.id
    async with storage_guard():
        appointments = await appointment_service.list_appointments(
            session, patient_id=owner, status=status_filter, from_date=start, to_date=end
        )
    return [appointment_to_public(a) for a in appointments]


@router.get("/upcoming", response_model=list[AppointmentPublic])
async def list_upcoming(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> list[AppointmentPublic]:
    owner = None if current_user.is_staff else current_user.id
    async with storage_guard():
        appointments = await appointment_service.list_upcoming(session, patient_id=owner)
    return [appointment_to_public(a) for a in appointments]


@router.get("/pending", response_model=list[AppointmentPublic])
async def list_pending(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_staff),
) -> list[AppointmentPublic]:
    async with storage_guard():
        appointments = await appointment_service.list_pending(session)
    return [appointment_to_public(a) for a in appointments]


@router.get("/{appointment_id}", response_model=AppointmentPublic)
async def read_appointment(
    appointment_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> AppointmentPublic:
    async with storage_guard():
        appointment = await _load_owned(session, appointment_id, current_user)
    return appointment_to_public(appointment)


@router.patch("/{appointment_id}/status", response_model=AppointmentPublic | RemovedAppointmentResponse)
async def update_status(
    appointment_id: int,
    body: StatusUpdateRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_staff),
) -> AppointmentPublic | RemovedAppointmentResponse:
    async with storage_guard():
        result = await appointment_service.set_status(
            session, appointment_id, body.status, actor_id=current_user.id
        )
        raise_for_failure(result)
        await session.commit()
    if body.status in (AppointmentStatus.CANCELLED, AppointmentStatus.REJECTED):
        return _removed_response(result, body.status, f"Appointment {body.status.value} and removed")
    return appointment_to_public(result.appointment)


@router.delete("/{appointment_id}", response_model=RemovedAppointmentResponse)
async def cancel_appointment(
    appointment_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> RemovedAppointmentResponse:
    async with storage_guard():
        await _load_owned(session, appointment_id, current_user)
        result = await appointment_service.cancel_appointment(session, appointment_id, actor_id=current_user.id)
        raise_for_failure(result)
        await session.commit()
    return _removed_response(result, AppointmentStatus.CANCELLED, "Appointment cancelled and removed successfully")


@router.post("/{appointment_id}/approve", response_model=AppointmentPublic)
async def approve_appointment(
    appointment_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_admin),
) -> AppointmentPublic:
    async with storage_guard():
        result = await appointment_service.approve_appointment(session, appointment_id, actor_id=current_user.id)
        raise_for_failure(result)
        await session.commit()
    return appointment_to_public(result.appointment)


@router.post("/{appointment_id}/reject", response_model=RemovedAppointmentResponse)
async def reject_appointment(
    appointment_id: int,
    body: RejectRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_admin),
) -> RemovedAppointmentResponse:
    async with storage_guard():
        result = await appointment_service.reject_appointment(
            session, appointment_id, reason=body.reason, actor_id=current_user.id
        )
        raise_for_failure(result)
        await session.commit()
    return _removed_response(result, AppointmentStatus.REJECTED, "Appointment rejected and removed")


@router.put("/{appointment_id}/reschedule", response_model=BookingResponse)
async def reschedule_appointment(
    appointment_id: int,
    body: RescheduleRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> BookingResponse:
    async with storage_guard():
        await _load_owned(session, appointment_id, current_user)
        result = await appointment_service.reschedule_appointment(
            session,
            appointment_id,
            slot_id=body.slot_id,
            new_date=body.new_date,
            new_time=body.new_time,
            updates=body.details_update(),
            actor_id=current_user.id,
        )
        raise_for_failure(result)
        await session.commit()
    return _booking_response(result)

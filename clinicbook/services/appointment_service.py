"""Booking transaction and appointment lifecycle.

Every mutating function here runs on the caller's session as one unit of work:
it either returns a bound (appointment, slot) pair, or rolls the session back
and returns a BookingResult carrying the failure. Callers must not have other
pending changes on the session when calling in.
"""
import logging
from datetime import date, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbook.core import clock
from clinicbook.core.config import settings
from clinicbook.core.errors import (
    BookingFailure,
    BookingResult,
    InvalidTransition,
    PractitionerNotFound,
    ValidationFailure,
)
from clinicbook.models.appointment import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentAction,
    AppointmentDetails,
    AppointmentDetailsUpdate,
    AppointmentStatus,
    transition,
)
from clinicbook.models.slot import Slot
from clinicbook.services.practitioner_service import get_practitioner_id
from clinicbook.services.slot_service import find_slot, get_slot

logger = logging.getLogger(__name__)


def check_booking_date(d: date) -> None:
    today = clock.today()
    if d < today:
        raise ValidationFailure("Appointment date cannot be in the past. Please select today or a future date.")
    if d > today + timedelta(days=settings.max_advance_booking_days):
        raise ValidationFailure(
            f"Appointment date cannot be more than {settings.max_advance_booking_days} days in advance"
        )


async def get_appointment(session: AsyncSession, appointment_id: int) -> Appointment | None:
    return await session.get(Appointment, appointment_id)


async def has_doctor_conflict(
    session: AsyncSession,
    doctor_id: int,
    d: date,
    time_hhmm: str,
    exclude_id: int | None = None,
) -> bool:
    """True when another active appointment already holds doctor/date/time."""
    q = select(Appointment.id).where(
        Appointment.doctor_id == doctor_id,
        Appointment.appointment_date == d,
        Appointment.appointment_time == time_hhmm,
        Appointment.status.in_(ACTIVE_STATUSES),
    )
    if exclude_id is not None:
        q = q.where(Appointment.id != exclude_id)
    result = await session.execute(q.limit(1))
    return result.scalar_one_or_none() is not None


async def _is_free(session: AsyncSession, slot: Slot) -> bool:
    if not slot.is_available:
        return False
    if not slot.is_booked:
        return True
    # Booked but pointing at a deleted appointment: orphan, treat as free
    return slot.appointment_id is None or await session.get(Appointment, slot.appointment_id) is None


async def _claim_slot(session: AsyncSession, slot_id: int, patient_id: int, appointment_id: int) -> bool:
    """Bind the slot to the appointment if it is still free at write time.

    The slot row is locked first and the orphan check runs after the lock is
    held, so it sees an appointment committed by whoever held the lock before.
    The final update only applies while the row still matches what was read.
    """
    result = await session.execute(
        select(Slot.is_available, Slot.is_booked, Slot.appointment_id)
        .where(Slot.id == slot_id)
        .with_for_update()
    )
    row = result.one_or_none()
    if row is None or not row.is_available:
        return False
    if row.is_booked and row.appointment_id is not None:
        bound = await session.execute(select(Appointment.id).where(Appointment.id == row.appointment_id))
        if bound.scalar_one_or_none() is not None:
            return False
    held_by = Slot.appointment_id.is_(None) if row.appointment_id is None else Slot.appointment_id == row.appointment_id
    result = await session.execute(
        update(Slot)
        .where(Slot.id == slot_id, Slot.is_booked == row.is_booked, held_by)
        .values(
            is_booked=True,
            booked_by_id=patient_id,
            appointment_id=appointment_id,
            updated_at=clock.utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _resolve_slot(
    session: AsyncSession,
    doctor_id: int,
    slot_id: int | None,
    d: date | None,
    time_hhmm: str | None,
) -> Slot | None:
    if slot_id is not None:
        return await get_slot(session, slot_id)
    if d is None or time_hhmm is None:
        raise ValidationFailure("Provide either a slot id or an appointment date and time")
    return await find_slot(session, doctor_id, d, time_hhmm)


async def _fail(session: AsyncSession, failure: BookingFailure, detail: str) -> BookingResult:
    await session.rollback()
    logger.info("Booking rejected (%s): %s", failure.value, detail)
    return BookingResult.fail(failure, detail)


async def book_appointment(
    session: AsyncSession,
    patient_id: int,
    details: AppointmentDetails,
    *,
    slot_id: int | None = None,
    appointment_date: date | None = None,
    appointment_time: str | None = None,
    created_by_id: int | None = None,
    requires_approval: bool | None = None,
) -> BookingResult:
    """Claim a slot for a new appointment.

    The slot is identified either by id or by (practitioner, date, time). The
    appointment row and the slot's booking fields are written in the same
    transaction; the slot claim is a conditional update so two concurrent
    bookings of one slot cannot both succeed.
    """
    try:
        doctor_id = await get_practitioner_id(session)
    except PractitionerNotFound as e:
        return BookingResult.fail(BookingFailure.PRACTITIONER_NOT_FOUND, str(e))

    slot = await _resolve_slot(session, doctor_id, slot_id, appointment_date, appointment_time)
    if slot is None:
        return BookingResult.fail(
            BookingFailure.SLOT_NOT_FOUND,
            "No slot found for the requested time. Please choose a different time.",
        )
    check_booking_date(slot.slot_date)
    if not await _is_free(session, slot):
        return BookingResult.fail(BookingFailure.SLOT_UNAVAILABLE, "This slot is no longer available")
    if await has_doctor_conflict(session, slot.doctor_id, slot.slot_date, slot.start_time):
        return BookingResult.fail(BookingFailure.DOCTOR_CONFLICT, "Doctor is not available at this time")

    approval = settings.booking_requires_approval if requires_approval is None else requires_approval
    appointment = Appointment(
        patient_id=patient_id,
        doctor_id=slot.doctor_id,
        appointment_date=slot.slot_date,
        appointment_time=slot.start_time,
        duration=details.duration or slot.duration,
        service=details.service,
        status=AppointmentStatus.PENDING if approval else AppointmentStatus.CONFIRMED,
        priority=details.priority,
        reason=details.reason,
        symptoms=list(details.symptoms),
        patient_notes=details.patient_notes,
        payment=details.payment.model_dump(mode="json") if details.payment else None,
        is_emergency=details.is_emergency,
        location=slot.location,
        created_by_id=created_by_id or patient_id,
    )
    slot_pk = slot.id
    try:
        session.add(appointment)
        try:
            await session.flush()
        except IntegrityError:
            return await _fail(session, BookingFailure.DOCTOR_CONFLICT, "Doctor is not available at this time")
        if not await _claim_slot(session, slot_pk, patient_id, appointment.id):
            return await _fail(session, BookingFailure.SLOT_UNAVAILABLE, "This slot is no longer available")
    except Exception:
        await session.rollback()
        raise

    await session.refresh(slot)
    await session.refresh(appointment)
    logger.info(
        "Booked appointment %d for patient %d at %s %s (%s), slot %d",
        appointment.id, patient_id, appointment.appointment_date, appointment.appointment_time,
        appointment.location, slot.id,
    )
    return BookingResult(appointment=appointment, slot=slot)


async def release(session: AsyncSession, appointment_id: int) -> Slot | None:
    """Free the slot bound to an appointment. Missing slot is logged, not an error."""
    result = await session.execute(
        select(Slot).where(Slot.appointment_id == appointment_id, Slot.is_booked == True)  # noqa: E712
    )
    slots = list(result.scalars().all())
    if not slots:
        logger.info("No bound slot found for appointment %d", appointment_id)
        return None
    for slot in slots:
        slot.is_booked = False
        slot.booked_by_id = None
        slot.appointment_id = None
        slot.updated_at = clock.utc_now()
        session.add(slot)
    await session.flush()
    return slots[0]


async def _delete_with_release(session: AsyncSession, appointment: Appointment) -> Slot | None:
    try:
        slot = await release(session, appointment.id)
        await session.delete(appointment)
        await session.flush()
    except Exception:
        await session.rollback()
        raise
    return slot


async def cancel_appointment(
    session: AsyncSession, appointment_id: int, actor_id: int | None = None
) -> BookingResult:
    """Cancel = release the bound slot and hard-delete the appointment."""
    appointment = await get_appointment(session, appointment_id)
    if not appointment:
        return BookingResult.fail(BookingFailure.APPOINTMENT_NOT_FOUND, "Appointment not found")
    try:
        transition(appointment.status, AppointmentAction.CANCEL)
    except InvalidTransition:
        return BookingResult.fail(BookingFailure.INVALID_TRANSITION, "This appointment cannot be cancelled")
    slot = await _delete_with_release(session, appointment)
    logger.info("Cancelled and deleted appointment %d (actor %s)", appointment_id, actor_id)
    return BookingResult(appointment=appointment, slot=slot)


async def reschedule_appointment(
    session: AsyncSession,
    appointment_id: int,
    *,
    slot_id: int | None = None,
    new_date: date | None = None,
    new_time: str | None = None,
    updates: AppointmentDetailsUpdate | None = None,
    actor_id: int | None = None,
) -> BookingResult:
    """Move an appointment onto another slot, keeping its id.

    Releases the old slot, rewrites date/time/duration/location in place, binds
    the new slot and sets the status back to confirmed, all in one transaction.
    """
    appointment = await get_appointment(session, appointment_id)
    if not appointment:
        return BookingResult.fail(BookingFailure.APPOINTMENT_NOT_FOUND, "Appointment not found")
    try:
        new_status = transition(appointment.status, AppointmentAction.RESCHEDULE)
    except InvalidTransition:
        return BookingResult.fail(BookingFailure.INVALID_TRANSITION, "This appointment cannot be rescheduled")

    new_slot = await _resolve_slot(session, appointment.doctor_id, slot_id, new_date, new_time)
    if new_slot is None:
        return BookingResult.fail(BookingFailure.SLOT_NOT_FOUND, "New slot not found")
    check_booking_date(new_slot.slot_date)
    same_slot = new_slot.is_booked and new_slot.appointment_id == appointment.id
    if not same_slot and not await _is_free(session, new_slot):
        return BookingResult.fail(BookingFailure.SLOT_UNAVAILABLE, "The selected slot is no longer available")
    if await has_doctor_conflict(
        session, new_slot.doctor_id, new_slot.slot_date, new_slot.start_time, exclude_id=appointment.id
    ):
        return BookingResult.fail(BookingFailure.DOCTOR_CONFLICT, "Doctor is not available at this time")

    changes = updates.model_dump(exclude_unset=True, exclude_none=True) if updates else {}
    new_slot_pk = new_slot.id
    try:
        if not same_slot:
            await release(session, appointment.id)
        appointment.appointment_date = new_slot.slot_date
        appointment.appointment_time = new_slot.start_time
        appointment.duration = changes.pop("duration", None) or new_slot.duration
        appointment.location = new_slot.location
        for key, value in changes.items():
            setattr(appointment, key, value)
        appointment.status = new_status
        appointment.updated_by_id = actor_id
        appointment.updated_at = clock.utc_now()
        session.add(appointment)
        try:
            await session.flush()
        except IntegrityError:
            return await _fail(session, BookingFailure.DOCTOR_CONFLICT, "Doctor is not available at this time")
        if not same_slot and not await _claim_slot(
            session, new_slot_pk, appointment.patient_id, appointment.id
        ):
            return await _fail(
                session, BookingFailure.SLOT_UNAVAILABLE, "The selected slot is no longer available"
            )
    except Exception:
        await session.rollback()
        raise

    await session.refresh(new_slot)
    await session.refresh(appointment)
    logger.info(
        "Rescheduled appointment %d to %s %s (%s), slot %d",
        appointment.id, appointment.appointment_date, appointment.appointment_time,
        appointment.location, new_slot.id,
    )
    return BookingResult(appointment=appointment, slot=new_slot)


async def _save_status(
    session: AsyncSession, appointment: Appointment, status: AppointmentStatus, actor_id: int | None
) -> BookingResult:
    if (
        status in ACTIVE_STATUSES
        and AppointmentStatus(appointment.status) not in ACTIVE_STATUSES
        and await has_doctor_conflict(
            session,
            appointment.doctor_id,
            appointment.appointment_date,
            appointment.appointment_time,
            exclude_id=appointment.id,
        )
    ):
        return BookingResult.fail(BookingFailure.DOCTOR_CONFLICT, "Doctor is not available at this time")
    appointment.status = status
    appointment.updated_by_id = actor_id
    appointment.updated_at = clock.utc_now()
    session.add(appointment)
    try:
        await session.flush()
    except IntegrityError:
        return await _fail(session, BookingFailure.DOCTOR_CONFLICT, "Doctor is not available at this time")
    await session.refresh(appointment)
    return BookingResult(appointment=appointment)


async def approve_appointment(
    session: AsyncSession, appointment_id: int, actor_id: int | None = None
) -> BookingResult:
    appointment = await get_appointment(session, appointment_id)
    if not appointment:
        return BookingResult.fail(BookingFailure.APPOINTMENT_NOT_FOUND, "Appointment not found")
    try:
        status = transition(appointment.status, AppointmentAction.APPROVE)
    except InvalidTransition:
        return BookingResult.fail(BookingFailure.INVALID_TRANSITION, "Only pending appointments can be approved")
    return await _save_status(session, appointment, status, actor_id)


async def reject_appointment(
    session: AsyncSession, appointment_id: int, reason: str | None = None, actor_id: int | None = None
) -> BookingResult:
    """Reject a pending appointment: record the reason, free its slot, delete it."""
    appointment = await get_appointment(session, appointment_id)
    if not appointment:
        return BookingResult.fail(BookingFailure.APPOINTMENT_NOT_FOUND, "Appointment not found")
    try:
        transition(appointment.status, AppointmentAction.REJECT)
    except InvalidTransition:
        return BookingResult.fail(BookingFailure.INVALID_TRANSITION, "Only pending appointments can be rejected")
    logger.info(
        "Rejecting appointment %d for patient %d (actor %s): %s",
        appointment.id, appointment.patient_id, actor_id, reason or "no reason given",
    )
    appointment.doctor_notes = reason
    slot = await _delete_with_release(session, appointment)
    appointment.status = AppointmentStatus.REJECTED
    return BookingResult(appointment=appointment, slot=slot)


async def set_status(
    session: AsyncSession, appointment_id: int, status: AppointmentStatus, actor_id: int | None = None
) -> BookingResult:
    """Staff status update. Moving to cancelled/rejected deletes the appointment."""
    appointment = await get_appointment(session, appointment_id)
    if not appointment:
        return BookingResult.fail(BookingFailure.APPOINTMENT_NOT_FOUND, "Appointment not found")
    try:
        target = transition(appointment.status, AppointmentAction.SET_STATUS, status)
    except InvalidTransition as e:
        return BookingResult.fail(BookingFailure.INVALID_TRANSITION, str(e))
    if target is AppointmentStatus.CANCELLED:
        return await cancel_appointment(session, appointment_id, actor_id=actor_id)
    if target is AppointmentStatus.REJECTED:
        return await reject_appointment(session, appointment_id, actor_id=actor_id)
    return await _save_status(session, appointment, target, actor_id)


async def list_appointments(
    session: AsyncSession,
    patient_id: int | None = None,
    status: AppointmentStatus | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
) -> list[Appointment]:
    q = select(Appointment).order_by(Appointment.appointment_date, Appointment.appointment_time)
    if patient_id is not None:
        q = q.where(Appointment.patient_id == patient_id)
    if status is not None:
        q = q.where(Appointment.status == status)
    if from_date:
        q = q.where(Appointment.appointment_date >= from_date)
    if to_date:
        q = q.where(Appointment.appointment_date <= to_date)
    result = await session.execute(q)
    return list(result.scalars().all())


async def list_pending(session: AsyncSession) -> list[Appointment]:
    result = await session.execute(
        select(Appointment)
        .where(Appointment.status == AppointmentStatus.PENDING)
        .order_by(Appointment.created_at.desc())
    )
    return list(result.scalars().all())


async def list_upcoming(session: AsyncSession, patient_id: int | None = None) -> list[Appointment]:
    q = (
        select(Appointment)
        .where(
            Appointment.appointment_date >= clock.today(),
            Appointment.status.in_((AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)),
        )
        .order_by(Appointment.appointment_date, Appointment.appointment_time)
    )
    if patient_id is not None:
        q = q.where(Appointment.patient_id == patient_id)
    result = await session.execute(q)
    return list(result.scalars().all())

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from clinicbook.core import clock
from clinicbook.core.config import settings
from clinicbook.core.errors import BookingFailure, BookingResult, ValidationFailure
from clinicbook.models.appointment import Appointment
from clinicbook.models.slot import Slot, SlotCreate, SlotUpdate, slot_duration

logger = logging.getLogger(__name__)


def orphan_clause() -> ColumnElement[bool]:
    """Slot flagged booked whose appointment no longer exists."""
    return and_(
        Slot.is_booked == True,  # noqa: E712
        ~exists().where(Appointment.id == Slot.appointment_id),
    )


async def get_slot(session: AsyncSession, slot_id: int) -> Slot | None:
    return await session.get(Slot, slot_id)


async def find_slot(
    session: AsyncSession,
    doctor_id: int,
    d: date,
    start_time: str,
    location: str | None = None,
) -> Slot | None:
    """Slot at doctor/date/time; prefers a claimable one when several locations match."""
    q = select(Slot).where(
        Slot.doctor_id == doctor_id,
        Slot.slot_date == d,
        Slot.start_time == clock.parse_hhmm(start_time),
    )
    if location:
        q = q.where(Slot.location == location)
    result = await session.execute(q.order_by(Slot.is_booked, Slot.location))
    return result.scalars().first()


async def list_slots(
    session: AsyncSession,
    d: date,
    location: str | None = None,
    doctor_id: int | None = None,
    include_unavailable: bool = False,
) -> list[tuple[Slot, bool]]:
    """Returns (slot, booked) for the date sorted by start time. `booked` is the
    effective flag: a slot whose appointment no longer exists is reported free."""
    q = (
        select(Slot, Appointment.id)
        .outerjoin(Appointment, Appointment.id == Slot.appointment_id)
        .where(Slot.slot_date == d)
    )
    if location:
        q = q.where(Slot.location == location)
    if doctor_id is not None:
        q = q.where(Slot.doctor_id == doctor_id)
    if not include_unavailable:
        q = q.where(Slot.is_available == True)  # noqa: E712
    result = await session.execute(q.order_by(Slot.start_time, Slot.location))
    return [(slot, bool(slot.is_booked and appointment_id is not None)) for slot, appointment_id in result.all()]


def drop_started_slots(
    rows: list[tuple[Slot, bool]], d: date, now: datetime | None = None
) -> list[tuple[Slot, bool]]:
    """For today, hide slots starting within the same-day buffer. Other dates pass through."""
    current = now or clock.now()
    if d != current.date():
        return rows
    cutoff = current.hour * 60 + current.minute + settings.same_day_buffer_minutes
    return [(s, booked) for s, booked in rows if clock.hhmm_to_minutes(s.start_time) > cutoff]


def check_bookable_date(d: date) -> None:
    """Public slot views only cover today through the booking horizon."""
    today = clock.today()
    if d < today:
        raise ValidationFailure("Cannot view slots for past dates. Please select today or a future date.")
    if d > today + timedelta(days=settings.booking_horizon_days):
        raise ValidationFailure(
            f"Appointments can only be booked for the next {settings.booking_horizon_days} days."
        )


async def _slot_exists(
    session: AsyncSession, doctor_id: int, d: date, start_time: str, location: str, exclude_id: int | None = None
) -> bool:
    q = select(Slot.id).where(
        Slot.doctor_id == doctor_id,
        Slot.slot_date == d,
        Slot.start_time == start_time,
        Slot.location == location,
    )
    if exclude_id is not None:
        q = q.where(Slot.id != exclude_id)
    result = await session.execute(q.limit(1))
    return result.scalar_one_or_none() is not None


async def create_slot(
    session: AsyncSession, doctor_id: int, data: SlotCreate, created_by_id: int
) -> BookingResult:
    if await _slot_exists(session, doctor_id, data.slot_date, data.start_time, data.location):
        return BookingResult.fail(BookingFailure.SLOT_EXISTS, "A slot already exists at this time")
    slot = Slot(
        doctor_id=doctor_id,
        slot_date=data.slot_date,
        start_time=data.start_time,
        end_time=data.end_time,
        duration=data.duration,
        location=data.location,
        notes=data.notes,
        is_available=data.is_available,
        created_by_id=created_by_id,
    )
    session.add(slot)
    await session.flush()
    await session.refresh(slot)
    return BookingResult(slot=slot)


async def update_slot(session: AsyncSession, slot_id: int, data: SlotUpdate) -> BookingResult:
    slot = await get_slot(session, slot_id)
    if not slot:
        return BookingResult.fail(BookingFailure.SLOT_NOT_FOUND, "Slot not found")
    if slot.is_booked:
        return BookingResult.fail(BookingFailure.SLOT_BOOKED, "Cannot update a booked slot")
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    start = changes.get("start_time", slot.start_time)
    end = changes.get("end_time", slot.end_time)
    try:
        duration = slot_duration(start, end)
    except ValueError as e:
        raise ValidationFailure(str(e)) from e
    new_date = changes.get("slot_date", slot.slot_date)
    new_location = changes.get("location", slot.location)
    if await _slot_exists(session, slot.doctor_id, new_date, start, new_location, exclude_id=slot.id):
        return BookingResult.fail(BookingFailure.SLOT_EXISTS, "A slot already exists at this time")
    for key, value in changes.items():
        setattr(slot, key, value)
    slot.duration = duration
    slot.updated_at = clock.utc_now()
    session.add(slot)
    await session.flush()
    return BookingResult(slot=slot)


async def delete_slot(session: AsyncSession, slot_id: int) -> BookingResult:
    slot = await get_slot(session, slot_id)
    if not slot:
        return BookingResult.fail(BookingFailure.SLOT_NOT_FOUND, "Slot not found")
    if slot.is_booked:
        return BookingResult.fail(
            BookingFailure.SLOT_BOOKED, "Cannot delete a booked slot. Cancel the appointment first."
        )
    await session.delete(slot)
    await session.flush()
    return BookingResult(slot=slot)


async def release_orphan_slots(session: AsyncSession) -> int:
    """Release every booked slot whose appointment no longer exists."""
    result = await session.execute(
        update(Slot)
        .where(orphan_clause())
        .values(is_booked=False, booked_by_id=None, appointment_id=None, updated_at=clock.utc_now())
        .execution_options(synchronize_session=False)
    )
    n = result.rowcount or 0
    if n:
        logger.warning("Released %d orphan slot(s) pointing at deleted appointments", n)
    return n


async def slot_stats(session: AsyncSession) -> dict[str, int]:
    today = clock.today()

    async def count(*conditions: ColumnElement[bool]) -> int:
        result = await session.execute(select(func.count(Slot.id)).where(*conditions))
        return int(result.scalar_one())

    return {
        "total_slots": await count(),
        "future_slots": await count(Slot.slot_date >= today),
        "booked_slots": await count(Slot.slot_date >= today, Slot.is_booked == True),  # noqa: E712
        "available_slots": await count(
            Slot.slot_date >= today,
            Slot.is_booked == False,  # noqa: E712
            Slot.is_available == True,  # noqa: E712
        ),
    }

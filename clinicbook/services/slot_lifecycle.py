"""Slot generation and cleanup for the rolling booking window.

Every operation is idempotent, commits per date or per record, and treats
"nothing to do" as success. Generation only touches dates from today on (past
dates are dropped) that are not yet materialized; cleanup only touches dates
strictly before today.
"""
import asyncio
import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import and_, delete, insert, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicbook.core import clock
from clinicbook.core.config import settings
from clinicbook.core.db import async_session_maker, storage_guard
from clinicbook.core.errors import PractitionerNotFound, ValidationFailure
from clinicbook.core.schedule import DEFAULT_CATALOG, ScheduleCatalog
from clinicbook.models.appointment import Appointment
from clinicbook.models.slot import Slot
from clinicbook.services.appointment_service import release
from clinicbook.services.practitioner_service import get_practitioner_id
from clinicbook.services.slot_service import orphan_clause, release_orphan_slots

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]

_SLOT_KEY = ("doctor_id", "slot_date", "start_time", "location")

# Guards against two rolling-window runs overlapping inside one process
_window_lock = asyncio.Lock()


@dataclass
class MaintenanceReport:
    slots_created: int = 0
    appointments_deleted: int = 0
    slots_freed: int = 0
    slots_deleted: int = 0
    failures: list[str] = field(default_factory=list)
    skipped: bool = False

    def merge(self, other: "MaintenanceReport") -> "MaintenanceReport":
        self.slots_created += other.slots_created
        self.appointments_deleted += other.appointments_deleted
        self.slots_freed += other.slots_freed
        self.slots_deleted += other.slots_deleted
        self.failures.extend(other.failures)
        self.skipped = self.skipped or other.skipped
        return self

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _insert_ignoring_duplicates(session: AsyncSession, rows: list[dict[str, Any]]):
    table = Slot.__table__
    dialect = session.bind.dialect.name if session.bind is not None else ""
    if dialect == "postgresql":
        return pg_insert(table).values(rows).on_conflict_do_nothing(index_elements=list(_SLOT_KEY))
    if dialect == "sqlite":
        return sqlite_insert(table).values(rows).on_conflict_do_nothing(index_elements=list(_SLOT_KEY))
    return insert(table).values(rows)


async def generate_slots_for_date(
    session: AsyncSession,
    d: date,
    doctor_id: int,
    catalog: ScheduleCatalog = DEFAULT_CATALOG,
) -> int:
    """Materialize every catalog interval for `d`, skipping ones that already exist.

    Existing slots are never touched, so their booking state survives re-runs.
    """
    dow = clock.day_of_week(d)
    now = clock.utc_now()
    wanted: list[dict[str, Any]] = []
    for loc in catalog.open_locations(dow):
        for ts in catalog.time_slots_for(loc.code, dow):
            wanted.append(
                {
                    "doctor_id": doctor_id,
                    "slot_date": d,
                    "start_time": ts.start,
                    "end_time": ts.end,
                    "duration": ts.duration_minutes,
                    "location": loc.code,
                    "notes": loc.notes,
                    "is_available": True,
                    "is_booked": False,
                    "created_by_id": doctor_id,
                    "created_at": now,
                    "updated_at": now,
                }
            )
    if not wanted:
        return 0
    result = await session.execute(
        select(Slot.start_time, Slot.location).where(Slot.doctor_id == doctor_id, Slot.slot_date == d)
    )
    existing = {(start, location) for start, location in result.all()}
    missing = [row for row in wanted if (row["start_time"], row["location"]) not in existing]
    if not missing:
        return 0
    result = await session.execute(_insert_ignoring_duplicates(session, missing))
    created = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(missing)
    if created:
        logger.info("Created %d slot(s) for %s", created, d.isoformat())
    return created


async def generate_slots(
    dates: Iterable[date],
    *,
    session_factory: SessionFactory | None = None,
    catalog: ScheduleCatalog = DEFAULT_CATALOG,
) -> MaintenanceReport:
    factory = session_factory or async_session_maker
    report = MaintenanceReport()
    today = clock.today()
    dates = [d for d in dates if d >= today]
    if not dates:
        return report
    async with factory() as session:
        try:
            doctor_id = await get_practitioner_id(session)
        except PractitionerNotFound as e:
            logger.error("Slot generation skipped: %s", e)
            report.failures.append(str(e))
            return report
    for d in dates:
        async with factory() as session:
            try:
                async with storage_guard():
                    report.slots_created += await generate_slots_for_date(session, d, doctor_id, catalog)
                    await session.commit()
            except Exception as e:
                await session.rollback()
                logger.exception("Slot generation failed for %s: %s", d.isoformat(), e)
                report.failures.append(f"{d.isoformat()}: {e}")
    return report


async def generate_slots_ahead(
    days_ahead: int | None = None,
    *,
    start_date: date | None = None,
    end_date: date | None = None,
    session_factory: SessionFactory | None = None,
    catalog: ScheduleCatalog = DEFAULT_CATALOG,
) -> MaintenanceReport:
    """Generate for the next `days_ahead` days, or for an inclusive date range."""
    if days_ahead is not None:
        if days_ahead < 1:
            raise ValidationFailure("days_ahead must be at least 1")
        dates = clock.window(days_ahead)
    elif start_date and end_date:
        if end_date < start_date:
            raise ValidationFailure("end_date must not be before start_date")
        today = clock.today()
        if end_date < today:
            raise ValidationFailure("Cannot generate slots for past dates")
        dates = clock.date_range(max(start_date, today), end_date)
    else:
        raise ValidationFailure("Please provide either days_ahead or start_date and end_date")
    return await generate_slots(dates, session_factory=session_factory, catalog=catalog)


async def ensure_rolling_window(
    horizon_days: int | None = None,
    *,
    session_factory: SessionFactory | None = None,
    catalog: ScheduleCatalog = DEFAULT_CATALOG,
) -> MaintenanceReport:
    """Guarantee slots exist for today through today + horizon - 1."""
    horizon = settings.booking_horizon_days if horizon_days is None else horizon_days
    if _window_lock.locked():
        logger.info("Rolling window generation already running, skipping")
        return MaintenanceReport(skipped=True)
    async with _window_lock:
        report = await generate_slots(clock.window(horizon), session_factory=session_factory, catalog=catalog)
    if report.slots_created:
        logger.info("Rolling window: created %d slot(s) for the next %d days", report.slots_created, horizon)
    else:
        logger.info("Rolling window: all slots already exist for the next %d days", horizon)
    return report


async def cleanup_past_appointments(*, session_factory: SessionFactory | None = None) -> MaintenanceReport:
    """Release the slot of, then delete, every appointment dated before today.

    Each appointment is handled in its own transaction; a failure is recorded
    and the rest of the batch continues.
    """
    factory = session_factory or async_session_maker
    report = MaintenanceReport()
    today = clock.today()
    async with factory() as session:
        async with storage_guard():
            result = await session.execute(
                select(Appointment.id).where(Appointment.appointment_date < today).order_by(Appointment.id)
            )
            ids = list(result.scalars().all())
    if not ids:
        logger.info("No past appointments to clean up")
        return report
    logger.info("Found %d past appointment(s) to clean up", len(ids))
    for appointment_id in ids:
        async with factory() as session:
            try:
                async with storage_guard():
                    appointment = await session.get(Appointment, appointment_id)
                    if appointment is None:
                        continue
                    slot = await release(session, appointment_id)
                    await session.delete(appointment)
                    await session.commit()
                report.appointments_deleted += 1
                if slot is not None:
                    report.slots_freed += 1
            except Exception as e:
                await session.rollback()
                logger.exception("Error cleaning up appointment %d: %s", appointment_id, e)
                report.failures.append(f"appointment {appointment_id}: {e}")
    logger.info(
        "Cleaned up %d past appointment(s), freed %d slot(s)",
        report.appointments_deleted, report.slots_freed,
    )
    return report


async def cleanup_past_slots(
    *, include_booked: bool = False, session_factory: SessionFactory | None = None
) -> MaintenanceReport:
    """Delete slots dated before today that are unbooked (orphans count as unbooked).

    With include_booked every past slot goes, regardless of its booking flag.
    Each past date is deleted in its own transaction; a failed date is recorded
    and the remaining dates are still cleaned.
    """
    factory = session_factory or async_session_maker
    report = MaintenanceReport()
    today = clock.today()
    condition = Slot.slot_date < today
    if not include_booked:
        condition = and_(condition, or_(Slot.is_booked == False, orphan_clause()))  # noqa: E712
    async with factory() as session:
        async with storage_guard():
            result = await session.execute(
                select(Slot.slot_date).where(condition).distinct().order_by(Slot.slot_date)
            )
            past_dates = list(result.scalars().all())
    for d in past_dates:
        async with factory() as session:
            try:
                async with storage_guard():
                    result = await session.execute(
                        delete(Slot)
                        .where(condition, Slot.slot_date == d)
                        .execution_options(synchronize_session=False)
                    )
                    await session.commit()
                report.slots_deleted += result.rowcount or 0
            except Exception as e:
                await session.rollback()
                logger.exception("Slot cleanup failed for %s: %s", d.isoformat(), e)
                report.failures.append(f"slots {d.isoformat()}: {e}")
    if report.slots_deleted:
        logger.info("Cleaned up %d past slot(s)", report.slots_deleted)
    else:
        logger.info("No past slots to clean up")
    return report


async def release_orphans(*, session_factory: SessionFactory | None = None) -> MaintenanceReport:
    factory = session_factory or async_session_maker
    report = MaintenanceReport()
    async with factory() as session:
        try:
            async with storage_guard():
                report.slots_freed = await release_orphan_slots(session)
                await session.commit()
        except Exception as e:
            await session.rollback()
            logger.exception("Orphan slot release failed: %s", e)
            report.failures.append(str(e))
    return report


async def force_cleanup(*, session_factory: SessionFactory | None = None) -> MaintenanceReport:
    """Appointment cleanup first, then delete every past slot."""
    report = await cleanup_past_appointments(session_factory=session_factory)
    report.merge(await cleanup_past_slots(include_booked=True, session_factory=session_factory))
    logger.info(
        "Force cleanup removed %d past appointment(s) and %d past slot(s)",
        report.appointments_deleted, report.slots_deleted,
    )
    return report


async def run_daily_maintenance(
    *,
    session_factory: SessionFactory | None = None,
    catalog: ScheduleCatalog = DEFAULT_CATALOG,
) -> MaintenanceReport:
    """Daily refresh: keep the window full, then clear yesterday's data."""
    logger.info("Daily slot refresh started")
    report = await ensure_rolling_window(session_factory=session_factory, catalog=catalog)
    report.merge(await cleanup_past_appointments(session_factory=session_factory))
    report.merge(await release_orphans(session_factory=session_factory))
    report.merge(await cleanup_past_slots(session_factory=session_factory))
    logger.info("Daily slot refresh completed: %s", report.as_dict())
    return report


async def initialize(
    *,
    session_factory: SessionFactory | None = None,
    catalog: ScheduleCatalog = DEFAULT_CATALOG,
) -> MaintenanceReport:
    """Startup pass: clear past data, then make sure the window exists."""
    report = await cleanup_past_appointments(session_factory=session_factory)
    report.merge(await cleanup_past_slots(session_factory=session_factory))
    report.merge(await ensure_rolling_window(session_factory=session_factory, catalog=catalog))
    return report

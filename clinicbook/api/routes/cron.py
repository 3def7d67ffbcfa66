import logging
from datetime import datetime, time, timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicbook.api.deps import get_session_factory, verify_cron
from clinicbook.api.schemas.slot import CronStatusResponse, MaintenanceResponse
from clinicbook.core import clock
from clinicbook.core.config import settings
from clinicbook.services import slot_lifecycle

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(verify_cron)])

# Daily run times, clinic civil time
SCHEDULE = {
    "daily_slot_refresh": time(0, 1),
    "slot_cleanup": time(1, 0),
    "appointment_cleanup": time(2, 0),
}


def next_run(at: time, now: datetime | None = None) -> datetime:
    current = now or clock.now()
    candidate = datetime.combine(current.date(), at, tzinfo=clock.clinic_tz())
    if candidate <= current:
        candidate = datetime.combine(current.date() + timedelta(days=1), at, tzinfo=clock.clinic_tz())
    return candidate


def _response(report: slot_lifecycle.MaintenanceReport, message: str) -> MaintenanceResponse:
    return MaintenanceResponse(success=not report.failures, message=message, report=report.as_dict())


@router.api_route("/daily-slot-refresh", methods=["GET", "POST"], response_model=MaintenanceResponse)
async def daily_slot_refresh(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> MaintenanceResponse:
    report = await slot_lifecycle.run_daily_maintenance(session_factory=session_factory)
    return _response(report, "Daily slot refresh completed")


@router.api_route("/slot-cleanup", methods=["GET", "POST"], response_model=MaintenanceResponse)
async def slot_cleanup(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> MaintenanceResponse:
    report = await slot_lifecycle.cleanup_past_slots(session_factory=session_factory)
    return _response(report, f"Cleaned up {report.slots_deleted} past slots")


@router.api_route("/appointment-cleanup", methods=["GET", "POST"], response_model=MaintenanceResponse)
async def appointment_cleanup(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> MaintenanceResponse:
    report = await slot_lifecycle.cleanup_past_appointments(session_factory=session_factory)
    return _response(report, f"Cleaned up {report.appointments_deleted} past appointments")


@router.get("/status", response_model=CronStatusResponse)
async def cron_status() -> CronStatusResponse:
    current = clock.now()
    return CronStatusResponse(
        current_time=current.isoformat(),
        timezone=settings.clinic_timezone,
        jobs={name: next_run(at, current).isoformat() for name, at in SCHEDULE.items()},
    )

import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicbook.api.deps import (
    get_current_user,
    get_session,
    get_session_factory,
    raise_for_failure,
    require_roles,
)
from clinicbook.api.schemas.slot import AvailableSlotsResponse, GenerateSlotsRequest, MaintenanceResponse
from clinicbook.core import clock
from clinicbook.core.db import storage_guard
from clinicbook.core.errors import BookingFailure, BookingResult
from clinicbook.models.slot import SlotCreate, SlotPublic, SlotUpdate, slot_to_public
from clinicbook.models.user import PRACTITIONER_ROLES, STAFF_ROLES, User
from clinicbook.services import slot_lifecycle
from clinicbook.services.practitioner_service import get_practitioner_id
from clinicbook.services.slot_service import (
    check_bookable_date,
    create_slot,
    delete_slot,
    drop_started_slots,
    get_slot,
    list_slots,
    slot_stats,
    update_slot,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/slots", tags=["slots"])

require_practitioner = require_roles(*PRACTITIONER_ROLES)
require_staff = require_roles(*STAFF_ROLES)


@router.get("/available", response_model=AvailableSlotsResponse)
async def available_slots(
    date_param: str = Query(..., alias="date", description="YYYY-MM-DD or DD/MM/YYYY"),
    location: str | None = Query(None),
    session: AsyncSession = Depends(get_session),
) -> AvailableSlotsResponse:
    """Free slots for one civil date, sorted by start time. Today excludes slots about to start."""
    d = clock.parse_flexible_date(date_param)
    check_bookable_date(d)
    async with storage_guard():
        rows = await list_slots(session, d, location=location)
    rows = drop_started_slots(rows, d)
    slots = [slot_to_public(s, booked) for s, booked in rows if not booked]
    return AvailableSlotsResponse(date=d.isoformat(), location=location, total=len(slots), slots=slots)


@router.get("", response_model=list[SlotPublic])
async def list_all_slots(
    date_param: str = Query(..., alias="date"),
    location: str | None = Query(None),
    include_unavailable: bool = Query(False),
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_staff),
) -> list[SlotPublic]:
    d = clock.parse_flexible_date(date_param)
    async with storage_guard():
        rows = await list_slots(session, d, location=location, include_unavailable=include_unavailable)
    return [slot_to_public(s, booked) for s, booked in rows]


@router.get("/stats", response_model=dict[str, int])
async def get_slot_stats(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_staff),
) -> dict[str, int]:
    async with storage_guard():
        return await slot_stats(session)


@router.post("/generate", response_model=MaintenanceResponse)
async def generate(
    body: GenerateSlotsRequest,
    current_user: User = Depends(require_practitioner),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> MaintenanceResponse:
    report = await slot_lifecycle.generate_slots_ahead(
        body.days_ahead,
        start_date=body.start_date,
        end_date=body.end_date,
        session_factory=session_factory,
    )
    logger.info("Slot generation requested by user %d: %s", current_user.id, report.as_dict())
    return MaintenanceResponse(
        success=not report.failures,
        message=f"Generated {report.slots_created} slots",
        report=report.as_dict(),
    )


@router.post("/cleanup-past", response_model=MaintenanceResponse)
async def cleanup_past(
    current_user: User = Depends(require_practitioner),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> MaintenanceResponse:
    report = await slot_lifecycle.cleanup_past_slots(session_factory=session_factory)
    return MaintenanceResponse(
        success=not report.failures,
        message=f"Cleaned up {report.slots_deleted} past slots",
        report=report.as_dict(),
    )


@router.post("/force-cleanup", response_model=MaintenanceResponse)
async def force_cleanup(
    current_user: User = Depends(require_practitioner),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> MaintenanceResponse:
    report = await slot_lifecycle.force_cleanup(session_factory=session_factory)
    return MaintenanceResponse(
        success=not report.failures,
        message=(
            f"Force cleaned up {report.slots_deleted} past slots "
            f"and {report.appointments_deleted} past appointments"
        ),
        report=report.as_dict(),
    )


@router.post("/reinitialize", response_model=MaintenanceResponse)
async def reinitialize(
    current_user: User = Depends(require_practitioner),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> MaintenanceResponse:
    report = await slot_lifecycle.initialize(session_factory=session_factory)
    async with session_factory() as session:
        async with storage_guard():
            stats = await slot_stats(session)
    return MaintenanceResponse(
        success=not report.failures,
        message="Slot system reinitialized",
        report=report.as_dict(),
        stats=stats,
    )


@router.get("/{slot_id}", response_model=SlotPublic)
async def read_slot(
    slot_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> SlotPublic:
    async with storage_guard():
        slot = await get_slot(session, slot_id)
    if slot is None:
        raise_for_failure(BookingResult.fail(BookingFailure.SLOT_NOT_FOUND, "Slot not found"))
    return slot_to_public(slot)


@router.post("", response_model=SlotPublic, status_code=status.HTTP_201_CREATED)
async def add_slot(
    body: SlotCreate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_practitioner),
) -> SlotPublic:
    async with storage_guard():
        doctor_id = await get_practitioner_id(session)
        result = await create_slot(session, doctor_id, body, created_by_id=current_user.id)
        raise_for_failure(result)
        await session.commit()
    return slot_to_public(result.slot)


@router.put("/{slot_id}", response_model=SlotPublic)
async def edit_slot(
    slot_id: int,
    body: SlotUpdate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_practitioner),
) -> SlotPublic:
    async with storage_guard():
        result = await update_slot(session, slot_id, body)
        raise_for_failure(result)
        await session.commit()
    return slot_to_public(result.slot)


@router.delete("/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_slot(
    slot_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_practitioner),
) -> None:
    async with storage_guard():
        result = await delete_slot(session, slot_id)
        raise_for_failure(result)
        await session.commit()

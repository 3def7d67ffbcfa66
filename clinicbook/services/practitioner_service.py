import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbook.core.config import settings
from clinicbook.core.errors import PractitionerNotFound
from clinicbook.models.user import PRACTITIONER_ROLES, User

logger = logging.getLogger(__name__)

# The practice has exactly one bookable practitioner; resolved once per process
_cached_practitioner_id: int | None = None


def reset_practitioner_cache() -> None:
    global _cached_practitioner_id
    _cached_practitioner_id = None


async def _lookup(session: AsyncSession) -> int:
    if settings.practitioner_id is not None:
        result = await session.execute(
            select(User.id).where(User.id == settings.practitioner_id, User.is_active == True)  # noqa: E712
        )
        pid = result.scalar_one_or_none()
        if pid is None:
            raise PractitionerNotFound(
                f"Configured PRACTITIONER_ID={settings.practitioner_id} is not an active user"
            )
        return pid
    result = await session.execute(
        select(User.id)
        .where(User.role.in_(PRACTITIONER_ROLES), User.is_active == True)  # noqa: E712
        .order_by(User.id)
        .limit(1)
    )
    pid = result.scalar_one_or_none()
    if pid is None:
        raise PractitionerNotFound("No active doctor/admin user found")
    return pid


async def get_practitioner_id(session: AsyncSession) -> int:
    global _cached_practitioner_id
    if _cached_practitioner_id is None:
        _cached_practitioner_id = await _lookup(session)
        logger.info("Resolved practitioner id %d", _cached_practitioner_id)
    return _cached_practitioner_id

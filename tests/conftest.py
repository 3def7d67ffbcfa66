import os
from datetime import date, datetime

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("MAINTENANCE_ON_STARTUP", "false")

import pytest  # noqa: E402

from clinicbook.core import clock  # noqa: E402
from clinicbook.core.db import build_engine, build_session_maker, init_db  # noqa: E402
from clinicbook.models.appointment import AppointmentDetails, ServiceType  # noqa: E402
from clinicbook.models.slot import Slot, slot_duration  # noqa: E402
from clinicbook.models.user import User, UserRole  # noqa: E402
from clinicbook.services.practitioner_service import reset_practitioner_cache  # noqa: E402

# Tuesday morning, clinic time
FROZEN_NOW = datetime(2025, 6, 10, 8, 0, tzinfo=clock.clinic_tz())
TODAY = FROZEN_NOW.date()


@pytest.fixture(autouse=True)
def frozen_clock(monkeypatch: pytest.MonkeyPatch) -> datetime:
    monkeypatch.setattr(clock, "now", lambda: FROZEN_NOW)
    return FROZEN_NOW


@pytest.fixture(autouse=True)
def practitioner_cache():
    reset_practitioner_cache()
    yield
    reset_practitioner_cache()


@pytest.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'clinicbook.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_maker(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
async def users(session_factory) -> dict[str, User]:
    accounts = {
        "doctor": User(email="doctor@clinic.test", full_name="Dr. Shah", role=UserRole.DOCTOR),
        "admin": User(email="admin@clinic.test", full_name="Front Desk", role=UserRole.ADMIN),
        "nurse": User(email="nurse@clinic.test", full_name="Nurse Patel", role=UserRole.NURSE),
        "patient": User(email="patient@example.test", full_name="Asha Mehta", role=UserRole.PATIENT),
        "other_patient": User(email="ravi@example.test", full_name="Ravi Desai", role=UserRole.PATIENT),
    }
    async with session_factory() as s:
        for user in accounts.values():
            s.add(user)
        await s.commit()
        for user in accounts.values():
            await s.refresh(user)
    return accounts


@pytest.fixture
def details() -> AppointmentDetails:
    return AppointmentDetails(service=ServiceType.OTHER, reason="Fever for three days", symptoms=["fever"])


@pytest.fixture
def make_slot(session_factory, users):
    """Insert a free slot for the doctor and return it."""

    async def _make(
        d: date = TODAY, start: str = "09:00", end: str = "09:30", location: str = "ghodasar", **fields
    ) -> Slot:
        doctor = users["doctor"]
        slot = Slot(
            doctor_id=doctor.id,
            slot_date=d,
            start_time=start,
            end_time=end,
            duration=slot_duration(start, end),
            location=location,
            created_by_id=doctor.id,
            **fields,
        )
        async with session_factory() as s:
            s.add(slot)
            await s.commit()
            await s.refresh(slot)
        return slot

    return _make

import asyncio
from datetime import date, timedelta

import pytest
from sqlalchemy import select

from clinicbook.core.config import settings
from clinicbook.core.errors import BookingFailure, ErrorKind, ValidationFailure
from clinicbook.models.appointment import (
    Appointment,
    AppointmentDetails,
    AppointmentDetailsUpdate,
    AppointmentStatus,
    Payment,
    Priority,
    ServiceType,
)
from clinicbook.models.slot import Slot
from clinicbook.services import appointment_service
from clinicbook.services.slot_service import list_slots, release_orphan_slots

from conftest import TODAY


async def _book(session_factory, patient_id, details, **target):
    async with session_factory() as s:
        result = await appointment_service.book_appointment(s, patient_id, details, **target)
        if result.ok:
            await s.commit()
        return result


async def _all_slots(session_factory) -> list[Slot]:
    async with session_factory() as s:
        result = await s.execute(select(Slot).order_by(Slot.id))
        return list(result.scalars().all())


def _assert_binding(slots: list[Slot]) -> None:
    for slot in slots:
        assert slot.is_booked == (slot.booked_by_id is not None and slot.appointment_id is not None)


async def test_book_by_date_and_time_twice_returns_conflict(session_factory, users, details, make_slot) -> None:
    slot = await make_slot(start="09:00", end="09:30")
    patient, other = users["patient"], users["other_patient"]

    first = await _book(
        session_factory, patient.id, details, appointment_date=date(2025, 6, 10), appointment_time="09:00"
    )
    second = await _book(
        session_factory, other.id, details, appointment_date=date(2025, 6, 10), appointment_time="9:00"
    )

    assert first.ok
    assert first.appointment.status is AppointmentStatus.CONFIRMED
    assert first.slot.id == slot.id
    assert first.slot.is_booked
    assert first.slot.appointment_id == first.appointment.id
    assert first.slot.booked_by_id == patient.id
    assert not second.ok
    assert second.failure.kind is ErrorKind.CONFLICT

    (stored,) = await _all_slots(session_factory)
    assert stored.appointment_id == first.appointment.id
    assert stored.booked_by_id == patient.id
    async with session_factory() as s:
        appointments = (await s.execute(select(Appointment))).scalars().all()
    assert [a.id for a in appointments] == [first.appointment.id]


async def test_concurrent_bookings_of_one_slot_yield_exactly_one_success(
    session_factory, users, details, make_slot
) -> None:
    slot = await make_slot()
    patients = [users["patient"], users["other_patient"], users["nurse"]]

    results = await asyncio.gather(
        *(_book(session_factory, p.id, details, slot_id=slot.id) for p in patients)
    )

    winners = [r for r in results if r.ok]
    losers = [r for r in results if not r.ok]
    assert len(winners) == 1
    assert len(losers) == 2
    assert all(r.failure.is_conflict for r in losers)
    (stored,) = await _all_slots(session_factory)
    assert stored.is_booked
    assert stored.appointment_id == winners[0].appointment.id


async def test_booking_copies_slot_and_details(session_factory, users, make_slot) -> None:
    slot = await make_slot(start="16:00", end="16:30", location="vastral")
    details = AppointmentDetails(
        service=ServiceType.ORTHO,
        reason="Knee pain",
        priority=Priority.HIGH,
        is_emergency=True,
        payment=Payment(amount=300, method="cash"),
    )

    result = await _book(session_factory, users["patient"].id, details, slot_id=slot.id)

    appointment = result.appointment
    assert appointment.location == "vastral"
    assert appointment.appointment_time == "16:00"
    assert appointment.duration == 30
    assert appointment.doctor_id == users["doctor"].id
    assert appointment.priority is Priority.HIGH
    assert appointment.payment["currency"] == "INR"
    assert appointment.start_datetime.hour == 16


async def test_booking_requires_approval_starts_pending(session_factory, users, details, make_slot) -> None:
    slot = await make_slot()

    result = await _book(session_factory, users["patient"].id, details, slot_id=slot.id, requires_approval=True)

    assert result.appointment.status is AppointmentStatus.PENDING
    assert result.slot.is_booked


async def test_booking_unknown_slot_is_not_found(session_factory, users, details) -> None:
    result = await _book(session_factory, users["patient"].id, details, slot_id=999)

    assert result.failure is BookingFailure.SLOT_NOT_FOUND
    assert result.failure.kind is ErrorKind.NOT_FOUND


async def test_booking_withdrawn_slot_is_rejected(session_factory, users, details, make_slot) -> None:
    slot = await make_slot(is_available=False)

    result = await _book(session_factory, users["patient"].id, details, slot_id=slot.id)

    assert result.failure is BookingFailure.SLOT_UNAVAILABLE


async def test_booking_past_or_far_future_slot_is_a_validation_failure(
    session_factory, users, details, make_slot
) -> None:
    past = await make_slot(d=TODAY - timedelta(days=1))
    far = await make_slot(d=TODAY + timedelta(days=settings.max_advance_booking_days + 1))

    for slot in (past, far):
        with pytest.raises(ValidationFailure):
            await _book(session_factory, users["patient"].id, details, slot_id=slot.id)


async def test_booking_without_practitioner_fails(session_factory, details) -> None:
    result = await _book(session_factory, 1, details, appointment_date=TODAY, appointment_time="09:00")

    assert result.failure is BookingFailure.PRACTITIONER_NOT_FOUND


async def test_cancel_releases_slot_and_deletes_appointment(session_factory, users, details, make_slot) -> None:
    slot = await make_slot()
    booked = await _book(session_factory, users["patient"].id, details, slot_id=slot.id)

    async with session_factory() as s:
        result = await appointment_service.cancel_appointment(s, booked.appointment.id)
        await s.commit()

    assert result.ok
    assert result.slot.id == slot.id
    (stored,) = await _all_slots(session_factory)
    assert not stored.is_booked
    assert stored.booked_by_id is None
    assert stored.appointment_id is None
    async with session_factory() as s:
        assert await s.get(Appointment, booked.appointment.id) is None


async def test_cancel_unknown_appointment_is_not_found(session) -> None:
    result = await appointment_service.cancel_appointment(session, 12345)

    assert result.failure is BookingFailure.APPOINTMENT_NOT_FOUND


async def test_cancel_completed_appointment_is_invalid_transition(session_factory, users, details, make_slot) -> None:
    slot = await make_slot()
    booked = await _book(session_factory, users["patient"].id, details, slot_id=slot.id)
    async with session_factory() as s:
        await appointment_service.set_status(s, booked.appointment.id, AppointmentStatus.COMPLETED)
        await s.commit()

    async with session_factory() as s:
        result = await appointment_service.cancel_appointment(s, booked.appointment.id)

    assert result.failure is BookingFailure.INVALID_TRANSITION
    (stored,) = await _all_slots(session_factory)
    assert stored.is_booked


async def test_reschedule_moves_binding_to_new_slot(session_factory, users, details, make_slot) -> None:
    s1 = await make_slot(start="09:00", end="09:30", location="ghodasar")
    s2 = await make_slot(d=TODAY + timedelta(days=1), start="16:00", end="16:30", location="vastral")
    booked = await _book(session_factory, users["patient"].id, details, slot_id=s1.id)

    async with session_factory() as s:
        result = await appointment_service.reschedule_appointment(
            s,
            booked.appointment.id,
            slot_id=s2.id,
            updates=AppointmentDetailsUpdate(reason="Follow-up"),
        )
        await s.commit()

    assert result.ok
    assert result.appointment.id == booked.appointment.id
    async with session_factory() as s:
        old = await s.get(Slot, s1.id)
        new = await s.get(Slot, s2.id)
        appointment = await s.get(Appointment, booked.appointment.id)
    assert not old.is_booked
    assert old.appointment_id is None
    assert new.is_booked
    assert new.appointment_id == appointment.id
    assert new.booked_by_id == users["patient"].id
    assert appointment.appointment_date == s2.slot_date
    assert appointment.appointment_time == "16:00"
    assert appointment.location == "vastral"
    assert appointment.reason == "Follow-up"
    assert appointment.status is AppointmentStatus.CONFIRMED


async def test_reschedule_onto_booked_slot_leaves_everything_untouched(
    session_factory, users, details, make_slot
) -> None:
    s1 = await make_slot(start="09:00", end="09:30")
    s2 = await make_slot(start="09:30", end="10:00")
    mine = await _book(session_factory, users["patient"].id, details, slot_id=s1.id)
    theirs = await _book(session_factory, users["other_patient"].id, details, slot_id=s2.id)

    async with session_factory() as s:
        result = await appointment_service.reschedule_appointment(s, mine.appointment.id, slot_id=s2.id)

    assert result.failure is BookingFailure.SLOT_UNAVAILABLE
    slots = await _all_slots(session_factory)
    assert [sl.appointment_id for sl in slots] == [mine.appointment.id, theirs.appointment.id]


async def test_reschedule_onto_same_slot_keeps_binding(session_factory, users, details, make_slot) -> None:
    slot = await make_slot()
    booked = await _book(session_factory, users["patient"].id, details, slot_id=slot.id)

    async with session_factory() as s:
        result = await appointment_service.reschedule_appointment(s, booked.appointment.id, slot_id=slot.id)
        await s.commit()

    assert result.ok
    (stored,) = await _all_slots(session_factory)
    assert stored.appointment_id == booked.appointment.id


async def test_approve_and_reject_pending(session_factory, users, details, make_slot) -> None:
    s1 = await make_slot(start="09:00", end="09:30")
    s2 = await make_slot(start="09:30", end="10:00")
    first = await _book(session_factory, users["patient"].id, details, slot_id=s1.id, requires_approval=True)
    second = await _book(
        session_factory, users["other_patient"].id, details, slot_id=s2.id, requires_approval=True
    )

    async with session_factory() as s:
        pending = await appointment_service.list_pending(s)
        approved = await appointment_service.approve_appointment(s, first.appointment.id)
        rejected = await appointment_service.reject_appointment(s, second.appointment.id, reason="Fully booked")
        await s.commit()

    assert {a.id for a in pending} == {first.appointment.id, second.appointment.id}
    assert approved.appointment.status is AppointmentStatus.CONFIRMED
    assert rejected.appointment.status is AppointmentStatus.REJECTED
    assert rejected.appointment.doctor_notes == "Fully booked"
    async with session_factory() as s:
        assert await s.get(Appointment, second.appointment.id) is None
        assert not (await s.get(Slot, s2.id)).is_booked
        again = await appointment_service.approve_appointment(s, first.appointment.id)
    assert again.failure is BookingFailure.INVALID_TRANSITION


async def test_set_status_to_cancelled_deletes(session_factory, users, details, make_slot) -> None:
    slot = await make_slot()
    booked = await _book(session_factory, users["patient"].id, details, slot_id=slot.id)

    async with session_factory() as s:
        progressed = await appointment_service.set_status(s, booked.appointment.id, AppointmentStatus.IN_PROGRESS)
        await s.commit()
    async with session_factory() as s:
        cancelled = await appointment_service.set_status(s, booked.appointment.id, AppointmentStatus.CANCELLED)
        await s.commit()

    assert progressed.appointment.status is AppointmentStatus.IN_PROGRESS
    assert cancelled.ok
    (stored,) = await _all_slots(session_factory)
    assert not stored.is_booked


async def test_orphaned_slot_reads_free_and_can_be_booked(session_factory, users, details, make_slot) -> None:
    slot = await make_slot(is_booked=True, booked_by_id=users["other_patient"].id, appointment_id=999)

    async with session_factory() as s:
        rows = await list_slots(s, TODAY)
    assert [(sl.id, booked) for sl, booked in rows] == [(slot.id, False)]

    result = await _book(session_factory, users["patient"].id, details, slot_id=slot.id)

    assert result.ok
    assert result.slot.appointment_id == result.appointment.id
    assert result.slot.booked_by_id == users["patient"].id


async def test_release_orphan_slots(session_factory, users, make_slot) -> None:
    await make_slot(is_booked=True, booked_by_id=users["patient"].id, appointment_id=999)

    async with session_factory() as s:
        released = await release_orphan_slots(s)
        await s.commit()
    async with session_factory() as s:
        again = await release_orphan_slots(s)

    assert released == 1
    assert again == 0
    _assert_binding(await _all_slots(session_factory))


async def test_binding_invariant_holds_across_operations(session_factory, users, details, make_slot) -> None:
    slots = [
        await make_slot(start=start, end=end)
        for start, end in (("09:00", "09:30"), ("09:30", "10:00"), ("10:00", "10:30"))
    ]
    a = await _book(session_factory, users["patient"].id, details, slot_id=slots[0].id)
    _assert_binding(await _all_slots(session_factory))
    b = await _book(session_factory, users["other_patient"].id, details, slot_id=slots[1].id)
    _assert_binding(await _all_slots(session_factory))

    async with session_factory() as s:
        await appointment_service.reschedule_appointment(s, a.appointment.id, slot_id=slots[2].id)
        await s.commit()
    _assert_binding(await _all_slots(session_factory))
    async with session_factory() as s:
        await appointment_service.cancel_appointment(s, b.appointment.id)
        await s.commit()
    _assert_binding(await _all_slots(session_factory))

    booked = [sl.id for sl in await _all_slots(session_factory) if sl.is_booked]
    assert booked == [slots[2].id]


async def test_list_appointments_filters(session_factory, users, details, make_slot) -> None:
    s1 = await make_slot(start="09:00", end="09:30")
    s2 = await make_slot(d=TODAY + timedelta(days=2), start="09:00", end="09:30")
    await _book(session_factory, users["patient"].id, details, slot_id=s2.id)
    await _book(session_factory, users["patient"].id, details, slot_id=s1.id)

    async with session_factory() as s:
        mine = await appointment_service.list_appointments(s, patient_id=users["patient"].id)
        later = await appointment_service.list_appointments(s, from_date=TODAY + timedelta(days=1))
        upcoming = await appointment_service.list_upcoming(s, patient_id=users["other_patient"].id)

    assert [a.appointment_date for a in mine] == [TODAY, TODAY + timedelta(days=2)]
    assert [a.appointment_date for a in later] == [TODAY + timedelta(days=2)]
    assert upcoming == []


async def test_concurrent_pending_bookings_of_one_slot_yield_exactly_one_success(
    session_factory, users, details, make_slot
) -> None:
    slot = await make_slot()
    patients = [users["patient"], users["other_patient"], users["nurse"]]

    results = await asyncio.gather(
        *(_book(session_factory, p.id, details, slot_id=slot.id, requires_approval=True) for p in patients)
    )

    winners = [r for r in results if r.ok]
    assert len(winners) == 1
    assert all(r.failure.is_conflict for r in results if not r.ok)
    (stored,) = await _all_slots(session_factory)
    assert stored.appointment_id == winners[0].appointment.id
    async with session_factory() as s:
        appointments = (await s.execute(select(Appointment))).scalars().all()
    assert [a.id for a in appointments] == [winners[0].appointment.id]


async def test_stale_free_read_cannot_rebind_a_held_slot(
    session_factory, users, details, make_slot, monkeypatch
) -> None:
    slot = await make_slot()
    first = await _book(session_factory, users["patient"].id, details, slot_id=slot.id, requires_approval=True)

    async def looks_free(session, slot):
        return True

    monkeypatch.setattr(appointment_service, "_is_free", looks_free)
    second = await _book(
        session_factory, users["other_patient"].id, details, slot_id=slot.id, requires_approval=True
    )

    assert second.failure is BookingFailure.SLOT_UNAVAILABLE
    (stored,) = await _all_slots(session_factory)
    assert stored.appointment_id == first.appointment.id
    assert stored.booked_by_id == users["patient"].id


async def test_same_time_at_another_location_is_doctor_conflict(session_factory, users, details, make_slot) -> None:
    ghodasar = await make_slot(start="09:00", end="09:30", location="ghodasar")
    clinic = await make_slot(start="09:00", end="09:30", location="clinic")
    first = await _book(session_factory, users["patient"].id, details, slot_id=ghodasar.id)

    second = await _book(session_factory, users["other_patient"].id, details, slot_id=clinic.id)

    assert first.ok
    assert second.failure is BookingFailure.DOCTOR_CONFLICT
    async with session_factory() as s:
        assert not (await s.get(Slot, clinic.id)).is_booked


async def test_staff_can_move_status_back_and_correct_finished(session_factory, users, details, make_slot) -> None:
    slot = await make_slot()
    booked = await _book(session_factory, users["patient"].id, details, slot_id=slot.id)
    appointment_id = booked.appointment.id

    async with session_factory() as s:
        completed = await appointment_service.set_status(s, appointment_id, AppointmentStatus.COMPLETED)
        await s.commit()
    async with session_factory() as s:
        rejected = await appointment_service.set_status(s, appointment_id, AppointmentStatus.REJECTED)
    async with session_factory() as s:
        corrected = await appointment_service.set_status(s, appointment_id, AppointmentStatus.CONFIRMED)
        await s.commit()
    async with session_factory() as s:
        pending = await appointment_service.set_status(s, appointment_id, AppointmentStatus.PENDING)
        await s.commit()

    assert completed.appointment.status is AppointmentStatus.COMPLETED
    assert rejected.failure is BookingFailure.INVALID_TRANSITION
    assert corrected.appointment.status is AppointmentStatus.CONFIRMED
    assert pending.appointment.status is AppointmentStatus.PENDING
    (stored,) = await _all_slots(session_factory)
    assert stored.appointment_id == appointment_id


async def test_timestamps_are_written_as_aware_utc(session_factory, users, details, make_slot) -> None:
    slot = await make_slot()
    result = await _book(session_factory, users["patient"].id, details, slot_id=slot.id)

    fresh = Slot(doctor_id=slot.doctor_id, slot_date=TODAY, start_time="10:00", end_time="10:30", created_by_id=1)
    assert fresh.created_at.utcoffset() == timedelta(0)
    assert result.appointment.created_at is not None
    assert result.slot.updated_at is not None

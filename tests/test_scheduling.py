import threading
from datetime import date, datetime, time, timedelta, timezone as dt_timezone

import pytest
from django.db import connection
from django.utils import timezone

from apps.appointments.models import Appointment, AppointmentStatus
from apps.appointments.scheduling import (
    BookingConflict,
    BookingValidationError,
    book,
    cancel_appointment,
    compute_slots,
    format_when,
)
from apps.audit.models import AuditLog
from apps.doctors.models import Availability, BlockedTime

pytestmark = pytest.mark.django_db


def _tomorrow() -> date:
    return timezone.now().date() + timedelta(days=1)


def _at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=dt_timezone.utc)


def test_window_is_split_into_slots(doctor, availability):
    day = _tomorrow()

    slots = compute_slots(doctor, day)

    assert [slot.start for slot in slots] == [_at(day, 9), _at(day, 9, 30)]
    assert slots[0].end == _at(day, 9, 30)


def test_booked_slot_is_excluded(doctor, availability, patient):
    day = _tomorrow()
    book(doctor, patient, _at(day, 9), correlation_id="c1")

    slots = compute_slots(doctor, day)

    assert [slot.start for slot in slots] == [_at(day, 9, 30)]


def test_cancelled_appointment_frees_slot(doctor, availability, patient):
    day = _tomorrow()
    appointment = book(doctor, patient, _at(day, 9), correlation_id="c2")

    assert cancel_appointment(appointment, correlation_id="c2") is True
    assert cancel_appointment(appointment, correlation_id="c2") is False
    assert len(compute_slots(doctor, day)) == 2


def test_blocked_time_removes_overlapping_slots(doctor, availability):
    day = _tomorrow()
    BlockedTime.objects.create(doctor=doctor, start_at=_at(day, 9, 15), end_at=_at(day, 9, 45))

    assert compute_slots(doctor, day) == []


def test_day_without_availability_has_no_slots(doctor):
    assert compute_slots(doctor, _tomorrow()) == []


def test_past_slots_are_not_offered(doctor, availability):
    yesterday = timezone.now().date() - timedelta(days=1)

    assert compute_slots(doctor, yesterday) == []


def test_slots_follow_doctor_timezone(doctor, availability):
    doctor.timezone = "Asia/Kolkata"
    doctor.save(update_fields=["timezone", "updated_at"])
    day = _tomorrow() + timedelta(days=1)

    slots = compute_slots(doctor, day)

    assert slots[0].start.astimezone(dt_timezone.utc) == _at(day, 3, 30)
    assert format_when(slots[0].start, doctor).endswith("at 9:00 AM")


def test_book_creates_pending_and_audits(doctor, availability, patient):
    appointment = book(doctor, patient, _at(_tomorrow(), 9), correlation_id="c3")

    assert appointment.status == AppointmentStatus.PENDING
    audit = AuditLog.objects.get(action="create_appointment")
    assert audit.resource_id == str(appointment.id)


def test_second_booking_conflicts(doctor, availability, patient, consented_patient):
    start = _at(_tomorrow(), 9)
    book(doctor, patient, start, correlation_id="c4")

    with pytest.raises(BookingConflict):
        book(doctor, consented_patient, start, correlation_id="c5")
    with pytest.raises(BookingConflict):
        book(doctor, consented_patient, start + timedelta(minutes=15), correlation_id="c5")

    assert Appointment.objects.active().count() == 1


def test_overlapping_windows_do_not_yield_overlapping_slots(doctor):
    day = _tomorrow()
    for start, end in ((time(9, 0), time(10, 0)), (time(9, 15), time(10, 15))):
        Availability.objects.create(doctor=doctor, weekday=day.weekday(), start_time=start, end_time=end)

    slots = compute_slots(doctor, day)

    assert [slot.start for slot in slots] == [_at(day, 9), _at(day, 9, 30)]
    assert all(earlier.end <= later.start for earlier, later in zip(slots, slots[1:]))


def test_unique_constraint_rejects_double_booking_without_recheck(
    doctor, availability, patient, consented_patient, monkeypatch
):
    monkeypatch.setattr("apps.appointments.scheduling._has_overlap", lambda *args: False)
    start = _at(_tomorrow(), 9)
    book(doctor, patient, start, correlation_id="c7")

    with pytest.raises(BookingConflict):
        book(doctor, consented_patient, start, correlation_id="c8")

    assert Appointment.objects.filter(doctor=doctor, appointment_date=start).count() == 1


def test_booking_in_past_is_rejected(doctor, patient):
    with pytest.raises(BookingValidationError):
        book(doctor, patient, timezone.now() - timedelta(hours=1), correlation_id="c6")


def test_format_when():
    doctor = type("D", (), {"timezone": "UTC"})()

    assert format_when(datetime(2026, 3, 3, 14, 5, tzinfo=dt_timezone.utc), doctor) == "Tue, Mar 3 at 2:05 PM"


@pytest.mark.django_db(transaction=True)
@pytest.mark.skipif(connection.vendor != "postgresql", reason="needs concurrent connections")
def test_concurrent_bookings_yield_single_appointment(doctor, availability, patient, consented_patient):
    start = _at(_tomorrow(), 9)
    barrier = threading.Barrier(2)
    outcomes = []

    def attempt(target):
        barrier.wait()
        try:
            book(doctor, target, start, correlation_id="race")
            outcomes.append("booked")
        except BookingConflict:
            outcomes.append("conflict")
        finally:
            connection.close()

    threads = [threading.Thread(target=attempt, args=(p,)) for p in (patient, consented_patient)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["booked", "conflict"]
    assert Appointment.objects.filter(doctor=doctor, appointment_date=start).count() == 1

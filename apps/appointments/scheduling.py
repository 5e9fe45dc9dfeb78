"""Slot computation and conflict-checked booking."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Tuple
from zoneinfo import ZoneInfo

from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.appointments.models import Appointment, AppointmentStatus, slot_duration
from apps.audit.services import record_audit_event
from apps.doctors.models import BlockedTime, Doctor
from apps.patients.models import Patient

logger = logging.getLogger(__name__)


class BookingConflict(RuntimeError):
    """Raised when the requested slot is already taken."""


class BookingValidationError(ValueError):
    """Raised for booking requests that can never succeed (e.g. past dates)."""


@dataclass(frozen=True, slots=True)
class Slot:
    start: datetime
    end: datetime

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def _overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and a_end > b_start


def doctor_tz(doctor: Doctor) -> ZoneInfo:
    return ZoneInfo(doctor.timezone or "UTC")


def _busy_ranges(doctor: Doctor, day_start: datetime, day_end: datetime) -> List[Tuple[datetime, datetime]]:
    duration = slot_duration()
    blocked = BlockedTime.objects.filter(
        doctor=doctor, start_at__lt=day_end, end_at__gt=day_start
    ).values_list("start_at", "end_at")
    booked = (
        Appointment.objects.active()
        .filter(doctor=doctor)
        .overlapping(day_start, day_end)
        .values_list("appointment_date", flat=True)
    )
    ranges = list(blocked)
    ranges.extend((start, start + duration) for start in booked)
    return ranges


def compute_slots(doctor: Doctor, target_date: date) -> List[Slot]:
    """Return the free fixed-length slots for ``target_date`` in chronological order."""
    tz = doctor_tz(doctor)
    duration = slot_duration()
    windows = doctor.availability.filter(
        weekday=target_date.weekday(), is_available=True
    ).order_by("start_time")
    day_start = datetime.combine(target_date, time.min, tzinfo=tz)
    busy = _busy_ranges(doctor, day_start, day_start + timedelta(days=1))
    now = timezone.now()

    free: List[Slot] = []
    for window in windows:
        slot_start = datetime.combine(target_date, window.start_time, tzinfo=tz)
        window_end = datetime.combine(target_date, window.end_time, tzinfo=tz)
        while slot_start + duration <= window_end:
            slot_end = slot_start + duration
            clashes = any(_overlaps(slot_start, slot_end, slot.start, slot.end) for slot in free)
            if slot_start > now and not clashes and not _is_busy(slot_start, slot_end, busy):
                free.append(Slot(start=slot_start, end=slot_end))
            slot_start = slot_end
    return sorted(free, key=lambda slot: slot.start)


def _is_busy(start: datetime, end: datetime, busy: Iterable[Tuple[datetime, datetime]]) -> bool:
    return any(_overlaps(start, end, busy_start, busy_end) for busy_start, busy_end in busy)


def _has_overlap(doctor: Doctor, start: datetime, end: datetime) -> bool:
    return (
        Appointment.objects.active()
        .filter(doctor=doctor)
        .overlapping(start, end)
        .exists()
    )


def book(
    doctor: Doctor,
    patient: Patient,
    slot_start: datetime,
    *,
    notes: str = "",
    correlation_id: str,
) -> Appointment:
    """Insert a pending appointment after re-checking that the slot is still free.

    The unique constraint on active (doctor, appointment_date) rows is the
    final arbiter when two workers pass the re-check at the same time.
    """
    if slot_start <= timezone.now():
        raise BookingValidationError("appointment_in_past")
    slot_end = slot_start + slot_duration()

    try:
        with transaction.atomic():
            if _has_overlap(doctor, slot_start, slot_end):
                raise BookingConflict("slot_taken")
            appointment = Appointment.objects.create(
                doctor=doctor,
                patient=patient,
                appointment_date=slot_start,
                status=AppointmentStatus.PENDING,
                notes=notes,
            )
    except IntegrityError as exc:
        logger.info(
            "booking.conflict",
            extra={"doctor_id": doctor.id, "source": "constraint", "correlation_id": correlation_id},
        )
        raise BookingConflict("slot_taken") from exc
    except BookingConflict:
        logger.info(
            "booking.conflict",
            extra={"doctor_id": doctor.id, "source": "recheck", "correlation_id": correlation_id},
        )
        raise

    record_audit_event(
        correlation_id=correlation_id,
        action="create_appointment",
        resource_type="appointment",
        resource_id=appointment.id,
        meta={"doctor_id": doctor.id},
    )
    logger.info(
        "booking.created",
        extra={"appointment_id": appointment.id, "doctor_id": doctor.id, "correlation_id": correlation_id},
    )
    return appointment


def cancel_appointment(appointment: Appointment, *, correlation_id: str) -> bool:
    """Cancel an active appointment so its slot becomes bookable again."""
    if appointment.status not in (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED):
        return False
    appointment.status = AppointmentStatus.CANCELLED
    appointment.save(update_fields=["status", "updated_at"])
    record_audit_event(
        correlation_id=correlation_id,
        action="cancel_appointment",
        resource_type="appointment",
        resource_id=appointment.id,
        meta={"doctor_id": appointment.doctor_id},
    )
    return True


def format_day(value: date) -> str:
    return f"{value:%a}, {value:%b} {value.day}"


def format_time(value: datetime) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def format_when(value: datetime, doctor: Doctor) -> str:
    """Render an aware datetime in the doctor's timezone, e.g. ``Tue, Mar 4 at 9:30 AM``."""
    local = value.astimezone(doctor_tz(doctor))
    return f"{format_day(local.date())} at {format_time(local)}"

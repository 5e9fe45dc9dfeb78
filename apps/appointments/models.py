"""Domain models for the appointments module."""

from datetime import datetime, timedelta

from django.conf import settings
from django.db import models
from django.db.models import Q

from apps.common.models import TimeStampedModel
from apps.doctors.models import Doctor
from apps.patients.models import Patient


class AppointmentStatus(models.TextChoices):
    """Possible lifecycle states for an appointment."""

    PENDING = "pending", "Pending"
    CONFIRMED = "confirmed", "Confirmed"
    CANCELLED = "cancelled", "Cancelled"
    COMPLETED = "completed", "Completed"


ACTIVE_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)


def slot_duration() -> timedelta:
    return timedelta(minutes=int(getattr(settings, "SLOT_INTERVAL_MINUTES", 30)))


class AppointmentQuerySet(models.QuerySet):
    """Custom queryset helpers for appointments."""

    def active(self):
        return self.filter(status__in=ACTIVE_STATUSES)

    def overlapping(self, start: datetime, end: datetime):
        # Every appointment occupies one fixed-length slot from appointment_date.
        return self.filter(
            appointment_date__lt=end,
            appointment_date__gt=start - slot_duration(),
        )


class Appointment(TimeStampedModel):
    """Booked slot for a patient with a doctor."""

    doctor = models.ForeignKey(
        Doctor, on_delete=models.CASCADE, related_name="appointments"
    )
    patient = models.ForeignKey(
        Patient,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="appointments",
    )
    appointment_date = models.DateTimeField(db_index=True)
    status = models.CharField(
        max_length=16,
        choices=AppointmentStatus.choices,
        default=AppointmentStatus.PENDING,
    )
    notes = models.TextField(blank=True)

    objects = AppointmentQuerySet.as_manager()

    class Meta:
        ordering = ["appointment_date"]
        constraints = [
            models.UniqueConstraint(
                fields=["doctor", "appointment_date"],
                name="prevent_double_booking",
                condition=Q(status__in=ACTIVE_STATUSES),
            ),
        ]

    def __str__(self) -> str:
        return f"Appointment<{self.pk}> {self.appointment_date.isoformat()} {self.status}"

    @property
    def end_at(self) -> datetime:
        return self.appointment_date + slot_duration()

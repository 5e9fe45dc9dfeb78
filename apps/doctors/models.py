"""Domain models for the doctors module."""

from django.conf import settings
from django.db import models

from apps.common.models import TimeStampedModel


class WeekdayChoices(models.IntegerChoices):
    """Weekday enumeration aligned with Python's weekday numbering."""

    MONDAY = 0, "Monday"
    TUESDAY = 1, "Tuesday"
    WEDNESDAY = 2, "Wednesday"
    THURSDAY = 3, "Thursday"
    FRIDAY = 4, "Friday"
    SATURDAY = 5, "Saturday"
    SUNDAY = 6, "Sunday"


class Doctor(TimeStampedModel):
    """Tenant that owns availability, conversations and appointments."""

    name = models.CharField(max_length=255)
    slug = models.SlugField(unique=True)
    email = models.EmailField(blank=True)
    timezone = models.CharField(max_length=64, default="UTC")
    country = models.CharField(max_length=2, blank=True)
    appointment_fee_minor = models.PositiveIntegerField(null=True, blank=True)
    appointment_fee_currency = models.CharField(max_length=3, blank=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name

    @property
    def payment_region(self) -> str:
        return (self.country or settings.DEFAULT_DOCTOR_COUNTRY or "IN").upper()

    @property
    def fee_minor(self) -> int:
        if self.appointment_fee_minor is not None:
            return self.appointment_fee_minor
        return int(settings.APPOINTMENT_FEE_MINOR)

    @property
    def fee_currency(self) -> str:
        return (self.appointment_fee_currency or settings.APPOINTMENT_FEE_CURRENCY).upper()

    @property
    def notification_email(self) -> str:
        return self.email or settings.DEFAULT_DOCTOR_EMAIL


class Availability(TimeStampedModel):
    """Recurring weekly window in which a doctor accepts bookings."""

    doctor = models.ForeignKey(
        Doctor, on_delete=models.CASCADE, related_name="availability"
    )
    weekday = models.PositiveSmallIntegerField(choices=WeekdayChoices.choices)
    start_time = models.TimeField()
    end_time = models.TimeField()
    is_available = models.BooleanField(default=True)

    class Meta:
        ordering = ["doctor_id", "weekday", "start_time"]
        constraints = [
            models.UniqueConstraint(
                fields=["doctor", "weekday", "start_time", "end_time"],
                name="unique_availability_window",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.doctor} {self.get_weekday_display()} {self.start_time}-{self.end_time}"


class BlockedTime(TimeStampedModel):
    """One-off range removed from a doctor's availability."""

    doctor = models.ForeignKey(
        Doctor, on_delete=models.CASCADE, related_name="blocked_times"
    )
    start_at = models.DateTimeField()
    end_at = models.DateTimeField()
    reason = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ["start_at"]

"""Domain models for the patients module."""

from django.db import models
from django.db.models import Q

from apps.common.models import TimeStampedModel
from apps.doctors.models import Doctor


class ConsentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    GRANTED = "granted", "Granted"
    REVOKED = "revoked", "Revoked"


class Patient(TimeStampedModel):
    """Patient identity.

    Rows created from a chat thread start as placeholders keyed by the
    platform user id; ``name``, ``phone`` and the optional profile fields
    stay empty until consent is granted.
    """

    doctor = models.ForeignKey(
        Doctor, on_delete=models.CASCADE, related_name="patients"
    )
    name = models.CharField(max_length=200, blank=True)
    phone = models.CharField(max_length=32, blank=True)
    date_of_birth = models.DateField(null=True, blank=True)
    gender = models.CharField(max_length=50, blank=True)
    reason_for_visit = models.CharField(max_length=500, blank=True)
    consent_status = models.CharField(
        max_length=10, choices=ConsentStatus.choices, default=ConsentStatus.PENDING
    )
    consent_method = models.CharField(max_length=50, blank=True)
    consent_granted_at = models.DateTimeField(null=True, blank=True)
    consent_revoked_at = models.DateTimeField(null=True, blank=True)
    platform = models.CharField(max_length=20, blank=True)
    platform_external_id = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["doctor", "platform", "platform_external_id"],
                name="unique_patient_platform_identity",
                condition=~Q(platform_external_id=""),
            ),
        ]

    def __str__(self) -> str:
        return f"Patient<{self.pk}> {self.consent_status}"

    @property
    def has_consent(self) -> bool:
        return self.consent_status == ConsentStatus.GRANTED

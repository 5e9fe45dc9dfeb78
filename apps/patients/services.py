"""Patient lookups used before and after consent."""

from __future__ import annotations

from django.db import IntegrityError, transaction

from apps.doctors.models import Doctor
from apps.patients.models import Patient


def find_or_create_placeholder(doctor: Doctor, platform: str, external_id: str) -> Patient:
    """Return the patient for a platform user, creating an empty placeholder if needed."""
    lookup = {"doctor": doctor, "platform": platform, "platform_external_id": external_id}
    patient = Patient.objects.filter(**lookup).first()
    if patient:
        return patient
    try:
        with transaction.atomic():
            return Patient.objects.create(**lookup)
    except IntegrityError:
        return Patient.objects.get(**lookup)

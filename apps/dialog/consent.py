"""Consent capture, denial and revocation for chat-collected patient details."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date

from django.db import transaction
from django.utils import timezone

from apps.audit.services import record_audit_event
from apps.dialog.collection import clear_collected, get_collected
from apps.patients.models import ConsentStatus, Patient

logger = logging.getLogger(__name__)

CONSENT_GRANTED = "granted"
CONSENT_DENIED = "denied"
CONSENT_UNCLEAR = "unclear"
CONSENT_METHOD = "instagram_dm"

GRANT_WORDS = frozenset({"yes", "yeah", "yep", "agree", "ok", "okay", "sure", "consent"})
DENY_WORDS = frozenset(
    {"no", "nope", "nah", "not", "deny", "decline", "disagree", "revoke", "delete", "don't", "dont", "never"}
)
WORD_PATTERN = re.compile(r"[a-z]+(?:'[a-z]+)?")

CONSENT_QUESTION = (
    "To book your appointment we need to store the details you just shared. "
    "Do you consent to us saving these details? Reply yes or no."
)
SAVED_MESSAGE = "Thanks! I've saved your details."
DENIED_MESSAGE = (
    "No problem. I haven't saved any of your information. "
    "Say 'book appointment' anytime if you'd like to try again."
)
MISSING_DETAILS_MESSAGE = (
    "I didn't receive your information. Please start over with 'book appointment' "
    "if you'd like to schedule."
)
REVOKED_MESSAGE = (
    "Done. I've removed your personal information from our records. "
    "Is there anything else I can help with?"
)
ALREADY_REVOKED_MESSAGE = "Your data has already been removed. Is there anything else I can help with?"
NOTHING_STORED_MESSAGE = (
    "We don't have any stored personal information to remove. "
    "Say 'book appointment' if you'd like to schedule."
)
ANONYMIZED_NAME = "[Anonymized]"


@dataclass(slots=True)
class ConsentOutcome:
    granted: bool
    reply: str


def parse_consent_reply(text: str) -> str:
    """Classify a consent reply by whole words; any refusal or negation wins."""
    words = set(WORD_PATTERN.findall((text or "").lower().replace("’", "'")))
    if words & DENY_WORDS:
        return CONSENT_DENIED
    if words & GRANT_WORDS:
        return CONSENT_GRANTED
    return CONSENT_UNCLEAR


def _audit(patient: Patient, status: str, correlation_id: str) -> None:
    record_audit_event(
        correlation_id=correlation_id,
        action="consent_" + status,
        resource_type="patient",
        resource_id=patient.id,
        meta={"method": CONSENT_METHOD},
    )


def grant_consent(patient: Patient, conversation_id: int, *, correlation_id: str) -> ConsentOutcome:
    """Persist the pre-consent values onto the patient and clear the ephemeral copy."""
    collected = get_collected(conversation_id)
    if not collected.get("name") or not collected.get("phone"):
        clear_collected(conversation_id)
        return ConsentOutcome(granted=False, reply=MISSING_DETAILS_MESSAGE)

    birth_date = collected.get("date_of_birth")
    with transaction.atomic():
        patient.name = collected["name"]
        patient.phone = collected["phone"]
        patient.date_of_birth = date.fromisoformat(birth_date) if birth_date else None
        patient.gender = collected.get("gender", "")
        patient.reason_for_visit = collected.get("reason_for_visit", "")
        patient.consent_status = ConsentStatus.GRANTED
        patient.consent_method = CONSENT_METHOD
        patient.consent_granted_at = timezone.now()
        patient.consent_revoked_at = None
        patient.save(
            update_fields=[
                "name",
                "phone",
                "date_of_birth",
                "gender",
                "reason_for_visit",
                "consent_status",
                "consent_method",
                "consent_granted_at",
                "consent_revoked_at",
                "updated_at",
            ]
        )
    clear_collected(conversation_id)
    _audit(patient, CONSENT_GRANTED, correlation_id)
    logger.info("consent.granted", extra={"patient_id": patient.id, "correlation_id": correlation_id})
    return ConsentOutcome(granted=True, reply=SAVED_MESSAGE)


def deny_consent(patient: Patient, conversation_id: int, *, correlation_id: str) -> ConsentOutcome:
    clear_collected(conversation_id)
    _audit(patient, CONSENT_DENIED, correlation_id)
    return ConsentOutcome(granted=False, reply=DENIED_MESSAGE)


def revoke_consent(patient: Patient, conversation_id: int, *, correlation_id: str) -> str:
    """Anonymise a consented patient. Returns the reply to send."""
    clear_collected(conversation_id)
    if patient.consent_status == ConsentStatus.REVOKED:
        return ALREADY_REVOKED_MESSAGE
    if patient.consent_status != ConsentStatus.GRANTED:
        return NOTHING_STORED_MESSAGE

    patient.name = ANONYMIZED_NAME
    patient.phone = f"revoked-{patient.id}"
    patient.date_of_birth = None
    patient.gender = ""
    patient.reason_for_visit = ""
    patient.consent_status = ConsentStatus.REVOKED
    patient.consent_revoked_at = timezone.now()
    patient.save(
        update_fields=[
            "name",
            "phone",
            "date_of_birth",
            "gender",
            "reason_for_visit",
            "consent_status",
            "consent_revoked_at",
            "updated_at",
        ]
    )
    _audit(patient, "revoked", correlation_id)
    logger.info("consent.revoked", extra={"patient_id": patient.id, "correlation_id": correlation_id})
    return REVOKED_MESSAGE

"""Field-by-field patient detail collection before consent.

Values never touch the database here. They sit in the Django cache under the
conversation id until the patient consents (or the entry expires); the
conversation state only records which fields are done. Name and phone are
required. Date of birth, gender and reason for visit may be skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Dict, Optional

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from apps.audit.models import AuditStatus
from apps.audit.services import record_audit_event
from apps.patients.utils import is_valid_phone_number, normalize_phone_number

logger = logging.getLogger(__name__)

PRE_CONSENT_TTL_SECONDS = int(getattr(settings, "PRE_CONSENT_TTL_SECONDS", 1800))
CACHE_KEY_PREFIX = "pre-consent"

REQUIRED_FIELDS = ("name", "phone")
OPTIONAL_FIELDS = ("date_of_birth", "gender", "reason_for_visit")
COLLECTION_ORDER = REQUIRED_FIELDS + OPTIONAL_FIELDS
FIELD_LABELS = {
    "name": "full name",
    "phone": "phone number",
    "date_of_birth": "date of birth",
    "gender": "gender",
    "reason_for_visit": "reason for visit",
}
FIELD_HINTS = {"date_of_birth": " (YYYY-MM-DD)"}
SKIP_REPLIES = {"skip", "none", "n/a", "na", "pass", "prefer not to say"}
NAME_MAX_LENGTH = 200
GENDER_MAX_LENGTH = 50
REASON_MAX_LENGTH = 500
EARLIEST_BIRTH_YEAR = 1900

NAME_PREFIX = re.compile(r"^(my name is |i'm |i am )", re.IGNORECASE)
PHONE_PREFIX = re.compile(r"^my phone is ", re.IGNORECASE)
ISO_DATE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
SLASH_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")


@dataclass(slots=True)
class FieldOutcome:
    field: str
    ok: bool
    reply: str = ""


def _key(conversation_id: int) -> str:
    return f"{CACHE_KEY_PREFIX}:{conversation_id}"


def get_collected(conversation_id: int) -> Dict[str, str]:
    return dict(cache.get(_key(conversation_id)) or {})


def set_collected(conversation_id: int, **values: str) -> None:
    data = get_collected(conversation_id)
    data.update(values)
    cache.set(_key(conversation_id), data, PRE_CONSENT_TTL_SECONDS)


def clear_collected(conversation_id: int) -> None:
    cache.delete(_key(conversation_id))


def next_field(collected_flags: Dict[str, bool]) -> Optional[str]:
    for name in COLLECTION_ORDER:
        if not collected_flags.get(name):
            return name
    return None


def prompt_for(field: str) -> str:
    prompt = f"Please provide your {FIELD_LABELS[field]}{FIELD_HINTS.get(field, '')}."
    if field in OPTIONAL_FIELDS:
        prompt += " Reply 'skip' to leave it out."
    return prompt


def parse_birth_date(value: str) -> Optional[date]:
    """Accept YYYY-MM-DD or M/D/YYYY; reject impossible and future dates."""
    text = value.strip()
    match = ISO_DATE.match(text)
    if match:
        year, month, day = (int(part) for part in match.groups())
    else:
        match = SLASH_DATE.match(text)
        if not match:
            return None
        month, day, year = (int(part) for part in match.groups())
    try:
        parsed = date(year, month, day)
    except ValueError:
        return None
    if parsed.year < EARLIEST_BIRTH_YEAR or parsed > timezone.localdate():
        return None
    return parsed


def parse_field(field: str, message: str) -> str:
    text = (message or "").strip()
    if field == "name":
        return NAME_PREFIX.sub("", text).strip()
    if field == "phone":
        return PHONE_PREFIX.sub("", text).strip()
    return text


def validate_field(field: str, value: str) -> Optional[str]:
    """Return the cleaned value, or None when it is not acceptable."""
    if field == "name":
        cleaned = " ".join(value.split())
        return cleaned if 0 < len(cleaned) <= NAME_MAX_LENGTH else None
    if field == "phone":
        normalized = normalize_phone_number(value)
        return normalized if is_valid_phone_number(normalized) else None
    if field == "date_of_birth":
        parsed = parse_birth_date(value)
        return parsed.isoformat() if parsed else None
    if field == "gender":
        cleaned = " ".join(value.split())
        return cleaned if len(cleaned) <= GENDER_MAX_LENGTH else None
    if field == "reason_for_visit":
        cleaned = value.strip()
        return cleaned if len(cleaned) <= REASON_MAX_LENGTH else None
    return None


def collect_field(
    conversation_id: int,
    field: str,
    message: str,
    *,
    correlation_id: str,
) -> FieldOutcome:
    raw = parse_field(field, message)
    if not raw:
        return FieldOutcome(field=field, ok=False, reply=prompt_for(field))
    if field in OPTIONAL_FIELDS and raw.lower().rstrip(".!") in SKIP_REPLIES:
        record_audit_event(
            correlation_id=correlation_id,
            action="patient_data_skipped",
            resource_type="conversation",
            resource_id=conversation_id,
            meta={"field": field},
        )
        return FieldOutcome(field=field, ok=True)

    cleaned = validate_field(field, raw)
    if cleaned is None:
        record_audit_event(
            correlation_id=correlation_id,
            action="patient_data_validation_failed",
            resource_type="conversation",
            resource_id=conversation_id,
            status=AuditStatus.FAILURE,
            meta={"field": field},
        )
        return FieldOutcome(
            field=field,
            ok=False,
            reply=f"Please provide a valid {FIELD_LABELS[field]}{FIELD_HINTS.get(field, '')}.",
        )

    set_collected(conversation_id, **{field: cleaned})
    record_audit_event(
        correlation_id=correlation_id,
        action="patient_data_collected",
        resource_type="conversation",
        resource_id=conversation_id,
        meta={"field": field},
    )
    logger.info(
        "collection.field_stored",
        extra={"conversation_id": conversation_id, "field": field, "correlation_id": correlation_id},
    )
    return FieldOutcome(field=field, ok=True)

"""Encrypted dead-letter store for events that could not be completed."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import DatabaseError, transaction
from django.db.models import QuerySet
from django.utils import timezone

from apps.audit.services import record_audit_event
from apps.common.security import decrypt_payload, encrypt_payload
from apps.webhooks.models import DeadLetterRecord

logger = logging.getLogger(__name__)

DEAD_LETTER_RETENTION_DAYS = int(getattr(settings, "DEAD_LETTER_RETENTION_DAYS", 90))


class DeadLetterStoreError(RuntimeError):
    """Raised when a dead letter cannot be encrypted or written."""


def store_dead_letter(
    *,
    event_id: str,
    provider: str,
    payload: Any,
    error_message: str,
    retry_count: int,
    correlation_id: str,
    received_at: datetime | None = None,
) -> DeadLetterRecord:
    try:
        payload_encrypted = encrypt_payload(payload)
        with transaction.atomic():
            record = DeadLetterRecord.objects.create(
                event_id=event_id,
                provider=provider,
                correlation_id=correlation_id,
                payload_encrypted=payload_encrypted,
                error_message=(error_message or "unknown_error")[:1000],
                retry_count=retry_count,
                received_at=received_at,
            )
    except (DatabaseError, ImproperlyConfigured) as exc:
        raise DeadLetterStoreError(str(exc)) from exc
    record_audit_event(
        correlation_id=correlation_id,
        action="dead_letter_stored",
        resource_type="dead_letter",
        resource_id=record.id,
        meta={"event_id": event_id, "provider": provider, "retry_count": retry_count},
    )
    logger.warning(
        "dead_letter.stored",
        extra={
            "dead_letter_id": record.id,
            "event_id": event_id,
            "provider": provider,
            "retry_count": retry_count,
            "correlation_id": correlation_id,
        },
    )
    return record


def list_dead_letters(
    *,
    provider: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> QuerySet[DeadLetterRecord]:
    queryset = DeadLetterRecord.objects.all()
    if provider:
        queryset = queryset.filter(provider=provider)
    if start:
        queryset = queryset.filter(failed_at__gte=start)
    if end:
        queryset = queryset.filter(failed_at__lte=end)
    return queryset.order_by("-failed_at")


def get_dead_letter(record_id: int, *, correlation_id: str) -> tuple[DeadLetterRecord, Any]:
    """Return the record and its decrypted payload. Access is audited."""
    record = DeadLetterRecord.objects.get(pk=record_id)
    payload = decrypt_payload(record.payload_encrypted)
    record_audit_event(
        correlation_id=correlation_id,
        action="dead_letter_accessed",
        resource_type="dead_letter",
        resource_id=record.id,
        meta={"event_id": record.event_id, "provider": record.provider},
    )
    return record, payload


def purge_expired(now: datetime | None = None) -> int:
    cutoff = (now or timezone.now()) - timedelta(days=DEAD_LETTER_RETENTION_DAYS)
    deleted, _ = DeadLetterRecord.objects.filter(failed_at__lt=cutoff).delete()
    if deleted:
        logger.info("dead_letter.purged", extra={"count": deleted, "cutoff": cutoff.isoformat()})
    return deleted

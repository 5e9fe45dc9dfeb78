"""Idempotency store keyed by (event_id, provider).

Status only moves forward: pending -> processed or pending -> failed. Every
update filters on ``status=pending`` so a late writer cannot reverse a final
state. Database errors surface as ``IdempotencyStoreError`` so that callers
can decide to fail open.
"""

from __future__ import annotations

import logging

from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from apps.webhooks.models import WebhookEvent, WebhookEventStatus

logger = logging.getLogger(__name__)

STATUS_NONE = "none"
MAX_ERROR_LENGTH = 500


class IdempotencyStoreError(RuntimeError):
    """Raised when the idempotency table cannot be read or written."""


def check_status(event_id: str, provider: str) -> str:
    try:
        status = (
            WebhookEvent.objects.filter(event_id=event_id, provider=provider)
            .values_list("status", flat=True)
            .first()
        )
    except DatabaseError as exc:
        raise IdempotencyStoreError(str(exc)) from exc
    return status or STATUS_NONE


def is_processed(event_id: str, provider: str) -> bool:
    return check_status(event_id, provider) == WebhookEventStatus.PROCESSED


def mark_processing(event_id: str, provider: str, correlation_id: str = "") -> bool:
    """Create the pending row on first sight. Returns False if it already existed."""
    try:
        with transaction.atomic():
            WebhookEvent.objects.create(
                event_id=event_id,
                provider=provider,
                correlation_id=correlation_id,
            )
        return True
    except IntegrityError:
        return False
    except DatabaseError as exc:
        raise IdempotencyStoreError(str(exc)) from exc


def _advance(event_id: str, provider: str, **changes) -> bool:
    try:
        updated = WebhookEvent.objects.filter(
            event_id=event_id,
            provider=provider,
            status=WebhookEventStatus.PENDING,
        ).update(updated_at=timezone.now(), **changes)
    except DatabaseError as exc:
        raise IdempotencyStoreError(str(exc)) from exc
    return bool(updated)


def mark_processed(event_id: str, provider: str) -> bool:
    return _advance(
        event_id,
        provider,
        status=WebhookEventStatus.PROCESSED,
        processed_at=timezone.now(),
    )


def mark_failed(event_id: str, provider: str, error_message: str) -> bool:
    return _advance(
        event_id,
        provider,
        status=WebhookEventStatus.FAILED,
        error_message=(error_message or "")[:MAX_ERROR_LENGTH],
    )


def increment_retry(event_id: str, provider: str, error_message: str) -> bool:
    return _advance(
        event_id,
        provider,
        retry_count=F("retry_count") + 1,
        error_message=(error_message or "")[:MAX_ERROR_LENGTH],
    )

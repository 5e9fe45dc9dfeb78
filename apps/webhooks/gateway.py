"""Webhook ingestion: verify, dedupe, enqueue, acknowledge.

The gateway does no domain work. It only decides whether an inbound delivery
is authentic and new, then hands it to the worker queue. Providers get a
fast 200 for anything that was accepted, even when the queue is down; those
deliveries land in the dead-letter store instead of being lost.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from django.utils import timezone

from apps.audit.services import record_audit_event
from apps.payments.gateways import get_adapter
from apps.webhooks import idempotency
from apps.webhooks.dead_letter import DeadLetterStoreError, store_dead_letter
from apps.webhooks.event_ids import fallback_event_id, instagram_event_id
from apps.webhooks.models import WebhookEventStatus, WebhookProvider
from apps.webhooks.queue import WEBHOOK_JOB_NAME, QueueUnavailable, WebhookJob, WebhookQueue
from apps.webhooks.signatures import verify_instagram_signature

logger = logging.getLogger(__name__)

STATUS_QUEUED = "queued"
STATUS_ALREADY_PROCESSED = "already_processed"
STATUS_DEAD_LETTERED = "dead_lettered"


class InvalidPayload(ValueError):
    """Raised when a verified body is not a JSON object."""


@dataclass(slots=True)
class IngestResult:
    status_code: int
    body: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code == 200


def _header(headers: Mapping[str, str], name: str) -> str | None:
    return headers.get(name) or headers.get(name.lower())


def _parse(body: bytes) -> dict:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise InvalidPayload("malformed json") from exc
    if not isinstance(payload, dict):
        raise InvalidPayload("payload must be an object")
    return payload


class WebhookGateway:
    """Entry point shared by every provider webhook view."""

    def __init__(self, queue: WebhookQueue | None = None) -> None:
        self.queue = queue or WebhookQueue()

    def verify(self, provider: str, body: bytes, headers: Mapping[str, str]) -> bool:
        if provider == WebhookProvider.INSTAGRAM:
            return verify_instagram_signature(body, _header(headers, "X-Hub-Signature-256"))
        if provider == WebhookProvider.RAZORPAY:
            return get_adapter(provider).verify_webhook(_header(headers, "X-Razorpay-Signature"), body, headers)
        if provider == WebhookProvider.PAYPAL:
            return get_adapter(provider).verify_webhook(None, body, headers)
        return False

    def event_id_for(self, provider: str, payload: Any, headers: Mapping[str, str]) -> str:
        if provider == WebhookProvider.INSTAGRAM:
            return instagram_event_id(payload) or fallback_event_id(payload)
        return get_adapter(provider).extract_event_id(payload, headers)

    def ingest(
        self,
        provider: str,
        body: bytes,
        headers: Mapping[str, str],
        *,
        correlation_id: str,
    ) -> IngestResult:
        if not self.verify(provider, body, headers):
            logger.warning(
                "webhook.invalid_signature",
                extra={"provider": provider, "correlation_id": correlation_id},
            )
            return IngestResult(401, {"ok": False, "error": "invalid signature"})

        try:
            payload = _parse(body)
        except InvalidPayload as exc:
            logger.warning(
                "webhook.invalid_payload",
                extra={"provider": provider, "correlation_id": correlation_id},
            )
            return IngestResult(400, {"ok": False, "error": str(exc)})

        event_id = self.event_id_for(provider, payload, headers)
        log_context = {"event_id": event_id, "provider": provider, "correlation_id": correlation_id}
        logger.info("webhook.received", extra=log_context)

        try:
            if idempotency.check_status(event_id, provider) == WebhookEventStatus.PROCESSED:
                logger.info("webhook.duplicate", extra=log_context)
                self._audit(event_id, provider, correlation_id, STATUS_ALREADY_PROCESSED)
                return IngestResult(200, {"ok": True, "status": STATUS_ALREADY_PROCESSED})
        except idempotency.IdempotencyStoreError as exc:
            logger.error("webhook.idempotency_unavailable", extra={**log_context, "error": str(exc)})

        try:
            idempotency.mark_processing(event_id, provider, correlation_id)
        except idempotency.IdempotencyStoreError as exc:
            logger.error("webhook.idempotency_unavailable", extra={**log_context, "error": str(exc)})

        received_at = timezone.now()
        job = WebhookJob(
            event_id=event_id,
            provider=provider,
            payload=payload,
            correlation_id=correlation_id,
            timestamp=received_at.isoformat(),
        )
        try:
            self.queue.enqueue(WEBHOOK_JOB_NAME, job)
        except QueueUnavailable as exc:
            logger.error("webhook.enqueue_failed", extra={**log_context, "error": str(exc)})
            try:
                store_dead_letter(
                    event_id=event_id,
                    provider=provider,
                    payload=payload,
                    error_message=f"enqueue_failed: {exc}",
                    retry_count=0,
                    correlation_id=correlation_id,
                    received_at=received_at,
                )
            except DeadLetterStoreError as store_exc:
                # The event row stays pending and no copy of the payload is kept.
                logger.critical("webhook.dead_letter_failed", extra={**log_context, "error": str(store_exc)})
            self._audit(event_id, provider, correlation_id, STATUS_DEAD_LETTERED)
            return IngestResult(200, {"ok": True, "status": STATUS_DEAD_LETTERED})

        self._audit(event_id, provider, correlation_id, STATUS_QUEUED)
        return IngestResult(200, {"ok": True, "status": STATUS_QUEUED})

    @staticmethod
    def _audit(event_id: str, provider: str, correlation_id: str, outcome: str) -> None:
        record_audit_event(
            correlation_id=correlation_id,
            action="webhook_received",
            resource_type="webhook_event",
            resource_id=event_id,
            meta={"event_id": event_id, "provider": provider, "outcome": outcome},
        )

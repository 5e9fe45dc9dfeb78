"""Celery tasks for webhook job processing and dead-letter housekeeping."""

from __future__ import annotations

import logging

from celery import shared_task
from django.conf import settings

from apps.audit.models import AuditStatus
from apps.audit.services import record_audit_event
from apps.dialog.orchestrator import ConversationOrchestrator, UnroutableEvent
from apps.webhooks import idempotency
from apps.webhooks.dead_letter import DeadLetterStoreError, purge_expired, store_dead_letter
from apps.webhooks.models import WebhookProvider
from apps.webhooks.queue import WEBHOOK_JOB_NAME, QueueUnavailable, WebhookJob, WebhookQueue

logger = logging.getLogger(__name__)

WEBHOOK_JOB_MAX_ATTEMPTS = int(getattr(settings, "WEBHOOK_JOB_MAX_ATTEMPTS", 3))
WEBHOOK_JOB_INITIAL_DELAY = int(getattr(settings, "WEBHOOK_JOB_INITIAL_DELAY", 60))
WEBHOOK_JOB_MAX_DELAY = int(getattr(settings, "WEBHOOK_JOB_MAX_DELAY", 3600))

_orchestrator = None


def get_orchestrator():
    """One orchestrator per worker process so the intent cache is shared across jobs."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ConversationOrchestrator()
    return _orchestrator


def retry_countdown(attempt: int) -> int:
    return min(WEBHOOK_JOB_INITIAL_DELAY * (2 ** (attempt - 1)), WEBHOOK_JOB_MAX_DELAY)


def _run(job: WebhookJob) -> str:
    orchestrator = get_orchestrator()
    if job.provider == WebhookProvider.INSTAGRAM:
        return orchestrator.handle_instagram(job)
    return orchestrator.handle_payment(job)


def _mark_failed(job: WebhookJob, error: str) -> None:
    try:
        idempotency.mark_failed(job.event_id, job.provider, error)
    except idempotency.IdempotencyStoreError as exc:
        logger.error(
            "webhook.idempotency_unavailable",
            extra={"event_id": job.event_id, "provider": job.provider, "error": str(exc)},
        )


def _dead_letter(job: WebhookJob, error: str) -> str:
    try:
        store_dead_letter(
            event_id=job.event_id,
            provider=job.provider,
            payload=job.payload,
            error_message=error,
            retry_count=job.attempt,
            correlation_id=job.correlation_id,
        )
    except DeadLetterStoreError as exc:
        logger.critical(
            "webhook.dead_letter_failed",
            extra={
                "event_id": job.event_id,
                "provider": job.provider,
                "error": str(exc),
                "correlation_id": job.correlation_id,
            },
        )
    _mark_failed(job, error)
    record_audit_event(
        correlation_id=job.correlation_id,
        action="webhook_job_failed",
        resource_type="webhook_event",
        resource_id=job.event_id,
        status=AuditStatus.FAILURE,
        error_message=error,
        meta={"provider": job.provider, "attempts": job.attempt},
    )
    logger.error(
        "webhook_job.dead_lettered",
        extra={
            "event_id": job.event_id,
            "provider": job.provider,
            "attempts": job.attempt,
            "correlation_id": job.correlation_id,
        },
    )
    return "dead_lettered"


def _reschedule(job: WebhookJob, error: str) -> str:
    try:
        idempotency.increment_retry(job.event_id, job.provider, error)
    except idempotency.IdempotencyStoreError as exc:
        logger.error(
            "webhook.idempotency_unavailable",
            extra={"event_id": job.event_id, "provider": job.provider, "error": str(exc)},
        )
    countdown = retry_countdown(job.attempt)
    next_job = WebhookJob.from_dict({**job.to_dict(), "attempt": job.attempt + 1})
    try:
        WebhookQueue().enqueue(WEBHOOK_JOB_NAME, next_job, countdown=countdown)
    except QueueUnavailable as exc:
        logger.error(
            "webhook_job.retry_enqueue_failed",
            extra={"event_id": job.event_id, "provider": job.provider, "error": str(exc)},
        )
        return _dead_letter(job, f"{error}; retry_enqueue_failed: {exc}")
    logger.warning(
        "webhook_job.retry_scheduled",
        extra={
            "event_id": job.event_id,
            "provider": job.provider,
            "attempt": job.attempt,
            "countdown": countdown,
            "correlation_id": job.correlation_id,
        },
    )
    return "rescheduled"


@shared_task(bind=True, max_retries=0)
def process_webhook_job(self, job: dict) -> str:
    """Run one webhook job, rescheduling with backoff and dead-lettering on exhaustion."""
    webhook_job = WebhookJob.from_dict(job)
    try:
        if idempotency.is_processed(webhook_job.event_id, webhook_job.provider):
            logger.info(
                "webhook_job.skipped",
                extra={"event_id": webhook_job.event_id, "provider": webhook_job.provider},
            )
            return "skipped"
    except idempotency.IdempotencyStoreError as exc:
        logger.error(
            "webhook.idempotency_unavailable",
            extra={"event_id": webhook_job.event_id, "provider": webhook_job.provider, "error": str(exc)},
        )

    try:
        return _run(webhook_job)
    except UnroutableEvent as exc:
        logger.warning(
            "webhook_job.unroutable",
            extra={"event_id": webhook_job.event_id, "provider": webhook_job.provider, "error": str(exc)},
        )
        _mark_failed(webhook_job, str(exc))
        record_audit_event(
            correlation_id=webhook_job.correlation_id,
            action="webhook_job_failed",
            resource_type="webhook_event",
            resource_id=webhook_job.event_id,
            status=AuditStatus.FAILURE,
            error_message=str(exc),
            meta={"provider": webhook_job.provider, "attempts": webhook_job.attempt},
        )
        return "failed"
    except Exception as exc:  # any other failure goes through the retry policy
        error = f"{type(exc).__name__}: {exc}"
        logger.exception(
            "webhook_job.failed",
            extra={
                "event_id": webhook_job.event_id,
                "provider": webhook_job.provider,
                "attempt": webhook_job.attempt,
                "correlation_id": webhook_job.correlation_id,
            },
        )
        if webhook_job.attempt >= WEBHOOK_JOB_MAX_ATTEMPTS:
            return _dead_letter(webhook_job, error)
        return _reschedule(webhook_job, error)


@shared_task
def purge_expired_dead_letters() -> int:
    return purge_expired()

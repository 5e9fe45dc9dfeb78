"""Job payload and queue client for asynchronous webhook processing."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from kombu.exceptions import KombuError

logger = logging.getLogger(__name__)

WEBHOOK_JOB_NAME = "webhook"


class QueueUnavailable(RuntimeError):
    """Raised when a job cannot be handed to the broker."""


@dataclass(slots=True)
class WebhookJob:
    event_id: str
    provider: str
    payload: Any
    correlation_id: str
    timestamp: str
    attempt: int = 1

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "WebhookJob":
        return cls(
            event_id=data["event_id"],
            provider=data["provider"],
            payload=data.get("payload") or {},
            correlation_id=data.get("correlation_id", ""),
            timestamp=data.get("timestamp", ""),
            attempt=int(data.get("attempt", 1)),
        )


class WebhookQueue:
    """Thin client over the Celery task that consumes webhook jobs.

    The task is injectable so the gateway and worker can be exercised
    without a broker.
    """

    def __init__(self, task=None) -> None:
        self._task = task

    @property
    def task(self):
        if self._task is None:
            from apps.workers.tasks import process_webhook_job

            self._task = process_webhook_job
        return self._task

    def enqueue(self, job_name: str, job: WebhookJob, countdown: int | None = None) -> str:
        task_id = f"{job_name}-{job.provider}-{job.event_id}"
        if job.attempt > 1:
            task_id = f"{task_id}-retry-{job.attempt}"
        try:
            self.task.apply_async(
                kwargs={"job": job.to_dict()},
                countdown=countdown,
                task_id=task_id,
            )
        except (KombuError, OSError) as exc:
            raise QueueUnavailable(str(exc)) from exc
        logger.info(
            "webhook_job.enqueued",
            extra={
                "task_id": task_id,
                "event_id": job.event_id,
                "provider": job.provider,
                "attempt": job.attempt,
                "countdown": countdown,
                "correlation_id": job.correlation_id,
            },
        )
        return task_id

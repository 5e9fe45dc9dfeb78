"""Domain models for the webhooks module."""

from django.db import models
from django.utils import timezone

from apps.common.models import TimeStampedModel


class WebhookProvider(models.TextChoices):
    INSTAGRAM = "instagram", "Instagram"
    RAZORPAY = "razorpay", "Razorpay"
    PAYPAL = "paypal", "PayPal"


class WebhookEventStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"


class WebhookEvent(TimeStampedModel):
    """Idempotency record for one provider event. Holds no payload."""

    event_id = models.CharField(max_length=255)
    provider = models.CharField(max_length=20, choices=WebhookProvider.choices)
    status = models.CharField(
        max_length=10, choices=WebhookEventStatus.choices, default=WebhookEventStatus.PENDING
    )
    received_at = models.DateTimeField(default=timezone.now)
    processed_at = models.DateTimeField(null=True, blank=True)
    correlation_id = models.CharField(max_length=64, blank=True)
    error_message = models.TextField(blank=True)
    retry_count = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["-received_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["event_id", "provider"], name="unique_webhook_event"
            ),
        ]

    def __str__(self) -> str:
        return f"{self.provider}:{self.event_id} {self.status}"


class DeadLetterRecord(TimeStampedModel):
    """Terminal store for events that could not be processed."""

    event_id = models.CharField(max_length=255, db_index=True)
    provider = models.CharField(max_length=20, choices=WebhookProvider.choices, db_index=True)
    correlation_id = models.CharField(max_length=64)
    payload_encrypted = models.TextField()
    error_message = models.TextField()
    retry_count = models.PositiveIntegerField(default=0)
    received_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ["-failed_at"]

    def as_metadata(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "provider": self.provider,
            "correlation_id": self.correlation_id,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "failed_at": self.failed_at.isoformat(),
        }

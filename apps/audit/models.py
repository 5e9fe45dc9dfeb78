"""Append-only audit trail. Rows carry metadata only, never payload content."""

from django.db import models

from apps.common.models import TimeStampedModel


class AuditStatus(models.TextChoices):
    SUCCESS = "success", "Success"
    FAILURE = "failure", "Failure"


class AuditLog(TimeStampedModel):
    """Audit records for webhook, dialog, booking and payment actions."""

    correlation_id = models.CharField(max_length=64, db_index=True)
    action = models.CharField(max_length=100, db_index=True)
    resource_type = models.CharField(max_length=50)
    resource_id = models.CharField(max_length=64, blank=True)
    status = models.CharField(max_length=10, choices=AuditStatus.choices)
    error_message = models.TextField(blank=True)
    meta = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.action}:{self.status}"

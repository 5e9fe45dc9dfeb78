"""Domain models for the conversations module."""

from django.db import models

from apps.common.models import TimeStampedModel
from apps.doctors.models import Doctor
from apps.patients.models import Patient


class Platform(models.TextChoices):
    INSTAGRAM = "instagram", "Instagram"


class ConversationStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    ARCHIVED = "archived", "Archived"
    CLOSED = "closed", "Closed"


class SenderType(models.TextChoices):
    PATIENT = "patient", "Patient"
    DOCTOR = "doctor", "Doctor"
    SYSTEM = "system", "System"


class Conversation(TimeStampedModel):
    """Chat thread between a patient and a doctor on one platform.

    ``state`` holds the dialog step and field flags only; collected values
    never land here.
    """

    doctor = models.ForeignKey(
        Doctor, on_delete=models.CASCADE, related_name="conversations"
    )
    patient = models.ForeignKey(
        Patient, on_delete=models.CASCADE, related_name="conversations"
    )
    platform = models.CharField(max_length=20, choices=Platform.choices)
    platform_conversation_id = models.CharField(max_length=255)
    status = models.CharField(
        max_length=10, choices=ConversationStatus.choices, default=ConversationStatus.ACTIVE
    )
    state = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-updated_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["doctor", "platform", "platform_conversation_id"],
                name="unique_platform_conversation",
            ),
        ]

    def __str__(self) -> str:
        return f"Conversation<{self.pk}> {self.state.get('step', 'greeting')}"


class Message(TimeStampedModel):
    """Single inbound or outbound chat message."""

    conversation = models.ForeignKey(
        Conversation, on_delete=models.CASCADE, related_name="messages"
    )
    platform_message_id = models.CharField(max_length=255)
    sender_type = models.CharField(max_length=10, choices=SenderType.choices)
    content = models.TextField()
    intent = models.CharField(max_length=50, blank=True)

    class Meta:
        ordering = ["created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["conversation", "platform_message_id"],
                name="unique_platform_message",
            ),
        ]

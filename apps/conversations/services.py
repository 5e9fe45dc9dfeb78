"""Conversation and message persistence used by the dialog worker."""

from __future__ import annotations

import logging
from uuid import uuid4

from django.db import IntegrityError, transaction

from apps.conversations.models import Conversation, Message, SenderType
from apps.doctors.models import Doctor
from apps.patients.models import Patient

logger = logging.getLogger(__name__)


class DuplicateMessage(RuntimeError):
    """Raised when a platform message id was already stored for the thread."""


def get_or_create_conversation(
    doctor: Doctor,
    patient: Patient,
    platform: str,
    platform_conversation_id: str,
) -> Conversation:
    lookup = {
        "doctor": doctor,
        "platform": platform,
        "platform_conversation_id": platform_conversation_id,
    }
    conversation = Conversation.objects.filter(**lookup).first()
    if conversation:
        return conversation
    try:
        with transaction.atomic():
            return Conversation.objects.create(patient=patient, **lookup)
    except IntegrityError:
        # Another worker created the thread between lookup and insert.
        return Conversation.objects.get(**lookup)


def store_message(
    conversation: Conversation,
    *,
    platform_message_id: str,
    sender_type: str,
    content: str,
    intent: str = "",
) -> Message:
    try:
        with transaction.atomic():
            return Message.objects.create(
                conversation=conversation,
                platform_message_id=platform_message_id,
                sender_type=sender_type,
                content=content,
                intent=intent,
            )
    except IntegrityError as exc:
        raise DuplicateMessage(platform_message_id) from exc


def store_system_reply(conversation: Conversation, content: str) -> Message:
    return store_message(
        conversation,
        platform_message_id=f"sys-{uuid4().hex}",
        sender_type=SenderType.SYSTEM,
        content=content,
    )

"""Best-effort notifications for doctors and patients.

Every sender returns ``True`` on success and ``False`` otherwise. Nothing
here raises: a lost notification must never undo a booking or a payment.
"""

from __future__ import annotations

import logging
from smtplib import SMTPException

from django.conf import settings
from django.core.mail import send_mail

from apps.appointments.models import Appointment
from apps.appointments.scheduling import format_when
from apps.audit.services import record_audit_event
from apps.channels.models import InstagramAccount
from apps.channels.services import ChannelSendError, InstagramSender
from apps.common.security import DecryptionError
from apps.conversations.models import Conversation, Platform
from apps.payments.models import Payment
from apps.payments.services import format_amount

logger = logging.getLogger(__name__)


def _when(appointment: Appointment) -> str:
    return format_when(appointment.appointment_date, appointment.doctor)


def _email(recipient: str, subject: str, body: str, *, kind: str, resource_id, correlation_id: str) -> bool:
    if not recipient:
        logger.info("notification.skipped", extra={"kind": kind, "reason": "no_recipient"})
        return False
    try:
        send_mail(subject, body, settings.DEFAULT_FROM_EMAIL, [recipient], fail_silently=False)
    except (SMTPException, OSError) as exc:
        logger.warning(
            "notification.email_failed",
            extra={"kind": kind, "error": str(exc), "correlation_id": correlation_id},
        )
        return False
    record_audit_event(
        correlation_id=correlation_id,
        action="notification_sent",
        resource_type="appointment",
        resource_id=resource_id,
        meta={"kind": kind, "channel": "email"},
    )
    return True


def notify_doctor_new_appointment(appointment: Appointment, *, correlation_id: str) -> bool:
    doctor = appointment.doctor
    body = (
        f"A new appointment was booked for {_when(appointment)}.\n"
        f"Status: {appointment.get_status_display()}. Appointment #{appointment.id}."
    )
    return _email(
        doctor.notification_email,
        "New appointment booked",
        body,
        kind="doctor_new_appointment",
        resource_id=appointment.id,
        correlation_id=correlation_id,
    )


def notify_patient_payment_received(appointment: Appointment, *, correlation_id: str) -> bool:
    conversation = (
        Conversation.objects.filter(
            doctor=appointment.doctor,
            patient=appointment.patient,
            platform=Platform.INSTAGRAM,
        )
        .order_by("-updated_at")
        .first()
    )
    account = InstagramAccount.objects.filter(doctor=appointment.doctor, is_active=True).first()
    if conversation is None or account is None:
        logger.info("notification.skipped", extra={"kind": "patient_payment_received", "reason": "no_channel"})
        return False
    text = (
        f"Payment received. Your appointment on {_when(appointment)} is confirmed. "
        "We'll send a reminder before your visit."
    )
    try:
        InstagramSender().send(
            conversation.platform_conversation_id,
            text,
            account.get_access_token(),
            correlation_id=correlation_id,
        )
    except (ChannelSendError, DecryptionError) as exc:
        logger.warning(
            "notification.dm_failed",
            extra={"kind": "patient_payment_received", "error": type(exc).__name__, "correlation_id": correlation_id},
        )
        return False
    record_audit_event(
        correlation_id=correlation_id,
        action="notification_sent",
        resource_type="appointment",
        resource_id=appointment.id,
        meta={"kind": "patient_payment_received", "channel": "instagram"},
    )
    return True


def notify_payment_received(payment: Payment, *, correlation_id: str) -> bool:
    appointment = payment.appointment
    doctor_sent = _email(
        appointment.doctor.notification_email,
        "Payment received",
        (
            f"Payment of {format_amount(payment.amount_minor, payment.currency)} received for the "
            f"appointment on {_when(appointment)} (#{appointment.id})."
        ),
        kind="doctor_payment_received",
        resource_id=appointment.id,
        correlation_id=correlation_id,
    )
    patient_sent = notify_patient_payment_received(appointment, correlation_id=correlation_id)
    return doctor_sent and patient_sent

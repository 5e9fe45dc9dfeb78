"""Payment link issuance and capture handling."""

from __future__ import annotations

import logging

from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.appointments.models import Appointment, AppointmentStatus
from apps.audit.models import AuditStatus
from apps.audit.services import record_audit_event
from apps.payments.gateways import (
    PayerInfo,
    PaymentGatewayError,
    get_adapter,
    select_gateway,
)
from apps.payments.models import Payment, PaymentStatus

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = {"INR": "₹", "USD": "$", "EUR": "€", "GBP": "£"}


def format_amount(amount_minor: int, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    major = f"{amount_minor / 100:,.2f}"
    if symbol:
        return f"{symbol}{major}"
    return f"{major} {currency.upper()}"


def create_payment_link(
    appointment: Appointment,
    *,
    amount_minor: int,
    currency: str,
    region: str,
    payer: PayerInfo | None = None,
    correlation_id: str,
) -> Payment:
    """Issue a link through the region's gateway and persist a pending Payment.

    Gateway failures propagate as ``PaymentGatewayError`` before anything is
    written, so a later turn can simply try again.
    """
    gateway = select_gateway(region)
    adapter = get_adapter(gateway)
    try:
        result = adapter.create_link(
            amount_minor=amount_minor,
            currency=currency,
            reference_id=f"appt-{appointment.id}",
            payer=payer or PayerInfo(),
            description=f"Appointment with {appointment.doctor.name}",
        )
    except PaymentGatewayError as exc:
        logger.warning(
            "payments.link_failed",
            extra={"appointment_id": appointment.id, "gateway": gateway, "correlation_id": correlation_id},
        )
        record_audit_event(
            correlation_id=correlation_id,
            action="payment_link_created",
            resource_type="appointment",
            resource_id=appointment.id,
            status=AuditStatus.FAILURE,
            error_message=str(exc),
            meta={"gateway": gateway},
        )
        raise

    try:
        with transaction.atomic():
            payment = Payment.objects.create(
                appointment=appointment,
                gateway=gateway,
                gateway_order_id=result.gateway_order_id,
                amount_minor=amount_minor,
                currency=currency,
                payment_url=result.url,
                expires_at=result.expires_at,
            )
    except IntegrityError:
        payment = Payment.objects.get(gateway=gateway, gateway_order_id=result.gateway_order_id)

    record_audit_event(
        correlation_id=correlation_id,
        action="payment_link_created",
        resource_type="payment",
        resource_id=payment.id,
        meta={"gateway": gateway, "appointment_id": appointment.id, "amount_minor": amount_minor, "currency": currency},
    )
    logger.info(
        "payments.link_created",
        extra={"payment_id": payment.id, "gateway": gateway, "correlation_id": correlation_id},
    )
    return payment


def pending_payment_for(appointment: Appointment) -> Payment | None:
    return appointment.payments.filter(status=PaymentStatus.PENDING).order_by("-created_at").first()


def process_payment_success(
    *,
    gateway: str,
    gateway_order_id: str,
    gateway_payment_id: str,
    amount_minor: int,
    currency: str,
    correlation_id: str,
) -> Payment | None:
    """Mark the matching payment captured and confirm its appointment."""
    with transaction.atomic():
        payment = (
            Payment.objects.select_for_update()
            .select_related("appointment")
            .filter(gateway=gateway, gateway_order_id=gateway_order_id)
            .first()
        )
        if payment is None:
            logger.warning(
                "payments.unknown_order",
                extra={"gateway": gateway, "gateway_order_id": gateway_order_id, "correlation_id": correlation_id},
            )
            return None
        if payment.status == PaymentStatus.CAPTURED:
            return payment
        if payment.amount_minor != amount_minor or payment.currency.upper() != currency.upper():
            logger.warning(
                "payments.amount_mismatch",
                extra={"payment_id": payment.id, "correlation_id": correlation_id},
            )
        payment.status = PaymentStatus.CAPTURED
        payment.gateway_payment_id = gateway_payment_id
        payment.save(update_fields=["status", "gateway_payment_id", "updated_at"])

        appointment = payment.appointment
        if appointment.status == AppointmentStatus.PENDING:
            appointment.status = AppointmentStatus.CONFIRMED
            appointment.save(update_fields=["status", "updated_at"])

    record_audit_event(
        correlation_id=correlation_id,
        action="payment_captured",
        resource_type="payment",
        resource_id=payment.id,
        meta={
            "gateway": gateway,
            "appointment_id": appointment.id,
            "appointment_status": appointment.status,
            "captured_at": timezone.now().isoformat(),
        },
    )
    logger.info(
        "payments.captured",
        extra={"payment_id": payment.id, "appointment_id": appointment.id, "correlation_id": correlation_id},
    )

    from apps.notifications.services import notify_payment_received

    notify_payment_received(payment, correlation_id=correlation_id)
    return payment


def process_payment_failure(
    *,
    gateway: str,
    gateway_order_id: str,
    gateway_payment_id: str = "",
    reason: str = "",
    correlation_id: str,
) -> Payment | None:
    """Mark the matching pending payment failed. The appointment stays pending."""
    with transaction.atomic():
        payment = (
            Payment.objects.select_for_update()
            .filter(gateway=gateway, gateway_order_id=gateway_order_id)
            .first()
        )
        if payment is None:
            logger.warning(
                "payments.unknown_order",
                extra={"gateway": gateway, "gateway_order_id": gateway_order_id, "correlation_id": correlation_id},
            )
            return None
        if payment.status != PaymentStatus.PENDING:
            return payment
        payment.status = PaymentStatus.FAILED
        update_fields = ["status", "updated_at"]
        if gateway_payment_id:
            payment.gateway_payment_id = gateway_payment_id
            update_fields.append("gateway_payment_id")
        payment.save(update_fields=update_fields)

    record_audit_event(
        correlation_id=correlation_id,
        action="payment_failed",
        resource_type="payment",
        resource_id=payment.id,
        status=AuditStatus.FAILURE,
        error_message=reason,
        meta={"gateway": gateway, "appointment_id": payment.appointment_id},
    )
    logger.warning(
        "payments.failed",
        extra={"payment_id": payment.id, "reason": reason, "correlation_id": correlation_id},
    )
    return payment

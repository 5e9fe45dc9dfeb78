"""Domain models for the payments module."""

from django.db import models

from apps.appointments.models import Appointment
from apps.common.models import TimeStampedModel


class PaymentGateway(models.TextChoices):
    RAZORPAY = "razorpay", "Razorpay"
    PAYPAL = "paypal", "PayPal"


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    CAPTURED = "captured", "Captured"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"


class Payment(TimeStampedModel):
    """Payment requested for an appointment.

    Created pending when the link is issued; only gateway webhooks move it
    forward, matched by ``gateway_order_id``.
    """

    appointment = models.ForeignKey(
        Appointment, on_delete=models.CASCADE, related_name="payments"
    )
    gateway = models.CharField(max_length=20, choices=PaymentGateway.choices)
    gateway_order_id = models.CharField(max_length=255)
    gateway_payment_id = models.CharField(max_length=255, blank=True)
    amount_minor = models.PositiveBigIntegerField()
    currency = models.CharField(max_length=3)
    status = models.CharField(
        max_length=10, choices=PaymentStatus.choices, default=PaymentStatus.PENDING
    )
    payment_url = models.URLField(max_length=500, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["gateway", "gateway_order_id"], name="unique_gateway_order"
            ),
        ]

    def __str__(self) -> str:
        return f"{self.gateway}:{self.gateway_order_id} {self.status}"

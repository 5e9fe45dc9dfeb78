from datetime import timedelta
from types import SimpleNamespace

import pytest
import requests
from django.core import mail
from django.utils import timezone

from apps.appointments.models import Appointment, AppointmentStatus
from apps.audit.models import AuditLog, AuditStatus
from apps.payments.gateways import (
    PayPalAdapter,
    PaymentGatewayError,
    RazorpayAdapter,
    select_gateway,
)
from apps.payments.models import Payment, PaymentGateway, PaymentStatus
from apps.payments.services import (
    create_payment_link,
    format_amount,
    pending_payment_for,
    process_payment_failure,
    process_payment_success,
)

pytestmark = pytest.mark.django_db


def _response(data, status_code=200):
    return SimpleNamespace(status_code=status_code, json=lambda: data)


@pytest.fixture
def appointment(doctor, consented_patient):
    return Appointment.objects.create(
        doctor=doctor,
        patient=consented_patient,
        appointment_date=timezone.now() + timedelta(days=1),
    )


@pytest.fixture
def razorpay_api(monkeypatch):
    calls = []

    def fake_post(url, timeout=None, **kwargs):
        calls.append({"url": url, **kwargs})
        return _response({"id": "plink_1", "short_url": "https://rzp.io/i/abc", "expire_by": 1900000000})

    monkeypatch.setattr("apps.payments.gateways.requests.post", fake_post)
    return calls


@pytest.mark.parametrize(
    "region,gateway",
    [
        ("IN", PaymentGateway.RAZORPAY),
        ("us", PaymentGateway.PAYPAL),
        ("GB", PaymentGateway.PAYPAL),
        ("EU", PaymentGateway.PAYPAL),
        ("BR", PaymentGateway.RAZORPAY),
        (None, PaymentGateway.RAZORPAY),
    ],
)
def test_select_gateway(region, gateway):
    assert select_gateway(region) == gateway


def test_format_amount():
    assert format_amount(50000, "INR") == "₹500.00"
    assert format_amount(2500, "usd") == "$25.00"
    assert format_amount(1000, "JPY") == "10.00 JPY"


def test_razorpay_link_persists_pending_payment(appointment, razorpay_api):
    payment = create_payment_link(
        appointment, amount_minor=50000, currency="INR", region="IN", correlation_id="p1"
    )

    assert payment.status == PaymentStatus.PENDING
    assert payment.gateway == PaymentGateway.RAZORPAY
    assert payment.gateway_order_id == "plink_1"
    assert payment.payment_url == "https://rzp.io/i/abc"
    assert payment.expires_at is not None
    assert razorpay_api[0]["url"].endswith("/v1/payment_links")
    assert razorpay_api[0]["json"]["amount"] == 50000
    assert razorpay_api[0]["json"]["reference_id"] == f"appt-{appointment.id}"
    assert razorpay_api[0]["auth"] == ("rzp_test_key", "rzp_test_secret")
    assert pending_payment_for(appointment) == payment
    assert AuditLog.objects.filter(action="payment_link_created", status=AuditStatus.SUCCESS).count() == 1


def test_gateway_failure_writes_no_payment(appointment, monkeypatch):
    def unreachable(*args, **kwargs):
        raise requests.ConnectionError("down")

    monkeypatch.setattr("apps.payments.gateways.requests.post", unreachable)

    with pytest.raises(PaymentGatewayError):
        create_payment_link(appointment, amount_minor=50000, currency="INR", region="IN", correlation_id="p2")

    assert Payment.objects.count() == 0
    assert AuditLog.objects.get(action="payment_link_created").status == AuditStatus.FAILURE


def test_gateway_http_error(appointment, monkeypatch):
    monkeypatch.setattr(
        "apps.payments.gateways.requests.post",
        lambda *a, **kw: _response({"error": "bad"}, status_code=500),
    )

    with pytest.raises(PaymentGatewayError):
        create_payment_link(appointment, amount_minor=50000, currency="INR", region="IN", correlation_id="p3")


def test_paypal_link_uses_approve_url(appointment, monkeypatch):
    calls = []

    def fake_post(url, timeout=None, **kwargs):
        calls.append({"url": url, **kwargs})
        if url.endswith("/v1/oauth2/token"):
            return _response({"access_token": "pp-token"})
        return _response(
            {
                "id": "ORDER-1",
                "links": [
                    {"rel": "self", "href": "https://api-m.sandbox.paypal.com/v2/checkout/orders/ORDER-1"},
                    {"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=ORDER-1"},
                ],
            }
        )

    monkeypatch.setattr("apps.payments.gateways.requests.post", fake_post)

    payment = create_payment_link(appointment, amount_minor=2550, currency="USD", region="US", correlation_id="p4")

    assert payment.gateway == PaymentGateway.PAYPAL
    assert payment.payment_url == "https://www.sandbox.paypal.com/checkoutnow?token=ORDER-1"
    order = calls[1]["json"]["purchase_units"][0]
    assert order["amount"] == {"currency_code": "USD", "value": "25.50"}
    assert calls[1]["headers"]["Authorization"] == "Bearer pp-token"


def test_payment_success_confirms_and_notifies(appointment, razorpay_api):
    create_payment_link(appointment, amount_minor=50000, currency="INR", region="IN", correlation_id="p5")

    payment = process_payment_success(
        gateway=PaymentGateway.RAZORPAY,
        gateway_order_id="plink_1",
        gateway_payment_id="pay_1",
        amount_minor=50000,
        currency="INR",
        correlation_id="p5",
    )

    appointment.refresh_from_db()
    assert payment.status == PaymentStatus.CAPTURED
    assert payment.gateway_payment_id == "pay_1"
    assert appointment.status == AppointmentStatus.CONFIRMED
    assert AuditLog.objects.filter(action="payment_captured").count() == 1
    assert len(mail.outbox) == 1
    assert mail.outbox[0].to == ["asha@example.com"]
    assert "₹500.00" in mail.outbox[0].body


def test_repeated_capture_is_a_no_op(appointment, razorpay_api):
    create_payment_link(appointment, amount_minor=50000, currency="INR", region="IN", correlation_id="p6")
    kwargs = dict(
        gateway=PaymentGateway.RAZORPAY,
        gateway_order_id="plink_1",
        gateway_payment_id="pay_1",
        amount_minor=50000,
        currency="INR",
        correlation_id="p6",
    )

    process_payment_success(**kwargs)
    process_payment_success(**kwargs)

    assert AuditLog.objects.filter(action="payment_captured").count() == 1
    assert len(mail.outbox) == 1


def test_unknown_order_is_ignored():
    assert (
        process_payment_success(
            gateway=PaymentGateway.RAZORPAY,
            gateway_order_id="plink_missing",
            gateway_payment_id="pay_x",
            amount_minor=100,
            currency="INR",
            correlation_id="p7",
        )
        is None
    )


def test_razorpay_success_payload():
    captured = RazorpayAdapter().parse_success_payload(
        {
            "event": "payment_link.paid",
            "payload": {
                "payment_link": {"entity": {"id": "plink_1", "amount_paid": 50000, "currency": "INR"}},
                "payment": {"entity": {"id": "pay_1", "amount": 50000, "currency": "INR"}},
            },
        }
    )

    assert captured.gateway_order_id == "plink_1"
    assert captured.gateway_payment_id == "pay_1"
    assert captured.amount_minor == 50000
    assert RazorpayAdapter().parse_success_payload({"event": "payment.failed"}) is None


def test_paypal_success_payload():
    captured = PayPalAdapter().parse_success_payload(
        {
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {
                "id": "CAPTURE-1",
                "amount": {"value": "25.50", "currency_code": "usd"},
                "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
            },
        }
    )

    assert captured.gateway_order_id == "ORDER-1"
    assert captured.gateway_payment_id == "CAPTURE-1"
    assert captured.amount_minor == 2550
    assert captured.currency == "USD"


def test_payment_failure_marks_pending_payment_failed(appointment, razorpay_api):
    create_payment_link(appointment, amount_minor=50000, currency="INR", region="IN", correlation_id="p8")

    payment = process_payment_failure(
        gateway=PaymentGateway.RAZORPAY,
        gateway_order_id="plink_1",
        gateway_payment_id="pay_8",
        reason="BAD_REQUEST_ERROR",
        correlation_id="p8",
    )

    appointment.refresh_from_db()
    assert payment.status == PaymentStatus.FAILED
    assert payment.gateway_payment_id == "pay_8"
    assert appointment.status == AppointmentStatus.PENDING
    audit = AuditLog.objects.get(action="payment_failed")
    assert audit.status == AuditStatus.FAILURE
    assert audit.error_message == "BAD_REQUEST_ERROR"
    assert pending_payment_for(appointment) is None
    assert mail.outbox == []


def test_failure_after_capture_keeps_capture(appointment, razorpay_api):
    create_payment_link(appointment, amount_minor=50000, currency="INR", region="IN", correlation_id="p9")
    process_payment_success(
        gateway=PaymentGateway.RAZORPAY,
        gateway_order_id="plink_1",
        gateway_payment_id="pay_1",
        amount_minor=50000,
        currency="INR",
        correlation_id="p9",
    )

    payment = process_payment_failure(
        gateway=PaymentGateway.RAZORPAY, gateway_order_id="plink_1", correlation_id="p9"
    )

    assert payment.status == PaymentStatus.CAPTURED
    assert not AuditLog.objects.filter(action="payment_failed").exists()


def test_failure_for_unknown_order_is_ignored():
    assert (
        process_payment_failure(gateway=PaymentGateway.PAYPAL, gateway_order_id="ORDER-X", correlation_id="p10")
        is None
    )


def test_razorpay_failure_payload():
    failed = RazorpayAdapter().parse_failure_payload(
        {
            "event": "payment.failed",
            "payload": {
                "payment": {
                    "entity": {"id": "pay_2", "order_id": "order_2", "error_code": "BAD_REQUEST_ERROR"}
                }
            },
        }
    )

    assert failed.gateway_order_id == "order_2"
    assert failed.gateway_payment_id == "pay_2"
    assert failed.reason == "BAD_REQUEST_ERROR"
    assert RazorpayAdapter().parse_failure_payload({"event": "payment.captured"}) is None


def test_paypal_denied_capture_payload():
    failed = PayPalAdapter().parse_failure_payload(
        {
            "event_type": "PAYMENT.CAPTURE.DENIED",
            "resource": {
                "id": "CAPTURE-2",
                "status": "DECLINED",
                "supplementary_data": {"related_ids": {"order_id": "ORDER-2"}},
            },
        }
    )

    assert failed.gateway_order_id == "ORDER-2"
    assert failed.gateway_payment_id == "CAPTURE-2"
    assert failed.reason == "DECLINED"
    assert PayPalAdapter().parse_failure_payload({"event_type": "PAYMENT.CAPTURE.COMPLETED"}) is None

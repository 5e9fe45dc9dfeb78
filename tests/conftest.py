import hashlib
import hmac
from datetime import time

import pytest
from django.core.cache import cache

from apps.channels.models import InstagramAccount
from apps.doctors.models import Availability, Doctor
from apps.patients.models import ConsentStatus, Patient


@pytest.fixture(autouse=True)
def webhook_secrets(settings):
    settings.INSTAGRAM_APP_SECRET = "ig-secret"
    settings.INSTAGRAM_VERIFY_TOKEN = "verify-me"
    settings.RAZORPAY_WEBHOOK_SECRET = "rzp-secret"
    settings.RAZORPAY_KEY_ID = "rzp_test_key"
    settings.RAZORPAY_KEY_SECRET = "rzp_test_secret"
    settings.PAYPAL_CLIENT_ID = "pp-client"
    settings.PAYPAL_CLIENT_SECRET = "pp-secret"
    settings.PAYPAL_WEBHOOK_ID = "WH-123"
    settings.OPENAI_API_KEY = "test-key"
    settings.ENCRYPTION_KEY = "test-encryption-key"
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def doctor(db):
    return Doctor.objects.create(
        name="Dr. Asha Rao",
        slug="asha-rao",
        email="asha@example.com",
        timezone="UTC",
        country="IN",
        appointment_fee_minor=50000,
        appointment_fee_currency="INR",
    )


@pytest.fixture
def availability(doctor):
    """A 09:00-10:00 window on every weekday."""
    return [
        Availability.objects.create(
            doctor=doctor,
            weekday=weekday,
            start_time=time(9, 0),
            end_time=time(10, 0),
        )
        for weekday in range(7)
    ]


@pytest.fixture
def patient(doctor):
    return Patient.objects.create(
        doctor=doctor,
        platform="instagram",
        platform_external_id="igsid-1",
    )


@pytest.fixture
def consented_patient(doctor):
    return Patient.objects.create(
        doctor=doctor,
        name="Priya Shah",
        phone="+919876543210",
        consent_status=ConsentStatus.GRANTED,
        consent_method="instagram_dm",
        platform="instagram",
        platform_external_id="igsid-2",
    )


@pytest.fixture
def instagram_account(doctor):
    return InstagramAccount.objects.create(
        doctor=doctor,
        page_id="page-1",
        username="drasha",
        access_token="page-token",
    )


def _sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def instagram_signature(settings):
    def _signature(body: bytes) -> str:
        return "sha256=" + _sign(settings.INSTAGRAM_APP_SECRET, body)

    return _signature


@pytest.fixture
def razorpay_signature(settings):
    def _signature(body: bytes) -> str:
        return _sign(settings.RAZORPAY_WEBHOOK_SECRET, body)

    return _signature


@pytest.fixture
def instagram_payload():
    def _payload(text="book appointment", mid="mid-1", sender="igsid-1", page="page-1"):
        return {
            "object": "instagram",
            "entry": [
                {
                    "id": page,
                    "time": 1700000000,
                    "messaging": [
                        {
                            "sender": {"id": sender},
                            "recipient": {"id": page},
                            "timestamp": 1700000000,
                            "message": {"mid": mid, "text": text},
                        }
                    ],
                }
            ],
        }

    return _payload


@pytest.fixture
def enqueued(monkeypatch):
    """Capture webhook jobs instead of publishing them to the broker."""
    calls = []

    def fake_apply_async(args=None, kwargs=None, countdown=None, task_id=None):
        calls.append({"kwargs": kwargs, "countdown": countdown, "task_id": task_id})

    monkeypatch.setattr("apps.workers.tasks.process_webhook_job.apply_async", fake_apply_async)
    return calls

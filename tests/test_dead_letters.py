from datetime import timedelta

import pytest
from django.contrib.auth import get_user_model
from django.db.models import QuerySet
from django.utils import timezone
from rest_framework_simplejwt.tokens import RefreshToken

from apps.audit.models import AuditLog
from apps.webhooks import idempotency
from apps.webhooks.dead_letter import list_dead_letters, purge_expired, store_dead_letter
from apps.webhooks.models import DeadLetterRecord, WebhookEvent, WebhookEventStatus

pytestmark = pytest.mark.django_db


def _auth_header(user):
    token = RefreshToken.for_user(user).access_token
    return {"HTTP_AUTHORIZATION": f"Bearer {token}"}


@pytest.fixture
def operator():
    return get_user_model().objects.create_user(
        username="ops", password="secret123", is_staff=True
    )


def _store(event_id="evt-1", provider="razorpay", payload=None):
    return store_dead_letter(
        event_id=event_id,
        provider=provider,
        payload=payload or {"event": "payment.captured"},
        error_message="boom",
        retry_count=3,
        correlation_id="corr-1",
    )


def test_status_only_moves_forward():
    assert idempotency.check_status("e1", "instagram") == idempotency.STATUS_NONE
    assert idempotency.mark_processing("e1", "instagram") is True
    assert idempotency.mark_processing("e1", "instagram") is False

    assert idempotency.mark_processed("e1", "instagram") is True
    assert idempotency.mark_failed("e1", "instagram", "late failure") is False
    assert idempotency.is_processed("e1", "instagram") is True


def test_increment_retry_keeps_pending():
    idempotency.mark_processing("e2", "paypal")

    idempotency.increment_retry("e2", "paypal", "timeout")
    idempotency.increment_retry("e2", "paypal", "timeout")

    event = WebhookEvent.objects.get(event_id="e2", provider="paypal")
    assert event.retry_count == 2
    assert event.status == WebhookEventStatus.PENDING


def test_same_event_id_is_distinct_per_provider():
    assert idempotency.mark_processing("shared", "razorpay") is True
    assert idempotency.mark_processing("shared", "paypal") is True


def test_store_encrypts_and_audits():
    record = _store(payload={"patient": "Priya", "phone": "+919876543210"})

    assert record.payload_encrypted.startswith("enc::")
    assert "Priya" not in record.payload_encrypted
    audit = AuditLog.objects.get(action="dead_letter_stored")
    assert audit.meta["event_id"] == "evt-1"
    assert "Priya" not in str(audit.meta)


def test_list_filters_by_provider_and_window():
    old = _store(event_id="old", provider="razorpay")
    DeadLetterRecord.objects.filter(pk=old.pk).update(failed_at=timezone.now() - timedelta(days=2))
    _store(event_id="new", provider="razorpay")
    _store(event_id="ig", provider="instagram")

    razorpay = list_dead_letters(provider="razorpay")
    recent = list_dead_letters(start=timezone.now() - timedelta(days=1))

    assert [record.event_id for record in razorpay] == ["new", "old"]
    assert {record.event_id for record in recent} == {"new", "ig"}


def test_purge_removes_records_past_retention():
    expired = _store(event_id="expired")
    DeadLetterRecord.objects.filter(pk=expired.pk).update(failed_at=timezone.now() - timedelta(days=91))
    _store(event_id="fresh")

    assert purge_expired() == 1
    assert list(DeadLetterRecord.objects.values_list("event_id", flat=True)) == ["fresh"]


def test_list_endpoint_returns_metadata_only(client, operator):
    _store(payload={"secret": "value"})

    response = client.get("/ops/dead-letters", **_auth_header(operator))

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["data"]["total"] == 1
    item = body["data"]["items"][0]
    assert item["event_id"] == "evt-1"
    assert "payload" not in item


def test_list_endpoint_pages_in_the_database(client, operator):
    for index in range(3):
        record = _store(event_id=f"evt-{index}")
        DeadLetterRecord.objects.filter(pk=record.pk).update(failed_at=timezone.now() - timedelta(minutes=10 - index))

    response = client.get("/ops/dead-letters?page=2&size=2", **_auth_header(operator))

    data = response.json()["data"]
    assert data["total"] == 3
    assert [item["event_id"] for item in data["items"]] == ["evt-0"]
    assert isinstance(list_dead_letters(), QuerySet)


def test_detail_endpoint_decrypts_and_audits_access(client, operator):
    record = _store(payload={"event": "payment.captured", "id": "pay_1"})

    response = client.get(f"/ops/dead-letters/{record.id}", **_auth_header(operator))

    assert response.status_code == 200
    assert response.json()["data"]["payload"] == {"event": "payment.captured", "id": "pay_1"}
    assert AuditLog.objects.filter(action="dead_letter_accessed", resource_id=str(record.id)).count() == 1


def test_detail_endpoint_missing_record(client, operator):
    response = client.get("/ops/dead-letters/9999", **_auth_header(operator))

    assert response.status_code == 404
    assert response.json() == {"ok": False, "error": "not found"}


def test_endpoints_require_staff(client):
    user = get_user_model().objects.create_user(username="patient", password="secret123")

    anonymous = client.get("/ops/dead-letters")
    non_staff = client.get("/ops/dead-letters", **_auth_header(user))

    assert anonymous.status_code == 401
    assert non_staff.status_code == 403

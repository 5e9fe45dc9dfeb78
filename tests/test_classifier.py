import json
from types import SimpleNamespace

import pytest
import requests

from apps.audit.models import AuditLog, AuditStatus
from apps.dialog.classifier import IntentCache, IntentClassifier, IntentResult, redact

pytestmark = pytest.mark.django_db


def _completion(intent="book_appointment", confidence=0.92, status_code=200):
    content = json.dumps({"intent": intent, "confidence": confidence})
    return SimpleNamespace(
        status_code=status_code,
        json=lambda: {
            "choices": [{"message": {"content": content}}],
            "usage": {"total_tokens": 42},
        },
    )


def _classifier(cache=None):
    return IntentClassifier(cache=cache or IntentCache(), sleep=lambda seconds: None)


def test_redacts_email_and_phone():
    text, redacted = redact("Reach me at priya@example.com or 555-123-4567")

    assert redacted is True
    assert "priya@example.com" not in text
    assert "[REDACTED_EMAIL]" in text
    assert "[REDACTED_PHONE]" in text


@pytest.mark.parametrize("number", ["+91 98765 43210", "98765-43210", "+44 7911 123456", "(555) 123-4567"])
def test_redacts_international_phone_numbers(number):
    text, redacted = redact(f"call me on {number} tomorrow")

    assert redacted is True
    assert text.startswith("call me on ")
    assert "[REDACTED_PHONE]" in text
    assert not any(char.isdigit() for char in text)


def test_short_numbers_are_not_redacted():
    assert redact("I'll take 2 please") == ("I'll take 2 please", False)


def test_sends_redacted_text_with_json_mode(monkeypatch):
    captured = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        captured["url"] = url
        captured["payload"] = json
        return _completion()

    monkeypatch.setattr("apps.dialog.classifier.requests.post", fake_post)

    result = _classifier().classify("book me, email priya@example.com", correlation_id="c1")

    assert result == IntentResult("book_appointment", 0.92)
    assert captured["url"].endswith("/v1/chat/completions")
    assert captured["payload"]["response_format"] == {"type": "json_object"}
    assert captured["payload"]["max_tokens"] == 256
    assert "priya@example.com" not in captured["payload"]["messages"][1]["content"]


def test_two_transient_failures_then_success(monkeypatch):
    responses = [
        SimpleNamespace(status_code=503, json=lambda: {}),
        SimpleNamespace(status_code=429, json=lambda: {}),
        _completion("check_availability", 0.8),
    ]
    delays = []

    monkeypatch.setattr("apps.dialog.classifier.requests.post", lambda *a, **kw: responses.pop(0))
    classifier = IntentClassifier(cache=IntentCache(), sleep=delays.append)

    result = classifier.classify("any free slots tomorrow?", correlation_id="c2")

    assert result.intent == "check_availability"
    assert delays == [1, 2]
    audits = AuditLog.objects.filter(action="ai_classification")
    assert audits.count() == 1
    audit = audits.get()
    assert audit.status == AuditStatus.SUCCESS
    assert audit.meta["tokens"] == 42
    assert "free slots" not in json.dumps(audit.meta)


def test_exhausted_retries_fall_back_to_unknown(monkeypatch):
    def timeout(*args, **kwargs):
        raise requests.Timeout("slow")

    monkeypatch.setattr("apps.dialog.classifier.requests.post", timeout)

    result = _classifier().classify("hello there", correlation_id="c3")

    assert result == IntentResult.unknown()
    assert AuditLog.objects.get(action="ai_classification").status == AuditStatus.FAILURE


def test_client_errors_are_not_retried(monkeypatch):
    calls = []

    def bad_request(*args, **kwargs):
        calls.append(1)
        return SimpleNamespace(status_code=400, json=lambda: {})

    monkeypatch.setattr("apps.dialog.classifier.requests.post", bad_request)

    assert _classifier().classify("hi", correlation_id="c4").intent == "unknown"
    assert len(calls) == 1


def test_cache_hit_skips_call_and_audit(monkeypatch):
    calls = []

    def fake_post(*args, **kwargs):
        calls.append(1)
        return _completion("greeting", 0.99)

    monkeypatch.setattr("apps.dialog.classifier.requests.post", fake_post)
    classifier = _classifier()

    classifier.classify("hello", correlation_id="c5")
    classifier.classify("hello", correlation_id="c6")

    assert len(calls) == 1
    assert AuditLog.objects.filter(action="ai_classification").count() == 1


def test_unknown_intent_and_confidence_are_normalised(monkeypatch):
    monkeypatch.setattr(
        "apps.dialog.classifier.requests.post",
        lambda *a, **kw: _completion("order_pizza", 7),
    )

    result = _classifier().classify("pizza please", correlation_id="c7")

    assert result.intent == "unknown"
    assert result.confidence == 1.0


def test_missing_api_key_returns_unknown(monkeypatch, settings):
    settings.OPENAI_API_KEY = ""
    monkeypatch.setattr(
        "apps.dialog.classifier.requests.post",
        lambda *a, **kw: pytest.fail("no call expected"),
    )

    assert _classifier().classify("book", correlation_id="c8") == IntentResult.unknown()


def test_cache_evicts_least_recent_and_expires():
    now = [0.0]
    cache = IntentCache(max_entries=2, ttl_seconds=10, clock=lambda: now[0])
    cache.put("a", IntentResult("greeting", 1.0))
    cache.put("b", IntentResult("greeting", 1.0))
    cache.get("a")
    cache.put("c", IntentResult("greeting", 1.0))

    assert cache.get("b") is None
    assert cache.get("a") is not None

    now[0] = 11.0
    assert cache.get("a") is None

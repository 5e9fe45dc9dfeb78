"""Intent classification backed by an OpenAI-compatible chat completions API."""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

import requests
from django.conf import settings

from apps.audit.models import AuditStatus
from apps.audit.services import record_audit_event

logger = logging.getLogger(__name__)

INTENTS = (
    "book_appointment",
    "ask_question",
    "check_availability",
    "greeting",
    "cancel_appointment",
    "revoke_consent",
    "unknown",
)
UNKNOWN_INTENT = "unknown"

AI_MODEL = getattr(settings, "AI_MODEL", "gpt-5.2")
AI_MAX_TOKENS = int(getattr(settings, "AI_MAX_TOKENS", 256))
AI_TIMEOUT_SECONDS = int(getattr(settings, "AI_TIMEOUT_SECONDS", 15))
INTENT_CACHE_MAX_ENTRIES = int(getattr(settings, "INTENT_CACHE_MAX_ENTRIES", 500))
INTENT_CACHE_TTL_SECONDS = int(getattr(settings, "INTENT_CACHE_TTL_SECONDS", 300))
RETRY_DELAYS = (1, 2)

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_PATTERN = re.compile(r"\+?\d[\d\s().-]{6,}\d")

SYSTEM_PROMPT = (
    "You classify messages sent to a doctor's booking assistant.\n"
    "Reply with a JSON object: {\"intent\": <intent>, \"confidence\": <0..1>}.\n"
    "Allowed intents: " + ", ".join(INTENTS) + ".\n"
    "- book_appointment: wants to book or schedule a visit.\n"
    "- check_availability: asks which times are free.\n"
    "- cancel_appointment: wants to cancel a booking.\n"
    "- revoke_consent: asks to delete or stop using their data.\n"
    "- greeting: says hello without a request.\n"
    "- ask_question: any other question about the practice.\n"
    "Use unknown when none apply."
)


class ClassifierError(RuntimeError):
    """Raised when the completion call fails."""

    def __init__(self, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True, slots=True)
class IntentResult:
    intent: str
    confidence: float

    @classmethod
    def unknown(cls) -> "IntentResult":
        return cls(intent=UNKNOWN_INTENT, confidence=0.0)


def redact(text: str) -> tuple[str, bool]:
    """Mask emails and phone numbers before text leaves the process."""
    redacted = EMAIL_PATTERN.sub("[REDACTED_EMAIL]", text)
    redacted = PHONE_PATTERN.sub("[REDACTED_PHONE]", redacted)
    return redacted, redacted != text


class IntentCache:
    """Thread-safe LRU cache with per-entry expiry."""

    def __init__(
        self,
        max_entries: int = INTENT_CACHE_MAX_ENTRIES,
        ttl_seconds: int = INTENT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        self._store: OrderedDict[str, tuple[IntentResult, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[IntentResult]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._store[key]
                return None
            self._store.move_to_end(key)
            return value

    def put(self, key: str, value: IntentResult) -> None:
        with self._lock:
            self._store.pop(key, None)
            while len(self._store) >= self._max_entries and self._store:
                self._store.popitem(last=False)
            self._store[key] = (value, self._clock() + self._ttl)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


def _parse_result(content: str) -> IntentResult:
    try:
        data = json.loads(content or "")
    except ValueError:
        return IntentResult.unknown()
    if not isinstance(data, dict):
        return IntentResult.unknown()
    intent = str(data.get("intent") or "").strip().lower()
    if intent not in INTENTS:
        intent = UNKNOWN_INTENT
    try:
        confidence = float(data.get("confidence", 0))
    except (TypeError, ValueError):
        confidence = 0.0
    return IntentResult(intent=intent, confidence=min(max(confidence, 0.0), 1.0))


class IntentClassifier:
    """Classify a patient message into one of ``INTENTS``.

    Message text is redacted before the external call and never written to
    logs or audit records. Results are cached by redacted text, so a cache
    hit produces neither a network call nor an audit row.
    """

    def __init__(
        self,
        cache: IntentCache | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cache = cache if cache is not None else IntentCache()
        self.api_key = settings.OPENAI_API_KEY
        self.api_base = settings.OPENAI_API_BASE.rstrip("/")
        self.model = AI_MODEL
        self._sleep = sleep

    def classify(self, text: str, *, correlation_id: str) -> IntentResult:
        redacted, was_redacted = redact((text or "").strip())
        if not redacted:
            return IntentResult.unknown()

        cached = self.cache.get(redacted)
        if cached is not None:
            return cached

        if not self.api_key:
            logger.warning("classifier.unconfigured", extra={"correlation_id": correlation_id})
            return IntentResult.unknown()

        tokens = 0
        try:
            content, tokens = self._complete_with_retry(redacted, correlation_id)
        except ClassifierError as exc:
            record_audit_event(
                correlation_id=correlation_id,
                action="ai_classification",
                resource_type="message",
                status=AuditStatus.FAILURE,
                error_message=str(exc),
                meta={"model": self.model, "tokens": tokens, "redacted": was_redacted},
            )
            return IntentResult.unknown()

        result = _parse_result(content)
        record_audit_event(
            correlation_id=correlation_id,
            action="ai_classification",
            resource_type="message",
            meta={
                "model": self.model,
                "tokens": tokens,
                "redacted": was_redacted,
                "intent": result.intent,
            },
        )
        self.cache.put(redacted, result)
        return result

    def _complete_with_retry(self, text: str, correlation_id: str) -> tuple[str, int]:
        attempt = 0
        while True:
            try:
                return self._complete(text)
            except ClassifierError as exc:
                if not exc.retryable or attempt >= len(RETRY_DELAYS):
                    raise
                delay = RETRY_DELAYS[attempt]
                attempt += 1
                logger.info(
                    "classifier.retry",
                    extra={"attempt": attempt, "delay": delay, "error": str(exc), "correlation_id": correlation_id},
                )
                self._sleep(delay)

    def _complete(self, text: str) -> tuple[str, int]:
        try:
            response = requests.post(
                f"{self.api_base}/v1/chat/completions",
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": text},
                    ],
                    "max_tokens": AI_MAX_TOKENS,
                    "response_format": {"type": "json_object"},
                },
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=AI_TIMEOUT_SECONDS,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise ClassifierError("classifier_unreachable", retryable=True) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ClassifierError(f"classifier_http_{response.status_code}", retryable=True)
        if response.status_code >= 400:
            raise ClassifierError(f"classifier_http_{response.status_code}", retryable=False)

        try:
            payload = response.json()
            content = payload["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            return "", 0
        tokens = int((payload.get("usage") or {}).get("total_tokens") or 0)
        return content or "", tokens

"""HMAC signature checks for inbound webhooks."""

from __future__ import annotations

import hashlib
import hmac
import logging

from django.conf import settings

logger = logging.getLogger(__name__)

INSTAGRAM_SIGNATURE_PREFIX = "sha256="


def hmac_sha256_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _matches(secret: str, body: bytes, provided: str) -> bool:
    return hmac.compare_digest(hmac_sha256_hex(secret, body), provided.strip().lower())


def verify_instagram_signature(body: bytes, header: str | None) -> bool:
    """Check ``X-Hub-Signature-256: sha256=<hex>`` against the raw body."""
    secret = settings.INSTAGRAM_APP_SECRET
    if not secret:
        logger.error("webhook.signature_unconfigured", extra={"provider": "instagram"})
        return False
    if not header or not header.startswith(INSTAGRAM_SIGNATURE_PREFIX):
        return False
    return _matches(secret, body, header[len(INSTAGRAM_SIGNATURE_PREFIX):])


def verify_razorpay_signature(body: bytes, header: str | None) -> bool:
    secret = settings.RAZORPAY_WEBHOOK_SECRET
    if not secret:
        logger.error("webhook.signature_unconfigured", extra={"provider": "razorpay"})
        return False
    if not header:
        return False
    return _matches(secret, body, header)

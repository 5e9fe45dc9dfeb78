"""Outbound Instagram direct messages via the Graph API."""

from __future__ import annotations

import logging
import time
from typing import Callable

import requests
from django.conf import settings

from apps.audit.models import AuditStatus
from apps.audit.services import record_audit_event

logger = logging.getLogger(__name__)

INSTAGRAM_GRAPH_BASE = getattr(settings, "INSTAGRAM_GRAPH_BASE", "https://graph.instagram.com/v18.0")
INSTAGRAM_TIMEOUT_SECONDS = int(getattr(settings, "INSTAGRAM_TIMEOUT_SECONDS", 10))
MAX_MESSAGE_LENGTH = 2000
MAX_RETRIES = 3
RETRY_DELAYS = (1, 2, 4)
PERMANENT_STATUS_CODES = {401, 403, 404}


class ChannelSendError(RuntimeError):
    """Base error for outbound channel failures."""


class ChannelRetryableError(ChannelSendError):
    """Rate limited or server-side failure that outlived the local retries."""


class ChannelPermanentError(ChannelSendError):
    """Token or recipient problem; retrying will not help."""


class ChannelUnavailableError(ChannelSendError):
    """The Graph API could not be reached."""


def _retry_after(response, default: int) -> float:
    header = (response.headers or {}).get("Retry-After")
    try:
        return max(float(header), 0.0) if header else float(default)
    except (TypeError, ValueError):
        return float(default)


class InstagramSender:
    """Send text replies to Instagram users."""

    def __init__(self, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self._sleep = sleep

    def send(self, recipient_id: str, text: str, access_token: str, *, correlation_id: str) -> str:
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ChannelSendError("message_too_long")
        try:
            message_id = self._post_with_retry(recipient_id, text, access_token)
        except ChannelSendError as exc:
            record_audit_event(
                correlation_id=correlation_id,
                action="send_message",
                resource_type="instagram_message",
                status=AuditStatus.FAILURE,
                error_message=type(exc).__name__,
                meta={"recipient_id": recipient_id, "length": len(text)},
            )
            raise
        record_audit_event(
            correlation_id=correlation_id,
            action="send_message",
            resource_type="instagram_message",
            resource_id=message_id,
            meta={"recipient_id": recipient_id, "length": len(text)},
        )
        return message_id

    def _post_with_retry(self, recipient_id: str, text: str, access_token: str) -> str:
        url = f"{INSTAGRAM_GRAPH_BASE.rstrip('/')}/me/messages"
        body = {"recipient": {"id": recipient_id}, "message": {"text": text}}
        headers = {"Authorization": f"Bearer {access_token}"}
        attempt = 0
        while True:
            try:
                response = requests.post(url, json=body, headers=headers, timeout=INSTAGRAM_TIMEOUT_SECONDS)
            except requests.RequestException as exc:
                logger.warning("instagram.send_unreachable", extra={"recipient_id": recipient_id})
                raise ChannelUnavailableError(str(exc)) from exc

            status_code = response.status_code
            if status_code < 400:
                data = response.json() if response.content else {}
                return str(data.get("message_id") or "")
            if status_code in PERMANENT_STATUS_CODES:
                logger.error(
                    "instagram.send_rejected",
                    extra={"recipient_id": recipient_id, "status_code": status_code},
                )
                raise ChannelPermanentError(f"instagram_http_{status_code}")
            if status_code == 429 or status_code >= 500:
                if attempt >= MAX_RETRIES:
                    raise ChannelRetryableError(f"instagram_http_{status_code}")
                delay = _retry_after(response, RETRY_DELAYS[attempt])
                attempt += 1
                logger.info(
                    "instagram.send_retry",
                    extra={"recipient_id": recipient_id, "status_code": status_code, "attempt": attempt, "delay": delay},
                )
                self._sleep(delay)
                continue
            raise ChannelSendError(f"instagram_http_{status_code}")

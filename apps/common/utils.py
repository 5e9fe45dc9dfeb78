"""Utility helpers shared across apps."""

from __future__ import annotations

from typing import Any, Dict
from uuid import uuid4

from django.http import HttpRequest, JsonResponse

CORRELATION_HEADER = "X-Correlation-ID"


def minimal_ok(**extra: Any) -> JsonResponse:
    """Return the canonical success envelope."""
    payload: Dict[str, Any] = {"ok": True}
    payload.update(extra)
    return JsonResponse(payload)


def error_json(message: str, status: int) -> JsonResponse:
    return JsonResponse({"ok": False, "error": message}, status=status)


def correlation_id_for(request: HttpRequest) -> str:
    """Reuse the caller's correlation id when supplied, otherwise mint one."""
    provided = (request.headers.get(CORRELATION_HEADER) or "").strip()
    return provided[:64] if provided else str(uuid4())

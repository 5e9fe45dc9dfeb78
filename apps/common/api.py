"""Common DRF helpers."""

from __future__ import annotations

from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Iterable

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler


def ok_response(data: Dict[str, Any] | Iterable[Any], status_code: int = status.HTTP_200_OK) -> Response:
    """Return a standardized success envelope."""

    return Response({"ok": True, "data": data}, status=status_code)


def error_response(message: str, status_code: int = status.HTTP_400_BAD_REQUEST) -> Response:
    """Return a standardized error envelope."""

    return Response({"ok": False, "error": message}, status=status_code)


def exception_handler(exc, context):
    """Keep DRF errors on the {ok:false,error:...} contract."""

    response = drf_exception_handler(exc, context)
    if response is None:
        return response
    data = response.data
    message: Any = "ERROR"
    if isinstance(data, dict):
        message = data.get("detail") or data.get("message") or "ERROR"
    response.data = {"ok": False, "error": str(message)}
    return response


def positive_int(value, default: int) -> int:
    try:
        parsed = int(value)
        return parsed if parsed > 0 else default
    except (TypeError, ValueError):
        return default


def bounded_positive_int(value, default: int, maximum: int) -> int:
    return min(positive_int(value, default), maximum)


def parse_iso_datetime(raw: str | None) -> datetime | None:
    """Parse an ISO-8601 query parameter; naive values are taken as UTC."""
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt_timezone.utc)
    return parsed.astimezone(dt_timezone.utc)

"""Operator endpoints for inspecting dead-lettered webhook events."""

from __future__ import annotations

from rest_framework import permissions, status
from rest_framework.views import APIView

from apps.common.api import (
    bounded_positive_int,
    error_response,
    ok_response,
    parse_iso_datetime,
    positive_int,
)
from apps.common.security import DecryptionError
from apps.common.utils import correlation_id_for
from apps.webhooks.dead_letter import get_dead_letter, list_dead_letters
from apps.webhooks.models import DeadLetterRecord, WebhookProvider


class DeadLetterListView(APIView):
    """List dead-letter metadata, newest first. Payloads are never included."""

    permission_classes = [permissions.IsAdminUser]

    def get(self, request):
        params = request.GET
        provider = (params.get("provider") or "").strip().lower() or None
        if provider and provider not in WebhookProvider.values:
            return error_response("unknown provider")

        records = list_dead_letters(
            provider=provider,
            start=parse_iso_datetime(params.get("from")),
            end=parse_iso_datetime(params.get("to")),
        )
        page = positive_int(params.get("page"), default=1)
        size = bounded_positive_int(params.get("size"), default=50, maximum=200)
        offset = (page - 1) * size
        items = [record.as_metadata() for record in records[offset : offset + size]]
        return ok_response({"items": items, "page": page, "size": size, "total": records.count()})


class DeadLetterDetailView(APIView):
    """Return one dead letter with its decrypted payload; every read is audited."""

    permission_classes = [permissions.IsAdminUser]

    def get(self, request, record_id: int):
        try:
            record, payload = get_dead_letter(record_id, correlation_id=correlation_id_for(request))
        except DeadLetterRecord.DoesNotExist:
            return error_response("not found", status.HTTP_404_NOT_FOUND)
        except DecryptionError:
            return error_response("payload unavailable", status.HTTP_409_CONFLICT)
        data = record.as_metadata()
        data["payload"] = payload
        return ok_response(data)

"""Fail-open audit recorder.

Audit writes never interrupt the flow that emits them: a database error is
logged and swallowed so that webhook ingestion and booking keep working while
the audit table is unavailable.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from django.db import DatabaseError, transaction

from apps.audit.models import AuditLog, AuditStatus

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


def record_audit_event(
    *,
    correlation_id: str,
    action: str,
    resource_type: str,
    status: str = AuditStatus.SUCCESS,
    resource_id: Any = "",
    error_message: str = "",
    meta: Mapping[str, Any] | None = None,
) -> AuditLog | None:
    try:
        with transaction.atomic():
            return AuditLog.objects.create(
                correlation_id=correlation_id,
                action=action,
                resource_type=resource_type,
                resource_id="" if resource_id in (None, "") else str(resource_id),
                status=status,
                error_message=(error_message or "")[:MAX_ERROR_LENGTH],
                meta=dict(meta or {}),
            )
    except DatabaseError as exc:
        logger.error(
            "audit.write_failed",
            extra={"action": action, "correlation_id": correlation_id, "error": str(exc)},
        )
        return None

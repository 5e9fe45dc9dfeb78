"""Derive idempotency keys from webhook payloads."""

from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Iterable

FALLBACK_BUCKET_SECONDS = 5 * 60
INSTAGRAM_MID_KEYS = ("message", "reaction", "postback", "read", "message_edit")


def fallback_event_id(payload: Any, *, now: float | None = None) -> str:
    """Stable hash of the key-sorted payload within a five minute bucket."""
    bucket = int((now if now is not None else time.time()) // FALLBACK_BUCKET_SECONDS)
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(raw.encode("utf-8"))
    digest.update(str(bucket).encode("utf-8"))
    return digest.hexdigest()


def payload_hash(payload: Any) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def _entries(payload: Any) -> list:
    if not isinstance(payload, dict):
        return []
    entries = payload.get("entry")
    return entries if isinstance(entries, list) else []


def _messaging_mids(entry: Any) -> Iterable[str]:
    if not isinstance(entry, dict):
        return
    for item in entry.get("messaging") or []:
        if not isinstance(item, dict):
            continue
        for key in INSTAGRAM_MID_KEYS:
            block = item.get(key)
            if isinstance(block, dict) and block.get("mid"):
                yield str(block["mid"])
                break


def instagram_event_id(payload: Any) -> str | None:
    """Prefer the first message id, then the entry id."""
    if not isinstance(payload, dict) or payload.get("object") != "instagram":
        return None
    entries = _entries(payload)
    for entry in entries:
        for mid in _messaging_mids(entry):
            return mid
    if entries and isinstance(entries[0], dict) and entries[0].get("id"):
        return str(entries[0]["id"])
    return None

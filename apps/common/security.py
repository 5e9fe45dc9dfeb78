"""Fernet helpers for data that must be encrypted at rest."""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

_ENCRYPTION_PREFIX = "enc::"


class DecryptionError(RuntimeError):
    """Raised when a stored ciphertext cannot be decrypted with the current key."""


def _derive_key(source: str) -> bytes:
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def _get_fernet() -> Fernet:
    secret = settings.ENCRYPTION_KEY
    if not secret:
        raise ImproperlyConfigured("ENCRYPTION_KEY is required for encrypted storage")
    return Fernet(_derive_key(secret))


def is_encrypted(value: Optional[str]) -> bool:
    return bool(value and value.startswith(_ENCRYPTION_PREFIX))


def encrypt_value(value: str) -> str:
    if not value or is_encrypted(value):
        return value
    token = _get_fernet().encrypt(value.encode("utf-8")).decode("utf-8")
    return f"{_ENCRYPTION_PREFIX}{token}"


def decrypt_value(value: Optional[str]) -> str:
    if not value:
        return ""
    if not is_encrypted(value):
        return value
    token = value[len(_ENCRYPTION_PREFIX):]
    try:
        return _get_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise DecryptionError("stored value could not be decrypted") from exc


def encrypt_payload(payload: Any) -> str:
    """Serialize a JSON-compatible payload and encrypt it."""
    return encrypt_value(json.dumps(payload, sort_keys=True, default=str))


def decrypt_payload(value: str) -> Any:
    return json.loads(decrypt_value(value))

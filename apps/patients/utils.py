"""Utility helpers for patient data normalization."""

import re


PHONE_CLEANER = re.compile(r"[^\d+]")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")


def normalize_phone_number(raw: str) -> str:
    """Strip formatting characters and convert a 00 prefix to +."""
    if not raw:
        return ""
    cleaned = PHONE_CLEANER.sub("", raw)
    if cleaned.startswith("00"):
        cleaned = "+" + cleaned[2:]
    return cleaned


def is_valid_phone_number(value: str) -> bool:
    return bool(PHONE_PATTERN.match(value or ""))

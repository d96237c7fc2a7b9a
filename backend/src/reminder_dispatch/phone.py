from __future__ import annotations

import re

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def sanitize_phone_number(raw: str) -> str:
    """Strip formatting characters and ensure a leading ``+``."""
    cleaned = "".join(ch for ch in raw.strip() if ch.isdigit() or ch == "+")
    if not cleaned:
        return ""
    digits = cleaned.replace("+", "")
    return f"+{digits}"


def is_e164(phone_number: str) -> bool:
    return bool(E164_PATTERN.match(phone_number))


def mask_phone_number(phone_number: str | None) -> str:
    if not phone_number:
        return "***"
    digits = "".join(ch for ch in phone_number if ch.isdigit())
    if len(digits) < 4:
        return "*" * len(phone_number.strip())
    return f"+{'*' * (len(digits) - 4)}{digits[-4:]}"

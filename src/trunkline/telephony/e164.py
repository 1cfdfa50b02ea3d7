"""E.164 phone number helpers."""

import re

E164_REGEX = re.compile(r"^\+[1-9]\d{7,14}$")


def normalize_e164(value: str) -> str:
    """Trim and prefix ``+`` when missing. Empty input stays empty."""
    trimmed = value.strip()
    if not trimmed:
        return trimmed
    return trimmed if trimmed.startswith("+") else f"+{trimmed}"


def is_valid_e164(value: str) -> bool:
    return bool(E164_REGEX.match(value))

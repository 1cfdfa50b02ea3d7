"""Caller/callee extraction from SIP participant attributes."""

from collections.abc import Mapping

from trunkline.telephony.e164 import normalize_e164

SIP_FROM_ATTRIBUTE = "sip.phoneNumber"
SIP_TO_ATTRIBUTE = "sip.trunkPhoneNumber"


def extract_sip_from_to(attributes: Mapping[str, str] | None) -> tuple[str | None, str | None]:
    """Return ``(from, to)`` as E.164 strings, ``None`` where absent."""
    if not attributes:
        return None, None

    def _pick(key: str) -> str | None:
        raw = attributes.get(key)
        if isinstance(raw, str) and raw:
            return normalize_e164(raw)
        return None

    return _pick(SIP_FROM_ATTRIBUTE), _pick(SIP_TO_ATTRIBUTE)

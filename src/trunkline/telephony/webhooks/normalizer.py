"""
Provider-agnostic view of a decoded webhook event.

The decoded payload uses protobuf JSON names (``createdAt``, ``room.name``,
``participant.sid``); int64 fields may arrive as decimal strings.
"""

from __future__ import annotations

import hashlib
from typing import Any
from uuid import uuid4

from trunkline.telephony.entities import NormalizedEvent, SipParticipant


def derive_event_id(raw_body: str) -> str:
    digest = hashlib.sha256(raw_body.encode("utf-8")).hexdigest()[:16]
    return f"derived-{digest}"


def normalize_livekit_event(evt: dict[str, Any], raw_body: str | None = None) -> NormalizedEvent:
    """Normalize a decoded event.

    Events without an id get one derived from the raw body so redeliveries of
    the same bytes dedupe; without a body the id is random and never dedupes.
    """
    event_id = _str(evt.get("id"))
    derived = False
    if event_id is None:
        if raw_body:
            event_id = derive_event_id(raw_body)
            derived = True
        else:
            event_id = f"missing-{uuid4()}"

    event = evt.get("event")
    room = evt.get("room")
    room_name = _str(room.get("name")) if isinstance(room, dict) else None

    return NormalizedEvent(
        event_id=event_id,
        event=event if isinstance(event, str) else "unknown",
        room_name=room_name,
        created_at=_int(evt.get("createdAt")),
        participant=_participant(evt.get("participant")),
        event_id_derived=derived,
        raw=evt,
    )


def _participant(value: Any) -> SipParticipant | None:
    if not isinstance(value, dict):
        return None
    attributes = value.get("attributes")
    return SipParticipant(
        participant_id=value.get("sid") if isinstance(value.get("sid"), str) else None,
        identity=value.get("identity") if isinstance(value.get("identity"), str) else None,
        kind=value.get("kind") if isinstance(value.get("kind"), str) else None,
        attributes=(
            {k: v if isinstance(v, str) else str(v) for k, v in attributes.items() if v is not None}
            if isinstance(attributes, dict)
            else None
        ),
    )


def _str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    return None

"""Tests for webhook event normalization and SIP attribute extraction."""

from __future__ import annotations

from trunkline.telephony.sip_attributes import extract_sip_from_to
from trunkline.telephony.webhooks.normalizer import derive_event_id, normalize_livekit_event


class TestNormalizeLivekitEvent:
    def test_participant_joined(self) -> None:
        evt = normalize_livekit_event(
            {
                "id": "EV_1",
                "event": "participant_joined",
                "createdAt": "1700000000",
                "room": {"name": "call-123"},
                "participant": {
                    "sid": "PA_1",
                    "identity": "sip_+14155550999",
                    "kind": "SIP",
                    "attributes": {"sip.phoneNumber": "+14155550999", "sip.callID": 42},
                },
            }
        )

        assert evt.event_id == "EV_1"
        assert evt.event_id_derived is False
        assert evt.event == "participant_joined"
        assert evt.room_name == "call-123"
        assert evt.created_at == 1700000000
        assert evt.participant.participant_id == "PA_1"
        assert evt.participant.kind == "SIP"
        assert evt.participant.attributes == {"sip.phoneNumber": "+14155550999", "sip.callID": "42"}

    def test_missing_id_is_derived_from_body(self) -> None:
        body = '{"event":"room_finished","room":{"name":"r"}}'

        first = normalize_livekit_event({"event": "room_finished"}, body)
        second = normalize_livekit_event({"event": "room_finished"}, body)

        assert first.event_id == second.event_id == derive_event_id(body)
        assert first.event_id.startswith("derived-")
        assert first.event_id_derived is True

    def test_missing_id_without_body_never_dedupes(self) -> None:
        first = normalize_livekit_event({"event": "room_finished"})
        second = normalize_livekit_event({"event": "room_finished"})

        assert first.event_id != second.event_id
        assert first.event_id.startswith("missing-")

    def test_malformed_fields_become_none(self) -> None:
        evt = normalize_livekit_event(
            {"id": "  ", "event": 7, "room": "r", "createdAt": True, "participant": []}, "body"
        )

        assert evt.event_id_derived is True
        assert evt.event == "unknown"
        assert evt.room_name is None
        assert evt.created_at is None
        assert evt.participant is None

    def test_raw_event_is_kept(self) -> None:
        payload = {"id": "EV_1", "event": "room_started", "room": {"name": "r"}}

        assert normalize_livekit_event(payload).raw is payload


class TestExtractSipFromTo:
    def test_both_numbers(self) -> None:
        assert extract_sip_from_to(
            {"sip.phoneNumber": "14155550999", "sip.trunkPhoneNumber": "+14155550100"}
        ) == ("+14155550999", "+14155550100")

    def test_absent(self) -> None:
        assert extract_sip_from_to(None) == (None, None)
        assert extract_sip_from_to({"sip.phoneNumber": ""}) == (None, None)

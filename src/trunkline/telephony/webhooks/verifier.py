"""Signature verification for conferencing-platform webhooks."""

from __future__ import annotations

from typing import Any

from google.protobuf.json_format import MessageToDict
from livekit import api


class WebhookVerificationError(Exception):
    """The webhook signature or payload did not verify."""


class LiveKitWebhookVerifier:
    """Checks the signed ``Authorization`` JWT against the body hash."""

    def __init__(self, api_key: str, api_secret: str) -> None:
        self._receiver = api.WebhookReceiver(api.TokenVerifier(api_key, api_secret))

    async def verify_and_decode(self, raw_body: str, authorization: str | None) -> dict[str, Any]:
        if not authorization:
            raise WebhookVerificationError("Missing Authorization header")
        try:
            event = self._receiver.receive(raw_body, authorization)
        except Exception as e:
            # jwt and hash-mismatch failures share one outcome
            raise WebhookVerificationError(str(e) or type(e).__name__) from e
        return MessageToDict(event)

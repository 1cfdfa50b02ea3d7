"""
FastAPI router for the conferencing-platform webhook.

Key constraints:
- the signature covers the exact request bytes, so the body is read raw
- the sender gets 200 as soon as the event verifies; processing runs in a
  background task and never changes the response
"""

from __future__ import annotations

import time
from dataclasses import asdict
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from trunkline.config import get_settings
from trunkline.shared.logging import get_logger
from trunkline.telephony.entities import NormalizedEvent
from trunkline.telephony.module import TelephonyModule, get_telephony_module
from trunkline.telephony.webhooks.normalizer import normalize_livekit_event
from trunkline.telephony.webhooks.session import TelephonySessionService
from trunkline.telephony.webhooks.verifier import WebhookVerificationError

logger = get_logger(__name__)

router = APIRouter(prefix="/api/telephony", tags=["telephony-webhooks"])

# Registered by create_app outside production only.
diagnostics_router = APIRouter(prefix="/api/telephony", tags=["telephony-diagnostics"])


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


async def process_event(session: TelephonySessionService, evt: NormalizedEvent) -> None:
    started = time.perf_counter()
    try:
        result = await session.handle_event(evt)
    except Exception:
        logger.exception(
            "Webhook processing failed",
            extra={
                "event": "telephony_webhook_processing_failed",
                "event_id": evt.event_id,
                "event_type": evt.event,
                "room_name": evt.room_name,
            },
        )
        return

    outcome = asdict(result)
    if result.ignored_reason is not None:
        outcome["ignored_reason"] = result.ignored_reason.value
    logger.info(
        "Webhook processed",
        extra={
            "event": "telephony_webhook_processed",
            "event_id": evt.event_id,
            "event_type": evt.event,
            "room_name": evt.room_name,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            **outcome,
        },
    )


@router.post("/livekit-webhook", status_code=status.HTTP_200_OK)
async def receive_livekit_webhook(
    request: Request,
    module: Annotated[TelephonyModule, Depends(get_telephony_module)],
    authorization: Annotated[str | None, Header()] = None,
) -> Any:
    if not module.webhook_ready:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Telephony is disabled")

    raw = await request.body()
    if not raw:
        return _error(status.HTTP_400_BAD_REQUEST, "Raw request body is required")
    try:
        raw_body = raw.decode("utf-8")
    except UnicodeDecodeError:
        return _error(status.HTTP_400_BAD_REQUEST, "Request body must be UTF-8")

    try:
        decoded = await module.verifier.verify_and_decode(raw_body, authorization)
    except WebhookVerificationError as e:
        logger.warning(
            "Webhook rejected",
            extra={
                "event": "telephony_webhook_rejected",
                "reason": "invalid_signature",
                "has_authorization_header": bool(authorization),
            },
        )
        if get_settings().is_production:
            return _error(status.HTTP_401_UNAUTHORIZED, "Invalid webhook signature")
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid webhook signature", details=str(e))

    evt = normalize_livekit_event(decoded, raw_body)
    logger.info(
        "Webhook received",
        extra={
            "event": "telephony_webhook_received",
            "event_id": evt.event_id,
            "event_id_derived": evt.event_id_derived,
            "event_type": evt.event,
            "room_name": evt.room_name,
        },
    )

    module.tasks.submit(
        process_event(module.session, evt), name=f"telephony-webhook:{evt.event_id}"
    )
    return {"ok": True}


@diagnostics_router.get("/calls/by-room/{room_name}")
async def get_call_by_room(
    room_name: str,
    module: Annotated[TelephonyModule, Depends(get_telephony_module)],
) -> Any:
    call = await module.call_store.get_call_by_room_name(room_name)
    if call is None:
        return _error(status.HTTP_404_NOT_FOUND, "Call not found")
    return call.to_public()


@diagnostics_router.get("/calls/{call_id}")
async def get_call(
    call_id: str,
    module: Annotated[TelephonyModule, Depends(get_telephony_module)],
) -> Any:
    call = await module.call_store.get_call_by_id(call_id)
    if call is None:
        return _error(status.HTTP_404_NOT_FOUND, "Call not found")
    return call.to_public()

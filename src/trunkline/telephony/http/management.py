"""
Operator-facing telephony management endpoints.

One router per provider under ``/api/telephony/{provider}`` plus a shared
router for provider-agnostic views. Every endpoint answers 503 while the
vault key or the LiveKit configuration is missing.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, status

from trunkline.shared.exceptions import BadRequestError
from trunkline.telephony.entities import ProviderType
from trunkline.telephony.http.schemas import (
    ConnectNumberRequest,
    PlivoCredentialsIn,
    PlivoIntegrationCreate,
    TelnyxCredentialsIn,
    TelnyxIntegrationCreate,
    TransportProtocolUpdate,
    TwilioCredentialsIn,
    TwilioIntegrationCreate,
)
from trunkline.telephony.module import TelephonyModule, get_telephony_module
from trunkline.telephony.onboarding.registry import OnboardingRegistry
from trunkline.telephony.providers.plivo import PlivoCredentials
from trunkline.telephony.providers.twilio import TwilioCredentials


def get_onboarding(
    module: Annotated[TelephonyModule, Depends(get_telephony_module)],
) -> OnboardingRegistry:
    return module.require_onboarding()


Onboarding = Annotated[OnboardingRegistry, Depends(get_onboarding)]


def _require_integration_id(integration_id: str | None) -> str:
    if not integration_id or not integration_id.strip():
        raise BadRequestError("integration_id query param is required")
    return integration_id.strip()


def _add_common_routes(router: APIRouter, provider: ProviderType) -> None:
    """Routes whose shape is identical for every provider."""

    @router.get("/integrations")
    async def list_integrations(onboarding: Onboarding) -> dict[str, Any]:
        rows = await onboarding.integration_store.list_by_provider(provider)
        return {"integrations": [row.to_public() for row in rows]}

    @router.delete("/credentials/{integration_id}")
    async def delete_integration(integration_id: str, onboarding: Onboarding) -> dict[str, int]:
        return await onboarding.for_provider(provider).delete_integration(integration_id)

    @router.get("/numbers")
    async def list_numbers(
        onboarding: Onboarding,
        integration_id: Annotated[str | None, Query()] = None,
    ) -> dict[str, Any]:
        numbers = await onboarding.for_provider(provider).list_numbers(
            _require_integration_id(integration_id)
        )
        return {"numbers": [asdict(n) for n in numbers]}

    @router.post("/numbers/{provider_number_id}/connect")
    async def connect_number(
        provider_number_id: str,
        payload: ConnectNumberRequest,
        onboarding: Onboarding,
    ) -> dict[str, Any]:
        binding = await onboarding.for_provider(provider).connect_number(
            payload.integration_id,
            provider_number_id=provider_number_id,
            e164=payload.e164,
            agent_id=payload.agent_id,
            agent_config=payload.agent_config,
        )
        return binding.to_public()

    @router.delete("/bindings/{binding_id}")
    async def disconnect_number(binding_id: str, onboarding: Onboarding) -> dict[str, bool]:
        await onboarding.for_provider(provider).disconnect_number(binding_id)
        return {"ok": True}


# ----------------------------
# Twilio
# ----------------------------

twilio_router = APIRouter(prefix="/api/telephony/twilio", tags=["telephony-twilio"])


def _twilio_credentials(payload: TwilioCredentialsIn) -> TwilioCredentials:
    return TwilioCredentials(
        account_sid=payload.account_sid,
        api_key_sid=payload.api_key_sid,
        api_key_secret=payload.api_key_secret,
    )


@twilio_router.post("/credentials/verify")
async def verify_twilio_credentials(
    payload: TwilioCredentialsIn, onboarding: Onboarding
) -> dict[str, bool]:
    return await onboarding.twilio.verify_credentials(_twilio_credentials(payload))


@twilio_router.post("/credentials", status_code=status.HTTP_201_CREATED)
async def create_twilio_integration(
    payload: TwilioIntegrationCreate, onboarding: Onboarding
) -> dict[str, Any]:
    integration = await onboarding.twilio.create_integration(
        _twilio_credentials(payload), payload.name
    )
    return integration.to_public()


_add_common_routes(twilio_router, ProviderType.TWILIO)


# ----------------------------
# Telnyx
# ----------------------------

telnyx_router = APIRouter(prefix="/api/telephony/telnyx", tags=["telephony-telnyx"])


@telnyx_router.post("/credentials/verify")
async def verify_telnyx_credentials(
    payload: TelnyxCredentialsIn, onboarding: Onboarding
) -> dict[str, bool]:
    return await onboarding.telnyx.verify_credentials(payload.api_key)


@telnyx_router.post("/credentials", status_code=status.HTTP_201_CREATED)
async def create_telnyx_integration(
    payload: TelnyxIntegrationCreate, onboarding: Onboarding
) -> dict[str, Any]:
    integration = await onboarding.telnyx.create_integration(payload.api_key, payload.name)
    return integration.to_public()


@telnyx_router.get("/numbers/{provider_number_id}/debug")
async def debug_telnyx_number(
    provider_number_id: str,
    onboarding: Onboarding,
    integration_id: Annotated[str | None, Query()] = None,
) -> dict[str, Any]:
    return await onboarding.telnyx.debug_inspect_number(
        _require_integration_id(integration_id), provider_number_id
    )


@telnyx_router.post("/connections/{connection_id}/transport")
async def set_telnyx_transport_protocol(
    connection_id: str,
    payload: TransportProtocolUpdate,
    onboarding: Onboarding,
) -> dict[str, Any]:
    connection = await onboarding.telnyx.debug_set_transport_protocol(
        payload.integration_id, connection_id, payload.transport_protocol
    )
    return asdict(connection)


_add_common_routes(telnyx_router, ProviderType.TELNYX)


# ----------------------------
# Plivo
# ----------------------------

plivo_router = APIRouter(prefix="/api/telephony/plivo", tags=["telephony-plivo"])


def _plivo_credentials(payload: PlivoCredentialsIn) -> PlivoCredentials:
    return PlivoCredentials(auth_id=payload.auth_id, auth_token=payload.auth_token)


@plivo_router.post("/credentials/verify")
async def verify_plivo_credentials(
    payload: PlivoCredentialsIn, onboarding: Onboarding
) -> dict[str, bool]:
    return await onboarding.plivo.verify_credentials(_plivo_credentials(payload))


@plivo_router.post("/credentials", status_code=status.HTTP_201_CREATED)
async def create_plivo_integration(
    payload: PlivoIntegrationCreate, onboarding: Onboarding
) -> dict[str, Any]:
    integration = await onboarding.plivo.create_integration(
        _plivo_credentials(payload), payload.name
    )
    return integration.to_public()


_add_common_routes(plivo_router, ProviderType.PLIVO)


# ----------------------------
# Provider-agnostic
# ----------------------------

shared_router = APIRouter(prefix="/api/telephony", tags=["telephony"])


@shared_router.get("/bindings")
async def list_bindings(onboarding: Onboarding) -> dict[str, Any]:
    rows = await onboarding.binding_store.list_bindings()
    return {"bindings": [row.to_public() for row in rows]}


@shared_router.delete("/integrations/{integration_id}")
async def delete_any_integration(integration_id: str, onboarding: Onboarding) -> dict[str, int]:
    return await onboarding.delete_integration_any(integration_id)


@shared_router.delete("/bindings/{binding_id}")
async def disconnect_any_binding(binding_id: str, onboarding: Onboarding) -> dict[str, bool]:
    await onboarding.disconnect_binding_any(binding_id)
    return {"ok": True}


routers = [twilio_router, telnyx_router, plivo_router, shared_router]

"""
Twilio onboarding: an Elastic SIP trunk per integration whose origination URL
points at the LiveKit SIP host; numbers are attached to that trunk.
"""

from __future__ import annotations

import json
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from trunkline.shared.exceptions import NotFoundError
from trunkline.shared.logging import get_logger, mask
from trunkline.shared.secret_box import fingerprint_secret
from trunkline.telephony.entities import (
    AgentConfig,
    CreateIntegrationInput,
    ProviderType,
    StoredBinding,
    StoredIntegration,
    UpsertBindingInput,
)
from trunkline.telephony.errors import ProviderClientError, map_provider_error
from trunkline.telephony.onboarding.common import (
    ORIGINATION_TARGET_NAME,
    OnboardingDeps,
    assert_number_matches,
    call_provider,
    get_binding_or_raise,
    get_integration_or_raise,
    ignore_not_found,
    open_credentials,
    parse_stored_credentials,
    resource_id,
    retry_transient,
    seal_credentials,
    trunk_name_for,
)
from trunkline.telephony.providers.twilio import (
    TwilioClient,
    TwilioCredentials,
    TwilioIncomingPhoneNumber,
)

logger = get_logger(__name__)

PROVIDER = ProviderType.TWILIO
TRUNK_DOMAIN_SUFFIX = ".pstn.twilio.com"

TwilioClientFactory = Callable[[TwilioCredentials], TwilioClient]


class TwilioStoredCredentials(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_sid: str = Field(alias="accountSid", min_length=1)
    api_key_sid: str = Field(alias="apiKeySid", min_length=1)
    api_key_secret: str = Field(alias="apiKeySecret", min_length=1)


class TwilioOnboardingService:
    def __init__(
        self,
        deps: OnboardingDeps,
        client_factory: TwilioClientFactory | None = None,
    ) -> None:
        self._deps = deps
        self._client_factory = client_factory or self._default_client

    def _default_client(self, creds: TwilioCredentials) -> TwilioClient:
        return TwilioClient(
            creds,
            timeout=self._deps.request_timeout_seconds,
            max_pages=self._deps.max_pages,
        )

    async def verify_credentials(self, creds: TwilioCredentials) -> dict[str, bool]:
        async with self._client_factory(creds) as client:
            return await call_provider(PROVIDER, client.verify_credentials())

    async def create_integration(
        self, creds: TwilioCredentials, name: str | None = None
    ) -> StoredIntegration:
        await self.verify_credentials(creds)

        integration = await self._deps.integration_store.create(
            CreateIntegrationInput(
                provider=PROVIDER,
                name=name,
                encrypted_credential=seal_credentials(
                    json.dumps(creds.to_dict()),
                    self._deps.encryption_key,
                ),
                credential_fingerprint=fingerprint_secret(
                    f"{creds.account_sid}:{creds.api_key_sid}"
                ),
            )
        )

        try:
            async with self._client_factory(creds) as client:
                await self._ensure_inbound_trunk(client, integration.id)
        except Exception as e:
            logger.warning(
                "Trunk setup deferred",
                extra={
                    "event": "twilio.trunk_setup_deferred",
                    "integration_id": integration.id,
                    "error": str(e),
                },
            )

        logger.info(
            "Twilio integration created",
            extra={
                "event": "twilio.credentials.saved",
                "integration_id": integration.id,
                "account_sid": mask(creds.account_sid),
            },
        )
        return await self._deps.integration_store.get_by_id(integration.id) or integration

    async def list_numbers(self, integration_id: str) -> list[TwilioIncomingPhoneNumber]:
        integration = await get_integration_or_raise(
            self._deps.integration_store, integration_id, PROVIDER
        )
        async with self._client_factory(self._credentials(integration)) as client:
            return await call_provider(PROVIDER, client.list_incoming_phone_numbers())

    async def connect_number(
        self,
        integration_id: str,
        *,
        provider_number_id: str,
        e164: str,
        agent_id: str | None = None,
        agent_config: AgentConfig | None = None,
    ) -> StoredBinding:
        """Route a Twilio number (IncomingPhoneNumber SID) to the conferencing platform."""
        integration = await get_integration_or_raise(
            self._deps.integration_store, integration_id, PROVIDER
        )
        async with self._client_factory(self._credentials(integration)) as client:
            number = await call_provider(
                PROVIDER, client.get_incoming_phone_number(provider_number_id)
            )
            did = assert_number_matches(e164, number.phone_number)

            # Platform side first, so a routed number never points at a missing pipeline.
            await self._deps.provisioning.ensure_inbound_setup_for_did(did)

            trunk_sid = resource_id(integration.provider_resources, "trunk_sid")
            if trunk_sid is None:
                trunk_sid, _ = await self._ensure_inbound_trunk(client, integration.id)

            await call_provider(
                PROVIDER, client.attach_phone_number_to_trunk(trunk_sid, provider_number_id)
            )

        binding = await self._deps.binding_store.upsert_binding(
            UpsertBindingInput(
                integration_id=integration_id,
                provider=PROVIDER,
                provider_number_id=provider_number_id,
                e164=did,
                agent_id=agent_id,
                agent_config=agent_config,
            )
        )
        logger.info(
            "Number connected",
            extra={
                "event": "twilio.number.connected",
                "integration_id": integration_id,
                "binding_id": binding.id,
                "e164": did,
            },
        )
        return binding

    async def disconnect_number(self, binding_id: str) -> None:
        binding = await get_binding_or_raise(self._deps.binding_store, binding_id, PROVIDER)
        integration = await get_integration_or_raise(
            self._deps.integration_store, binding.integration_id, PROVIDER
        )
        async with self._client_factory(self._credentials(integration)) as client:
            await self._disconnect_binding(binding, integration, client)

    async def delete_integration(self, integration_id: str) -> dict[str, int]:
        integration = await get_integration_or_raise(
            self._deps.integration_store, integration_id, PROVIDER
        )
        bindings = await self._deps.binding_store.list_bindings_by_integration_id(integration_id)

        deleted = 0
        async with self._client_factory(self._credentials(integration)) as client:
            for binding in bindings:
                if binding.provider is not PROVIDER:
                    continue
                await self._disconnect_binding(binding, integration, client)
                deleted += 1

            # Falls back to the trunk's domain name when setup never cached its sid.
            trunk_sid = await self._find_trunk_sid(client, integration)
            url_sid = resource_id(integration.provider_resources, "origination_url_sid")
            try:
                if trunk_sid and url_sid:
                    await ignore_not_found(client.delete_origination_url(trunk_sid, url_sid))
                if trunk_sid:
                    await ignore_not_found(client.delete_trunk(trunk_sid))
            except ProviderClientError as e:
                raise map_provider_error(PROVIDER, e) from e

        if not await self._deps.integration_store.delete_by_id(integration_id):
            raise NotFoundError(f"Integration {integration_id} not found")

        logger.info(
            "Twilio integration deleted",
            extra={
                "event": "twilio.integration.deleted",
                "integration_id": integration_id,
                "deleted_bindings": deleted,
            },
        )
        return {"deleted_bindings": deleted}

    async def _ensure_inbound_trunk(
        self, client: TwilioClient, integration_id: str
    ) -> tuple[str, str]:
        """Find-or-create the trunk and its origination URL; cache both ids."""
        trunk_name = trunk_name_for(integration_id)
        domain_name = f"{trunk_name}{TRUNK_DOMAIN_SUFFIX}"
        sip_url = f"sip:{self._deps.livekit_sip_host}"

        try:
            trunk = next(
                (t for t in await client.list_trunks() if t.domain_name == domain_name), None
            )
            if trunk is None:
                trunk = await client.create_trunk(trunk_name, domain_name)
                logger.info(
                    "Twilio trunk created",
                    extra={
                        "event": "twilio.trunk.created",
                        "integration_id": integration_id,
                        "trunk_sid": trunk.sid,
                    },
                )

            url = next(
                (u for u in await client.list_origination_urls(trunk.sid) if u.sip_url == sip_url),
                None,
            )
            if url is None:
                url = await client.create_origination_url(
                    trunk.sid, sip_url, ORIGINATION_TARGET_NAME
                )
        except ProviderClientError as e:
            raise map_provider_error(PROVIDER, e) from e

        await self._deps.integration_store.update_provider_resources(
            integration_id, {"trunk_sid": trunk.sid, "origination_url_sid": url.sid}
        )
        return trunk.sid, url.sid

    async def _disconnect_binding(
        self, binding: StoredBinding, integration: StoredIntegration, client: TwilioClient
    ) -> None:
        await self._deps.provisioning.remove_inbound_setup_for_did(binding.e164)

        trunk_sid = await self._find_trunk_sid(client, integration)
        if trunk_sid is not None:
            await call_provider(
                PROVIDER,
                retry_transient(
                    lambda: client.detach_phone_number_from_trunk(
                        trunk_sid, binding.provider_number_id
                    ),
                    provider=PROVIDER,
                    step="detach_phone_number",
                    attempts=self._deps.teardown_retry_attempts,
                    delay_seconds=self._deps.teardown_retry_delay_seconds,
                ),
            )

        if not await self._deps.binding_store.delete_binding(binding.id):
            raise NotFoundError(f"Binding {binding.id} not found")

        logger.info(
            "Number disconnected",
            extra={
                "event": "twilio.number.disconnected",
                "binding_id": binding.id,
                "integration_id": integration.id,
                "e164": binding.e164,
            },
        )

    async def _find_trunk_sid(
        self, client: TwilioClient, integration: StoredIntegration
    ) -> str | None:
        cached = resource_id(integration.provider_resources, "trunk_sid")
        if cached is not None:
            return cached
        domain_name = f"{trunk_name_for(integration.id)}{TRUNK_DOMAIN_SUFFIX}"
        trunks = await call_provider(PROVIDER, client.list_trunks())
        return next((t.sid for t in trunks if t.domain_name == domain_name), None)

    def _credentials(self, integration: StoredIntegration) -> TwilioCredentials:
        stored = parse_stored_credentials(
            TwilioStoredCredentials,
            open_credentials(integration, self._deps.encryption_key),
            PROVIDER,
        )
        return TwilioCredentials(
            account_sid=stored.account_sid,
            api_key_sid=stored.api_key_sid,
            api_key_secret=stored.api_key_secret,
        )


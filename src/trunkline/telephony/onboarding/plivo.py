"""
Plivo onboarding: a Zentrunk inbound trunk per integration whose primary
origination URI is the LiveKit SIP host; numbers point their ``app_id`` at the
trunk.
"""

from __future__ import annotations

import json
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from trunkline.shared.exceptions import AppError, NotFoundError
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
from trunkline.telephony.providers.plivo import (
    PlivoClient,
    PlivoCredentials,
    PlivoPhoneNumber,
    normalize_sip_host,
    origination_uri_for_host,
)

logger = get_logger(__name__)

PROVIDER = ProviderType.PLIVO

PlivoClientFactory = Callable[[PlivoCredentials], PlivoClient]


class PlivoStoredCredentials(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    auth_id: str = Field(alias="authId", min_length=1)
    auth_token: str = Field(alias="authToken", min_length=1)


class PlivoOnboardingService:
    def __init__(
        self,
        deps: OnboardingDeps,
        client_factory: PlivoClientFactory | None = None,
    ) -> None:
        self._deps = deps
        self._client_factory = client_factory or self._default_client

    def _default_client(self, creds: PlivoCredentials) -> PlivoClient:
        return PlivoClient(
            creds,
            timeout=self._deps.request_timeout_seconds,
            max_pages=self._deps.max_pages,
        )

    async def verify_credentials(self, creds: PlivoCredentials) -> dict[str, bool]:
        async with self._client_factory(creds) as client:
            return await call_provider(PROVIDER, client.verify_credentials())

    async def create_integration(
        self, creds: PlivoCredentials, name: str | None = None
    ) -> StoredIntegration:
        await self.verify_credentials(creds)

        integration = await self._deps.integration_store.create(
            CreateIntegrationInput(
                provider=PROVIDER,
                name=name,
                encrypted_credential=seal_credentials(
                    json.dumps(creds.to_dict()), self._deps.encryption_key
                ),
                credential_fingerprint=fingerprint_secret(f"plivo:{creds.auth_id}"),
            )
        )

        try:
            async with self._client_factory(creds) as client:
                await self._ensure_inbound_trunk(client, integration.id)
        except Exception as e:
            logger.warning(
                "Trunk setup deferred",
                extra={
                    "event": "plivo.trunk_setup_deferred",
                    "integration_id": integration.id,
                    "error": str(e),
                },
            )

        logger.info(
            "Plivo integration created",
            extra={
                "event": "plivo.credentials.saved",
                "integration_id": integration.id,
                "auth_id": mask(creds.auth_id),
            },
        )
        return await self._deps.integration_store.get_by_id(integration.id) or integration

    async def list_numbers(self, integration_id: str) -> list[PlivoPhoneNumber]:
        integration = await get_integration_or_raise(
            self._deps.integration_store, integration_id, PROVIDER
        )
        async with self._client_factory(self._credentials(integration)) as client:
            return await call_provider(PROVIDER, client.list_phone_numbers())

    async def connect_number(
        self,
        integration_id: str,
        *,
        provider_number_id: str,
        e164: str,
        agent_id: str | None = None,
        agent_config: AgentConfig | None = None,
    ) -> StoredBinding:
        """Route a Plivo number (the number itself is its id) to the conferencing platform."""
        integration = await get_integration_or_raise(
            self._deps.integration_store, integration_id, PROVIDER
        )
        async with self._client_factory(self._credentials(integration)) as client:
            number = await call_provider(PROVIDER, client.get_phone_number(provider_number_id))
            did = assert_number_matches(e164, number.number)

            await self._deps.provisioning.ensure_inbound_setup_for_did(did)

            trunk_id = resource_id(integration.provider_resources, "trunk_id")
            if trunk_id is None:
                trunk_id = await self._ensure_inbound_trunk(client, integration.id)

            await call_provider(PROVIDER, client.set_number_app_id(provider_number_id, trunk_id))

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
                "event": "plivo.number.connected",
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

            # The trunk references the URI, so it goes first.
            trunk_id = resource_id(integration.provider_resources, "trunk_id")
            uri_id = resource_id(integration.provider_resources, "origination_uri_id")
            try:
                if trunk_id is None:
                    trunk_name = trunk_name_for(integration.id)
                    trunk = next(
                        (t for t in await client.list_inbound_trunks() if t.name == trunk_name),
                        None,
                    )
                    if trunk is not None:
                        trunk_id = trunk.trunk_id
                        uri_id = uri_id or trunk.primary_uri_id
                if trunk_id:
                    await ignore_not_found(client.delete_inbound_trunk(trunk_id))
                if uri_id:
                    await ignore_not_found(client.delete_origination_uri(uri_id))
            except ProviderClientError as e:
                raise map_provider_error(PROVIDER, e) from e

        if not await self._deps.integration_store.delete_by_id(integration_id):
            raise NotFoundError(f"Integration {integration_id} not found")

        logger.info(
            "Plivo integration deleted",
            extra={
                "event": "plivo.integration.deleted",
                "integration_id": integration_id,
                "deleted_bindings": deleted,
            },
        )
        return {"deleted_bindings": deleted}

    async def _ensure_inbound_trunk(self, client: PlivoClient, integration_id: str) -> str:
        """Find-or-create the origination URI and trunk; cache both ids.

        A trunk with the expected name but a different primary URI is recreated.
        """
        trunk_name = trunk_name_for(integration_id)
        target_uri = origination_uri_for_host(self._deps.livekit_sip_host)
        target_host = normalize_sip_host(target_uri)
        if not target_uri or not target_host:
            raise AppError(
                f"Invalid LIVEKIT_SIP_HOST configured for Plivo ({self._deps.livekit_sip_host})",
                code="SIP_HOST_INVALID",
            )

        try:
            uri = next(
                (
                    u
                    for u in await client.list_origination_uris()
                    if target_host in (u.host, normalize_sip_host(u.uri))
                ),
                None,
            )
            if uri is None:
                uri = await client.create_origination_uri(ORIGINATION_TARGET_NAME, target_uri)

            trunk = next(
                (t for t in await client.list_inbound_trunks() if t.name == trunk_name), None
            )
            if trunk is None:
                trunk = await client.create_inbound_trunk(trunk_name, uri.id)
            elif trunk.primary_uri_id and trunk.primary_uri_id != uri.id:
                logger.info(
                    "Recreating Plivo trunk with stale origination URI",
                    extra={
                        "event": "plivo.trunk.recreated",
                        "integration_id": integration_id,
                        "trunk_id": trunk.trunk_id,
                    },
                )
                await client.delete_inbound_trunk(trunk.trunk_id)
                trunk = await client.create_inbound_trunk(trunk_name, uri.id)
        except ProviderClientError as e:
            raise map_provider_error(PROVIDER, e) from e

        await self._deps.integration_store.update_provider_resources(
            integration_id, {"trunk_id": trunk.trunk_id, "origination_uri_id": uri.id}
        )
        return trunk.trunk_id

    async def _disconnect_binding(
        self, binding: StoredBinding, integration: StoredIntegration, client: PlivoClient
    ) -> None:
        await self._deps.provisioning.remove_inbound_setup_for_did(binding.e164)

        await call_provider(
            PROVIDER,
            retry_transient(
                lambda: client.set_number_app_id(binding.provider_number_id, None),
                provider=PROVIDER,
                step="clear_number_app_id",
                attempts=self._deps.teardown_retry_attempts,
                delay_seconds=self._deps.teardown_retry_delay_seconds,
            ),
        )

        if not await self._deps.binding_store.delete_binding(binding.id):
            raise NotFoundError(f"Binding {binding.id} not found")

        logger.info(
            "Number disconnected",
            extra={
                "event": "plivo.number.disconnected",
                "binding_id": binding.id,
                "integration_id": integration.id,
                "e164": binding.e164,
            },
        )

    def _credentials(self, integration: StoredIntegration) -> PlivoCredentials:
        stored = parse_stored_credentials(
            PlivoStoredCredentials,
            open_credentials(integration, self._deps.encryption_key),
            PROVIDER,
        )
        return PlivoCredentials(auth_id=stored.auth_id, auth_token=stored.auth_token)

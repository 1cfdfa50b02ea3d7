"""
Telnyx onboarding: an FQDN connection per integration with the LiveKit SIP
host attached as its FQDN; numbers are assigned to that connection.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Callable

from trunkline.shared.exceptions import NotFoundError
from trunkline.shared.logging import get_logger
from trunkline.shared.secret_box import fingerprint_secret
from trunkline.telephony.entities import (
    AgentConfig,
    CreateIntegrationInput,
    ProviderType,
    StoredBinding,
    StoredIntegration,
    UpsertBindingInput,
)
from trunkline.telephony.errors import (
    ProviderClientError,
    ProviderErrorCode,
    map_provider_error,
)
from trunkline.telephony.onboarding.common import (
    OnboardingDeps,
    assert_number_matches,
    call_provider,
    get_binding_or_raise,
    get_integration_or_raise,
    ignore_not_found,
    open_credentials,
    resource_id,
    retry_transient,
    seal_credentials,
    trunk_name_for,
)
from trunkline.telephony.providers.telnyx import (
    TelnyxClient,
    TelnyxFqdnConnection,
    TelnyxPhoneNumber,
    TransportProtocol,
)

logger = get_logger(__name__)

PROVIDER = ProviderType.TELNYX
# LiveKit SIP accepts UDP/TCP/TLS; TCP is the most reliable for trunking.
DEFAULT_TRANSPORT_PROTOCOL: TransportProtocol = "TCP"

TelnyxClientFactory = Callable[[str], TelnyxClient]


class TelnyxOnboardingService:
    def __init__(
        self,
        deps: OnboardingDeps,
        client_factory: TelnyxClientFactory | None = None,
    ) -> None:
        self._deps = deps
        self._client_factory = client_factory or self._default_client

    def _default_client(self, api_key: str) -> TelnyxClient:
        return TelnyxClient(
            api_key,
            timeout=self._deps.request_timeout_seconds,
            max_pages=self._deps.max_pages,
        )

    async def verify_credentials(self, api_key: str) -> dict[str, bool]:
        async with self._client_factory(api_key) as client:
            return await call_provider(PROVIDER, client.verify_credentials())

    async def create_integration(self, api_key: str, name: str | None = None) -> StoredIntegration:
        await self.verify_credentials(api_key)

        integration = await self._deps.integration_store.create(
            CreateIntegrationInput(
                provider=PROVIDER,
                name=name,
                encrypted_credential=seal_credentials(api_key, self._deps.encryption_key),
                credential_fingerprint=fingerprint_secret(api_key),
            )
        )

        try:
            async with self._client_factory(api_key) as client:
                await self._ensure_connection(client, integration.id)
        except Exception as e:
            logger.warning(
                "Trunk setup deferred",
                extra={
                    "event": "telnyx.trunk_setup_deferred",
                    "integration_id": integration.id,
                    "error": str(e),
                },
            )

        logger.info(
            "Telnyx integration created",
            extra={"event": "telnyx.credentials.saved", "integration_id": integration.id},
        )
        return await self._deps.integration_store.get_by_id(integration.id) or integration

    async def list_numbers(self, integration_id: str) -> list[TelnyxPhoneNumber]:
        integration = await get_integration_or_raise(
            self._deps.integration_store, integration_id, PROVIDER
        )
        async with self._client_factory(self._api_key(integration)) as client:
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
        integration = await get_integration_or_raise(
            self._deps.integration_store, integration_id, PROVIDER
        )
        async with self._client_factory(self._api_key(integration)) as client:
            number = await call_provider(PROVIDER, client.get_phone_number(provider_number_id))
            did = assert_number_matches(e164, number.phone_number)

            await self._deps.provisioning.ensure_inbound_setup_for_did(did)

            connection_id = resource_id(integration.provider_resources, "fqdn_connection_id")
            if connection_id is None:
                connection_id = await self._ensure_connection(client, integration.id)

            # Also applied to cached connections created before the protocol default changed.
            await self._ensure_transport_protocol(client, connection_id, integration.id)

            await call_provider(
                PROVIDER,
                client.assign_phone_number_to_connection(provider_number_id, connection_id),
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
                "event": "telnyx.number.connected",
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
        async with self._client_factory(self._api_key(integration)) as client:
            await self._disconnect_binding(binding, integration, client)

    async def delete_integration(self, integration_id: str) -> dict[str, int]:
        integration = await get_integration_or_raise(
            self._deps.integration_store, integration_id, PROVIDER
        )
        bindings = await self._deps.binding_store.list_bindings_by_integration_id(integration_id)

        deleted = 0
        async with self._client_factory(self._api_key(integration)) as client:
            for binding in bindings:
                if binding.provider is not PROVIDER:
                    continue
                await self._disconnect_binding(binding, integration, client)
                deleted += 1

            try:
                connection_id, fqdn_id = await self._find_connection_resources(client, integration)
                if fqdn_id:
                    await ignore_not_found(client.delete_fqdn(fqdn_id))
                if connection_id:
                    await ignore_not_found(client.delete_fqdn_connection(connection_id))
            except ProviderClientError as e:
                raise map_provider_error(PROVIDER, e) from e

        if not await self._deps.integration_store.delete_by_id(integration_id):
            raise NotFoundError(f"Integration {integration_id} not found")

        logger.info(
            "Telnyx integration deleted",
            extra={
                "event": "telnyx.integration.deleted",
                "integration_id": integration_id,
                "deleted_bindings": deleted,
            },
        )
        return {"deleted_bindings": deleted}

    async def debug_inspect_number(
        self, integration_id: str, provider_number_id: str
    ) -> dict[str, Any]:
        """Report a number's connection and whether the LiveKit SIP host is attached to it."""
        integration = await get_integration_or_raise(
            self._deps.integration_store, integration_id, PROVIDER
        )
        expected_connection_id = resource_id(integration.provider_resources, "fqdn_connection_id")
        sip_host = self._deps.livekit_sip_host

        async with self._client_factory(self._api_key(integration)) as client:
            try:
                number = await client.get_phone_number(provider_number_id)
                connection_id = number.connection_id or expected_connection_id
                report: dict[str, Any] = {
                    "number": asdict(number),
                    "expected_connection_id": expected_connection_id,
                    "livekit_sip_host": sip_host,
                    "livekit_sip_host_attached": False,
                }
                if not connection_id:
                    return report

                connection = await client.get_fqdn_connection(connection_id)
                fqdns = await client.list_fqdns(connection_id)
            except ProviderClientError as e:
                raise map_provider_error(PROVIDER, e) from e

        report["connection"] = asdict(connection)
        report["fqdns"] = [{"id": f.id, "fqdn": f.fqdn} for f in fqdns]
        report["livekit_sip_host_attached"] = any(
            f.fqdn.lower() == sip_host.lower() for f in fqdns
        )
        return report

    async def debug_set_transport_protocol(
        self, integration_id: str, connection_id: str, transport_protocol: TransportProtocol
    ) -> TelnyxFqdnConnection:
        integration = await get_integration_or_raise(
            self._deps.integration_store, integration_id, PROVIDER
        )
        async with self._client_factory(self._api_key(integration)) as client:
            try:
                await client.update_fqdn_connection_transport(connection_id, transport_protocol)
                return await client.get_fqdn_connection(connection_id)
            except ProviderClientError as e:
                raise map_provider_error(PROVIDER, e) from e

    async def _ensure_connection(self, client: TelnyxClient, integration_id: str) -> str:
        """Find-or-create the FQDN connection and its FQDN; cache both ids."""
        name = trunk_name_for(integration_id)
        sip_host = self._deps.livekit_sip_host.lower()

        try:
            connection = _by_name(await client.list_fqdn_connections(), name)
            if connection is None:
                try:
                    connection = await client.create_fqdn_connection(
                        name, transport_protocol=DEFAULT_TRANSPORT_PROTOCOL
                    )
                except ProviderClientError as e:
                    # A concurrent create for the same name surfaces as a validation error.
                    if e.code is not ProviderErrorCode.VALIDATION_ERROR:
                        raise
                    connection = _by_name(await client.list_fqdn_connections(), name)
                    if connection is None:
                        raise

            await self._ensure_transport_protocol(client, connection.id, integration_id)

            fqdn = next(
                (f for f in await client.list_fqdns(connection.id) if f.fqdn.lower() == sip_host),
                None,
            )
            if fqdn is None:
                try:
                    fqdn = await client.create_fqdn(self._deps.livekit_sip_host, connection.id)
                except ProviderClientError as e:
                    if e.code is not ProviderErrorCode.VALIDATION_ERROR:
                        raise
                    fqdn = next(
                        (
                            f
                            for f in await client.list_fqdns(connection.id)
                            if f.fqdn.lower() == sip_host
                        ),
                        None,
                    )
                    if fqdn is None:
                        raise
        except ProviderClientError as e:
            raise map_provider_error(PROVIDER, e) from e

        await self._deps.integration_store.update_provider_resources(
            integration_id, {"fqdn_connection_id": connection.id, "fqdn_id": fqdn.id}
        )
        return connection.id

    async def _find_connection_resources(
        self, client: TelnyxClient, integration: StoredIntegration
    ) -> tuple[str | None, str | None]:
        """Cached connection and FQDN ids, else the ones found by deterministic name."""
        connection_id = resource_id(integration.provider_resources, "fqdn_connection_id")
        fqdn_id = resource_id(integration.provider_resources, "fqdn_id")
        if connection_id is None:
            connection = _by_name(
                await client.list_fqdn_connections(), trunk_name_for(integration.id)
            )
            connection_id = connection.id if connection else None
        if connection_id is not None and fqdn_id is None:
            sip_host = self._deps.livekit_sip_host.lower()
            fqdn_id = next(
                (f.id for f in await client.list_fqdns(connection_id) if f.fqdn.lower() == sip_host),
                None,
            )
        return connection_id, fqdn_id

    async def _ensure_transport_protocol(
        self, client: TelnyxClient, connection_id: str, integration_id: str
    ) -> None:
        # Best effort; onboarding proceeds when Telnyx rejects the update.
        try:
            details = await client.get_fqdn_connection(connection_id)
            if (
                details.transport_protocol
                and details.transport_protocol != DEFAULT_TRANSPORT_PROTOCOL
            ):
                await client.update_fqdn_connection_transport(
                    connection_id, DEFAULT_TRANSPORT_PROTOCOL
                )
        except ProviderClientError as e:
            logger.warning(
                "Unable to update Telnyx transport protocol",
                extra={
                    "event": "telnyx.transport_protocol_update_failed",
                    "integration_id": integration_id,
                    "connection_id": connection_id,
                    "code": e.code.value,
                },
            )

    async def _disconnect_binding(
        self, binding: StoredBinding, integration: StoredIntegration, client: TelnyxClient
    ) -> None:
        await self._deps.provisioning.remove_inbound_setup_for_did(binding.e164)

        await call_provider(
            PROVIDER,
            retry_transient(
                lambda: client.unassign_phone_number_from_connection(binding.provider_number_id),
                provider=PROVIDER,
                step="unassign_phone_number",
                attempts=self._deps.teardown_retry_attempts,
                delay_seconds=self._deps.teardown_retry_delay_seconds,
            ),
        )

        if not await self._deps.binding_store.delete_binding(binding.id):
            raise NotFoundError(f"Binding {binding.id} not found")

        logger.info(
            "Number disconnected",
            extra={
                "event": "telnyx.number.disconnected",
                "binding_id": binding.id,
                "integration_id": integration.id,
                "e164": binding.e164,
            },
        )

    def _api_key(self, integration: StoredIntegration) -> str:
        return open_credentials(integration, self._deps.encryption_key)


def _by_name(connections: list[TelnyxFqdnConnection], name: str) -> TelnyxFqdnConnection | None:
    return next((c for c in connections if c.connection_name == name), None)

"""Provider-discriminated lookup of onboarding orchestrators."""

from __future__ import annotations

from typing import Any, Protocol

from trunkline.shared.exceptions import BadRequestError, NotFoundError
from trunkline.telephony.entities import AgentConfig, ProviderType, StoredBinding
from trunkline.telephony.onboarding.plivo import PlivoOnboardingService
from trunkline.telephony.onboarding.telnyx import TelnyxOnboardingService
from trunkline.telephony.onboarding.twilio import TwilioOnboardingService
from trunkline.telephony.ports import BindingStorePort, IntegrationStorePort


class OnboardingService(Protocol):
    """Operations every provider orchestrator offers once an integration exists."""

    async def list_numbers(self, integration_id: str) -> list[Any]: ...

    async def connect_number(
        self,
        integration_id: str,
        *,
        provider_number_id: str,
        e164: str,
        agent_id: str | None = None,
        agent_config: AgentConfig | None = None,
    ) -> StoredBinding: ...

    async def disconnect_number(self, binding_id: str) -> None: ...

    async def delete_integration(self, integration_id: str) -> dict[str, int]: ...


class OnboardingRegistry:
    def __init__(
        self,
        *,
        twilio: TwilioOnboardingService,
        telnyx: TelnyxOnboardingService,
        plivo: PlivoOnboardingService,
        integration_store: IntegrationStorePort,
        binding_store: BindingStorePort,
    ) -> None:
        self.twilio = twilio
        self.telnyx = telnyx
        self.plivo = plivo
        self._services: dict[ProviderType, OnboardingService] = {
            ProviderType.TWILIO: twilio,
            ProviderType.TELNYX: telnyx,
            ProviderType.PLIVO: plivo,
        }
        self.integration_store = integration_store
        self.binding_store = binding_store

    def for_provider(self, provider: ProviderType) -> OnboardingService:
        try:
            return self._services[provider]
        except KeyError:
            raise BadRequestError(f"Unsupported provider: {provider}") from None

    async def delete_integration_any(self, integration_id: str) -> dict[str, int]:
        """Delete an integration without knowing its provider up front."""
        integration = await self.integration_store.get_by_id(integration_id)
        if integration is None:
            raise NotFoundError(f"Integration {integration_id} not found")
        return await self.for_provider(integration.provider).delete_integration(integration_id)

    async def disconnect_binding_any(self, binding_id: str) -> None:
        binding = await self.binding_store.get_binding_by_id(binding_id)
        if binding is None:
            raise NotFoundError(f"Binding {binding_id} not found")
        await self.for_provider(binding.provider).disconnect_number(binding_id)

"""
Ports consumed by the telephony core.

Implementations live in ``stores``, ``provisioning``, ``routing`` and
``webhooks``; tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Any, Protocol

from trunkline.telephony.entities import (
    AgentConfig,
    CallRoutingContext,
    CallRoutingResult,
    CallStatus,
    CreateIntegrationInput,
    InboundSetup,
    InboundTeardown,
    ProviderType,
    StoredBinding,
    StoredIntegration,
    TelephonyCall,
    UpsertBindingInput,
)


class IntegrationStorePort(Protocol):
    async def create(self, data: CreateIntegrationInput) -> StoredIntegration: ...

    async def get_by_id(self, integration_id: str) -> StoredIntegration | None:
        """Return the integration unless it is soft-deleted."""
        ...

    async def update_provider_resources(
        self, integration_id: str, resources: dict[str, Any]
    ) -> StoredIntegration | None:
        """Merge ``resources`` into the cached provider resource ids."""
        ...

    async def disable(self, integration_id: str) -> bool: ...

    async def delete_by_id(self, integration_id: str) -> bool: ...

    async def list_by_provider(self, provider: ProviderType) -> list[StoredIntegration]: ...


class BindingStorePort(Protocol):
    async def upsert_binding(self, data: UpsertBindingInput) -> StoredBinding:
        """Create or overwrite the live binding for ``data.e164``."""
        ...

    async def get_binding_by_e164(self, e164: str) -> StoredBinding | None:
        """Only enabled, non-deleted bindings are returned."""
        ...

    async def get_binding_by_id(self, binding_id: str) -> StoredBinding | None: ...

    async def list_bindings(self) -> list[StoredBinding]: ...

    async def list_bindings_by_integration_id(self, integration_id: str) -> list[StoredBinding]: ...

    async def disable_binding(self, binding_id: str) -> bool: ...

    async def delete_binding(self, binding_id: str) -> bool: ...


class CallStorePort(Protocol):
    async def record_event_seen(self, event_id: str) -> bool:
        """True only the first time ``event_id`` is recorded."""
        ...

    async def upsert_call_by_room_name(self, room_name: str, **changes: Any) -> TelephonyCall: ...

    async def get_call_by_id(self, call_id: str) -> TelephonyCall | None: ...

    async def get_call_by_room_name(self, room_name: str) -> TelephonyCall | None: ...

    async def list_calls(self) -> list[TelephonyCall]: ...

    async def mark_agent_dispatched(self, call_id: str) -> TelephonyCall | None: ...

    async def mark_ended(
        self, call_id: str, status: CallStatus = CallStatus.ENDED
    ) -> TelephonyCall | None: ...


class InboundProvisioningPort(Protocol):
    """Conferencing-side inbound trunk and dispatch rule for connected DIDs."""

    async def ensure_inbound_setup_for_did(self, e164: str) -> InboundSetup: ...

    async def remove_inbound_setup_for_did(self, e164: str) -> InboundTeardown: ...


class AgentConfigResolverPort(Protocol):
    async def resolve_by_agent_id(self, agent_id: str) -> AgentConfig:
        """Return the current agent configuration; raise if the agent is unknown."""
        ...


class CallRoutingPort(Protocol):
    async def resolve_routing(self, ctx: CallRoutingContext) -> CallRoutingResult: ...


class AgentDispatchPort(Protocol):
    async def dispatch_agent(self, room_name: str, agent_config: AgentConfig) -> None: ...


class WebhookVerifierPort(Protocol):
    async def verify_and_decode(
        self, raw_body: str, authorization: str | None
    ) -> dict[str, Any]:
        """Return the decoded event or raise on a bad signature or payload."""
        ...

"""
Telephony domain entities.

Plain dataclasses shared by stores, orchestrators, routing and the webhook
ingress. Agent configurations are opaque JSON-like dicts owned by the agent
platform.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

AgentConfig = dict[str, Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderType(str, Enum):
    """Supported telephony providers."""

    TWILIO = "twilio"
    TELNYX = "telnyx"
    PLIVO = "plivo"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class IntegrationStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CallStatus(str, Enum):
    """Lifecycle of a webhook-observed call."""

    CREATED = "created"
    SIP_PARTICIPANT_JOINED = "sip_participant_joined"
    AGENT_DISPATCHED = "agent_dispatched"
    ENDED = "ended"
    FAILED = "failed"


@dataclass
class StoredIntegration:
    """A tenant's credential set for one provider."""

    id: str
    provider: ProviderType
    name: str | None
    encrypted_credential: str
    credential_fingerprint: str
    status: IntegrationStatus = IntegrationStatus.ACTIVE
    provider_resources: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: datetime | None = None

    def to_public(self) -> dict[str, Any]:
        """Serializable view without the ciphertext."""
        return {
            "id": self.id,
            "provider": self.provider.value,
            "name": self.name,
            "credential_fingerprint": self.credential_fingerprint,
            "status": self.status.value,
            "provider_resources": dict(self.provider_resources),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class CreateIntegrationInput:
    provider: ProviderType
    encrypted_credential: str
    credential_fingerprint: str
    name: str | None = None


@dataclass
class StoredBinding:
    """A DID connected to an agent (by id, pinned snapshot, or both)."""

    id: str
    integration_id: str
    provider: ProviderType
    provider_number_id: str
    e164: str
    agent_id: str | None = None
    agent_config: AgentConfig | None = None
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: datetime | None = None

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "provider": self.provider.value,
            "provider_number_id": self.provider_number_id,
            "e164": self.e164,
            "agent_id": self.agent_id,
            "agent_config": self.agent_config,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class UpsertBindingInput:
    integration_id: str
    provider: ProviderType
    provider_number_id: str
    e164: str
    agent_id: str | None = None
    agent_config: AgentConfig | None = None


@dataclass
class SipParticipant:
    participant_id: str | None = None
    identity: str | None = None
    kind: str | None = None
    attributes: dict[str, str] | None = None


@dataclass
class TelephonyCall:
    """An in-flight or finished call, keyed by room name."""

    call_id: str
    room_name: str
    direction: CallDirection = CallDirection.INBOUND
    from_number: str | None = None
    to_number: str | None = None
    status: CallStatus = CallStatus.CREATED
    agent_dispatched: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    sip_participant: SipParticipant | None = None
    raw: dict[str, Any] | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in (CallStatus.ENDED, CallStatus.FAILED)

    def to_public(self) -> dict[str, Any]:
        data = asdict(self)
        data["direction"] = self.direction.value
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


@dataclass(frozen=True)
class NormalizedEvent:
    """Provider-agnostic view of a verified conferencing webhook event."""

    event_id: str
    event: str
    room_name: str | None
    created_at: int | None = None
    participant: SipParticipant | None = None
    event_id_derived: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallRoutingContext:
    room_name: str
    from_number: str | None = None
    to_number: str | None = None
    participant: SipParticipant | None = None


@dataclass(frozen=True)
class CallRoutingResult:
    agent_config: AgentConfig


@dataclass(frozen=True)
class InboundSetup:
    """Result of ensuring the conferencing-side pipeline for a DID."""

    normalized_did: str
    inbound_trunk_id: str
    dispatch_rule_id: str


@dataclass(frozen=True)
class InboundTeardown:
    """Result of removing a DID from the conferencing-side pipeline."""

    normalized_did: str
    inbound_trunk_id: str | None
    trunk_deleted: bool = False
    dispatch_rule_updated: bool = False
    dispatch_rule_deleted: bool = False

"""
In-process store implementations.

Used for the webhook call-state store in every environment, and for the
integration/binding stores in tests and single-process development. All
mutations happen between awaits, so the event loop serializes them.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

from trunkline.shared.logging import get_logger
from trunkline.telephony.e164 import normalize_e164
from trunkline.telephony.entities import (
    CallStatus,
    CreateIntegrationInput,
    IntegrationStatus,
    ProviderType,
    StoredBinding,
    StoredIntegration,
    TelephonyCall,
    UpsertBindingInput,
    utcnow,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class InMemoryIntegrationStore:
    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._rows: dict[str, StoredIntegration] = {}

    async def create(self, data: CreateIntegrationInput) -> StoredIntegration:
        now = self._clock()
        row = StoredIntegration(
            id=str(uuid4()),
            provider=data.provider,
            name=data.name,
            encrypted_credential=data.encrypted_credential,
            credential_fingerprint=data.credential_fingerprint,
            created_at=now,
            updated_at=now,
        )
        self._rows[row.id] = row
        return row

    async def get_by_id(self, integration_id: str) -> StoredIntegration | None:
        row = self._rows.get(integration_id)
        if row is None or row.deleted_at is not None:
            return None
        return row

    async def update_provider_resources(
        self, integration_id: str, resources: dict[str, Any]
    ) -> StoredIntegration | None:
        row = await self.get_by_id(integration_id)
        if row is None:
            return None
        updated = replace(
            row,
            provider_resources={**row.provider_resources, **resources},
            updated_at=self._clock(),
        )
        self._rows[integration_id] = updated
        return updated

    async def disable(self, integration_id: str) -> bool:
        row = await self.get_by_id(integration_id)
        if row is None:
            return False
        self._rows[integration_id] = replace(
            row, status=IntegrationStatus.DISABLED, updated_at=self._clock()
        )
        return True

    async def delete_by_id(self, integration_id: str) -> bool:
        row = await self.get_by_id(integration_id)
        if row is None:
            return False
        now = self._clock()
        self._rows[integration_id] = replace(
            row, status=IntegrationStatus.DISABLED, deleted_at=now, updated_at=now
        )
        return True

    async def list_by_provider(self, provider: ProviderType) -> list[StoredIntegration]:
        rows = [
            r
            for r in self._rows.values()
            if r.provider is provider
            and r.deleted_at is None
            and r.status is IntegrationStatus.ACTIVE
        ]
        return sorted(rows, key=lambda r: r.updated_at, reverse=True)


class InMemoryBindingStore:
    """Binding store keeping at most one live (non-deleted) row per e164."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._rows: dict[str, StoredBinding] = {}

    def _live(self) -> list[StoredBinding]:
        return [b for b in self._rows.values() if b.deleted_at is None]

    async def upsert_binding(self, data: UpsertBindingInput) -> StoredBinding:
        e164 = normalize_e164(data.e164)
        now = self._clock()
        existing = next((b for b in self._live() if b.e164 == e164), None)

        if existing is None:
            row = StoredBinding(
                id=str(uuid4()),
                integration_id=data.integration_id,
                provider=data.provider,
                provider_number_id=data.provider_number_id,
                e164=e164,
                agent_id=data.agent_id,
                agent_config=data.agent_config,
                enabled=True,
                created_at=now,
                updated_at=now,
            )
        else:
            row = replace(
                existing,
                integration_id=data.integration_id,
                provider=data.provider,
                provider_number_id=data.provider_number_id,
                agent_id=data.agent_id,
                agent_config=data.agent_config,
                enabled=True,
                updated_at=now,
            )
        self._rows[row.id] = row
        return row

    async def get_binding_by_e164(self, e164: str) -> StoredBinding | None:
        target = normalize_e164(e164)
        return next((b for b in self._live() if b.e164 == target and b.enabled), None)

    async def get_binding_by_id(self, binding_id: str) -> StoredBinding | None:
        row = self._rows.get(binding_id)
        if row is None or row.deleted_at is not None:
            return None
        return row

    async def list_bindings(self) -> list[StoredBinding]:
        return sorted(self._live(), key=lambda b: b.updated_at, reverse=True)

    async def list_bindings_by_integration_id(self, integration_id: str) -> list[StoredBinding]:
        rows = [b for b in self._live() if b.integration_id == integration_id]
        return sorted(rows, key=lambda b: b.updated_at, reverse=True)

    async def disable_binding(self, binding_id: str) -> bool:
        row = await self.get_binding_by_id(binding_id)
        if row is None:
            return False
        self._rows[binding_id] = replace(row, enabled=False, updated_at=self._clock())
        return True

    async def delete_binding(self, binding_id: str) -> bool:
        row = await self.get_binding_by_id(binding_id)
        if row is None:
            return False
        now = self._clock()
        self._rows[binding_id] = replace(row, enabled=False, deleted_at=now, updated_at=now)
        return True


_CALL_FIELDS = {
    "direction",
    "from_number",
    "to_number",
    "status",
    "agent_dispatched",
    "sip_participant",
    "raw",
}


class InMemoryCallStore:
    """Webhook-observed calls plus the event dedup ledger.

    Calls expire ``ttl_seconds`` after their last update. The ledger keeps the
    most recent ``seen_capacity`` event ids.
    """

    def __init__(
        self,
        ttl_seconds: int = 6 * 3600,
        seen_capacity: int = 50_000,
        clock: Clock = utcnow,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._seen_capacity = seen_capacity
        self._clock = clock
        self._calls_by_id: dict[str, TelephonyCall] = {}
        self._call_id_by_room: dict[str, str] = {}
        self._seen: OrderedDict[str, None] = OrderedDict()

    async def record_event_seen(self, event_id: str) -> bool:
        if event_id in self._seen:
            return False
        self._seen[event_id] = None
        while len(self._seen) > self._seen_capacity:
            self._seen.popitem(last=False)
        return True

    async def upsert_call_by_room_name(self, room_name: str, **changes: Any) -> TelephonyCall:
        unknown = set(changes) - _CALL_FIELDS
        if unknown:
            raise TypeError(f"Unknown call fields: {sorted(unknown)}")

        self._purge_expired()
        now = self._clock()
        existing = self._get_by_room(room_name)

        if existing is None:
            call = TelephonyCall(
                call_id=str(uuid4()),
                room_name=room_name,
                created_at=now,
                updated_at=now,
                **changes,
            )
        else:
            call = replace(existing, **changes, updated_at=now)

        self._calls_by_id[call.call_id] = call
        self._call_id_by_room[room_name] = call.call_id
        return call

    async def get_call_by_id(self, call_id: str) -> TelephonyCall | None:
        self._purge_expired()
        return self._calls_by_id.get(call_id)

    async def get_call_by_room_name(self, room_name: str) -> TelephonyCall | None:
        self._purge_expired()
        return self._get_by_room(room_name)

    async def list_calls(self) -> list[TelephonyCall]:
        self._purge_expired()
        return sorted(self._calls_by_id.values(), key=lambda c: c.updated_at, reverse=True)

    async def mark_agent_dispatched(self, call_id: str) -> TelephonyCall | None:
        return self._update(call_id, agent_dispatched=True, status=CallStatus.AGENT_DISPATCHED)

    async def mark_ended(
        self, call_id: str, status: CallStatus = CallStatus.ENDED
    ) -> TelephonyCall | None:
        if status not in (CallStatus.ENDED, CallStatus.FAILED):
            raise ValueError(f"mark_ended expects ended or failed, got {status.value}")
        return self._update(call_id, status=status)

    def _get_by_room(self, room_name: str) -> TelephonyCall | None:
        call_id = self._call_id_by_room.get(room_name)
        if call_id is None:
            return None
        return self._calls_by_id.get(call_id)

    def _update(self, call_id: str, **changes: Any) -> TelephonyCall | None:
        call = self._calls_by_id.get(call_id)
        if call is None:
            return None
        updated = replace(call, **changes, updated_at=self._clock())
        self._calls_by_id[call_id] = updated
        return updated

    def _purge_expired(self) -> None:
        cutoff = self._clock() - self._ttl
        expired = [c for c in self._calls_by_id.values() if c.updated_at < cutoff]
        for call in expired:
            self._calls_by_id.pop(call.call_id, None)
            if self._call_id_by_room.get(call.room_name) == call.call_id:
                self._call_id_by_room.pop(call.room_name, None)
        if expired:
            logger.debug("Expired telephony calls purged", extra={"count": len(expired)})

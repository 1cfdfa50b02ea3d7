"""
Call-state transitions driven by verified webhook events.

Every event is first recorded in the dedup ledger; only the first sighting of
an id is processed. A SIP participant joining a room dispatches the routed
agent exactly once per room: a per-room lock serializes concurrent joins, and
``agent_dispatched`` is set only after the dispatch call succeeds, so a failed
dispatch is retried by the next join event.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable
from uuid import uuid4

from trunkline.shared.logging import get_logger
from trunkline.telephony.entities import (
    AgentConfig,
    CallRoutingContext,
    CallStatus,
    NormalizedEvent,
    TelephonyCall,
)
from trunkline.telephony.ports import AgentDispatchPort, CallRoutingPort, CallStorePort
from trunkline.telephony.sip_attributes import extract_sip_from_to

logger = get_logger(__name__)

AgentDispatchedHook = Callable[[str, str, AgentConfig], Awaitable[None]]


class IgnoredReason(str, Enum):
    CALL_FINISHED = "call_finished"
    DUPLICATE = "duplicate"
    MISSING_ROOM = "missing_room"
    NON_SIP_PARTICIPANT = "non_sip_participant"
    UNSUPPORTED_EVENT = "unsupported_event"


@dataclass(frozen=True)
class HandleEventResult:
    first_seen: bool
    ignored_reason: IgnoredReason | None = None
    dispatch_attempted: bool = False
    dispatch_succeeded: bool = False
    call_id: str | None = None


class TelephonySessionService:
    def __init__(
        self,
        store: CallStorePort,
        routing: CallRoutingPort,
        agent_dispatch: AgentDispatchPort,
        *,
        sip_identity_prefix: str = "sip_",
        dispatch_on_any_participant_join: bool = False,
        on_agent_dispatched: AgentDispatchedHook | None = None,
    ) -> None:
        self._store = store
        self._routing = routing
        self._dispatch = agent_dispatch
        self._sip_identity_prefix = sip_identity_prefix
        self._dispatch_on_any = dispatch_on_any_participant_join
        self._on_agent_dispatched = on_agent_dispatched
        # Entries live only while some task holds or waits on the room lock.
        self._room_locks: dict[str, asyncio.Lock] = {}
        self._room_lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _room_lock(self, room_name: str) -> AsyncIterator[None]:
        lock = self._room_locks.setdefault(room_name, asyncio.Lock())
        self._room_lock_users[room_name] = self._room_lock_users.get(room_name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._room_lock_users.pop(room_name) - 1
            if users:
                self._room_lock_users[room_name] = users
            else:
                del self._room_locks[room_name]

    def is_sip_participant(self, evt: NormalizedEvent) -> bool:
        if self._dispatch_on_any:
            return True
        p = evt.participant
        if p is None:
            return False
        if p.kind and "sip" in p.kind.lower():
            return True
        if p.identity and p.identity.startswith(self._sip_identity_prefix):
            return True
        return any(key.startswith("sip.") for key in (p.attributes or {}))

    async def handle_event(self, evt: NormalizedEvent) -> HandleEventResult:
        if not await self._store.record_event_seen(evt.event_id):
            return HandleEventResult(first_seen=False, ignored_reason=IgnoredReason.DUPLICATE)

        if not evt.room_name:
            return HandleEventResult(first_seen=True, ignored_reason=IgnoredReason.MISSING_ROOM)

        if evt.event == "participant_joined":
            return await self._on_participant_joined(evt, evt.room_name)
        if evt.event == "participant_left":
            return await self._on_participant_left(evt, evt.room_name)
        if evt.event == "room_finished":
            return await self._on_room_finished(evt.room_name)
        return HandleEventResult(first_seen=True, ignored_reason=IgnoredReason.UNSUPPORTED_EVENT)

    async def ensure_agent_dispatched_once(self, room_name: str) -> bool:
        """Dispatch the routed agent unless the room already has one.

        Returns True when this call performed the dispatch. Dispatch failures
        propagate and leave the call undispatched.
        """
        async with self._room_lock(room_name):
            call = await self._store.get_call_by_room_name(room_name)
            if call is None or call.agent_dispatched or call.is_finished:
                return False
            await self._dispatch_agent(call)
            return True

    async def _on_participant_joined(self, evt: NormalizedEvent, room_name: str) -> HandleEventResult:
        if not self.is_sip_participant(evt):
            return HandleEventResult(
                first_seen=True, ignored_reason=IgnoredReason.NON_SIP_PARTICIPANT
            )

        from_number, to_number = extract_sip_from_to(
            evt.participant.attributes if evt.participant else None
        )

        async with self._room_lock(room_name):
            existing = await self._store.get_call_by_room_name(room_name)
            if existing is not None and existing.is_finished:
                return HandleEventResult(
                    first_seen=True,
                    ignored_reason=IgnoredReason.CALL_FINISHED,
                    call_id=existing.call_id,
                )
            changes = {
                "status": CallStatus.SIP_PARTICIPANT_JOINED,
                "raw": {
                    "last_event_id": evt.event_id,
                    "last_event": evt.event,
                    "last_event_created_at": evt.created_at,
                },
            }
            if existing is None:
                changes.update(
                    sip_participant=evt.participant,
                    from_number=from_number,
                    to_number=to_number,
                )
            elif existing.agent_dispatched:
                # A later SIP leg must not regress the status of a dispatched call.
                changes["status"] = existing.status
            call = await self._store.upsert_call_by_room_name(room_name, **changes)

            if call.agent_dispatched:
                return HandleEventResult(first_seen=True, call_id=call.call_id)

            try:
                await self._dispatch_agent(call)
            except Exception:
                logger.exception(
                    "Agent dispatch failed",
                    extra={
                        "event": "telephony.dispatch_failed",
                        "call_id": call.call_id,
                        "room_name": room_name,
                    },
                )
                return HandleEventResult(
                    first_seen=True, dispatch_attempted=True, call_id=call.call_id
                )

        return HandleEventResult(
            first_seen=True,
            dispatch_attempted=True,
            dispatch_succeeded=True,
            call_id=call.call_id,
        )

    async def _on_participant_left(self, evt: NormalizedEvent, room_name: str) -> HandleEventResult:
        if not self.is_sip_participant(evt):
            return HandleEventResult(
                first_seen=True, ignored_reason=IgnoredReason.NON_SIP_PARTICIPANT
            )

        call = await self._store.get_call_by_room_name(room_name)
        if call is None:
            return HandleEventResult(first_seen=True)

        original_id = call.sip_participant.participant_id if call.sip_participant else None
        leaving_id = evt.participant.participant_id if evt.participant else None
        if original_id is None or original_id == leaving_id:
            await self._store.mark_ended(call.call_id, CallStatus.ENDED)
            logger.info(
                "Call ended",
                extra={"event": "telephony.call_ended", "call_id": call.call_id, "room_name": room_name},
            )

        return HandleEventResult(first_seen=True, call_id=call.call_id)

    async def _on_room_finished(self, room_name: str) -> HandleEventResult:
        call = await self._store.get_call_by_room_name(room_name)
        if call is None:
            return HandleEventResult(first_seen=True)
        if not call.is_finished:
            await self._store.mark_ended(call.call_id, CallStatus.ENDED)
        return HandleEventResult(first_seen=True, call_id=call.call_id)

    async def _dispatch_agent(self, call: TelephonyCall) -> None:
        routing = await self._routing.resolve_routing(
            CallRoutingContext(
                room_name=call.room_name,
                from_number=call.from_number,
                to_number=call.to_number,
                participant=call.sip_participant,
            )
        )

        session_id = routing.agent_config.get("session_id")
        if not isinstance(session_id, str) or not session_id.strip():
            session_id = str(uuid4())
        agent_config = {**routing.agent_config, "session_id": session_id}

        await self._dispatch.dispatch_agent(call.room_name, agent_config)
        await self._store.mark_agent_dispatched(call.call_id)

        if self._on_agent_dispatched is None:
            return
        try:
            await self._on_agent_dispatched(call.room_name, session_id, agent_config)
        except Exception as e:
            logger.warning(
                "Failed to persist telephony session metadata",
                extra={
                    "event": "telephony.session_metadata_hook_failed",
                    "room_name": call.room_name,
                    "error": str(e),
                },
            )

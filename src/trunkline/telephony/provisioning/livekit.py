"""
Conferencing-side inbound pipeline (LiveKit SIP).

All connected DIDs share one named inbound trunk and one named dispatch rule
that creates a room per call. Connecting a DID adds it to the trunk; removing
the last DID deletes the trunk and unscopes (or deletes) the dispatch rule.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from livekit import api

from trunkline.shared.exceptions import AppError
from trunkline.shared.logging import get_logger
from trunkline.telephony.e164 import normalize_e164
from trunkline.telephony.entities import InboundSetup, InboundTeardown
from trunkline.telephony.errors import ProvisioningFailed

logger = get_logger(__name__)


@dataclass(frozen=True)
class SipInboundTrunk:
    id: str
    name: str
    numbers: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SipDispatchRule:
    id: str
    name: str
    trunk_ids: list[str] = field(default_factory=list)


class LiveKitSipClient(Protocol):
    """The subset of the LiveKit SIP service the provisioning flow needs."""

    async def list_inbound_trunks(self) -> list[SipInboundTrunk]: ...

    async def create_inbound_trunk(self, name: str, numbers: list[str]) -> SipInboundTrunk: ...

    async def set_inbound_trunk_numbers(self, trunk_id: str, numbers: list[str]) -> SipInboundTrunk: ...

    async def delete_trunk(self, trunk_id: str) -> None: ...

    async def list_dispatch_rules(self) -> list[SipDispatchRule]: ...

    async def create_dispatch_rule(
        self, name: str, room_prefix: str, trunk_ids: list[str]
    ) -> SipDispatchRule: ...

    async def set_dispatch_rule_trunks(self, rule_id: str, trunk_ids: list[str]) -> SipDispatchRule: ...

    async def delete_dispatch_rule(self, rule_id: str) -> None: ...


def _provisioning_error(err: Exception) -> AppError:
    if isinstance(err, AppError):
        return err
    message = getattr(err, "message", None) or str(err)
    if message:
        return ProvisioningFailed(f"LiveKit telephony provisioning failed: {message}")
    return ProvisioningFailed("LiveKit telephony provisioning failed")


def _require_id(value: str, what: str) -> str:
    if not value:
        raise ProvisioningFailed(f"LiveKit returned {what} without an id")
    return value


class LiveKitTelephonyProvisioningService:
    """Implements the inbound provisioning port over a ``LiveKitSipClient``."""

    def __init__(
        self,
        sip_client: LiveKitSipClient,
        *,
        inbound_trunk_name: str,
        dispatch_rule_name: str,
        room_prefix: str,
    ) -> None:
        self._sip = sip_client
        self._trunk_name = inbound_trunk_name
        self._rule_name = dispatch_rule_name
        self._room_prefix = room_prefix

    async def ensure_inbound_setup_for_did(self, e164: str) -> InboundSetup:
        did = normalize_e164(e164)
        try:
            trunk = await self._ensure_trunk_has_number(did)
            trunk_id = _require_id(trunk.id, "an inbound trunk")
            rule = await self._ensure_dispatch_rule(trunk_id)
            return InboundSetup(
                normalized_did=did,
                inbound_trunk_id=trunk_id,
                dispatch_rule_id=_require_id(rule.id, "a dispatch rule"),
            )
        except Exception as e:
            raise _provisioning_error(e) from e

    async def remove_inbound_setup_for_did(self, e164: str) -> InboundTeardown:
        did = normalize_e164(e164)
        try:
            trunk = self._find_by_name(await self._sip.list_inbound_trunks(), self._trunk_name)
            if trunk is None:
                return InboundTeardown(normalized_did=did, inbound_trunk_id=None)

            trunk_id = _require_id(trunk.id, "an inbound trunk")
            if did not in trunk.numbers:
                return InboundTeardown(normalized_did=did, inbound_trunk_id=trunk_id)

            remaining = [n for n in trunk.numbers if n != did]
            if remaining:
                await self._sip.set_inbound_trunk_numbers(trunk_id, remaining)
                logger.info(
                    "Removed DID from LiveKit SIP inbound trunk",
                    extra={
                        "event": "livekit.telephony.inbound_trunk_updated",
                        "trunk_name": self._trunk_name,
                        "did_removed": did,
                        "inbound_trunk_id": trunk_id,
                    },
                )
                return InboundTeardown(normalized_did=did, inbound_trunk_id=trunk_id)

            await self._sip.delete_trunk(trunk_id)
            logger.info(
                "Deleted empty LiveKit SIP inbound trunk",
                extra={
                    "event": "livekit.telephony.inbound_trunk_deleted",
                    "trunk_name": self._trunk_name,
                    "did_removed": did,
                    "inbound_trunk_id": trunk_id,
                },
            )
            rule_updated, rule_deleted = await self._remove_trunk_from_dispatch_rule(trunk_id)
            return InboundTeardown(
                normalized_did=did,
                inbound_trunk_id=trunk_id,
                trunk_deleted=True,
                dispatch_rule_updated=rule_updated,
                dispatch_rule_deleted=rule_deleted,
            )
        except Exception as e:
            raise _provisioning_error(e) from e

    async def _ensure_trunk_has_number(self, did: str) -> SipInboundTrunk:
        existing = self._find_by_name(await self._sip.list_inbound_trunks(), self._trunk_name)
        if existing is None:
            created = await self._sip.create_inbound_trunk(self._trunk_name, [did])
            logger.info(
                "Created LiveKit SIP inbound trunk",
                extra={
                    "event": "livekit.telephony.inbound_trunk_created",
                    "trunk_name": self._trunk_name,
                    "did": did,
                    "inbound_trunk_id": created.id,
                },
            )
            return created

        if did in existing.numbers:
            return existing

        updated = await self._sip.set_inbound_trunk_numbers(
            _require_id(existing.id, "an inbound trunk"), [*existing.numbers, did]
        )
        logger.info(
            "Updated LiveKit SIP inbound trunk numbers",
            extra={
                "event": "livekit.telephony.inbound_trunk_updated",
                "trunk_name": self._trunk_name,
                "did": did,
                "inbound_trunk_id": updated.id,
            },
        )
        return updated

    async def _ensure_dispatch_rule(self, trunk_id: str) -> SipDispatchRule:
        existing = self._find_by_name(await self._sip.list_dispatch_rules(), self._rule_name)
        if existing is not None:
            if trunk_id in existing.trunk_ids:
                return existing
            updated = await self._sip.set_dispatch_rule_trunks(
                _require_id(existing.id, "a dispatch rule"), [*existing.trunk_ids, trunk_id]
            )
            logger.info(
                "Updated LiveKit SIP dispatch rule trunk scope",
                extra={
                    "event": "livekit.telephony.dispatch_rule_updated",
                    "rule_name": self._rule_name,
                    "room_prefix": self._room_prefix,
                    "dispatch_rule_id": updated.id,
                    "added_trunk_id": trunk_id,
                },
            )
            return updated

        created = await self._sip.create_dispatch_rule(self._rule_name, self._room_prefix, [trunk_id])
        logger.info(
            "Created LiveKit SIP dispatch rule",
            extra={
                "event": "livekit.telephony.dispatch_rule_created",
                "rule_name": self._rule_name,
                "room_prefix": self._room_prefix,
                "dispatch_rule_id": created.id,
                "trunk_id": trunk_id,
            },
        )
        return created

    async def _remove_trunk_from_dispatch_rule(self, trunk_id: str) -> tuple[bool, bool]:
        """Returns ``(updated, deleted)``."""
        rule = self._find_by_name(await self._sip.list_dispatch_rules(), self._rule_name)
        if rule is None or trunk_id not in rule.trunk_ids:
            return False, False

        rule_id = _require_id(rule.id, "a dispatch rule")
        if len(rule.trunk_ids) <= 1:
            await self._sip.delete_dispatch_rule(rule_id)
            logger.info(
                "Deleted LiveKit SIP dispatch rule after last trunk removal",
                extra={
                    "event": "livekit.telephony.dispatch_rule_deleted",
                    "rule_name": self._rule_name,
                    "dispatch_rule_id": rule_id,
                    "removed_trunk_id": trunk_id,
                },
            )
            return False, True

        await self._sip.set_dispatch_rule_trunks(rule_id, [t for t in rule.trunk_ids if t != trunk_id])
        logger.info(
            "Removed trunk from LiveKit SIP dispatch rule",
            extra={
                "event": "livekit.telephony.dispatch_rule_updated",
                "rule_name": self._rule_name,
                "dispatch_rule_id": rule_id,
                "removed_trunk_id": trunk_id,
            },
        )
        return True, False

    @staticmethod
    def _find_by_name(items, name):
        return next((item for item in items if item.name == name), None)


class LiveKitApiSipClient:
    """``LiveKitSipClient`` backed by the ``livekit-api`` SIP service.

    Updates use the replace form: the current info message is re-read,
    modified and written back.
    """

    def __init__(self, lkapi: api.LiveKitAPI) -> None:
        self._lkapi = lkapi

    async def list_inbound_trunks(self) -> list[SipInboundTrunk]:
        return [_trunk(info) for info in await self._raw_trunks()]

    async def create_inbound_trunk(self, name: str, numbers: list[str]) -> SipInboundTrunk:
        info = await self._lkapi.sip.create_sip_inbound_trunk(
            api.CreateSIPInboundTrunkRequest(
                trunk=api.SIPInboundTrunkInfo(name=name, numbers=numbers)
            )
        )
        return _trunk(info)

    async def set_inbound_trunk_numbers(self, trunk_id: str, numbers: list[str]) -> SipInboundTrunk:
        current = next((t for t in await self._raw_trunks() if t.sip_trunk_id == trunk_id), None)
        if current is None:
            raise ProvisioningFailed(f"LiveKit inbound trunk {trunk_id} not found")
        replacement = api.SIPInboundTrunkInfo()
        replacement.CopyFrom(current)
        del replacement.numbers[:]
        replacement.numbers.extend(numbers)
        info = await self._lkapi.sip.update_sip_inbound_trunk(trunk_id, replacement)
        return _trunk(info)

    async def delete_trunk(self, trunk_id: str) -> None:
        await self._lkapi.sip.delete_sip_trunk(api.DeleteSIPTrunkRequest(sip_trunk_id=trunk_id))

    async def list_dispatch_rules(self) -> list[SipDispatchRule]:
        return [_rule(info) for info in await self._raw_rules()]

    async def create_dispatch_rule(
        self, name: str, room_prefix: str, trunk_ids: list[str]
    ) -> SipDispatchRule:
        info = await self._lkapi.sip.create_sip_dispatch_rule(
            api.CreateSIPDispatchRuleRequest(
                name=name,
                rule=api.SIPDispatchRule(
                    dispatch_rule_individual=api.SIPDispatchRuleIndividual(room_prefix=room_prefix)
                ),
                trunk_ids=trunk_ids,
            )
        )
        return _rule(info)

    async def set_dispatch_rule_trunks(self, rule_id: str, trunk_ids: list[str]) -> SipDispatchRule:
        current = next(
            (r for r in await self._raw_rules() if r.sip_dispatch_rule_id == rule_id), None
        )
        if current is None:
            raise ProvisioningFailed(f"LiveKit dispatch rule {rule_id} not found")
        replacement = api.SIPDispatchRuleInfo()
        replacement.CopyFrom(current)
        del replacement.trunk_ids[:]
        replacement.trunk_ids.extend(trunk_ids)
        info = await self._lkapi.sip.update_sip_dispatch_rule(rule_id, replacement)
        return _rule(info)

    async def delete_dispatch_rule(self, rule_id: str) -> None:
        await self._lkapi.sip.delete_sip_dispatch_rule(
            api.DeleteSIPDispatchRuleRequest(sip_dispatch_rule_id=rule_id)
        )

    async def _raw_trunks(self) -> list[api.SIPInboundTrunkInfo]:
        response = await self._lkapi.sip.list_sip_inbound_trunk(api.ListSIPInboundTrunkRequest())
        return list(response.items)

    async def _raw_rules(self) -> list[api.SIPDispatchRuleInfo]:
        response = await self._lkapi.sip.list_sip_dispatch_rule(api.ListSIPDispatchRuleRequest())
        return list(response.items)


def _trunk(info: api.SIPInboundTrunkInfo) -> SipInboundTrunk:
    return SipInboundTrunk(id=info.sip_trunk_id, name=info.name, numbers=list(info.numbers))


def _rule(info: api.SIPDispatchRuleInfo) -> SipDispatchRule:
    return SipDispatchRule(
        id=info.sip_dispatch_rule_id, name=info.name, trunk_ids=list(info.trunk_ids)
    )

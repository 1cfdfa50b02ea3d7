"""Tests for the shared conferencing-side inbound trunk and dispatch rule."""

from __future__ import annotations

from dataclasses import replace

import pytest

from trunkline.telephony.errors import ProvisioningFailed
from trunkline.telephony.provisioning.livekit import (
    LiveKitTelephonyProvisioningService,
    SipDispatchRule,
    SipInboundTrunk,
)

TRUNK_NAME = "byoc-inbound"
RULE_NAME = "byoc-dispatch"


class FakeSipClient:
    def __init__(self) -> None:
        self.trunks: dict[str, SipInboundTrunk] = {}
        self.rules: dict[str, SipDispatchRule] = {}
        self.ops: list[str] = []
        self.fail_with: Exception | None = None
        self._seq = 0

    def _id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    async def list_inbound_trunks(self) -> list[SipInboundTrunk]:
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.trunks.values())

    async def create_inbound_trunk(self, name: str, numbers: list[str]) -> SipInboundTrunk:
        self.ops.append("create_trunk")
        trunk = SipInboundTrunk(id=self._id("ST"), name=name, numbers=list(numbers))
        self.trunks[trunk.id] = trunk
        return trunk

    async def set_inbound_trunk_numbers(self, trunk_id: str, numbers: list[str]) -> SipInboundTrunk:
        self.ops.append("set_trunk_numbers")
        self.trunks[trunk_id] = replace(self.trunks[trunk_id], numbers=list(numbers))
        return self.trunks[trunk_id]

    async def delete_trunk(self, trunk_id: str) -> None:
        self.ops.append("delete_trunk")
        self.trunks.pop(trunk_id)

    async def list_dispatch_rules(self) -> list[SipDispatchRule]:
        return list(self.rules.values())

    async def create_dispatch_rule(
        self, name: str, room_prefix: str, trunk_ids: list[str]
    ) -> SipDispatchRule:
        self.ops.append("create_rule")
        rule = SipDispatchRule(id=self._id("SDR"), name=name, trunk_ids=list(trunk_ids))
        self.rules[rule.id] = rule
        return rule

    async def set_dispatch_rule_trunks(self, rule_id: str, trunk_ids: list[str]) -> SipDispatchRule:
        self.ops.append("set_rule_trunks")
        self.rules[rule_id] = replace(self.rules[rule_id], trunk_ids=list(trunk_ids))
        return self.rules[rule_id]

    async def delete_dispatch_rule(self, rule_id: str) -> None:
        self.ops.append("delete_rule")
        self.rules.pop(rule_id)


@pytest.fixture
def sip() -> FakeSipClient:
    return FakeSipClient()


@pytest.fixture
def service(sip: FakeSipClient) -> LiveKitTelephonyProvisioningService:
    return LiveKitTelephonyProvisioningService(
        sip,
        inbound_trunk_name=TRUNK_NAME,
        dispatch_rule_name=RULE_NAME,
        room_prefix="call-",
    )


class TestEnsureInboundSetup:
    @pytest.mark.asyncio
    async def test_first_did_creates_trunk_and_rule(self, service, sip) -> None:
        setup = await service.ensure_inbound_setup_for_did("14155550100")

        assert setup.normalized_did == "+14155550100"
        assert sip.trunks[setup.inbound_trunk_id].numbers == ["+14155550100"]
        assert sip.rules[setup.dispatch_rule_id].trunk_ids == [setup.inbound_trunk_id]
        assert sip.ops == ["create_trunk", "create_rule"]

    @pytest.mark.asyncio
    async def test_repeat_is_a_no_op(self, service, sip) -> None:
        first = await service.ensure_inbound_setup_for_did("+14155550100")
        sip.ops.clear()

        second = await service.ensure_inbound_setup_for_did("+14155550100")

        assert second == first
        assert sip.ops == []

    @pytest.mark.asyncio
    async def test_second_did_joins_shared_trunk(self, service, sip) -> None:
        first = await service.ensure_inbound_setup_for_did("+14155550100")
        second = await service.ensure_inbound_setup_for_did("+14155550101")

        assert second.inbound_trunk_id == first.inbound_trunk_id
        assert sip.trunks[first.inbound_trunk_id].numbers == ["+14155550100", "+14155550101"]
        assert len(sip.rules) == 1

    @pytest.mark.asyncio
    async def test_existing_rule_is_scoped_to_trunk(self, service, sip) -> None:
        sip.rules["SDR_0"] = SipDispatchRule(id="SDR_0", name=RULE_NAME, trunk_ids=["ST_other"])

        setup = await service.ensure_inbound_setup_for_did("+14155550100")

        assert setup.dispatch_rule_id == "SDR_0"
        assert sip.rules["SDR_0"].trunk_ids == ["ST_other", setup.inbound_trunk_id]

    @pytest.mark.asyncio
    async def test_client_failure_becomes_provisioning_failed(self, service, sip) -> None:
        sip.fail_with = RuntimeError("twirp error: unavailable")

        with pytest.raises(ProvisioningFailed) as exc_info:
            await service.ensure_inbound_setup_for_did("+14155550100")

        assert "unavailable" in exc_info.value.message


class TestRemoveInboundSetup:
    @pytest.mark.asyncio
    async def test_removing_one_of_two_keeps_trunk(self, service, sip) -> None:
        setup = await service.ensure_inbound_setup_for_did("+14155550100")
        await service.ensure_inbound_setup_for_did("+14155550101")

        teardown = await service.remove_inbound_setup_for_did("+14155550100")

        assert teardown.trunk_deleted is False
        assert sip.trunks[setup.inbound_trunk_id].numbers == ["+14155550101"]

    @pytest.mark.asyncio
    async def test_removing_last_did_deletes_trunk_and_rule(self, service, sip) -> None:
        await service.ensure_inbound_setup_for_did("+14155550100")

        teardown = await service.remove_inbound_setup_for_did("+14155550100")

        assert teardown.trunk_deleted is True
        assert teardown.dispatch_rule_deleted is True
        assert sip.trunks == {} and sip.rules == {}

    @pytest.mark.asyncio
    async def test_shared_rule_is_unscoped_not_deleted(self, service, sip) -> None:
        setup = await service.ensure_inbound_setup_for_did("+14155550100")
        sip.rules[setup.dispatch_rule_id] = replace(
            sip.rules[setup.dispatch_rule_id], trunk_ids=[setup.inbound_trunk_id, "ST_other"]
        )

        teardown = await service.remove_inbound_setup_for_did("+14155550100")

        assert teardown.dispatch_rule_updated is True
        assert sip.rules[setup.dispatch_rule_id].trunk_ids == ["ST_other"]

    @pytest.mark.asyncio
    async def test_unknown_did_and_missing_trunk_are_no_ops(self, service, sip) -> None:
        assert (await service.remove_inbound_setup_for_did("+14155550100")).inbound_trunk_id is None

        setup = await service.ensure_inbound_setup_for_did("+14155550100")
        sip.ops.clear()
        teardown = await service.remove_inbound_setup_for_did("+14155550199")

        assert teardown.inbound_trunk_id == setup.inbound_trunk_id
        assert sip.ops == []

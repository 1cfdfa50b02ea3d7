"""Tests for the Telnyx onboarding orchestrator against an in-memory account."""

from __future__ import annotations

from typing import Any

import pytest

from trunkline.shared.exceptions import ValidationError
from trunkline.telephony.errors import ProviderClientError, ProviderErrorCode
from trunkline.telephony.onboarding.telnyx import TelnyxOnboardingService
from trunkline.telephony.providers.telnyx import (
    TelnyxFqdn,
    TelnyxFqdnConnection,
    TelnyxPhoneNumber,
)

API_KEY = "KEYabc"


class FakeTelnyxAccount:
    def __init__(self, steps: list[tuple[str, Any]]) -> None:
        self.steps = steps
        self.numbers = {
            "n1": TelnyxPhoneNumber(id="n1", phone_number="+14155550100", status="active"),
            "n2": TelnyxPhoneNumber(id="n2", phone_number="+14155550101", status="active"),
        }
        self.connections: dict[str, TelnyxFqdnConnection] = {}
        self.fqdns: list[TelnyxFqdn] = []
        self.create_connection_race = False
        self.transport_update_error: Exception | None = None
        self.unassign_errors: list[Exception] = []
        self.create_fqdn_error: Exception | None = None

    async def __aenter__(self) -> "FakeTelnyxAccount":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    async def verify_credentials(self) -> dict[str, bool]:
        return {"valid": True}

    async def list_phone_numbers(self) -> list[TelnyxPhoneNumber]:
        return list(self.numbers.values())

    async def get_phone_number(self, number_id: str) -> TelnyxPhoneNumber:
        return self.numbers[number_id]

    async def assign_phone_number_to_connection(self, number_id: str, connection_id: str) -> None:
        self.steps.append(("telnyx.assign", number_id))
        n = self.numbers[number_id]
        self.numbers[number_id] = TelnyxPhoneNumber(
            id=n.id, phone_number=n.phone_number, status=n.status, connection_id=connection_id
        )

    async def unassign_phone_number_from_connection(self, number_id: str) -> None:
        self.steps.append(("telnyx.unassign", number_id))
        if self.unassign_errors:
            raise self.unassign_errors.pop(0)
        n = self.numbers[number_id]
        self.numbers[number_id] = TelnyxPhoneNumber(id=n.id, phone_number=n.phone_number, status=n.status)

    async def list_fqdn_connections(self) -> list[TelnyxFqdnConnection]:
        return list(self.connections.values())

    async def get_fqdn_connection(self, connection_id: str) -> TelnyxFqdnConnection:
        return self.connections[connection_id]

    async def create_fqdn_connection(
        self, name: str, transport_protocol: str | None = None
    ) -> TelnyxFqdnConnection:
        connection = TelnyxFqdnConnection(
            id=f"c{len(self.connections) + 1}",
            connection_name=name,
            transport_protocol=transport_protocol,
        )
        self.connections[connection.id] = connection
        if self.create_connection_race:
            # Another request created it first; the provider rejects the duplicate name.
            self.create_connection_race = False
            raise ProviderClientError(422, ProviderErrorCode.VALIDATION_ERROR, "name taken")
        self.steps.append(("telnyx.create_connection", name))
        return connection

    async def update_fqdn_connection_transport(self, connection_id: str, protocol: str) -> None:
        if self.transport_update_error is not None:
            raise self.transport_update_error
        c = self.connections[connection_id]
        self.connections[connection_id] = TelnyxFqdnConnection(
            id=c.id, connection_name=c.connection_name, transport_protocol=protocol
        )
        self.steps.append(("telnyx.update_transport", protocol))

    async def delete_fqdn_connection(self, connection_id: str) -> None:
        self.steps.append(("telnyx.delete_connection", connection_id))
        self.connections.pop(connection_id, None)

    async def list_fqdns(self, connection_id: str) -> list[TelnyxFqdn]:
        return [f for f in self.fqdns if f.connection_id == connection_id]

    async def create_fqdn(self, fqdn: str, connection_id: str) -> TelnyxFqdn:
        if self.create_fqdn_error is not None:
            raise self.create_fqdn_error
        record = TelnyxFqdn(id=f"f{len(self.fqdns) + 1}", fqdn=fqdn, connection_id=connection_id)
        self.fqdns.append(record)
        self.steps.append(("telnyx.create_fqdn", fqdn))
        return record

    async def delete_fqdn(self, fqdn_id: str) -> None:
        self.steps.append(("telnyx.delete_fqdn", fqdn_id))
        self.fqdns = [f for f in self.fqdns if f.id != fqdn_id]


@pytest.fixture
def account(steps: list[tuple[str, Any]]) -> FakeTelnyxAccount:
    return FakeTelnyxAccount(steps)


@pytest.fixture
def service(onboarding_deps, account: FakeTelnyxAccount) -> TelnyxOnboardingService:
    return TelnyxOnboardingService(onboarding_deps, client_factory=lambda api_key: account)


class TestTelnyxOnboarding:
    @pytest.mark.asyncio
    async def test_create_integration_sets_up_connection_once(
        self, service: TelnyxOnboardingService, account: FakeTelnyxAccount
    ) -> None:
        integration = await service.create_integration(API_KEY, "main")

        assert integration.provider_resources == {"fqdn_connection_id": "c1", "fqdn_id": "f1"}
        assert account.connections["c1"].connection_name == f"livekit-inbound-{integration.id}"
        assert account.connections["c1"].transport_protocol == "TCP"
        assert [f.fqdn for f in account.fqdns] == ["abc123.sip.livekit.cloud"]
        assert API_KEY not in integration.encrypted_credential

    @pytest.mark.asyncio
    async def test_duplicate_name_race_reuses_existing_connection(
        self, service: TelnyxOnboardingService, account: FakeTelnyxAccount
    ) -> None:
        account.create_connection_race = True

        integration = await service.create_integration(API_KEY)

        assert integration.provider_resources["fqdn_connection_id"] == "c1"
        assert len(account.connections) == 1

    @pytest.mark.asyncio
    async def test_connect_orders_platform_before_assign_and_converges(
        self, service: TelnyxOnboardingService, account: FakeTelnyxAccount, binding_store, steps
    ) -> None:
        integration = await service.create_integration(API_KEY)
        steps.clear()

        first = await service.connect_number(
            integration.id, provider_number_id="n1", e164="+14155550100", agent_config={"prompt": "hi"}
        )
        second = await service.connect_number(
            integration.id, provider_number_id="n1", e164="+14155550100", agent_config={"prompt": "hi"}
        )

        assert steps[:2] == [("platform.ensure", "+14155550100"), ("telnyx.assign", "n1")]
        assert first.id == second.id
        assert len(account.connections) == 1
        assert len(account.fqdns) == 1
        assert len(await binding_store.list_bindings()) == 1
        assert account.numbers["n1"].connection_id == "c1"

    @pytest.mark.asyncio
    async def test_transport_protocol_is_corrected_on_connect(
        self, service: TelnyxOnboardingService, account: FakeTelnyxAccount
    ) -> None:
        integration = await service.create_integration(API_KEY)
        account.connections["c1"] = TelnyxFqdnConnection(
            id="c1", connection_name="x", transport_protocol="UDP"
        )

        await service.connect_number(integration.id, provider_number_id="n1", e164="+14155550100")

        assert account.connections["c1"].transport_protocol == "TCP"

    @pytest.mark.asyncio
    async def test_transport_update_failure_does_not_block_connect(
        self, service: TelnyxOnboardingService, account: FakeTelnyxAccount
    ) -> None:
        integration = await service.create_integration(API_KEY)
        account.connections["c1"] = TelnyxFqdnConnection(
            id="c1", connection_name="x", transport_protocol="UDP"
        )
        account.transport_update_error = ProviderClientError(
            422, ProviderErrorCode.VALIDATION_ERROR, "locked"
        )

        binding = await service.connect_number(
            integration.id, provider_number_id="n1", e164="+14155550100"
        )

        assert binding.e164 == "+14155550100"

    @pytest.mark.asyncio
    async def test_mismatch(self, service: TelnyxOnboardingService, binding_store) -> None:
        integration = await service.create_integration(API_KEY)

        with pytest.raises(ValidationError):
            await service.connect_number(integration.id, provider_number_id="n1", e164="+14155550199")

        assert await binding_store.list_bindings() == []

    @pytest.mark.asyncio
    async def test_delete_integration_unwinds_everything(
        self, service: TelnyxOnboardingService, account: FakeTelnyxAccount, binding_store, steps
    ) -> None:
        integration = await service.create_integration(API_KEY)
        await service.connect_number(integration.id, provider_number_id="n1", e164="+14155550100")
        await service.connect_number(integration.id, provider_number_id="n2", e164="+14155550101")
        account.unassign_errors = [
            ProviderClientError(0, ProviderErrorCode.PROVIDER_UNREACHABLE, "timeout")
        ]

        result = await service.delete_integration(integration.id)

        assert result == {"deleted_bindings": 2}
        assert await binding_store.list_bindings() == []
        assert account.connections == {}
        assert account.fqdns == []
        assert steps.index(("telnyx.delete_fqdn", "f1")) < steps.index(
            ("telnyx.delete_connection", "c1")
        )

    @pytest.mark.asyncio
    async def test_delete_finds_connection_left_by_failed_setup(
        self, service: TelnyxOnboardingService, account: FakeTelnyxAccount, steps
    ) -> None:
        account.create_fqdn_error = ProviderClientError(
            503, ProviderErrorCode.PROVIDER_ERROR, "Service Unavailable"
        )
        integration = await service.create_integration(API_KEY)

        assert integration.provider_resources == {}
        assert list(account.connections) == ["c1"]

        assert await service.delete_integration(integration.id) == {"deleted_bindings": 0}
        assert account.connections == {}
        assert ("telnyx.delete_connection", "c1") in steps

    @pytest.mark.asyncio
    async def test_debug_inspect_reports_attached_host(
        self, service: TelnyxOnboardingService
    ) -> None:
        integration = await service.create_integration(API_KEY)
        await service.connect_number(integration.id, provider_number_id="n1", e164="+14155550100")

        report = await service.debug_inspect_number(integration.id, "n1")

        assert report["expected_connection_id"] == "c1"
        assert report["livekit_sip_host_attached"] is True
        assert report["fqdns"] == [{"id": "f1", "fqdn": "abc123.sip.livekit.cloud"}]

    @pytest.mark.asyncio
    async def test_debug_set_transport_protocol(
        self, service: TelnyxOnboardingService
    ) -> None:
        integration = await service.create_integration(API_KEY)

        connection = await service.debug_set_transport_protocol(integration.id, "c1", "TLS")

        assert connection.transport_protocol == "TLS"

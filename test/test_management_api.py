"""Tests for the operator management endpoints over stub orchestrators."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from trunkline.main import create_app
from trunkline.shared.exceptions import UnauthorizedError
from trunkline.telephony.config import TelephonyConfig
from trunkline.telephony.entities import (
    CreateIntegrationInput,
    ProviderType,
    UpsertBindingInput,
)
from trunkline.telephony.module import TelephonyModule
from trunkline.telephony.onboarding.registry import OnboardingRegistry
from trunkline.telephony.providers.telnyx import TelnyxFqdnConnection, TelnyxPhoneNumber
from trunkline.telephony.providers.twilio import TwilioCredentials


class StubService:
    """Records calls; only the behavior each test needs is filled in."""

    def __init__(self, provider: ProviderType, integration_store, binding_store) -> None:
        self.provider = provider
        self.integration_store = integration_store
        self.binding_store = binding_store
        self.calls: list[tuple[str, Any]] = []
        self.reject_credentials = False

    async def verify_credentials(self, creds: Any) -> dict[str, bool]:
        self.calls.append(("verify", creds))
        if self.reject_credentials:
            raise UnauthorizedError(
                "Twilio rejected the credentials", code="INVALID_CREDENTIALS"
            )
        return {"valid": True}

    async def create_integration(self, creds: Any, name: str | None = None):
        self.calls.append(("create", creds))
        return await self.integration_store.create(
            CreateIntegrationInput(
                provider=self.provider,
                name=name,
                encrypted_credential="v1.sealed",
                credential_fingerprint="fp",
            )
        )

    async def list_numbers(self, integration_id: str) -> list[Any]:
        self.calls.append(("list_numbers", integration_id))
        return [TelnyxPhoneNumber(id="n1", phone_number="+14155550100", status="active")]

    async def connect_number(self, integration_id: str, **kwargs: Any):
        self.calls.append(("connect", kwargs))
        return await self.binding_store.upsert_binding(
            UpsertBindingInput(
                integration_id=integration_id,
                provider=self.provider,
                provider_number_id=kwargs["provider_number_id"],
                e164=kwargs["e164"],
                agent_id=kwargs["agent_id"],
                agent_config=kwargs["agent_config"],
            )
        )

    async def disconnect_number(self, binding_id: str) -> None:
        self.calls.append(("disconnect", binding_id))

    async def delete_integration(self, integration_id: str) -> dict[str, int]:
        self.calls.append(("delete", integration_id))
        return {"deleted_bindings": 0}

    async def debug_set_transport_protocol(
        self, integration_id: str, connection_id: str, protocol: str
    ) -> TelnyxFqdnConnection:
        self.calls.append(("transport", (integration_id, connection_id, protocol)))
        return TelnyxFqdnConnection(id=connection_id, connection_name="x", transport_protocol=protocol)


@pytest.fixture
def registry(integration_store, binding_store) -> OnboardingRegistry:
    return OnboardingRegistry(
        twilio=StubService(ProviderType.TWILIO, integration_store, binding_store),
        telnyx=StubService(ProviderType.TELNYX, integration_store, binding_store),
        plivo=StubService(ProviderType.PLIVO, integration_store, binding_store),
        integration_store=integration_store,
        binding_store=binding_store,
    )


@pytest.fixture
def module(integration_store, binding_store, call_store, registry) -> TelephonyModule:
    return TelephonyModule(
        config=TelephonyConfig(),
        integration_store=integration_store,
        binding_store=binding_store,
        call_store=call_store,
        onboarding=registry,
    )


@pytest.fixture
def client(module: TelephonyModule) -> TestClient:
    return TestClient(create_app(telephony=module))


TWILIO_BODY = {"accountSid": "AC123", "apiKeySid": "SK123", "apiKeySecret": "secret"}


class TestCredentials:
    def test_create_twilio_integration(self, client: TestClient, registry) -> None:
        response = client.post(
            "/api/telephony/twilio/credentials", json={**TWILIO_BODY, "name": "main"}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["provider"] == "twilio"
        assert body["name"] == "main"
        assert "encrypted_credential" not in body
        assert registry.twilio.calls[0] == (
            "create",
            TwilioCredentials(account_sid="AC123", api_key_sid="SK123", api_key_secret="secret"),
        )

    def test_invalid_credentials_map_to_401(self, client: TestClient, registry) -> None:
        registry.twilio.reject_credentials = True

        response = client.post("/api/telephony/twilio/credentials/verify", json=TWILIO_BODY)

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "INVALID_CREDENTIALS"

    def test_missing_field_uses_validation_envelope(self, client: TestClient) -> None:
        response = client.post("/api/telephony/telnyx/credentials", json={})

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_ERROR"
        assert detail["errors"][0]["field"] == "body.apiKey"

    def test_list_integrations_per_provider(self, client: TestClient) -> None:
        client.post("/api/telephony/plivo/credentials", json={"authId": "MA1", "authToken": "t"})
        client.post("/api/telephony/telnyx/credentials", json={"apiKey": "KEY"})

        response = client.get("/api/telephony/plivo/integrations")

        assert [row["provider"] for row in response.json()["integrations"]] == ["plivo"]


class TestNumbers:
    def test_list_numbers_requires_integration_id(self, client: TestClient) -> None:
        response = client.get("/api/telephony/telnyx/numbers")

        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "integration_id query param is required"

    def test_list_numbers(self, client: TestClient) -> None:
        response = client.get("/api/telephony/telnyx/numbers", params={"integration_id": "i1"})

        assert response.json()["numbers"][0]["phone_number"] == "+14155550100"

    def test_connect_number(self, client: TestClient, registry) -> None:
        response = client.post(
            "/api/telephony/telnyx/numbers/n1/connect",
            json={"integrationId": "i1", "e164": "14155550100", "agentId": "agent-7"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["e164"] == "+14155550100"
        assert body["agent_id"] == "agent-7"
        assert registry.telnyx.calls[-1][1]["e164"] == "+14155550100"

    def test_connect_rejects_invalid_number(self, client: TestClient) -> None:
        response = client.post(
            "/api/telephony/telnyx/numbers/n1/connect",
            json={"integrationId": "i1", "e164": "+0123"},
        )

        assert response.status_code == 422

    def test_disconnect_routes_to_provider(self, client: TestClient, registry) -> None:
        response = client.delete("/api/telephony/plivo/bindings/b1")

        assert response.json() == {"ok": True}
        assert registry.plivo.calls == [("disconnect", "b1")]

    def test_telnyx_transport_update(self, client: TestClient, registry) -> None:
        response = client.post(
            "/api/telephony/telnyx/connections/c1/transport",
            json={"integrationId": "i1", "transportProtocol": "TLS"},
        )

        assert response.json()["transport_protocol"] == "TLS"
        assert registry.telnyx.calls == [("transport", ("i1", "c1", "TLS"))]


class TestSharedRoutes:
    def test_list_bindings(self, client: TestClient) -> None:
        client.post(
            "/api/telephony/twilio/numbers/PN1/connect",
            json={"integrationId": "i1", "e164": "+14155550100"},
        )

        response = client.get("/api/telephony/bindings")

        assert [b["provider"] for b in response.json()["bindings"]] == ["twilio"]

    def test_delete_any_integration(self, client: TestClient, registry) -> None:
        created = client.post("/api/telephony/telnyx/credentials", json={"apiKey": "KEY"}).json()

        response = client.delete(f"/api/telephony/integrations/{created['id']}")

        assert response.json() == {"deleted_bindings": 0}
        assert registry.telnyx.calls[-1] == ("delete", created["id"])

    def test_delete_unknown_integration_is_404(self, client: TestClient) -> None:
        response = client.delete("/api/telephony/integrations/nope")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"


class TestUnavailable:
    def test_onboarding_unconfigured_is_503(
        self, integration_store, binding_store, call_store
    ) -> None:
        module = TelephonyModule(
            config=TelephonyConfig(),
            integration_store=integration_store,
            binding_store=binding_store,
            call_store=call_store,
            onboarding_unavailable_reason="LIVEKIT_SIP_HOST is not configured",
        )
        client = TestClient(create_app(telephony=module))

        response = client.get("/api/telephony/bindings")

        assert response.status_code == 503
        assert response.json()["detail"]["message"] == "LIVEKIT_SIP_HOST is not configured"

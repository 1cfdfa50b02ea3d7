"""
Pytest configuration and shared fixtures.
"""

from __future__ import annotations

import os
from typing import Any

import pytest

from trunkline.telephony.e164 import normalize_e164
from trunkline.telephony.entities import InboundSetup, InboundTeardown
from trunkline.telephony.onboarding.common import OnboardingDeps
from trunkline.telephony.stores.memory import (
    InMemoryBindingStore,
    InMemoryCallStore,
    InMemoryIntegrationStore,
)

SIP_HOST = "abc123.sip.livekit.cloud"


class FakeProvisioning:
    """Records platform-side steps into a shared ``steps`` log."""

    def __init__(self, steps: list[tuple[str, Any]]) -> None:
        self.steps = steps
        self.dids: set[str] = set()
        self.fail_ensure: Exception | None = None
        self.fail_remove: Exception | None = None

    async def ensure_inbound_setup_for_did(self, e164: str) -> InboundSetup:
        did = normalize_e164(e164)
        self.steps.append(("platform.ensure", did))
        if self.fail_ensure is not None:
            raise self.fail_ensure
        self.dids.add(did)
        return InboundSetup(normalized_did=did, inbound_trunk_id="ST_1", dispatch_rule_id="SDR_1")

    async def remove_inbound_setup_for_did(self, e164: str) -> InboundTeardown:
        did = normalize_e164(e164)
        self.steps.append(("platform.remove", did))
        if self.fail_remove is not None:
            raise self.fail_remove
        self.dids.discard(did)
        return InboundTeardown(
            normalized_did=did,
            inbound_trunk_id="ST_1",
            trunk_deleted=not self.dids,
        )


@pytest.fixture
def encryption_key() -> bytes:
    return os.urandom(32)


@pytest.fixture
def integration_store() -> InMemoryIntegrationStore:
    return InMemoryIntegrationStore()


@pytest.fixture
def binding_store() -> InMemoryBindingStore:
    return InMemoryBindingStore()


@pytest.fixture
def call_store() -> InMemoryCallStore:
    return InMemoryCallStore()


@pytest.fixture
def steps() -> list[tuple[str, Any]]:
    """Ordered log shared by the fake platform and the fake provider clients."""
    return []


@pytest.fixture
def provisioning(steps: list[tuple[str, Any]]) -> FakeProvisioning:
    return FakeProvisioning(steps)


@pytest.fixture
def onboarding_deps(
    integration_store: InMemoryIntegrationStore,
    binding_store: InMemoryBindingStore,
    encryption_key: bytes,
    provisioning: FakeProvisioning,
) -> OnboardingDeps:
    return OnboardingDeps(
        integration_store=integration_store,
        binding_store=binding_store,
        encryption_key=encryption_key,
        livekit_sip_host=SIP_HOST,
        provisioning=provisioning,
        teardown_retry_attempts=3,
        teardown_retry_delay_seconds=0,
    )

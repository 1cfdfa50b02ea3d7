"""
Composition root for the telephony subsystem.

Built once per process inside the application lifespan (the LiveKit client
needs a running event loop) and stored on ``app.state.telephony``. Routers
reach it through :func:`get_telephony_module`; tests assemble a module from
in-memory stores and fakes instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import Request
from livekit import api

from trunkline.shared.database import DatabaseManager
from trunkline.shared.exceptions import ServiceUnavailableError
from trunkline.shared.logging import get_logger
from trunkline.shared.secret_box import KeyLengthInvalid
from trunkline.telephony.config import LiveKitConfig, TelephonyConfig
from trunkline.telephony.onboarding.common import OnboardingDeps
from trunkline.telephony.onboarding.plivo import PlivoOnboardingService
from trunkline.telephony.onboarding.registry import OnboardingRegistry
from trunkline.telephony.onboarding.telnyx import TelnyxOnboardingService
from trunkline.telephony.onboarding.twilio import TwilioOnboardingService
from trunkline.telephony.ports import (
    AgentConfigResolverPort,
    AgentDispatchPort,
    BindingStorePort,
    CallStorePort,
    InboundProvisioningPort,
    IntegrationStorePort,
    WebhookVerifierPort,
)
from trunkline.telephony.provisioning.livekit import (
    LiveKitApiSipClient,
    LiveKitTelephonyProvisioningService,
)
from trunkline.telephony.routing.bindings import BindingCallRouting
from trunkline.telephony.stores.memory import InMemoryCallStore
from trunkline.telephony.stores.sql import SqlAlchemyBindingStore, SqlAlchemyIntegrationStore
from trunkline.telephony.webhooks.dispatch import LiveKitAgentDispatcher
from trunkline.telephony.webhooks.session import TelephonySessionService
from trunkline.telephony.webhooks.tasks import WebhookTaskRunner
from trunkline.telephony.webhooks.verifier import LiveKitWebhookVerifier

logger = get_logger(__name__)


@dataclass
class TelephonyModule:
    config: TelephonyConfig
    integration_store: IntegrationStorePort
    binding_store: BindingStorePort
    call_store: CallStorePort
    session: TelephonySessionService | None = None
    verifier: WebhookVerifierPort | None = None
    onboarding: OnboardingRegistry | None = None
    tasks: WebhookTaskRunner = field(default_factory=WebhookTaskRunner)
    lkapi: api.LiveKitAPI | None = None
    onboarding_unavailable_reason: str | None = None

    @property
    def webhook_ready(self) -> bool:
        return self.config.enabled and self.session is not None and self.verifier is not None

    def require_onboarding(self) -> OnboardingRegistry:
        if self.onboarding is None:
            raise ServiceUnavailableError(
                self.onboarding_unavailable_reason or "Telephony onboarding is not configured"
            )
        return self.onboarding

    async def aclose(self) -> None:
        await self.tasks.drain()
        if self.lkapi is not None:
            await self.lkapi.aclose()
            self.lkapi = None


def build_onboarding_registry(
    *,
    config: TelephonyConfig,
    integration_store: IntegrationStorePort,
    binding_store: BindingStorePort,
    provisioning: InboundProvisioningPort,
    encryption_key: bytes,
    livekit_sip_host: str,
) -> OnboardingRegistry:
    deps = OnboardingDeps(
        integration_store=integration_store,
        binding_store=binding_store,
        encryption_key=encryption_key,
        livekit_sip_host=livekit_sip_host,
        provisioning=provisioning,
        request_timeout_seconds=config.request_timeout_seconds,
        max_pages=config.max_pages,
        teardown_retry_attempts=config.teardown_retry_attempts,
        teardown_retry_delay_seconds=config.teardown_retry_delay_seconds,
    )
    return OnboardingRegistry(
        twilio=TwilioOnboardingService(deps),
        telnyx=TelnyxOnboardingService(deps),
        plivo=PlivoOnboardingService(deps),
        integration_store=integration_store,
        binding_store=binding_store,
    )


def build_session_service(
    *,
    config: TelephonyConfig,
    call_store: CallStorePort,
    binding_store: BindingStorePort,
    dispatcher: AgentDispatchPort,
    agent_resolver: AgentConfigResolverPort | None = None,
) -> TelephonySessionService:
    return TelephonySessionService(
        call_store,
        BindingCallRouting(binding_store, agent_resolver),
        dispatcher,
        sip_identity_prefix=config.sip_identity_prefix,
        dispatch_on_any_participant_join=config.dispatch_on_any_participant_join,
    )


def build_telephony_module(
    config: TelephonyConfig,
    livekit: LiveKitConfig,
    db: DatabaseManager,
    *,
    agent_resolver: AgentConfigResolverPort | None = None,
) -> TelephonyModule:
    """Wire stores, LiveKit clients, orchestrators and the webhook session.

    Missing LiveKit credentials or vault key leave the affected half of the
    module unset; the routers answer 503 for it instead of failing startup.
    """
    module = TelephonyModule(
        config=config,
        integration_store=SqlAlchemyIntegrationStore(db),
        binding_store=SqlAlchemyBindingStore(db),
        call_store=InMemoryCallStore(
            ttl_seconds=config.call_ttl_seconds,
            seen_capacity=config.seen_event_capacity,
        ),
    )

    if not (livekit.api_key and livekit.api_secret):
        logger.warning(
            "LiveKit credentials missing; webhook and onboarding disabled",
            extra={"event": "telephony.livekit_unconfigured"},
        )
        module.onboarding_unavailable_reason = "LiveKit API credentials are not configured"
        return module

    module.lkapi = api.LiveKitAPI(livekit.url, livekit.api_key, livekit.api_secret)
    module.verifier = LiveKitWebhookVerifier(livekit.webhook_key, livekit.webhook_secret)
    module.session = build_session_service(
        config=config,
        call_store=module.call_store,
        binding_store=module.binding_store,
        dispatcher=LiveKitAgentDispatcher(module.lkapi, config.agent_name),
        agent_resolver=agent_resolver,
    )

    if not livekit.sip_host:
        module.onboarding_unavailable_reason = "LIVEKIT_SIP_HOST is not configured"
        return module
    try:
        encryption_key = config.encryption_key()
    except KeyLengthInvalid as e:
        logger.warning(
            "Telephony secrets key unusable; onboarding disabled",
            extra={"event": "telephony.secrets_key_invalid", "error": str(e)},
        )
        module.onboarding_unavailable_reason = "TELEPHONY_SECRETS_KEY is missing or invalid"
        return module

    module.onboarding = build_onboarding_registry(
        config=config,
        integration_store=module.integration_store,
        binding_store=module.binding_store,
        provisioning=LiveKitTelephonyProvisioningService(
            LiveKitApiSipClient(module.lkapi),
            inbound_trunk_name=config.livekit_inbound_trunk_name,
            dispatch_rule_name=config.livekit_dispatch_rule_name,
            room_prefix=config.livekit_dispatch_room_prefix,
        ),
        encryption_key=encryption_key,
        livekit_sip_host=livekit.sip_host,
    )
    logger.info(
        "Telephony module ready",
        extra={"event": "telephony.module_ready", "sip_host": livekit.sip_host},
    )
    return module


def get_telephony_module(request: Request) -> TelephonyModule:
    module = getattr(request.app.state, "telephony", None)
    if module is None:
        raise ServiceUnavailableError("Telephony module is not initialized")
    return module

"""
Routing by the dialed number's binding.

Resolution order: pinned ``agent_config`` snapshot, then the live agent by
``agent_id``, then the default assistant. Routing degrades instead of raising.
"""

from __future__ import annotations

import copy

from trunkline.shared.logging import get_logger
from trunkline.telephony.e164 import normalize_e164
from trunkline.telephony.entities import CallRoutingContext, CallRoutingResult
from trunkline.telephony.ports import AgentConfigResolverPort, BindingStorePort
from trunkline.telephony.routing.default import DefaultCallRouting

logger = get_logger(__name__)


class BindingCallRouting:
    def __init__(
        self,
        binding_store: BindingStorePort,
        agent_resolver: AgentConfigResolverPort | None = None,
    ) -> None:
        self._bindings = binding_store
        self._resolver = agent_resolver
        self._fallback = DefaultCallRouting()

    async def resolve_routing(self, ctx: CallRoutingContext) -> CallRoutingResult:
        if not ctx.to_number or not ctx.to_number.strip():
            return await self._fallback.resolve_routing(ctx)

        did = normalize_e164(ctx.to_number)
        try:
            binding = await self._bindings.get_binding_by_e164(did)
        except Exception:
            logger.exception(
                "Binding lookup failed; using default agent",
                extra={"event": "telephony.routing.binding_lookup_failed", "to": did},
            )
            return await self._fallback.resolve_routing(ctx)

        if binding is None or not binding.enabled:
            return await self._fallback.resolve_routing(ctx)

        if binding.agent_config:
            config = copy.deepcopy(binding.agent_config)
            if binding.agent_id:
                config["agent_id"] = binding.agent_id
            logger.info(
                "Routing to pinned agent config",
                extra={
                    "event": "telephony.routing.pinned",
                    "binding_id": binding.id,
                    "room_name": ctx.room_name,
                },
            )
            return CallRoutingResult(agent_config=config)

        if binding.agent_id and self._resolver is not None:
            try:
                config = await self._resolver.resolve_by_agent_id(binding.agent_id)
            except Exception as e:
                logger.warning(
                    "Agent resolution failed; using default agent",
                    extra={
                        "event": "telephony.routing.agent_resolution_failed",
                        "binding_id": binding.id,
                        "agent_id": binding.agent_id,
                        "error": str(e),
                    },
                )
                return await self._fallback.resolve_routing(ctx)
            return CallRoutingResult(agent_config={**config, "agent_id": binding.agent_id})

        if binding.agent_id:
            logger.warning(
                "No agent resolver configured; using default agent",
                extra={
                    "event": "telephony.routing.resolver_missing",
                    "binding_id": binding.id,
                    "agent_id": binding.agent_id,
                },
            )
        return await self._fallback.resolve_routing(ctx)

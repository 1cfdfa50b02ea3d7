"""Fallback routing: a generic phone assistant."""

from __future__ import annotations

import copy

from trunkline.telephony.entities import AgentConfig, CallRoutingContext, CallRoutingResult

DEFAULT_AGENT_CONFIG: AgentConfig = {
    "noise_cancellation": {"enabled": True, "type": "telephony"},
    "prompt": (
        "You are a helpful voice AI assistant on a phone call. Be concise, speak in short "
        "sentences, and confirm important details. If you didn't hear something clearly, "
        "ask the caller to repeat."
    ),
    "conversation_start": {"who": "ai", "greeting": "Hi, how can I help you today?"},
}


def default_agent_config() -> AgentConfig:
    # Callers annotate the result (session_id), so hand out a copy.
    return copy.deepcopy(DEFAULT_AGENT_CONFIG)


class DefaultCallRouting:
    async def resolve_routing(self, ctx: CallRoutingContext) -> CallRoutingResult:
        return CallRoutingResult(agent_config=default_agent_config())

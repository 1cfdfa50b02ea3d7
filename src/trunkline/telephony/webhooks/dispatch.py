"""Explicit agent dispatch into a call room."""

from __future__ import annotations

import json

from livekit import api

from trunkline.shared.logging import get_logger
from trunkline.telephony.entities import AgentConfig

logger = get_logger(__name__)


class LiveKitAgentDispatcher:
    """Dispatches the named agent worker with the routed config as job metadata."""

    def __init__(self, lkapi: api.LiveKitAPI, agent_name: str) -> None:
        self._lkapi = lkapi
        self._agent_name = agent_name

    async def dispatch_agent(self, room_name: str, agent_config: AgentConfig) -> None:
        dispatch = await self._lkapi.agent_dispatch.create_dispatch(
            api.CreateAgentDispatchRequest(
                agent_name=self._agent_name,
                room=room_name,
                metadata=json.dumps(agent_config),
            )
        )
        logger.info(
            "Agent dispatched",
            extra={
                "event": "telephony.agent_dispatched",
                "room_name": room_name,
                "agent_name": self._agent_name,
                "dispatch_id": dispatch.id,
                "session_id": agent_config.get("session_id"),
            },
        )

"""
Pydantic schemas for the telephony management API.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from trunkline.telephony.e164 import is_valid_e164, normalize_e164


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class TwilioCredentialsIn(_Request):
    account_sid: str = Field(..., alias="accountSid", min_length=1, max_length=64)
    api_key_sid: str = Field(..., alias="apiKeySid", min_length=1, max_length=64)
    api_key_secret: str = Field(..., alias="apiKeySecret", min_length=1, max_length=256)


class TwilioIntegrationCreate(TwilioCredentialsIn):
    name: str | None = Field(None, max_length=255)


class TelnyxCredentialsIn(_Request):
    api_key: str = Field(..., alias="apiKey", min_length=1, max_length=512)


class TelnyxIntegrationCreate(TelnyxCredentialsIn):
    name: str | None = Field(None, max_length=255)


class PlivoCredentialsIn(_Request):
    auth_id: str = Field(..., alias="authId", min_length=1, max_length=64)
    auth_token: str = Field(..., alias="authToken", min_length=1, max_length=256)


class PlivoIntegrationCreate(PlivoCredentialsIn):
    name: str | None = Field(None, max_length=255)


class ConnectNumberRequest(_Request):
    """Connect a provider number to an agent (by id, pinned config, or both)."""

    integration_id: str = Field(..., alias="integrationId", min_length=1)
    e164: str = Field(..., description="Dialable number in E.164 form")
    agent_id: str | None = Field(None, alias="agentId")
    agent_config: dict[str, Any] | None = Field(None, alias="agentConfig")

    @field_validator("e164")
    @classmethod
    def validate_e164(cls, value: str) -> str:
        normalized = normalize_e164(value)
        if not is_valid_e164(normalized):
            raise ValueError("e164 must be a valid E.164 number")
        return normalized


class TransportProtocolUpdate(_Request):
    integration_id: str = Field(..., alias="integrationId", min_length=1)
    transport_protocol: Literal["UDP", "TCP", "TLS"] = Field(..., alias="transportProtocol")

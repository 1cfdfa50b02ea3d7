"""
Telephony and conferencing-platform configuration.

Both groups are read from the environment (``TELEPHONY_*`` and ``LIVEKIT_*``)
with ``.env`` support.
"""

from functools import lru_cache
import os

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from trunkline.shared.secret_box import KeyLengthInvalid, decode_key


class TelephonyConfig(BaseSettings):
    """Telephony onboarding and webhook configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="TELEPHONY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    enabled: bool = Field(default=True)

    # base64 of the 32-byte AES key protecting stored provider credentials
    secrets_key: str = Field(default="")

    # Webhook participant classification
    sip_identity_prefix: str = Field(default="sip_")
    dispatch_on_any_participant_join: bool = Field(default=False)

    # Provider REST clients
    request_timeout_seconds: float = Field(default=15.0, gt=0, le=120)
    max_pages: int = Field(default=20, ge=1, le=1000)

    # Teardown steps retry transient provider failures before failing closed
    teardown_retry_attempts: int = Field(default=3, ge=1, le=10)
    teardown_retry_delay_seconds: float = Field(default=0.5, ge=0)

    # Conferencing-side inbound pipeline
    livekit_inbound_trunk_name: str = Field(default="byoc-inbound")
    livekit_dispatch_rule_name: str = Field(default="byoc-dispatch")
    livekit_dispatch_room_prefix: str = Field(default="call-")

    # Agent worker that receives explicit dispatches
    agent_name: str = Field(default="voice-agent")

    # In-memory call store
    call_ttl_seconds: int = Field(default=6 * 3600, ge=60)
    seen_event_capacity: int = Field(default=50_000, ge=100)

    @property
    def has_secrets_key(self) -> bool:
        return bool(self.secrets_key.strip())

    def encryption_key(self) -> bytes:
        """Decode the vault key.

        Raises:
            KeyLengthInvalid: If the key is missing or not 32 bytes once decoded.
        """
        if not self.has_secrets_key:
            raise KeyLengthInvalid("TELEPHONY_SECRETS_KEY is not configured")
        return decode_key(self.secrets_key)


class LiveKitConfig(BaseSettings):
    """Conferencing platform (LiveKit) API access."""

    model_config = SettingsConfigDict(
        env_prefix="LIVEKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    url: str = Field(default="http://localhost:7880")
    api_key: str = Field(default="")
    api_secret: str = Field(default="")

    # Webhook signing pair; empty means "same as the API pair"
    webhook_api_key: str = Field(default="")
    webhook_api_secret: str = Field(default="")

    # Host providers send inbound SIP to, e.g. "xxxx.sip.livekit.cloud"
    sip_host: str = Field(default="")

    @property
    def webhook_key(self) -> str:
        return self.webhook_api_key or self.api_key

    @property
    def webhook_secret(self) -> str:
        return self.webhook_api_secret or self.api_secret


@lru_cache(maxsize=1)
def _telephony_config_cached() -> TelephonyConfig:
    return TelephonyConfig()


@lru_cache(maxsize=1)
def _livekit_config_cached() -> LiveKitConfig:
    return LiveKitConfig()


def get_telephony_config() -> TelephonyConfig:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return TelephonyConfig()
    return _telephony_config_cached()


def get_livekit_config() -> LiveKitConfig:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return LiveKitConfig()
    return _livekit_config_cached()

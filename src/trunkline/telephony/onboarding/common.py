"""
Helpers shared by the per-provider onboarding orchestrators.

Each orchestrator owns its provider's resource shapes; this module holds the
pieces that are identical across them: integration/binding lookup guards,
credential sealing, the requested-number check and transient-failure retries
for teardown steps.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from trunkline.shared.exceptions import BadRequestError, ForbiddenError, NotFoundError
from trunkline.shared.logging import get_logger
from trunkline.shared.secret_box import SecretBoxError, decrypt_string, encrypt_string
from trunkline.telephony.e164 import normalize_e164
from trunkline.telephony.entities import (
    IntegrationStatus,
    ProviderType,
    StoredBinding,
    StoredIntegration,
)
from trunkline.telephony.errors import (
    CredentialsCorrupted,
    ProviderClientError,
    ProviderErrorCode,
    RequestedNumberMismatch,
    map_provider_error,
)
from trunkline.telephony.ports import (
    BindingStorePort,
    InboundProvisioningPort,
    IntegrationStorePort,
)

logger = get_logger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

TRUNK_NAME_PREFIX = "livekit-inbound-"
ORIGINATION_TARGET_NAME = "LiveKit SIP Host"


@dataclass
class OnboardingDeps:
    """Collaborators every orchestrator is built from."""

    integration_store: IntegrationStorePort
    binding_store: BindingStorePort
    encryption_key: bytes
    livekit_sip_host: str
    provisioning: InboundProvisioningPort
    request_timeout_seconds: float = 15.0
    max_pages: int = 20
    teardown_retry_attempts: int = 3
    teardown_retry_delay_seconds: float = 0.5


def trunk_name_for(integration_id: str) -> str:
    """Deterministic provider-side resource name for an integration."""
    return f"{TRUNK_NAME_PREFIX}{integration_id}"


async def get_integration_or_raise(
    store: IntegrationStorePort, integration_id: str, provider: ProviderType
) -> StoredIntegration:
    integration = await store.get_by_id(integration_id)
    if integration is None:
        raise NotFoundError(f"Integration {integration_id} not found")
    if integration.status is not IntegrationStatus.ACTIVE:
        raise ForbiddenError(f"Integration {integration_id} is disabled")
    if integration.provider is not provider:
        raise BadRequestError(
            f"Integration {integration_id} is not a {provider.display_name} integration"
        )
    return integration


async def get_binding_or_raise(
    store: BindingStorePort, binding_id: str, provider: ProviderType
) -> StoredBinding:
    binding = await store.get_binding_by_id(binding_id)
    if binding is None:
        raise NotFoundError(f"Binding {binding_id} not found")
    if binding.provider is not provider:
        raise BadRequestError(f"Binding {binding_id} is not a {provider.display_name} binding")
    return binding


def seal_credentials(plaintext: str, key: bytes) -> str:
    return encrypt_string(plaintext, key)


def open_credentials(integration: StoredIntegration, key: bytes) -> str:
    """Decrypt stored credentials.

    Raises:
        CredentialsCorrupted: The payload no longer decrypts, usually because the
            vault key was rotated. The integration has to be re-created.
    """
    label = integration.provider.display_name
    try:
        return decrypt_string(integration.encrypted_credential, key)
    except SecretBoxError as e:
        logger.warning(
            f"Failed to decrypt {label} credentials",
            extra={
                "event": f"{integration.provider.value}.credentials_decrypt_failed",
                "integration_id": integration.id,
                "credential_fingerprint": integration.credential_fingerprint,
                "error": type(e).__name__,
            },
        )
        raise CredentialsCorrupted(
            f"Unable to decrypt {label} credentials. The telephony secrets key may have "
            f"changed; please re-create the {label} integration."
        ) from e


def parse_stored_credentials(model: type[M], plaintext: str, provider: ProviderType) -> M:
    label = provider.display_name
    try:
        return model.model_validate_json(plaintext)
    except PydanticValidationError as e:
        raise CredentialsCorrupted(f"Stored {label} credentials are invalid") from e


def assert_number_matches(requested_e164: str, provider_e164: str) -> str:
    """Return the normalized DID, or raise when the caller named a different number."""
    requested = normalize_e164(requested_e164)
    actual = normalize_e164(provider_e164)
    if requested != actual:
        raise RequestedNumberMismatch(
            f"Requested e164 {requested} does not match provider number {actual}",
            details={"requested": requested, "provider": actual},
        )
    return actual


def resource_id(resources: dict[str, Any], key: str) -> str | None:
    value = resources.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


async def call_provider(provider: ProviderType, operation: Awaitable[T]) -> T:
    """Await an adapter call, translating its failure into an operator condition."""
    try:
        return await operation
    except ProviderClientError as e:
        raise map_provider_error(provider, e) from e


def is_transient(err: ProviderClientError) -> bool:
    if err.code in (ProviderErrorCode.PROVIDER_UNREACHABLE, ProviderErrorCode.RATE_LIMITED):
        return True
    return err.code is ProviderErrorCode.PROVIDER_ERROR and err.status >= 500


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    provider: ProviderType,
    step: str,
    attempts: int,
    delay_seconds: float,
) -> T:
    """Run ``operation``, retrying transient adapter failures.

    Non-transient failures and the last transient one propagate unchanged.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except ProviderClientError as e:
            if attempt >= attempts or not is_transient(e):
                raise
            logger.warning(
                "Transient provider failure; retrying",
                extra={
                    "event": f"{provider.value}.teardown_retry",
                    "step": step,
                    "attempt": attempt,
                    "code": e.code.value,
                    "sleep_seconds": delay_seconds,
                },
            )
            attempt += 1
            if delay_seconds:
                await asyncio.sleep(delay_seconds)


async def ignore_not_found(operation: Awaitable[None]) -> bool:
    """Await a delete; a 404 counts as already gone. Returns False in that case."""
    try:
        await operation
    except ProviderClientError as e:
        if e.is_not_found:
            return False
        raise
    return True

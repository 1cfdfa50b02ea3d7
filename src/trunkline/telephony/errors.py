"""
Telephony error taxonomy.

Provider adapters raise ``ProviderClientError`` with a closed set of codes;
orchestrators translate those into operator-facing ``AppError`` subclasses via
``map_provider_error``.
"""

from __future__ import annotations

from enum import Enum

from trunkline.shared.exceptions import (
    AppError,
    ConflictError,
    RateLimitedError,
    UnauthorizedError,
    UpstreamError,
    ValidationError,
)
from trunkline.telephony.entities import ProviderType


class ProviderErrorCode(str, Enum):
    AUTH_INVALID = "AUTH_INVALID"
    RATE_LIMITED = "RATE_LIMITED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PROVIDER_UNREACHABLE = "PROVIDER_UNREACHABLE"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    RESOURCE_ENUMERATION_EXCEEDED = "RESOURCE_ENUMERATION_EXCEEDED"


class ProviderClientError(Exception):
    """Failure talking to a provider REST API.

    ``status`` is the HTTP status, or 0 when no response was received.
    """

    def __init__(self, status: int, code: ProviderErrorCode, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class ResourceEnumerationExceeded(ProviderClientError):
    """A list operation hit the page cap; the partial result is never returned."""

    def __init__(self, resource: str, max_pages: int, seen: int) -> None:
        super().__init__(
            0,
            ProviderErrorCode.RESOURCE_ENUMERATION_EXCEEDED,
            f"{resource} listing exceeds {max_pages} pages ({seen}+ items). Contact support.",
        )
        self.resource = resource
        self.max_pages = max_pages


def status_to_code(status: int) -> ProviderErrorCode:
    if status in (401, 403):
        return ProviderErrorCode.AUTH_INVALID
    if status == 429:
        return ProviderErrorCode.RATE_LIMITED
    if 400 <= status < 500:
        return ProviderErrorCode.VALIDATION_ERROR
    return ProviderErrorCode.PROVIDER_ERROR


class CredentialsCorrupted(ConflictError):
    """Stored credentials can no longer be decrypted or parsed."""

    default_code = "CREDENTIALS_CORRUPTED"


class RequestedNumberMismatch(ValidationError):
    default_code = "REQUESTED_NUMBER_MISMATCH"


class ProvisioningFailed(UpstreamError):
    """The conferencing platform rejected an inbound-pipeline change."""

    default_code = "PROVISIONING_FAILED"


def map_provider_error(provider: ProviderType, err: Exception) -> AppError:
    """Translate an adapter failure into an operator-facing condition."""
    if isinstance(err, AppError):
        return err

    label = provider.display_name
    if not isinstance(err, ProviderClientError):
        return AppError(f"Unexpected error communicating with {label}")

    code = err.code
    if code is ProviderErrorCode.AUTH_INVALID:
        return UnauthorizedError(
            f"Invalid {label} credentials",
            code="INVALID_CREDENTIALS",
        )
    if code is ProviderErrorCode.RATE_LIMITED:
        return RateLimitedError(f"{label} rate limit exceeded; retry with backoff")
    if code is ProviderErrorCode.VALIDATION_ERROR:
        return ValidationError(err.message, details={"provider_status": err.status})
    if code is ProviderErrorCode.RESOURCE_ENUMERATION_EXCEEDED:
        return UpstreamError(err.message, code="RESOURCE_ENUMERATION_EXCEEDED")
    if code is ProviderErrorCode.PROVIDER_UNREACHABLE:
        return UpstreamError(f"Unable to reach {label} API; try again", code="PROVIDER_UNREACHABLE")
    return UpstreamError(f"{label} error: {err.message}", code="PROVIDER_ERROR")

"""
Shared HTTP transport for provider REST adapters.

Wraps ``httpx.AsyncClient`` with a fixed timeout and folds transport and
status failures into ``ProviderClientError``.
"""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx

from trunkline.shared.logging import get_logger
from trunkline.telephony.errors import ProviderClientError, ProviderErrorCode, status_to_code

logger = get_logger(__name__)

ErrorExtractor = Callable[[Any], "str | None"]

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_PAGES = 20


def _default_error_extractor(body: Any) -> str | None:
    if isinstance(body, dict):
        message = body.get("message")
        if isinstance(message, str) and message.strip():
            return message
    return None


class ProviderHttpClient:
    """Authenticated JSON/form client for one provider account."""

    def __init__(
        self,
        provider: str,
        base_url: str,
        *,
        auth: httpx.Auth | tuple[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        error_extractor: ErrorExtractor = _default_error_extractor,
    ) -> None:
        self._provider = provider
        self._error_extractor = error_extractor
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=auth,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        form: dict[str, str] | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body (``None`` when empty)."""
        kwargs: dict[str, Any] = {}
        if params:
            kwargs["params"] = params
        if form is not None:
            kwargs["data"] = form
        elif json_body is not None:
            kwargs["json"] = json_body

        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(
                "Provider request timed out",
                extra={"provider": self._provider, "method": method, "path": _path_only(url)},
            )
            raise ProviderClientError(
                0,
                ProviderErrorCode.PROVIDER_UNREACHABLE,
                f"{self._provider} API request timed out",
            ) from e
        except httpx.RequestError as e:
            logger.warning(
                "Provider request failed",
                extra={
                    "provider": self._provider,
                    "method": method,
                    "path": _path_only(url),
                    "error": type(e).__name__,
                },
            )
            raise ProviderClientError(
                0,
                ProviderErrorCode.PROVIDER_UNREACHABLE,
                f"Unable to reach {self._provider} API",
            ) from e

        body = _parse_json(response.text)

        if response.is_success:
            if response.text.strip() and body is None:
                raise ProviderClientError(
                    response.status_code,
                    ProviderErrorCode.PROVIDER_ERROR,
                    f"{self._provider} returned invalid JSON",
                )
            return body

        detail = self._error_extractor(body) or response.reason_phrase or f"{self._provider} error"
        logger.info(
            "Provider request rejected",
            extra={
                "provider": self._provider,
                "method": method,
                "path": _path_only(url),
                "status_code": response.status_code,
            },
        )
        raise ProviderClientError(response.status_code, status_to_code(response.status_code), detail)


def _parse_json(text: str) -> Any:
    trimmed = text.strip()
    if not trimmed:
        return None
    try:
        return json.loads(trimmed)
    except ValueError:
        return None


def _path_only(url: str) -> str:
    # Query strings can carry account identifiers; keep logs to the path.
    return url.split("?", 1)[0]


def non_empty_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None

"""
Twilio REST adapter (Accounts API + Elastic SIP Trunking API).

Authenticates with an API key pair over HTTP Basic; the account SID scopes
every Accounts API path.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from trunkline.shared.logging import get_logger
from trunkline.telephony.errors import (
    ProviderClientError,
    ProviderErrorCode,
    ResourceEnumerationExceeded,
)
from trunkline.telephony.providers.http import (
    DEFAULT_MAX_PAGES,
    DEFAULT_TIMEOUT_SECONDS,
    ProviderHttpClient,
    non_empty_str,
)

logger = get_logger(__name__)

API_BASE_URL = "https://api.twilio.com"
TRUNKING_BASE_URL = "https://trunking.twilio.com"
PAGE_SIZE = 50


@dataclass(frozen=True)
class TwilioCredentials:
    account_sid: str
    api_key_sid: str
    api_key_secret: str

    def to_dict(self) -> dict[str, str]:
        return {
            "accountSid": self.account_sid,
            "apiKeySid": self.api_key_sid,
            "apiKeySecret": self.api_key_secret,
        }


@dataclass(frozen=True)
class TwilioIncomingPhoneNumber:
    sid: str
    phone_number: str
    friendly_name: str | None = None


@dataclass(frozen=True)
class TwilioTrunk:
    sid: str
    domain_name: str
    friendly_name: str | None = None


@dataclass(frozen=True)
class TwilioOriginationUrl:
    sid: str
    sip_url: str
    enabled: bool = True


@dataclass(frozen=True)
class TwilioTrunkPhoneNumber:
    sid: str
    phone_number_sid: str


def _q(value: str) -> str:
    return quote(value, safe="")


class TwilioClient:
    """Twilio REST client for a single account."""

    def __init__(
        self,
        creds: TwilioCredentials,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_pages: int = DEFAULT_MAX_PAGES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._creds = creds
        self._max_pages = max_pages
        self._http = ProviderHttpClient(
            "Twilio",
            API_BASE_URL,
            auth=(creds.api_key_sid, creds.api_key_secret),
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "TwilioClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    @property
    def _account_path(self) -> str:
        return f"/2010-04-01/Accounts/{_q(self._creds.account_sid)}"

    async def verify_credentials(self) -> dict[str, bool]:
        """Checks both the key pair (auth) and the account SID (path scoping)."""
        await self._http.request("GET", f"{API_BASE_URL}{self._account_path}.json")
        return {"valid": True}

    async def list_incoming_phone_numbers(self) -> list[TwilioIncomingPhoneNumber]:
        items = await self._list_accounts_api(
            f"{self._account_path}/IncomingPhoneNumbers.json?PageSize={PAGE_SIZE}",
            key="incoming_phone_numbers",
            resource="Incoming phone number",
        )
        return [_parse_number(item) for item in items]

    async def get_incoming_phone_number(self, phone_number_sid: str) -> TwilioIncomingPhoneNumber:
        body = await self._http.request(
            "GET",
            f"{API_BASE_URL}{self._account_path}/IncomingPhoneNumbers/{_q(phone_number_sid)}.json",
        )
        return _parse_number(body or {})

    async def list_trunks(self) -> list[TwilioTrunk]:
        items = await self._list_trunking_api(
            f"/v1/Trunks?PageSize={PAGE_SIZE}", key="trunks", resource="Trunk"
        )
        return [
            TwilioTrunk(
                sid=str(item.get("sid")),
                domain_name=str(item.get("domain_name")),
                friendly_name=non_empty_str(item.get("friendly_name")),
            )
            for item in items
        ]

    async def create_trunk(self, friendly_name: str, domain_name: str) -> TwilioTrunk:
        body = await self._http.request(
            "POST",
            f"{TRUNKING_BASE_URL}/v1/Trunks",
            form={"FriendlyName": friendly_name, "DomainName": domain_name},
        )
        sid = non_empty_str((body or {}).get("sid"))
        if not sid:
            raise ProviderClientError(0, ProviderErrorCode.PROVIDER_ERROR, "Twilio trunk create returned no SID")
        return TwilioTrunk(sid=sid, domain_name=domain_name, friendly_name=friendly_name)

    async def delete_trunk(self, trunk_sid: str) -> None:
        await self._http.request("DELETE", f"{TRUNKING_BASE_URL}/v1/Trunks/{_q(trunk_sid)}")

    async def list_origination_urls(self, trunk_sid: str) -> list[TwilioOriginationUrl]:
        items = await self._list_trunking_api(
            f"/v1/Trunks/{_q(trunk_sid)}/OriginationUrls?PageSize={PAGE_SIZE}",
            key="origination_urls",
            resource="Origination URL",
        )
        return [
            TwilioOriginationUrl(
                sid=str(item.get("sid")),
                sip_url=str(item.get("sip_url")),
                enabled=bool(item.get("enabled")),
            )
            for item in items
        ]

    async def create_origination_url(
        self,
        trunk_sid: str,
        sip_url: str,
        friendly_name: str,
        *,
        enabled: bool = True,
        weight: int = 1,
        priority: int = 1,
    ) -> TwilioOriginationUrl:
        body = await self._http.request(
            "POST",
            f"{TRUNKING_BASE_URL}/v1/Trunks/{_q(trunk_sid)}/OriginationUrls",
            form={
                "FriendlyName": friendly_name,
                "SipUrl": sip_url,
                "Enabled": "true" if enabled else "false",
                "Weight": str(weight),
                "Priority": str(priority),
            },
        )
        sid = non_empty_str((body or {}).get("sid"))
        if not sid:
            raise ProviderClientError(
                0, ProviderErrorCode.PROVIDER_ERROR, "Twilio origination URL create returned no SID"
            )
        return TwilioOriginationUrl(sid=sid, sip_url=sip_url, enabled=enabled)

    async def delete_origination_url(self, trunk_sid: str, origination_url_sid: str) -> None:
        await self._http.request(
            "DELETE",
            f"{TRUNKING_BASE_URL}/v1/Trunks/{_q(trunk_sid)}/OriginationUrls/{_q(origination_url_sid)}",
        )

    async def list_trunk_phone_numbers(self, trunk_sid: str) -> list[TwilioTrunkPhoneNumber]:
        items = await self._list_trunking_api(
            f"/v1/Trunks/{_q(trunk_sid)}/PhoneNumbers?PageSize={PAGE_SIZE}",
            key="phone_numbers",
            resource="Trunk phone number",
        )
        return [
            TwilioTrunkPhoneNumber(
                sid=str(item.get("sid")),
                phone_number_sid=str(item.get("phone_number_sid") or item.get("sid")),
            )
            for item in items
        ]

    async def attach_phone_number_to_trunk(self, trunk_sid: str, phone_number_sid: str) -> bool:
        """Attach unless already attached. Returns True when a new attachment was made."""
        existing = await self.list_trunk_phone_numbers(trunk_sid)
        if any(p.phone_number_sid == phone_number_sid for p in existing):
            return False
        await self._http.request(
            "POST",
            f"{TRUNKING_BASE_URL}/v1/Trunks/{_q(trunk_sid)}/PhoneNumbers",
            form={"PhoneNumberSid": phone_number_sid},
        )
        return True

    async def detach_phone_number_from_trunk(self, trunk_sid: str, phone_number_sid: str) -> bool:
        """Detach if attached. Returns True when an attachment was removed."""
        existing = await self.list_trunk_phone_numbers(trunk_sid)
        if not any(p.phone_number_sid == phone_number_sid for p in existing):
            return False
        try:
            await self._http.request(
                "DELETE",
                f"{TRUNKING_BASE_URL}/v1/Trunks/{_q(trunk_sid)}/PhoneNumbers/{_q(phone_number_sid)}",
            )
        except ProviderClientError as e:
            if not e.is_not_found:
                raise
            return False
        return True

    async def _list_accounts_api(self, first_path: str, *, key: str, resource: str) -> list[dict]:
        # Accounts API pages with a host-relative next_page_uri.
        items: list[dict] = []
        next_url: str | None = f"{API_BASE_URL}{first_path}"
        pages = 0
        while next_url and pages < self._max_pages:
            pages += 1
            body = await self._http.request("GET", next_url) or {}
            items.extend(body.get(key) or [])
            next_uri = non_empty_str(body.get("next_page_uri"))
            next_url = f"{API_BASE_URL}{next_uri}" if next_uri else None
        if next_url:
            raise ResourceEnumerationExceeded(resource, self._max_pages, len(items))
        return items

    async def _list_trunking_api(self, first_path: str, *, key: str, resource: str) -> list[dict]:
        # Trunking v1 pages with an absolute meta.next_page_url.
        items: list[dict] = []
        next_url: str | None = f"{TRUNKING_BASE_URL}{first_path}"
        pages = 0
        while next_url and pages < self._max_pages:
            pages += 1
            body = await self._http.request("GET", next_url) or {}
            items.extend(body.get(key) or [])
            meta = body.get("meta") or {}
            next_url = non_empty_str(meta.get("next_page_url"))
            if next_url is None:
                next_uri = non_empty_str(body.get("next_page_uri"))
                next_url = f"{TRUNKING_BASE_URL}{next_uri}" if next_uri else None
        if next_url:
            raise ResourceEnumerationExceeded(resource, self._max_pages, len(items))
        return items


def _parse_number(item: dict) -> TwilioIncomingPhoneNumber:
    return TwilioIncomingPhoneNumber(
        sid=str(item.get("sid")),
        phone_number=str(item.get("phone_number")),
        friendly_name=non_empty_str(item.get("friendly_name")),
    )

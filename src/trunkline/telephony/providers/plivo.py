"""
Plivo REST adapter (Account API + Zentrunk).

A Zentrunk inbound trunk forwards calls to a primary origination URI; a number
is routed by pointing its ``app_id`` at the trunk id.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from trunkline.telephony.errors import ProviderClientError, ProviderErrorCode, ResourceEnumerationExceeded
from trunkline.telephony.providers.http import (
    DEFAULT_MAX_PAGES,
    DEFAULT_TIMEOUT_SECONDS,
    ProviderHttpClient,
    non_empty_str,
)

BASE_URL = "https://api.plivo.com"
PAGE_LIMIT = 20

_SIP_SCHEME = re.compile(r"^sip:", re.IGNORECASE)
_TRAILING_PORT = re.compile(r":[0-9]+$")


@dataclass(frozen=True)
class PlivoCredentials:
    auth_id: str
    auth_token: str

    def to_dict(self) -> dict[str, str]:
        return {"authId": self.auth_id, "authToken": self.auth_token}


@dataclass(frozen=True)
class PlivoPhoneNumber:
    number: str
    alias: str | None = None
    app_id: str | None = None


@dataclass(frozen=True)
class PlivoInboundTrunk:
    trunk_id: str
    name: str
    primary_uri_id: str | None = None


@dataclass(frozen=True)
class PlivoOriginationUri:
    id: str
    uri: str
    host: str
    name: str | None = None


def normalize_sip_host(value: str) -> str:
    """Reduce a SIP URI or host to a bare lowercase hostname.

    ``sip:user@Host.Example:5060;transport=tcp`` -> ``host.example``
    """
    text = value.strip()
    if not text:
        return ""
    text = _SIP_SCHEME.sub("", text)
    text = text.split("?", 1)[0]
    text = text.split(";", 1)[0]
    text = text.rsplit("@", 1)[-1].strip()
    return _TRAILING_PORT.sub("", text).strip().lower()


def origination_uri_for_host(sip_host: str) -> str:
    """Plivo stores origination URIs without the ``sip:`` scheme."""
    return _SIP_SCHEME.sub("", sip_host.strip())


def _plivo_error_message(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, str) and error.strip():
        return error
    if isinstance(error, dict):
        return non_empty_str(error.get("error")) or non_empty_str(error.get("message"))
    return non_empty_str(body.get("message"))


def _q(value: str) -> str:
    return quote(value, safe="")


class PlivoClient:
    """Plivo REST client scoped to one account (auth id)."""

    def __init__(
        self,
        creds: PlivoCredentials,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_pages: int = DEFAULT_MAX_PAGES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._creds = creds
        self._max_pages = max_pages
        self._http = ProviderHttpClient(
            "Plivo",
            BASE_URL,
            auth=(creds.auth_id, creds.auth_token),
            timeout=timeout,
            transport=transport,
            error_extractor=_plivo_error_message,
        )

    async def __aenter__(self) -> "PlivoClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _path(self, resource_path: str) -> str:
        return f"/v1/Account/{_q(self._creds.auth_id)}{resource_path}"

    async def verify_credentials(self) -> dict[str, bool]:
        await self._http.request("GET", self._path("/Number/"), params={"limit": "1", "offset": "0"})
        return {"valid": True}

    async def list_phone_numbers(self) -> list[PlivoPhoneNumber]:
        items = await self._list("/Number/", resource="Phone number")
        return [_parse_number(item) for item in items]

    async def get_phone_number(self, phone_number: str) -> PlivoPhoneNumber:
        body = await self._http.request("GET", self._path(f"/Number/{_q(phone_number)}/")) or {}
        parsed = _parse_number(body)
        if not non_empty_str(body.get("number")):
            parsed = PlivoPhoneNumber(number=phone_number, alias=parsed.alias, app_id=parsed.app_id)
        return parsed

    async def set_number_app_id(self, phone_number: str, app_id: str | None) -> None:
        """Point a number at a trunk/application, or clear it with ``None``."""
        await self._http.request(
            "POST",
            self._path(f"/Number/{_q(phone_number)}/"),
            json_body={"app_id": app_id},
        )

    async def list_inbound_trunks(self) -> list[PlivoInboundTrunk]:
        items = await self._list("/Zentrunk/Trunk/", resource="Inbound trunk")
        trunks = []
        for item in items:
            trunk_id = non_empty_str(item.get("trunk_id"))
            name = non_empty_str(item.get("name"))
            if not trunk_id or not name:
                continue
            trunks.append(
                PlivoInboundTrunk(
                    trunk_id=trunk_id,
                    name=name,
                    primary_uri_id=non_empty_str(item.get("primary_uri_uuid")),
                )
            )
        return trunks

    async def create_inbound_trunk(self, name: str, primary_uri_id: str) -> PlivoInboundTrunk:
        body = await self._http.request(
            "POST",
            self._path("/Zentrunk/Trunk/"),
            json_body={
                "name": name,
                "trunk_direction": "inbound",
                "primary_uri_uuid": primary_uri_id,
            },
        ) or {}
        trunk_id = non_empty_str(body.get("trunk_id"))
        if not trunk_id:
            raise ProviderClientError(0, ProviderErrorCode.PROVIDER_ERROR, "Plivo trunk create returned no trunk_id")
        return PlivoInboundTrunk(
            trunk_id=trunk_id,
            name=name,
            primary_uri_id=non_empty_str(body.get("primary_uri_uuid")) or primary_uri_id,
        )

    async def delete_inbound_trunk(self, trunk_id: str) -> None:
        await self._http.request("DELETE", self._path(f"/Zentrunk/Trunk/{_q(trunk_id)}/"))

    async def list_origination_uris(self) -> list[PlivoOriginationUri]:
        items = await self._list("/Zentrunk/URI/", resource="Origination URI")
        uris = []
        for item in items:
            parsed = _parse_uri(item)
            if parsed is not None:
                uris.append(parsed)
        return uris

    async def create_origination_uri(self, name: str, uri: str) -> PlivoOriginationUri:
        body = await self._http.request(
            "POST", self._path("/Zentrunk/URI/"), json_body={"name": name, "uri": uri}
        ) or {}
        uri_id = non_empty_str(body.get("uri_uuid") or body.get("id"))
        if not uri_id:
            raise ProviderClientError(
                0, ProviderErrorCode.PROVIDER_ERROR, "Plivo origination URI create returned no uri_uuid"
            )
        return PlivoOriginationUri(id=uri_id, uri=uri, host=normalize_sip_host(uri), name=name)

    async def delete_origination_uri(self, uri_id: str) -> None:
        await self._http.request("DELETE", self._path(f"/Zentrunk/URI/{_q(uri_id)}/"))

    async def _list(self, resource_path: str, *, resource: str) -> list[dict]:
        # limit/offset paging; meta.next is null on the last page
        items: list[dict] = []
        offset = 0
        for _ in range(self._max_pages):
            body = await self._http.request(
                "GET",
                self._path(resource_path),
                params={"limit": str(PAGE_LIMIT), "offset": str(offset)},
            ) or {}
            items.extend(body.get("objects") or [])
            if not (body.get("meta") or {}).get("next"):
                return items
            offset += PAGE_LIMIT
        raise ResourceEnumerationExceeded(resource, self._max_pages, len(items))


def _parse_number(item: dict) -> PlivoPhoneNumber:
    alias = item.get("alias")
    return PlivoPhoneNumber(
        number=str(item.get("number")),
        alias=alias if isinstance(alias, str) else None,
        app_id=non_empty_str(item.get("app_id")),
    )


def _parse_uri(item: dict) -> PlivoOriginationUri | None:
    uri_id = non_empty_str(item.get("uri_uuid") or item.get("id"))
    raw_uri = non_empty_str(item.get("uri") or item.get("host"))
    if not uri_id or not raw_uri:
        return None
    host = normalize_sip_host(raw_uri)
    if not host:
        return None
    return PlivoOriginationUri(id=uri_id, uri=raw_uri, host=host, name=non_empty_str(item.get("name")))

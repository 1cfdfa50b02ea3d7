"""
Telnyx REST adapter (API v2, JSON:API style).

Inbound routing is an FQDN connection whose FQDN points at the conferencing
SIP host; numbers are routed by setting their ``connection_id``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import quote

import httpx

from trunkline.telephony.errors import ProviderClientError, ProviderErrorCode, ResourceEnumerationExceeded
from trunkline.telephony.providers.http import (
    DEFAULT_MAX_PAGES,
    DEFAULT_TIMEOUT_SECONDS,
    ProviderHttpClient,
    non_empty_str,
)

BASE_URL = "https://api.telnyx.com"
PAGE_SIZE = 50

TransportProtocol = Literal["UDP", "TCP", "TLS"]


@dataclass(frozen=True)
class TelnyxPhoneNumber:
    id: str
    phone_number: str
    status: str
    connection_id: str | None = None
    connection_name: str | None = None


@dataclass(frozen=True)
class TelnyxFqdnConnection:
    id: str
    connection_name: str
    transport_protocol: str | None = None
    encrypted_media: str | None = None
    inbound: dict[str, str | None] | None = None


@dataclass(frozen=True)
class TelnyxFqdn:
    id: str
    fqdn: str
    connection_id: str


def _telnyx_error_message(body: Any) -> str | None:
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return non_empty_str(errors[0].get("detail")) or non_empty_str(errors[0].get("title"))
    return None


def _q(value: str) -> str:
    return quote(value, safe="")


class TelnyxClient:
    """Telnyx REST client authenticated with a bearer API key."""

    def __init__(
        self,
        api_key: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_pages: int = DEFAULT_MAX_PAGES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._max_pages = max_pages
        self._http = ProviderHttpClient(
            "Telnyx",
            BASE_URL,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
            error_extractor=_telnyx_error_message,
        )

    async def __aenter__(self) -> "TelnyxClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def verify_credentials(self) -> dict[str, bool]:
        await self._http.request("GET", "/v2/phone_numbers", params={"page[size]": "1"})
        return {"valid": True}

    async def list_phone_numbers(self) -> list[TelnyxPhoneNumber]:
        items = await self._list("/v2/phone_numbers", resource="Phone number")
        return [_parse_number(item) for item in items]

    async def get_phone_number(self, phone_number_id: str) -> TelnyxPhoneNumber:
        body = await self._http.request("GET", f"/v2/phone_numbers/{_q(phone_number_id)}")
        return _parse_number(_data(body))

    async def assign_phone_number_to_connection(self, phone_number_id: str, connection_id: str) -> None:
        await self._http.request(
            "PATCH",
            f"/v2/phone_numbers/{_q(phone_number_id)}",
            json_body={"connection_id": connection_id},
        )

    async def unassign_phone_number_from_connection(self, phone_number_id: str) -> None:
        await self._http.request(
            "PATCH",
            f"/v2/phone_numbers/{_q(phone_number_id)}",
            json_body={"connection_id": None},
        )

    async def list_fqdn_connections(self) -> list[TelnyxFqdnConnection]:
        items = await self._list("/v2/fqdn_connections", resource="FQDN connection")
        return [_parse_connection(item) for item in items]

    async def get_fqdn_connection(self, connection_id: str) -> TelnyxFqdnConnection:
        body = await self._http.request("GET", f"/v2/fqdn_connections/{_q(connection_id)}")
        return _parse_connection(_data(body))

    async def create_fqdn_connection(
        self, name: str, transport_protocol: TransportProtocol | None = None
    ) -> TelnyxFqdnConnection:
        payload: dict[str, Any] = {
            "connection_name": name,
            "active": True,
            "inbound": {"ani_number_format": "+E.164", "dnis_number_format": "+e164"},
        }
        if transport_protocol:
            payload["transport_protocol"] = transport_protocol
        body = await self._http.request("POST", "/v2/fqdn_connections", json_body=payload)
        return _parse_connection(_data(body))

    async def update_fqdn_connection_transport(
        self, connection_id: str, transport_protocol: TransportProtocol
    ) -> None:
        await self._http.request(
            "PATCH",
            f"/v2/fqdn_connections/{_q(connection_id)}",
            json_body={"transport_protocol": transport_protocol},
        )

    async def delete_fqdn_connection(self, connection_id: str) -> None:
        await self._http.request("DELETE", f"/v2/fqdn_connections/{_q(connection_id)}")

    async def list_fqdns(self, connection_id: str) -> list[TelnyxFqdn]:
        items = await self._list(
            "/v2/fqdns",
            resource="FQDN",
            params={"filter[connection_id]": connection_id},
        )
        return [_parse_fqdn(item) for item in items]

    async def create_fqdn(self, fqdn: str, connection_id: str) -> TelnyxFqdn:
        # Telnyx wants `connection_id` (not `fqdn_connection_id`) and a DNS record type.
        body = await self._http.request(
            "POST",
            "/v2/fqdns",
            json_body={"fqdn": fqdn, "connection_id": connection_id, "dns_record_type": "a"},
        )
        return _parse_fqdn(_data(body))

    async def delete_fqdn(self, fqdn_id: str) -> None:
        await self._http.request("DELETE", f"/v2/fqdns/{_q(fqdn_id)}")

    async def _list(
        self, path: str, *, resource: str, params: dict[str, str] | None = None
    ) -> list[dict]:
        items: list[dict] = []
        page = 1
        while True:
            if page > self._max_pages:
                raise ResourceEnumerationExceeded(resource, self._max_pages, len(items))
            query = {**(params or {}), "page[number]": str(page), "page[size]": str(PAGE_SIZE)}
            body = await self._http.request("GET", path, params=query) or {}
            items.extend(body.get("data") or [])
            total_pages = (body.get("meta") or {}).get("total_pages") or 1
            if page >= int(total_pages):
                return items
            page += 1


def _data(body: Any) -> dict:
    if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
        raise ProviderClientError(0, ProviderErrorCode.PROVIDER_ERROR, "Telnyx response missing data")
    return body["data"]


def _parse_number(item: dict) -> TelnyxPhoneNumber:
    return TelnyxPhoneNumber(
        id=str(item.get("id")),
        phone_number=str(item.get("phone_number")),
        status=str(item.get("status")),
        connection_id=non_empty_str(item.get("connection_id")),
        connection_name=non_empty_str(item.get("connection_name")),
    )


def _parse_connection(item: dict) -> TelnyxFqdnConnection:
    inbound = item.get("inbound")
    return TelnyxFqdnConnection(
        id=str(item.get("id")),
        connection_name=str(item.get("connection_name")),
        transport_protocol=non_empty_str(item.get("transport_protocol")),
        encrypted_media=non_empty_str(item.get("encrypted_media")),
        inbound=(
            {
                key: non_empty_str(inbound.get(key))
                for key in (
                    "default_primary_fqdn_id",
                    "default_secondary_fqdn_id",
                    "default_tertiary_fqdn_id",
                )
            }
            if isinstance(inbound, dict)
            else None
        ),
    )


def _parse_fqdn(item: dict) -> TelnyxFqdn:
    return TelnyxFqdn(
        id=str(item.get("id")),
        fqdn=str(item.get("fqdn")),
        connection_id=str(item.get("connection_id")),
    )

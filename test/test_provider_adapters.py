"""Tests for the provider REST adapters over httpx.MockTransport.

No network: every request is answered by an in-test handler.
"""

from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest

from trunkline.telephony.errors import (
    ProviderClientError,
    ProviderErrorCode,
    ResourceEnumerationExceeded,
)
from trunkline.telephony.providers.plivo import (
    PlivoClient,
    PlivoCredentials,
    normalize_sip_host,
    origination_uri_for_host,
)
from trunkline.telephony.providers.telnyx import TelnyxClient
from trunkline.telephony.providers.twilio import TwilioClient, TwilioCredentials

Handler = Callable[[httpx.Request], httpx.Response]

TWILIO_CREDS = TwilioCredentials(account_sid="AC123", api_key_sid="SK123", api_key_secret="s3cret")
PLIVO_CREDS = PlivoCredentials(auth_id="MA123", auth_token="tok")


def twilio(handler: Handler, **kwargs) -> TwilioClient:
    return TwilioClient(TWILIO_CREDS, transport=httpx.MockTransport(handler), **kwargs)


def telnyx(handler: Handler, **kwargs) -> TelnyxClient:
    return TelnyxClient("KEY123", transport=httpx.MockTransport(handler), **kwargs)


def plivo(handler: Handler, **kwargs) -> PlivoClient:
    return PlivoClient(PLIVO_CREDS, transport=httpx.MockTransport(handler), **kwargs)


class TestProviderHttpErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "code"),
        [
            (401, ProviderErrorCode.AUTH_INVALID),
            (403, ProviderErrorCode.AUTH_INVALID),
            (429, ProviderErrorCode.RATE_LIMITED),
            (400, ProviderErrorCode.VALIDATION_ERROR),
            (404, ProviderErrorCode.VALIDATION_ERROR),
            (500, ProviderErrorCode.PROVIDER_ERROR),
            (503, ProviderErrorCode.PROVIDER_ERROR),
        ],
    )
    async def test_status_mapping(self, status: int, code: ProviderErrorCode) -> None:
        client = twilio(lambda _: httpx.Response(status, json={"message": "nope"}))

        with pytest.raises(ProviderClientError) as exc_info:
            await client.verify_credentials()
        await client.aclose()

        assert exc_info.value.status == status
        assert exc_info.value.code is code
        assert exc_info.value.message == "nope"

    @pytest.mark.asyncio
    async def test_timeout_is_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        async with twilio(handler) as client:
            with pytest.raises(ProviderClientError) as exc_info:
                await client.verify_credentials()

        assert exc_info.value.code is ProviderErrorCode.PROVIDER_UNREACHABLE
        assert exc_info.value.status == 0

    @pytest.mark.asyncio
    async def test_connection_error_is_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with telnyx(handler) as client:
            with pytest.raises(ProviderClientError) as exc_info:
                await client.verify_credentials()

        assert exc_info.value.code is ProviderErrorCode.PROVIDER_UNREACHABLE

    @pytest.mark.asyncio
    async def test_invalid_json_on_success(self) -> None:
        async with twilio(lambda _: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(ProviderClientError) as exc_info:
                await client.verify_credentials()

        assert exc_info.value.code is ProviderErrorCode.PROVIDER_ERROR


class TestTwilioClient:
    @pytest.mark.asyncio
    async def test_verify_uses_key_pair_and_account_path(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"sid": "AC123"})

        async with twilio(handler) as client:
            assert await client.verify_credentials() == {"valid": True}

        assert seen[0].url.path == "/2010-04-01/Accounts/AC123.json"
        assert seen[0].headers["authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_incoming_numbers_follow_next_page_uri(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if "Page=1" in str(request.url):
                return httpx.Response(
                    200,
                    json={"incoming_phone_numbers": [{"sid": "PN2", "phone_number": "+14155550101"}]},
                )
            return httpx.Response(
                200,
                json={
                    "incoming_phone_numbers": [{"sid": "PN1", "phone_number": "+14155550100"}],
                    "next_page_uri": "/2010-04-01/Accounts/AC123/IncomingPhoneNumbers.json?Page=1",
                },
            )

        async with twilio(handler) as client:
            numbers = await client.list_incoming_phone_numbers()

        assert [n.sid for n in numbers] == ["PN1", "PN2"]

    @pytest.mark.asyncio
    async def test_listing_past_page_cap_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "trunks": [{"sid": "TK1", "domain_name": "a.pstn.twilio.com"}],
                    "meta": {"next_page_url": "https://trunking.twilio.com/v1/Trunks?Page=9"},
                },
            )

        async with twilio(handler, max_pages=2) as client:
            with pytest.raises(ResourceEnumerationExceeded) as exc_info:
                await client.list_trunks()

        assert exc_info.value.code is ProviderErrorCode.RESOURCE_ENUMERATION_EXCEEDED
        assert exc_info.value.max_pages == 2

    @pytest.mark.asyncio
    async def test_attach_skips_already_attached_number(self) -> None:
        methods: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(200, json={"phone_numbers": [{"sid": "PN1"}]})

        async with twilio(handler) as client:
            attached = await client.attach_phone_number_to_trunk("TK1", "PN1")

        assert attached is False
        assert methods == ["GET"]

    @pytest.mark.asyncio
    async def test_attach_posts_phone_number_sid(self) -> None:
        posted: list[bytes] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                posted.append(request.content)
                return httpx.Response(201, json={"sid": "PN1"})
            return httpx.Response(200, json={"phone_numbers": []})

        async with twilio(handler) as client:
            assert await client.attach_phone_number_to_trunk("TK1", "PN1") is True

        assert posted == [b"PhoneNumberSid=PN1"]

    @pytest.mark.asyncio
    async def test_detach_tolerates_404(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "DELETE":
                return httpx.Response(404, json={"message": "gone"})
            return httpx.Response(200, json={"phone_numbers": [{"sid": "PN1"}]})

        async with twilio(handler) as client:
            assert await client.detach_phone_number_from_trunk("TK1", "PN1") is False


class TestTelnyxClient:
    @pytest.mark.asyncio
    async def test_bearer_auth_and_page_numbering(self) -> None:
        pages: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["authorization"] == "Bearer KEY123"
            page = request.url.params["page[number]"]
            pages.append(page)
            return httpx.Response(
                200,
                json={
                    "data": [{"id": f"n{page}", "phone_number": "+14155550100", "status": "active"}],
                    "meta": {"total_pages": 2},
                },
            )

        async with telnyx(handler) as client:
            numbers = await client.list_phone_numbers()

        assert pages == ["1", "2"]
        assert [n.id for n in numbers] == ["n1", "n2"]

    @pytest.mark.asyncio
    async def test_page_cap(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [{"id": "c"}], "meta": {"total_pages": 50}})

        async with telnyx(handler, max_pages=3) as client:
            with pytest.raises(ResourceEnumerationExceeded):
                await client.list_fqdn_connections()

    @pytest.mark.asyncio
    async def test_error_detail_is_surfaced(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                422, json={"errors": [{"title": "Invalid", "detail": "connection_name taken"}]}
            )

        async with telnyx(handler) as client:
            with pytest.raises(ProviderClientError) as exc_info:
                await client.create_fqdn_connection("livekit-inbound-1", transport_protocol="TCP")

        assert exc_info.value.code is ProviderErrorCode.VALIDATION_ERROR
        assert exc_info.value.message == "connection_name taken"

    @pytest.mark.asyncio
    async def test_unassign_sends_null_connection(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"data": {"id": "n1"}})

        async with telnyx(handler) as client:
            await client.unassign_phone_number_from_connection("n1")

        assert bodies == [{"connection_id": None}]

    @pytest.mark.asyncio
    async def test_fqdns_filtered_by_connection(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["filter[connection_id]"] == "c1"
            return httpx.Response(
                200,
                json={"data": [{"id": "f1", "fqdn": "abc.sip.livekit.cloud", "connection_id": "c1"}]},
            )

        async with telnyx(handler) as client:
            fqdns = await client.list_fqdns("c1")

        assert fqdns[0].fqdn == "abc.sip.livekit.cloud"


class TestPlivoClient:
    @pytest.mark.asyncio
    async def test_offset_paging_until_meta_next_is_null(self) -> None:
        offsets: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/Account/MA123/Number/"
            offset = request.url.params["offset"]
            offsets.append(offset)
            next_url = "/next" if offset == "0" else None
            return httpx.Response(
                200,
                json={"objects": [{"number": f"1415555010{offset[0]}"}], "meta": {"next": next_url}},
            )

        async with plivo(handler) as client:
            numbers = await client.list_phone_numbers()

        assert offsets == ["0", "20"]
        assert len(numbers) == 2

    @pytest.mark.asyncio
    async def test_page_cap(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"objects": [{}], "meta": {"next": "/more"}})

        async with plivo(handler, max_pages=2) as client:
            with pytest.raises(ResourceEnumerationExceeded):
                await client.list_phone_numbers()

    @pytest.mark.asyncio
    async def test_error_message_extraction(self) -> None:
        async with plivo(lambda _: httpx.Response(400, json={"error": "invalid app_id"})) as client:
            with pytest.raises(ProviderClientError) as exc_info:
                await client.set_number_app_id("14155550100", "bogus")

        assert exc_info.value.message == "invalid app_id"


class TestSipHostHelpers:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("abc.sip.livekit.cloud", "abc.sip.livekit.cloud"),
            ("sip:ABC.sip.livekit.cloud", "abc.sip.livekit.cloud"),
            ("sip:user@abc.sip.livekit.cloud:5060;transport=tcp", "abc.sip.livekit.cloud"),
            ("abc.sip.livekit.cloud?x=1", "abc.sip.livekit.cloud"),
            ("   ", ""),
        ],
    )
    def test_normalize_sip_host(self, value: str, expected: str) -> None:
        assert normalize_sip_host(value) == expected

    def test_origination_uri_strips_scheme(self) -> None:
        assert origination_uri_for_host("sip:abc.sip.livekit.cloud") == "abc.sip.livekit.cloud"

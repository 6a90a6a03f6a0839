"""Unit tests for the White List registry client (mocked HTTP transport)."""

from collections.abc import Callable
from datetime import date

import httpx
import pytest
from doubles import INVALID_NIP, SELLER_NIP, registry_subject

from deklaro.companies.registry import WhiteListRegistryClient
from deklaro.shared.config import Settings
from deklaro.shared.errors import ExternalServiceError


def make_client(
    settings: Settings, handler: Callable[[httpx.Request], httpx.Response]
) -> WhiteListRegistryClient:
    return WhiteListRegistryClient(
        settings, client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


class TestSearchByNip:
    @pytest.mark.asyncio
    async def test_registered_subject(self, settings: Settings) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=registry_subject(SELLER_NIP))

        client = make_client(settings, handler)
        lookup = await client.search_by_nip("123-456-32-18", on_date=date(2024, 1, 15))
        await client.aclose()

        assert lookup.valid is True
        assert lookup.subject is not None
        assert lookup.subject.name == "Sprzedawca Sp. z o.o."
        assert lookup.subject.address == "UL. PROSTA 1, 00-001 WARSZAWA"
        assert lookup.subject.registration_legal_date == date(2015, 3, 1)
        assert requests[0].url.path == f"/api/search/nip/{SELLER_NIP}"
        assert requests[0].url.params["date"] == "2024-01-15"

    @pytest.mark.asyncio
    async def test_malformed_nip_makes_no_request(self, settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        client = make_client(settings, handler)
        lookup = await client.search_by_nip(INVALID_NIP)

        assert lookup.valid is False
        assert lookup.error == "Invalid NIP format"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 404])
    async def test_not_found(self, settings: Settings, status_code: int) -> None:
        client = make_client(settings, lambda request: httpx.Response(status_code, json={}))
        lookup = await client.search_by_nip(SELLER_NIP)

        assert lookup.valid is False
        assert lookup.error == "NIP not found in VAT register"

    @pytest.mark.asyncio
    async def test_unregistered_subject(self, settings: Settings) -> None:
        client = make_client(
            settings, lambda request: httpx.Response(200, json={"result": {"subject": None}})
        )
        lookup = await client.search_by_nip(SELLER_NIP)

        assert lookup.valid is False
        assert lookup.error == "NIP not registered for VAT"

    @pytest.mark.asyncio
    async def test_server_error_raises(self, settings: Settings) -> None:
        client = make_client(settings, lambda request: httpx.Response(503))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.search_by_nip(SELLER_NIP)
        assert exc_info.value.provider == "registry"
        assert "503" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_network_error_raises(self, settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        client = make_client(settings, handler)

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.search_by_nip(SELLER_NIP)
        assert "ConnectTimeout" in exc_info.value.message
        assert exc_info.value.latency_ms is not None

    @pytest.mark.asyncio
    async def test_unreadable_body_raises(self, settings: Settings) -> None:
        client = make_client(settings, lambda request: httpx.Response(200, content=b"<html>"))

        with pytest.raises(ExternalServiceError):
            await client.search_by_nip(SELLER_NIP)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [[], {"result": []}, "subject"])
    async def test_non_object_body_raises(self, settings: Settings, body: object) -> None:
        client = make_client(settings, lambda request: httpx.Response(200, json=body))

        with pytest.raises(ExternalServiceError, match="unreadable response"):
            await client.search_by_nip(SELLER_NIP)

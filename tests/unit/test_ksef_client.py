"""Unit tests for the e-invoicing gateway client against a mocked transport."""

import base64
import hashlib
import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from doubles import BUYER_NIP, KSEF_NUMBER, SELLER_NIP, FakeGateway
from pydantic import SecretStr

from deklaro.db.models import SubmissionStatus
from deklaro.shared.config import Settings
from deklaro.shared.errors import (
    GatewayAuthenticationError,
    GatewayRejectedError,
    GatewayTransportError,
)
from deklaro.submission.client import KSEF_URLS, KSeFClient


class MutableClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 15, 10, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def make_client(
    settings: Settings, gateway: FakeGateway, clock: MutableClock | None = None
) -> KSeFClient:
    return KSeFClient(
        settings,
        httpx.AsyncClient(transport=gateway.transport()),
        clock=clock or MutableClock(),
    )


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_challenge_token_exchange(self, gateway_settings: Settings) -> None:
        gateway = FakeGateway()
        client = make_client(gateway_settings, gateway)

        session = await client.authenticate()

        assert session.token == "session-1"
        assert session.reference_number == "20240115-SE-0001"
        challenge_body = json.loads(gateway.requests[0].content)
        assert challenge_body["contextIdentifier"]["identifier"] == BUYER_NIP
        init_body = json.loads(gateway.requests[1].content)
        assert init_body["context"]["challenge"] == "20240115-CR-0001"
        decoded = base64.b64decode(init_body["context"]["token"]).decode()
        assert decoded == "ksef-auth-token|1705312800000"

    @pytest.mark.asyncio
    async def test_default_url_from_environment(self, gateway_settings: Settings) -> None:
        gateway = FakeGateway()
        client = make_client(gateway_settings, gateway)

        await client.authenticate()

        assert str(gateway.requests[0].url).startswith(KSEF_URLS["test"])

    @pytest.mark.asyncio
    async def test_missing_credentials(self, settings: Settings) -> None:
        gateway = FakeGateway()

        with pytest.raises(GatewayAuthenticationError, match="not configured"):
            await make_client(settings, gateway).authenticate()
        assert gateway.requests == []

    @pytest.mark.asyncio
    async def test_credentials_refused(self, gateway_settings: Settings) -> None:
        with pytest.raises(GatewayAuthenticationError, match="Authorisation challenge refused"):
            await make_client(gateway_settings, FakeGateway(auth_status=401)).authenticate()

    @pytest.mark.asyncio
    async def test_server_error_is_transport(self, gateway_settings: Settings) -> None:
        with pytest.raises(GatewayTransportError, match="unexpected HTTP 503"):
            await make_client(gateway_settings, FakeGateway(auth_status=503)).authenticate()

    @pytest.mark.asyncio
    async def test_network_failure_is_transport(self, gateway_settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        client = KSeFClient(
            gateway_settings, httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        with pytest.raises(GatewayTransportError, match="ConnectTimeout") as exc_info:
            await client.authenticate()
        assert exc_info.value.provider == "ksef"


class TestSession:
    @pytest.mark.asyncio
    async def test_session_reused_until_expiry(self, gateway_settings: Settings) -> None:
        gateway = FakeGateway()
        clock = MutableClock()
        client = make_client(gateway_settings, gateway, clock)

        await client.get_status("ref-1")
        await client.get_status("ref-1")
        assert gateway.sessions_opened == 1

        clock.now += timedelta(seconds=gateway_settings.ksef_session_ttl_seconds)
        await client.get_status("ref-1")
        assert gateway.sessions_opened == 2
        assert gateway.requests[-1].headers["SessionToken"] == "session-2"

    @pytest.mark.asyncio
    async def test_one_session_per_context(self, gateway_settings: Settings) -> None:
        """Each context NIP gets its own session; neither reuses the other's token."""
        gateway = FakeGateway()
        client = make_client(gateway_settings, gateway)

        await client.get_status("ref-1", BUYER_NIP)
        await client.get_status("ref-2", SELLER_NIP)
        await client.get_status("ref-3", BUYER_NIP)

        assert gateway.sessions_opened == 2
        assert gateway.contexts == [BUYER_NIP, SELLER_NIP]
        tokens = [request.headers.get("SessionToken") for request in gateway.requests]
        assert [t for t in tokens if t] == ["session-1", "session-2", "session-1"]
        seller_session = client.session(SELLER_NIP)
        assert seller_session is not None
        assert seller_session.token == "session-2"

    @pytest.mark.asyncio
    async def test_explicit_context_without_default(self, settings: Settings) -> None:
        gateway = FakeGateway()
        tokened = settings.model_copy(update={"ksef_token": SecretStr("ksef-auth-token")})
        client = make_client(tokened, gateway)

        await client.authenticate(SELLER_NIP)

        assert gateway.contexts == [SELLER_NIP]
        with pytest.raises(GatewayAuthenticationError, match="not configured"):
            await client.authenticate()

    @pytest.mark.asyncio
    async def test_terminate_session(self, gateway_settings: Settings) -> None:
        gateway = FakeGateway()
        client = make_client(gateway_settings, gateway)
        await client.authenticate()
        await client.authenticate(SELLER_NIP)

        await client.aclose()

        assert client.session() is None
        assert client.session(SELLER_NIP) is None
        assert gateway.count("/Session/Terminate") == 2

    @pytest.mark.asyncio
    async def test_terminate_without_session(self, gateway_settings: Settings) -> None:
        gateway = FakeGateway()
        await make_client(gateway_settings, gateway).terminate_session()
        assert gateway.requests == []


class TestSendAndStatus:
    @pytest.mark.asyncio
    async def test_send_invoice(self, gateway_settings: Settings) -> None:
        gateway = FakeGateway()
        document = b"<?xml version='1.0'?><Faktura/>"

        sent = await make_client(gateway_settings, gateway).send_invoice(document)

        assert sent.reference_number == "20240115-EE-0001"
        assert gateway.sent_documents == [document]
        body = json.loads(gateway.requests[-1].content)
        expected_hash = base64.b64encode(hashlib.sha256(document).digest()).decode()
        assert body["invoiceHash"]["hashSHA"]["value"] == expected_hash
        assert body["invoiceHash"]["fileSize"] == len(document)
        assert gateway.requests[-1].method == "PUT"

    @pytest.mark.asyncio
    async def test_send_rejected(self, gateway_settings: Settings) -> None:
        gateway = FakeGateway(send_status=400)

        with pytest.raises(GatewayRejectedError, match="21405: Invalid schema"):
            await make_client(gateway_settings, gateway).send_invoice(b"<Faktura/>")

    @pytest.mark.asyncio
    async def test_send_rate_limited_is_transport(self, gateway_settings: Settings) -> None:
        with pytest.raises(GatewayTransportError):
            await make_client(gateway_settings, FakeGateway(send_status=429)).send_invoice(b"x")

    @pytest.mark.asyncio
    async def test_session_expired_mid_use(self, gateway_settings: Settings) -> None:
        client = make_client(gateway_settings, FakeGateway(send_status=401))

        with pytest.raises(GatewayAuthenticationError):
            await client.send_invoice(b"x")
        assert client.session() is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            (200, SubmissionStatus.ACCEPTED),
            (100, SubmissionStatus.PENDING),
            (310, SubmissionStatus.PENDING),
            (410, SubmissionStatus.REJECTED),
        ],
    )
    async def test_status_mapping(
        self, gateway_settings: Settings, code: int, expected: SubmissionStatus
    ) -> None:
        status = await make_client(gateway_settings, FakeGateway([code])).get_status("ref-1")

        assert status.status is expected
        assert status.processing_code == code
        if expected is SubmissionStatus.ACCEPTED:
            assert status.ksef_number == KSEF_NUMBER

    @pytest.mark.asyncio
    async def test_download_receipt(self, gateway_settings: Settings) -> None:
        gateway = FakeGateway()

        receipt = await make_client(gateway_settings, gateway).download_receipt(KSEF_NUMBER)

        assert receipt == b"<UPO/>"
        assert gateway.requests[-1].url.path.endswith(f"/Invoice/Upo/{KSEF_NUMBER}")

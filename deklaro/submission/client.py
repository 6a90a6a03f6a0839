"""Client for KSeF, the Polish national e-invoicing gateway.

Session based: ``AuthorisationChallenge`` returns a challenge and timestamp,
``InitToken`` exchanges them plus the authorisation token for a session token.
Sessions are keyed by the context NIP they were opened for, so each tenant
posts under its own context. A session token carries an expiry and is
refreshed whenever it is missing or expired before any privileged call.

Failure taxonomy:

- ``GatewayAuthenticationError``: missing credentials, 401/403 while opening or
  using a session
- ``GatewayTransportError``: network failure, 5xx, unexpected statuses (retryable)
- ``GatewayRejectedError``: the gateway refused the document (4xx with an
  exception payload); terminal until the document is corrected
"""

import asyncio
import base64
import hashlib
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import httpx
from pydantic import BaseModel

from deklaro.db.models import SubmissionStatus, utcnow
from deklaro.shared.config import Settings
from deklaro.shared.errors import (
    GatewayAuthenticationError,
    GatewayRejectedError,
    GatewayTransportError,
)

logger = logging.getLogger(__name__)

PROVIDER = "ksef"

KSEF_URLS = {
    "test": "https://ksef-test.mf.gov.pl",
    "demo": "https://ksef-demo.mf.gov.pl",
    "production": "https://ksef.mf.gov.pl",
}

# Refresh slightly before the gateway would expire the session
SESSION_EXPIRY_MARGIN = timedelta(seconds=60)


class SessionToken(BaseModel):
    token: str
    reference_number: str | None = None
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at - SESSION_EXPIRY_MARGIN


class SendResult(BaseModel):
    reference_number: str
    processing_code: int | None = None


class GatewayStatus(BaseModel):
    reference_number: str
    status: SubmissionStatus
    ksef_number: str | None = None
    processing_code: int | None = None
    description: str | None = None


def _exception_description(response: httpx.Response) -> str:
    """Human-readable reason from a gateway exception payload."""
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    details = (body.get("exception") or {}).get("exceptionDetailList") or []
    if details:
        return "; ".join(
            f"{d.get('exceptionCode', '?')}: {d.get('exceptionDescription', '')}".strip()
            for d in details
        )
    return body.get("message") or f"HTTP {response.status_code}"


class KSeFClient:
    """Async gateway client holding one live session per context NIP.

    Calls without an explicit ``context_nip`` use ``Settings.ksef_context_nip``.
    """

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        base_url = settings.ksef_base_url or KSEF_URLS[settings.ksef_environment]
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.ksef_timeout_seconds),
            headers={"Accept": "application/json"},
        )
        self._clock = clock
        self._sessions: dict[str, SessionToken] = {}
        self._session_lock = asyncio.Lock()

    def session(self, context_nip: str | None = None) -> SessionToken | None:
        nip = context_nip or self.settings.ksef_context_nip
        return self._sessions.get(nip) if nip else None

    def _context_nip(self, context_nip: str | None) -> str:
        nip = context_nip or self.settings.ksef_context_nip
        if self.settings.ksef_token is None or not nip:
            raise GatewayAuthenticationError(
                "Gateway token or context NIP not configured", provider=PROVIDER
            )
        return nip

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        started = time.perf_counter()
        try:
            response = await self._client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            latency_ms = int((time.perf_counter() - started) * 1000)
            raise GatewayTransportError(
                f"Gateway request failed: {type(e).__name__}",
                provider=PROVIDER,
                latency_ms=latency_ms,
            ) from e
        latency_ms = int((time.perf_counter() - started) * 1000)
        logger.debug(f"{method} {path} -> {response.status_code} ({latency_ms}ms)")
        response.extensions["latency_ms"] = latency_ms
        return response

    @staticmethod
    def _latency(response: httpx.Response) -> int | None:
        return response.extensions.get("latency_ms")

    def _raise_for_status(
        self, response: httpx.Response, action: str, context_nip: str | None = None
    ) -> None:
        if response.is_success:
            return
        latency_ms = self._latency(response)
        if response.status_code in (401, 403):
            if context_nip is not None:
                self._sessions.pop(context_nip, None)
            raise GatewayAuthenticationError(
                f"{action}: gateway refused credentials (HTTP {response.status_code})",
                provider=PROVIDER,
                latency_ms=latency_ms,
            )
        if 400 <= response.status_code < 500 and response.status_code not in (404, 408, 429):
            raise GatewayRejectedError(
                f"{action} rejected: {_exception_description(response)}",
                provider=PROVIDER,
                latency_ms=latency_ms,
            )
        raise GatewayTransportError(
            f"{action}: unexpected HTTP {response.status_code}",
            provider=PROVIDER,
            latency_ms=latency_ms,
        )

    def _raise_for_auth_status(self, response: httpx.Response, action: str) -> None:
        # Any 4xx while opening a session is a credential or environment problem
        if 400 <= response.status_code < 500:
            raise GatewayAuthenticationError(
                f"{action} refused: {_exception_description(response)}",
                provider=PROVIDER,
                latency_ms=self._latency(response),
            )
        self._raise_for_status(response, action)

    async def authenticate(self, context_nip: str | None = None) -> SessionToken:
        """Open a session for one context NIP with the challenge/token exchange.

        Args:
            context_nip: NIP the session acts for; defaults to ``ksef_context_nip``

        Raises:
            GatewayAuthenticationError: Missing token or context NIP, or credentials refused
            GatewayTransportError: Network failure or unexpected response
        """
        nip = self._context_nip(context_nip)
        assert self.settings.ksef_token is not None

        response = await self._request(
            "POST",
            "/api/online/Session/AuthorisationChallenge",
            json={"contextIdentifier": {"type": "onip", "identifier": nip}},
        )
        self._raise_for_auth_status(response, "Authorisation challenge")
        challenge_body = response.json()
        challenge = challenge_body.get("challenge")
        timestamp = challenge_body.get("timestamp")
        if not challenge or not timestamp:
            raise GatewayTransportError(
                "Authorisation challenge response incomplete",
                provider=PROVIDER,
                latency_ms=self._latency(response),
            )

        try:
            issued_at = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        except ValueError as e:
            raise GatewayTransportError(
                "Authorisation challenge timestamp unreadable", provider=PROVIDER
            ) from e
        challenge_ms = int(issued_at.timestamp() * 1000)
        token = self.settings.ksef_token.get_secret_value()
        encoded_token = base64.b64encode(f"{token}|{challenge_ms}".encode()).decode("ascii")

        response = await self._request(
            "POST",
            "/api/online/Session/InitToken",
            json={
                "context": {
                    "challenge": challenge,
                    "identifier": {"type": "onip", "identifier": nip},
                    "token": encoded_token,
                }
            },
        )
        self._raise_for_auth_status(response, "Session initialisation")
        body = response.json()
        session_token = (body.get("sessionToken") or {}).get("token")
        if not session_token:
            raise GatewayAuthenticationError(
                "Gateway returned no session token", provider=PROVIDER
            )

        session = SessionToken(
            token=session_token,
            reference_number=body.get("referenceNumber"),
            expires_at=self._clock() + timedelta(seconds=self.settings.ksef_session_ttl_seconds),
        )
        self._sessions[nip] = session
        logger.info(f"Gateway session opened for {nip} (reference {session.reference_number})")
        return session

    async def _ensure_session(self, nip: str) -> SessionToken:
        async with self._session_lock:
            session = self._sessions.get(nip)
            if session is None or session.is_expired(self._clock()):
                return await self.authenticate(nip)
            return session

    async def send_invoice(self, document: bytes, context_nip: str | None = None) -> SendResult:
        """Send one FA(3) document; the gateway answers with a tracking reference."""
        nip = self._context_nip(context_nip)
        session = await self._ensure_session(nip)
        digest = base64.b64encode(hashlib.sha256(document).digest()).decode("ascii")
        response = await self._request(
            "PUT",
            "/api/online/Invoice/Send",
            headers={"SessionToken": session.token},
            json={
                "invoiceHash": {
                    "hashSHA": {"algorithm": "SHA-256", "encoding": "Base64", "value": digest},
                    "fileSize": len(document),
                },
                "invoicePayload": {
                    "type": "plain",
                    "invoiceBody": base64.b64encode(document).decode("ascii"),
                },
            },
        )
        self._raise_for_status(response, "Invoice submission", nip)
        body = response.json()
        reference = body.get("elementReferenceNumber") or body.get("referenceNumber")
        if not reference:
            raise GatewayTransportError(
                "Gateway returned no reference number",
                provider=PROVIDER,
                latency_ms=self._latency(response),
            )
        logger.info(f"Invoice sent to gateway, reference {reference}")
        return SendResult(reference_number=reference, processing_code=body.get("processingCode"))

    async def get_status(
        self, reference_number: str, context_nip: str | None = None
    ) -> GatewayStatus:
        """Poll processing status of a sent invoice.

        Processing code 200 means accepted, 400 and above rejected, anything
        else still pending.
        """
        nip = self._context_nip(context_nip)
        session = await self._ensure_session(nip)
        response = await self._request(
            "GET",
            f"/api/online/Invoice/Status/{reference_number}",
            headers={"SessionToken": session.token},
        )
        self._raise_for_status(response, "Status check", nip)
        body = response.json()
        code = body.get("processingCode")
        description = body.get("processingDescription")
        ksef_number = (body.get("invoiceStatus") or {}).get("ksefReferenceNumber")

        if code == 200 and ksef_number:
            status = SubmissionStatus.ACCEPTED
        elif isinstance(code, int) and code >= 400:
            status = SubmissionStatus.REJECTED
        else:
            status = SubmissionStatus.PENDING

        return GatewayStatus(
            reference_number=reference_number,
            status=status,
            ksef_number=ksef_number,
            processing_code=code,
            description=description,
        )

    async def download_receipt(self, ksef_number: str, context_nip: str | None = None) -> bytes:
        """Download the official receipt (UPO) for an accepted invoice."""
        nip = self._context_nip(context_nip)
        session = await self._ensure_session(nip)
        response = await self._request(
            "GET",
            f"/api/online/Invoice/Upo/{ksef_number}",
            headers={"SessionToken": session.token},
        )
        self._raise_for_status(response, "Receipt download", nip)
        return response.content

    async def terminate_session(self, context_nip: str | None = None) -> None:
        """Close the session held for one context NIP, if any."""
        nip = context_nip or self.settings.ksef_context_nip
        session = self._sessions.pop(nip, None) if nip else None
        if session is None:
            return
        try:
            response = await self._request(
                "GET",
                "/api/online/Session/Terminate",
                headers={"SessionToken": session.token},
            )
        except GatewayTransportError as e:
            logger.warning(f"Gateway session termination for {nip} failed: {e.message}")
            return
        if not response.is_success:
            logger.warning(f"Gateway session termination returned HTTP {response.status_code}")

    async def aclose(self) -> None:
        for nip in list(self._sessions):
            await self.terminate_session(nip)
        await self._client.aclose()

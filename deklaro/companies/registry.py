"""Client for the Polish White List VAT registry (Biała Lista Podatników VAT).

API documentation: https://www.gov.pl/web/kas/api-wykazu-podatnikow-vat

Only the single-subject ``search`` method is used. Every request carries an
explicit timeout; transport failures and unexpected statuses surface as
``ExternalServiceError`` so the resolver can report them per NIP.
"""

import logging
import time
from datetime import date

import httpx
from pydantic import BaseModel, ConfigDict, Field

from deklaro.companies.nip import nip_checksum_ok, normalize_nip
from deklaro.shared.config import Settings
from deklaro.shared.errors import ExternalServiceError

logger = logging.getLogger(__name__)

PROVIDER = "registry"


class RegistrySubject(BaseModel):
    """Registered taxpayer as returned by the registry."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    nip: str
    regon: str | None = None
    krs: str | None = None
    status_vat: str | None = Field(None, alias="statusVat")
    residence_address: str | None = Field(None, alias="residenceAddress")
    working_address: str | None = Field(None, alias="workingAddress")
    registration_legal_date: date | None = Field(None, alias="registrationLegalDate")

    @property
    def address(self) -> str | None:
        return self.working_address or self.residence_address


class RegistryLookup(BaseModel):
    """Outcome of one lookup: a subject, or a reason the NIP is not usable."""

    nip: str
    valid: bool
    subject: RegistrySubject | None = None
    error: str | None = None
    latency_ms: int = 0


class WhiteListRegistryClient:
    """Async registry client; the HTTP client is injected or owned."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = settings.registry_base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.registry_timeout_seconds),
            headers={"Accept": "application/json"},
        )

    async def search_by_nip(self, raw_nip: str, on_date: date | None = None) -> RegistryLookup:
        """Look up one NIP.

        Args:
            raw_nip: NIP in any formatting
            on_date: Register state date (defaults to today)

        Returns:
            RegistryLookup; ``valid=False`` for malformed, unknown or unregistered NIPs

        Raises:
            ExternalServiceError: Network failure or unexpected response
        """
        nip = normalize_nip(raw_nip)
        if not nip_checksum_ok(nip):
            return RegistryLookup(nip=nip, valid=False, error="Invalid NIP format")

        on_date = on_date or date.today()
        url = f"{self.base_url}/api/search/nip/{nip}"
        started = time.perf_counter()
        try:
            response = await self._client.get(url, params={"date": on_date.isoformat()})
        except httpx.HTTPError as e:
            latency_ms = int((time.perf_counter() - started) * 1000)
            raise ExternalServiceError(
                f"Registry request failed: {type(e).__name__}",
                provider=PROVIDER,
                latency_ms=latency_ms,
            ) from e
        latency_ms = int((time.perf_counter() - started) * 1000)

        if response.status_code in (400, 404):
            # 400 carries WL-1xx codes for NIPs the registry considers malformed
            return RegistryLookup(
                nip=nip,
                valid=False,
                error="NIP not found in VAT register",
                latency_ms=latency_ms,
            )
        if response.status_code != 200:
            raise ExternalServiceError(
                f"Registry returned HTTP {response.status_code}",
                provider=PROVIDER,
                latency_ms=latency_ms,
            )

        try:
            body = response.json()
            result = (body.get("result") or {}) if isinstance(body, dict) else None
            if not isinstance(result, dict):
                raise ValueError("response is not a registry result object")
            subject_data = result.get("subject")
            subject = RegistrySubject.model_validate(subject_data) if subject_data else None
        except ValueError as e:
            raise ExternalServiceError(
                "Registry returned an unreadable response",
                provider=PROVIDER,
                latency_ms=latency_ms,
            ) from e

        if subject is None:
            return RegistryLookup(
                nip=nip,
                valid=False,
                error="NIP not registered for VAT",
                latency_ms=latency_ms,
            )

        logger.info(f"Registry hit for NIP {nip} ({latency_ms}ms)")
        return RegistryLookup(nip=nip, valid=True, subject=subject, latency_ms=latency_ms)

    async def aclose(self) -> None:
        await self._client.aclose()

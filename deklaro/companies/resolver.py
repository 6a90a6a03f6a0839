"""Counterparty resolution: normalise the NIP, reuse a known company or create
one from the registry.

Creation is unique per (tenant, NIP) through the ``uq_companies_tenant_nip``
constraint. A create that loses a race hits the constraint and falls back to the
row the winner inserted, so concurrent resolutions yield exactly one company.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from deklaro.companies.address import parse_address
from deklaro.companies.nip import nip_checksum_ok, normalize_nip
from deklaro.companies.registry import RegistrySubject, WhiteListRegistryClient
from deklaro.db.connection import Database
from deklaro.db.models import Company, CompanyProvenance
from deklaro.shared.config import Settings
from deklaro.shared.errors import ExternalServiceError, PipelineError

logger = logging.getLogger(__name__)


class ResolutionAction(str, Enum):
    CREATED = "created"
    FOUND = "found"
    INVALID = "invalid"
    FAILED = "failed"


class ResolutionOutcome(BaseModel):
    nip: str
    action: ResolutionAction
    company_id: str | None = None
    message: str

    @property
    def resolved(self) -> bool:
        return self.company_id is not None


class CompanyResolver:
    """Find-or-create companies for one tenant at a time."""

    def __init__(
        self,
        db: Database,
        registry: WhiteListRegistryClient,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.db = db
        self.registry = registry
        self.settings = settings
        self._sleep = sleep

    async def resolve(self, tenant_id: str, raw_nip: str) -> ResolutionOutcome:
        """Resolve one counterparty NIP to a company row.

        Invalid or unregistered NIPs and registry outages are reported in the
        outcome rather than raised; the invoice then goes to manual review.
        """
        nip = normalize_nip(raw_nip)
        if not nip_checksum_ok(nip):
            return ResolutionOutcome(
                nip=nip, action=ResolutionAction.INVALID, message="Invalid NIP format"
            )

        existing = await self._find(tenant_id, nip)
        if existing is not None:
            return ResolutionOutcome(
                nip=nip,
                action=ResolutionAction.FOUND,
                company_id=existing.id,
                message="Company already exists",
            )

        try:
            lookup = await self.registry.search_by_nip(nip)
        except ExternalServiceError as e:
            logger.warning(f"Registry lookup failed for {nip}: {e.message}")
            return ResolutionOutcome(nip=nip, action=ResolutionAction.FAILED, message=e.message)

        if not lookup.valid or lookup.subject is None:
            return ResolutionOutcome(
                nip=nip,
                action=ResolutionAction.INVALID,
                message=lookup.error or "NIP validation failed",
            )

        return await self._create(tenant_id, nip, lookup.subject)

    async def resolve_batch(self, tenant_id: str, nips: Sequence[str]) -> list[ResolutionOutcome]:
        """Resolve several NIPs with bounded concurrency and spaced starts.

        Each lookup starts at least ``registry_batch_delay_seconds`` after the
        previous one. Outcomes are returned in input order; a failing NIP never
        aborts the others. Cancelling the caller cancels the pending lookups.
        """
        semaphore = asyncio.Semaphore(self.settings.registry_batch_concurrency)
        pacer = asyncio.Lock()
        spacing = self.settings.registry_batch_delay_seconds
        started = 0

        async def worker(raw_nip: str) -> ResolutionOutcome:
            nonlocal started
            async with semaphore:
                async with pacer:
                    if started and spacing > 0:
                        await self._sleep(spacing)
                    started += 1
                return await self._resolve_isolated(tenant_id, raw_nip)

        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(worker(nip)) for nip in nips]

        outcomes = [task.result() for task in tasks]
        summary = {action.value: 0 for action in ResolutionAction}
        for outcome in outcomes:
            summary[outcome.action.value] += 1
        logger.info(f"Batch resolution for tenant {tenant_id}: {summary}")
        return outcomes

    async def _resolve_isolated(self, tenant_id: str, raw_nip: str) -> ResolutionOutcome:
        try:
            return await self.resolve(tenant_id, raw_nip)
        except (PipelineError, SQLAlchemyError) as e:
            logger.error(f"Resolution of {raw_nip!r} failed: {type(e).__name__}: {e}")
            return ResolutionOutcome(
                nip=normalize_nip(raw_nip),
                action=ResolutionAction.FAILED,
                message=f"Resolution failed: {type(e).__name__}",
            )
        except Exception as e:
            logger.exception(f"Unexpected error resolving {raw_nip!r}")
            return ResolutionOutcome(
                nip=normalize_nip(raw_nip),
                action=ResolutionAction.FAILED,
                message=f"Resolution failed: {type(e).__name__}",
            )

    async def _find(self, tenant_id: str, nip: str) -> Company | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(Company).where(Company.tenant_id == tenant_id, Company.nip == nip)
            )
            return result.scalar_one_or_none()

    async def _create(
        self, tenant_id: str, nip: str, subject: RegistrySubject
    ) -> ResolutionOutcome:
        address = parse_address(subject.address)
        company = Company(
            tenant_id=tenant_id,
            nip=nip,
            name=subject.name,
            street=address.street or subject.address,
            postal_code=address.postal_code,
            city=address.city,
            regon=subject.regon,
            krs=subject.krs,
            vat_registration_date=subject.registration_legal_date,
            provenance=CompanyProvenance.AUTO_FROM_REGISTRY,
        )
        try:
            async with self.db.transaction() as session:
                session.add(company)
        except IntegrityError:
            winner = await self._find(tenant_id, nip)
            if winner is None:
                raise
            logger.info(f"Company {nip} created concurrently, reusing {winner.id}")
            return ResolutionOutcome(
                nip=nip,
                action=ResolutionAction.FOUND,
                company_id=winner.id,
                message="Company created concurrently",
            )

        logger.info(f"Created company {company.id} for NIP {nip} from registry")
        return ResolutionOutcome(
            nip=nip,
            action=ResolutionAction.CREATED,
            company_id=company.id,
            message="Company created from VAT registry",
        )

"""Per-tenant monthly usage accounting and the admission quota.

The counter lives in ``usage_records`` keyed by (tenant, "YYYY-MM"). Admission
is a single conditional UPDATE, so concurrent admissions for one tenant can
neither lose an increment nor overshoot the ceiling.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from deklaro.db.connection import Database
from deklaro.db.models import SubscriptionTier, Tenant, UsageRecord, utcnow
from deklaro.shared.errors import NotFoundError, QuotaExceededError

logger = logging.getLogger(__name__)

# Invoices per month; None = unlimited
TIER_LIMITS: dict[SubscriptionTier, int | None] = {
    SubscriptionTier.STARTER: 100,
    SubscriptionTier.PRO: 500,
    SubscriptionTier.ENTERPRISE: None,
}


def billing_period(moment: datetime) -> str:
    return moment.strftime("%Y-%m")


class InvoiceQuota(BaseModel):
    current: int
    limit: int | None


class QuotaSnapshot(BaseModel):
    tier: SubscriptionTier
    invoices: InvoiceQuota
    period: str


class UsageTracker:
    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._clock = clock

    def current_period(self) -> str:
        return billing_period(self._clock())

    async def ensure_record(self, tenant_id: str, period: str | None = None) -> None:
        """Create the (tenant, period) record if it does not exist yet.

        Runs in its own transaction. A concurrent creator winning the race is fine.
        """
        period = period or self.current_period()
        async with self.db.transaction() as session:
            existing = await session.scalar(
                select(UsageRecord.id).where(
                    UsageRecord.tenant_id == tenant_id, UsageRecord.period == period
                )
            )
        if existing is not None:
            return
        try:
            async with self.db.transaction() as session:
                session.add(UsageRecord(tenant_id=tenant_id, period=period))
        except IntegrityError:
            logger.debug(f"Usage record {tenant_id}/{period} created concurrently")

    async def admit(self, session: AsyncSession, tenant: Tenant) -> int:
        """Count one invoice against the tenant's quota.

        Must run inside the caller's transaction (so a later failure in the
        same transaction rolls the increment back) after ``ensure_record``.

        Returns:
            The new invoice count for the period

        Raises:
            QuotaExceededError: Count already at or over the tier ceiling
        """
        period = self.current_period()
        limit = TIER_LIMITS[tenant.subscription]

        stmt = (
            update(UsageRecord)
            .where(UsageRecord.tenant_id == tenant.id, UsageRecord.period == period)
            .values(invoice_count=UsageRecord.invoice_count + 1, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        if limit is not None:
            stmt = stmt.where(UsageRecord.invoice_count < limit)

        result = await session.execute(stmt)
        current = await session.scalar(
            select(UsageRecord.invoice_count).where(
                UsageRecord.tenant_id == tenant.id, UsageRecord.period == period
            )
        )
        if result.rowcount == 0:  # type: ignore[attr-defined]
            raise QuotaExceededError(
                f"Monthly invoice limit reached ({current or 0}/{limit}) "
                f"for {tenant.subscription.value} plan",
                tier=tenant.subscription.value,
                current=current or 0,
                limit=limit,
            )
        return current or 0

    async def record_storage(self, tenant_id: str, size_bytes: int) -> None:
        """Add uploaded bytes to the period's storage counter."""
        period = self.current_period()
        await self.ensure_record(tenant_id, period)
        async with self.db.transaction() as session:
            await session.execute(
                update(UsageRecord)
                .where(UsageRecord.tenant_id == tenant_id, UsageRecord.period == period)
                .values(
                    storage_bytes=UsageRecord.storage_bytes + size_bytes,
                    updated_at=self._clock(),
                )
                .execution_options(synchronize_session=False)
            )

    async def quota_snapshot(self, tenant_id: str) -> QuotaSnapshot:
        """Read-only view of the current period's quota."""
        period = self.current_period()
        async with self.db.transaction() as session:
            tenant = await session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError(f"Tenant {tenant_id} not found")
            current = await session.scalar(
                select(UsageRecord.invoice_count).where(
                    UsageRecord.tenant_id == tenant_id, UsageRecord.period == period
                )
            )
        return QuotaSnapshot(
            tier=tenant.subscription,
            invoices=InvoiceQuota(current=current or 0, limit=TIER_LIMITS[tenant.subscription]),
            period=period,
        )

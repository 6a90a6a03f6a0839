"""Shared fixtures: settings, a file-backed SQLite database and row factories."""

from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from doubles import BUYER_NIP, FakeRedis, ManualClock
from pydantic import SecretStr

from deklaro.db.connection import Database
from deklaro.db.models import Invoice, InvoiceStatus, SubscriptionTier, Tenant
from deklaro.shared.config import Settings


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Test settings: local storage, no credentials, no pauses."""
    return Settings(
        ocr_engine="tesseract",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        local_storage_root=tmp_path / "documents",
        openai_api_key=None,
        ksef_token=None,
        ksef_context_nip=None,
        notification_webhook_url=None,
        registry_batch_delay_seconds=0,
        ksef_poll_interval_seconds=0,
        ksef_poll_max_attempts=3,
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncIterator[Database]:
    """Fresh schema per test; a file database so several connections share it."""
    database = Database(settings.database_url)
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def make_tenant(db: Database) -> Callable[..., Awaitable[Tenant]]:
    async def factory(
        subscription: SubscriptionTier = SubscriptionTier.STARTER,
        nip: str | None = BUYER_NIP,
        name: str = "Biuro Rachunkowe Test",
    ) -> Tenant:
        tenant = Tenant(name=name, nip=nip, subscription=subscription)
        async with db.transaction() as session:
            session.add(tenant)
        return tenant

    return factory


@pytest.fixture
def make_invoice(db: Database) -> Callable[..., Awaitable[Invoice]]:
    async def factory(
        tenant_id: str,
        status: InvoiceStatus = InvoiceStatus.UPLOADED,
        file_path: str = "uploads/invoice.png",
        content_type: str = "image/png",
        **fields: Any,
    ) -> Invoice:
        invoice = Invoice(
            tenant_id=tenant_id,
            status=status,
            file_path=file_path,
            content_type=content_type,
            **fields,
        )
        async with db.transaction() as session:
            session.add(invoice)
        return invoice

    return factory


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def fake_redis(manual_clock: ManualClock) -> FakeRedis:
    return FakeRedis(manual_clock)


@pytest.fixture
def gateway_settings(settings: Settings) -> Settings:
    """Settings with gateway credentials for the tenant's context NIP."""
    return settings.model_copy(
        update={"ksef_token": SecretStr("ksef-auth-token"), "ksef_context_nip": BUYER_NIP}
    )

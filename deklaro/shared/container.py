"""Explicit construction and lifecycle of every pipeline collaborator.

API and worker processes each build one container at startup and close it at
shutdown. Nothing is cached at module scope, so tests substitute doubles by
constructing the pieces themselves.
"""

import logging
from dataclasses import dataclass

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from openai import AsyncOpenAI

from deklaro.classification.classifier import InvoiceClassifier
from deklaro.companies.registry import WhiteListRegistryClient
from deklaro.companies.resolver import CompanyResolver
from deklaro.db.connection import Database
from deklaro.extraction.base import ExtractionProvider
from deklaro.extraction.factory import create_extraction_provider
from deklaro.extraction.openai_provider import build_openai_client
from deklaro.extraction.service import ExtractionService
from deklaro.notifications.dispatcher import WebhookNotificationDispatcher
from deklaro.ocr.factory import create_ocr_service
from deklaro.orchestrator.orchestrator import PipelineOrchestrator
from deklaro.queue.dispatcher import ArqJobDispatcher
from deklaro.ratelimit.limiter import FixedWindowRateLimiter
from deklaro.shared.config import Settings
from deklaro.storage.service import DocumentStore, LocalDocumentStore, StorageService
from deklaro.submission.client import KSeFClient
from deklaro.submission.service import SubmissionService
from deklaro.usage.tracker import UsageTracker
from deklaro.validation.validator import InvoiceValidator

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    db: Database
    store: DocumentStore
    orchestrator: PipelineOrchestrator
    usage: UsageTracker
    rate_limiter: FixedWindowRateLimiter | None = None
    redis: ArqRedis | None = None
    extraction_provider: ExtractionProvider | None = None
    openai_client: AsyncOpenAI | None = None
    registry: WhiteListRegistryClient | None = None
    ksef: KSeFClient | None = None
    notifier: WebhookNotificationDispatcher | None = None
    owns_redis: bool = False

    async def aclose(self) -> None:
        """Close every client the container built, then the database engine."""
        if self.extraction_provider is not None:
            await self.extraction_provider.aclose()
        # Shared with the openai provider, which closes it itself
        if self.openai_client is not None and self.settings.extraction_provider != "openai":
            await self.openai_client.close()
        if self.registry is not None:
            await self.registry.aclose()
        if self.ksef is not None:
            await self.ksef.aclose()
        if self.notifier is not None:
            await self.notifier.aclose()
        if self.redis is not None and self.owns_redis:
            await self.redis.aclose()
        await self.db.dispose()
        logger.info("Services closed")


async def build_services(settings: Settings, redis: ArqRedis | None = None) -> ServiceContainer:
    """Build the full pipeline from settings.

    Args:
        settings: Application settings
        redis: Existing arq connection (the worker's); a new pool is created if None

    Returns:
        Ready container; call ``aclose`` when done
    """
    owns_redis = redis is None
    if redis is None:
        redis = await create_pool(RedisSettings.from_dsn(settings.redis_url))

    db = Database(settings.database_url)
    await db.create_all()

    store: DocumentStore
    if settings.storage_enabled:
        store = StorageService(settings)
    else:
        store = LocalDocumentStore(settings.local_storage_root)

    openai_client = build_openai_client(settings)
    provider = create_extraction_provider(
        settings, openai_client if settings.extraction_provider == "openai" else None
    )
    registry = WhiteListRegistryClient(settings)
    usage = UsageTracker(db)
    rate_limiter = FixedWindowRateLimiter(redis)
    notifier = WebhookNotificationDispatcher(settings)

    ksef: KSeFClient | None = None
    submission: SubmissionService | None = None
    if settings.ksef_token is not None:
        ksef = KSeFClient(settings)
        submission = SubmissionService(ksef, settings, store)
    else:
        logger.warning("Gateway token not configured, submission disabled")

    orchestrator = PipelineOrchestrator(
        db,
        settings,
        store=store,
        ocr=create_ocr_service(settings),
        extraction=ExtractionService(provider, settings),
        classifier=InvoiceClassifier(settings, openai_client),
        resolver=CompanyResolver(db, registry, settings),
        validator=InvoiceValidator(settings),
        usage=usage,
        submission=submission,
        rate_limiter=rate_limiter,
        dispatcher=ArqJobDispatcher(redis),
        notifier=notifier,
    )
    logger.info(
        f"Services ready (ocr={settings.ocr_engine}, extraction={settings.extraction_provider})"
    )
    return ServiceContainer(
        settings=settings,
        db=db,
        store=store,
        orchestrator=orchestrator,
        usage=usage,
        rate_limiter=rate_limiter,
        redis=redis,
        extraction_provider=provider,
        openai_client=openai_client,
        registry=registry,
        ksef=ksef,
        notifier=notifier,
        owns_redis=owns_redis,
    )

"""Async task definitions for invoice processing.

Uses arq (async Redis queue) for background task processing. The worker
builds one ``ServiceContainer`` at startup and every task goes through its
orchestrator, which records all outcomes in the database.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import logging
from typing import Any

from arq.connections import RedisSettings

from deklaro.db.models import SubmissionStatus
from deklaro.queue.dispatcher import ArqJobDispatcher
from deklaro.shared.config import Settings, get_settings
from deklaro.shared.container import ServiceContainer, build_services
from deklaro.shared.logging import configure_logging

logger = logging.getLogger(__name__)

# Re-polls of a pending submission before giving up until an operator acts
MAX_SUBMISSION_POLLS = 12


def _services(ctx: dict[str, Any]) -> ServiceContainer:
    return ctx["services"]


async def process_invoice_job(ctx: dict[str, Any], job_id: str) -> dict[str, Any]:
    """Run one processing job to its end state.

    Args:
        ctx: arq context (contains redis connection and services)
        job_id: Processing job identifier

    Returns:
        Final job header as dict
    """
    logger.info(f"Processing job {job_id}")
    job = await _services(ctx).orchestrator.run_job(job_id)
    logger.info(f"Job {job_id} finished with status: {job.status.value}")
    return job.model_dump(mode="json")


async def process_invoice_batch(
    ctx: dict[str, Any], tenant_id: str, invoice_ids: list[str]
) -> dict[str, Any]:
    """Admit and process several invoices, then send one completion summary."""
    logger.info(f"Processing batch of {len(invoice_ids)} invoices for tenant {tenant_id}")
    result = await _services(ctx).orchestrator.process_batch(tenant_id, invoice_ids)
    return result.model_dump(mode="json")


async def poll_submission(
    ctx: dict[str, Any], invoice_id: str, attempt: int = 1
) -> dict[str, Any] | None:
    """Re-check a pending gateway submission; reschedule while still pending."""
    services = _services(ctx)
    result = await services.orchestrator.refresh_submission(invoice_id)
    if result is None:
        return None

    if result.status is SubmissionStatus.PENDING:
        if attempt < MAX_SUBMISSION_POLLS:
            await ArqJobDispatcher(ctx["redis"]).schedule_submission_poll(
                invoice_id, services.settings.ksef_status_recheck_seconds, attempt + 1
            )
        else:
            logger.warning(
                f"Submission for invoice {invoice_id} still pending after {attempt} re-polls"
            )
    return result.model_dump(mode="json", exclude={"document_xml"})


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - build services.

    Called once when worker starts. Shares the worker's Redis connection with
    the rate limiter and the dispatcher.
    """
    settings: Settings = ctx.get("settings") or get_settings()
    configure_logging(settings)
    logger.info("Initializing worker services...")
    ctx["settings"] = settings
    ctx["services"] = await build_services(settings, redis=ctx["redis"])
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - close clients and the database engine."""
    logger.info("Worker shutting down...")
    services: ServiceContainer | None = ctx.get("services")
    if services is not None:
        await services.aclose()


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions to register
    - Redis connection settings
    - Job timeout settings (no job-level retries)
    """

    functions = [process_invoice_job, process_invoice_batch, poll_submission]
    on_startup = startup
    on_shutdown = shutdown

    # These will be set from environment
    redis_settings: RedisSettings | None = None
    max_jobs = 10
    job_timeout = 300
    max_tries = 1

    @classmethod
    def get_redis_settings(cls, settings: Settings | None = None) -> RedisSettings:
        """Get Redis settings from configuration."""
        settings = settings or get_settings()
        return RedisSettings.from_dsn(settings.redis_url)

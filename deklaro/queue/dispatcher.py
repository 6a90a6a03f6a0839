"""arq-backed job dispatcher used by the orchestrator.

Dispatch is fire-and-forget: the caller gets control back as soon as the job
is in Redis.
"""

import logging
from collections.abc import Sequence

from arq.connections import ArqRedis
from redis.exceptions import RedisError

from deklaro.shared.errors import ExternalServiceError

logger = logging.getLogger(__name__)

PROCESS_INVOICE_JOB = "process_invoice_job"
PROCESS_INVOICE_BATCH = "process_invoice_batch"
POLL_SUBMISSION = "poll_submission"


class ArqJobDispatcher:
    def __init__(self, redis: ArqRedis) -> None:
        self.redis = redis

    async def _enqueue(self, function: str, *args: object, **kwargs: object) -> None:
        try:
            job = await self.redis.enqueue_job(function, *args, **kwargs)
        except (RedisError, OSError) as e:
            raise ExternalServiceError(
                f"Queue unavailable: {type(e).__name__}", provider="queue"
            ) from e
        if job is None:
            # arq returns None when a job with the same _job_id already exists
            logger.info(f"{function} already queued for {args}")

    async def dispatch_job(self, job_id: str) -> None:
        await self._enqueue(PROCESS_INVOICE_JOB, job_id, _job_id=f"job:{job_id}")

    async def dispatch_batch(self, tenant_id: str, invoice_ids: Sequence[str]) -> None:
        await self._enqueue(PROCESS_INVOICE_BATCH, tenant_id, list(invoice_ids))

    async def schedule_submission_poll(
        self, invoice_id: str, delay_seconds: int, attempt: int = 1
    ) -> None:
        await self._enqueue(
            POLL_SUBMISSION,
            invoice_id,
            attempt,
            _defer_by=delay_seconds,
            _job_id=f"poll:{invoice_id}:{attempt}",
        )

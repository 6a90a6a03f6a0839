"""Batch-completion notifications via an external webhook dispatcher.

The dispatcher enforces its own per-recipient hourly limit. A 429 from it is
final for that summary: the pipeline logs it and never resends.
"""

import logging

import httpx
from pydantic import BaseModel

from deklaro.shared.config import Settings

logger = logging.getLogger(__name__)


class BatchCompletionSummary(BaseModel):
    tenant_id: str
    total: int
    succeeded: int
    failed: int


class NotificationResult(BaseModel):
    delivered: bool
    status_code: int | None = None
    error: str | None = None


class WebhookNotificationDispatcher:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self.url = settings.notification_webhook_url
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.notification_timeout_seconds)
        )

    def is_configured(self) -> bool:
        return bool(self.url)

    async def send_batch_summary(self, summary: BatchCompletionSummary) -> NotificationResult:
        """Deliver one summary. Never raises; the outcome is returned and logged."""
        if not self.url:
            logger.debug(f"No notification endpoint, summary for {summary.tenant_id} dropped")
            return NotificationResult(delivered=False, error="not configured")

        try:
            response = await self._client.post(
                self.url, json={"type": "batch_completed", **summary.model_dump()}
            )
        except httpx.HTTPError as e:
            logger.warning(
                f"Batch summary for {summary.tenant_id} not delivered: {type(e).__name__}"
            )
            return NotificationResult(delivered=False, error=type(e).__name__)

        if response.status_code == 429:
            logger.warning(
                f"Notification dispatcher rate-limited summary for tenant {summary.tenant_id}"
            )
            return NotificationResult(
                delivered=False, status_code=429, error="rate limited by dispatcher"
            )
        if not response.is_success:
            logger.warning(
                f"Notification dispatcher returned HTTP {response.status_code} "
                f"for tenant {summary.tenant_id}"
            )
            return NotificationResult(
                delivered=False,
                status_code=response.status_code,
                error=f"HTTP {response.status_code}",
            )

        logger.info(
            f"Batch summary sent for tenant {summary.tenant_id}: "
            f"{summary.succeeded}/{summary.total} succeeded"
        )
        return NotificationResult(delivered=True, status_code=response.status_code)

    async def aclose(self) -> None:
        await self._client.aclose()

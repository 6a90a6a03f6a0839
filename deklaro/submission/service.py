"""Submission stage: FA(3) conversion, send, status polling and receipt retrieval."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import date

from pydantic import BaseModel

from deklaro.db.models import Company, Invoice, SubmissionStatus
from deklaro.shared.config import Settings
from deklaro.shared.errors import DocumentError, ExternalServiceError
from deklaro.storage.service import DocumentStore
from deklaro.submission.client import GatewayStatus, KSeFClient
from deklaro.submission.fa3 import build_fa3_document

logger = logging.getLogger(__name__)


class SubmissionResult(BaseModel):
    """Outcome of one submission or status refresh.

    Attributes:
        reference_number: Gateway tracking reference
        status: PENDING, ACCEPTED or REJECTED
        ksef_number: External invoice number (ACCEPTED only)
        rejection_reason: Gateway reason (REJECTED only)
        receipt_reference: Storage key of the downloaded receipt, if stored
        polls: Status checks performed
        document_xml: The FA(3) document that was sent (submit only)
    """

    reference_number: str
    status: SubmissionStatus
    ksef_number: str | None = None
    rejection_reason: str | None = None
    receipt_reference: str | None = None
    polls: int = 0
    document_xml: bytes | None = None


def receipt_object_name(tenant_id: str, invoice_id: str, ksef_number: str) -> str:
    return f"{tenant_id}/receipts/{invoice_id}/UPO_{ksef_number}.xml"


class SubmissionService:
    def __init__(
        self,
        client: KSeFClient,
        settings: Settings,
        store: DocumentStore | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.store = store
        self.poll_interval = settings.ksef_poll_interval_seconds
        self.poll_max_attempts = settings.ksef_poll_max_attempts
        self._sleep = sleep

    async def submit(
        self,
        invoice: Invoice,
        seller: Company | None,
        buyer: Company | None,
        generated_on: date | None = None,
        context_nip: str | None = None,
    ) -> SubmissionResult:
        """Convert, send and poll until the gateway decides or polls run out.

        ``context_nip`` is the submitting tenant's NIP; the gateway session is
        opened for that context.

        Raises:
            ValidationError: Invoice cannot be expressed as FA(3)
            GatewayAuthenticationError: Session could not be opened
            GatewayRejectedError: Gateway refused the document outright
            GatewayTransportError: Network failure or unexpected status
        """
        document = build_fa3_document(invoice, seller, buyer, generated_on)
        sent = await self.client.send_invoice(document, context_nip)
        status, polls = await self._poll(sent.reference_number, context_nip)

        result = await self._result_from_status(invoice, status, polls, context_nip)
        result.document_xml = document
        return result

    async def refresh(
        self, invoice: Invoice, reference_number: str, context_nip: str | None = None
    ) -> SubmissionResult:
        """Check a pending submission once more."""
        status = await self.client.get_status(reference_number, context_nip)
        return await self._result_from_status(invoice, status, 1, context_nip)

    async def _poll(
        self, reference_number: str, context_nip: str | None
    ) -> tuple[GatewayStatus, int]:
        status: GatewayStatus | None = None
        for attempt in range(1, self.poll_max_attempts + 1):
            status = await self.client.get_status(reference_number, context_nip)
            if status.status is not SubmissionStatus.PENDING:
                return status, attempt
            if attempt < self.poll_max_attempts:
                await self._sleep(self.poll_interval)

        assert status is not None
        logger.info(
            f"Submission {reference_number} still pending after {self.poll_max_attempts} polls"
        )
        return status, self.poll_max_attempts

    async def _result_from_status(
        self,
        invoice: Invoice,
        status: GatewayStatus,
        polls: int,
        context_nip: str | None = None,
    ) -> SubmissionResult:
        result = SubmissionResult(
            reference_number=status.reference_number,
            status=status.status,
            polls=polls,
        )
        if status.status is SubmissionStatus.ACCEPTED:
            result.ksef_number = status.ksef_number
            result.receipt_reference = await self._store_receipt(
                invoice, status.ksef_number, context_nip
            )
            logger.info(f"Invoice {invoice.id} accepted as {status.ksef_number}")
        elif status.status is SubmissionStatus.REJECTED:
            result.rejection_reason = status.description or (
                f"Gateway processing code {status.processing_code}"
            )
            logger.info(f"Invoice {invoice.id} rejected: {result.rejection_reason}")
        return result

    async def _store_receipt(
        self, invoice: Invoice, ksef_number: str | None, context_nip: str | None
    ) -> str | None:
        # Acceptance stands even if the receipt cannot be fetched or stored now
        if ksef_number is None:
            return None
        try:
            receipt = await self.client.download_receipt(ksef_number, context_nip)
        except ExternalServiceError as e:
            logger.warning(f"Receipt download for {ksef_number} failed: {e.message}")
            return None

        if self.store is None:
            return None

        object_name = receipt_object_name(invoice.tenant_id, invoice.id, ksef_number)
        try:
            stored = await self.store.store(receipt, object_name, "application/xml")
        except (DocumentError, OSError) as e:
            logger.warning(f"Receipt for {ksef_number} not stored: {e}")
            return None
        if not stored.success:
            logger.warning(f"Receipt for {ksef_number} not stored: {stored.error}")
            return None
        return object_name

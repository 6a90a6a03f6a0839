"""Job orchestrator: admission, the stage pipeline and every status write.

A job runs OCR -> AI_EXTRACT -> CLASSIFY -> RESOLVE -> VALIDATE -> SUBMIT,
strictly in order. Each status change is written by ``advance`` together with
its audit log row in one transaction. Any stage failure is caught here and
turned into a FAILED job, a FAILED (or REJECTED) invoice and a FAILED log row
carrying the scrubbed cause.

Admission relies on database constraints only: the partial unique index on
active jobs and the conditional usage increment. Concurrent ``enqueue`` calls
for one invoice therefore create at most one job, across processes.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from deklaro.api import metrics
from deklaro.classification.classifier import InvoiceClassifier
from deklaro.companies.resolver import CompanyResolver, ResolutionOutcome
from deklaro.db.connection import Database
from deklaro.db.models import (
    ACTIVE_JOB_STATUSES,
    Company,
    Invoice,
    InvoiceDirection,
    InvoiceStatus,
    JobStatus,
    LogStatus,
    ProcessingJob,
    ProcessingLog,
    ProcessingStep,
    SubmissionRecord,
    SubmissionStatus,
    Tenant,
    utcnow,
)
from deklaro.extraction.service import ExtractionOutcome, ExtractionService
from deklaro.notifications.dispatcher import (
    BatchCompletionSummary,
    WebhookNotificationDispatcher,
)
from deklaro.ocr.document import image_to_png_bytes, load_page_image
from deklaro.ocr.service import TesseractOCRService
from deklaro.orchestrator.states import (
    REPROCESSABLE_STATUSES,
    can_transition_invoice,
    check_invoice_transition,
    check_job_transition,
)
from deklaro.ratelimit.limiter import OCR as OCR_RATE_LIMIT
from deklaro.ratelimit.limiter import UPLOAD as UPLOAD_RATE_LIMIT
from deklaro.ratelimit.limiter import FixedWindowRateLimiter
from deklaro.shared.config import Settings
from deklaro.shared.errors import (
    ConflictError,
    DocumentError,
    ExternalServiceError,
    GatewayRejectedError,
    NotFoundError,
    PipelineError,
    StructuralValidationError,
    ValidationError,
)
from deklaro.shared.logging import scrub_secrets
from deklaro.storage.service import DocumentStore
from deklaro.submission.service import SubmissionResult, SubmissionService
from deklaro.usage.tracker import UsageTracker
from deklaro.validation.validator import InvoiceValidator, ValidationOutcome

logger = logging.getLogger(__name__)


class JobDispatcher(Protocol):
    """Fire-and-forget scheduling of background work."""

    async def dispatch_job(self, job_id: str) -> None: ...

    async def dispatch_batch(self, tenant_id: str, invoice_ids: Sequence[str]) -> None: ...

    async def schedule_submission_poll(
        self, invoice_id: str, delay_seconds: int, attempt: int = 1
    ) -> None: ...


class EnqueueResult(BaseModel):
    job_id: str
    invoice_id: str
    status: JobStatus


class JobView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    invoice_id: str
    tenant_id: str
    status: JobStatus
    error_message: str | None = None
    failed_step: ProcessingStep | None = None
    result: dict[str, Any]
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class LogView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    step: ProcessingStep
    status: LogStatus
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_")
    created_at: datetime


class JobAudit(BaseModel):
    job: JobView
    logs: list[LogView]


class BatchItem(BaseModel):
    invoice_id: str
    job_id: str | None = None
    succeeded: bool
    status: str
    error: str | None = None


class BatchResult(BaseModel):
    tenant_id: str
    total: int
    succeeded: int
    failed: int
    items: list[BatchItem]


class _StageHalt(Exception):
    """Internal signal: the job reached its end state before the last stage."""


class PipelineOrchestrator:
    """Drives invoices through the pipeline. One instance per process."""

    def __init__(
        self,
        db: Database,
        settings: Settings,
        *,
        store: DocumentStore,
        ocr: TesseractOCRService | None,
        extraction: ExtractionService,
        classifier: InvoiceClassifier,
        resolver: CompanyResolver,
        validator: InvoiceValidator,
        usage: UsageTracker,
        submission: SubmissionService | None = None,
        rate_limiter: FixedWindowRateLimiter | None = None,
        dispatcher: JobDispatcher | None = None,
        notifier: WebhookNotificationDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.settings = settings
        self.store = store
        self.ocr = ocr
        self.extraction = extraction
        self.classifier = classifier
        self.resolver = resolver
        self.validator = validator
        self.usage = usage
        self.submission = submission
        self.rate_limiter = rate_limiter
        self.dispatcher = dispatcher
        self.notifier = notifier
        self._clock = clock

    # Admission

    async def enqueue(
        self, tenant_id: str, invoice_id: str, client_ip: str | None = None
    ) -> EnqueueResult:
        """Admit an uploaded invoice and schedule its processing job.

        Raises:
            RateLimitedError: Tenant's processing window is exhausted
            NotFoundError: Invoice missing or owned by another tenant
            ValidationError: Invoice is not UPLOADED
            ConflictError: A non-terminal job already exists for the invoice
            QuotaExceededError: Monthly invoice ceiling reached
        """
        if self.rate_limiter is not None:
            try:
                await self.rate_limiter.check(
                    OCR_RATE_LIMIT, ip=client_ip, tenant_id=tenant_id
                )
            except PipelineError:
                metrics.jobs_enqueued_total.labels(result="rate_limited").inc()
                raise

        result = await self.admit(tenant_id, invoice_id)

        if self.dispatcher is not None:
            try:
                await self.dispatcher.dispatch_job(result.job_id)
            except ExternalServiceError as e:
                await self._abandon_job(result.job_id, f"Dispatch failed: {e.message}")
                raise
        return result

    async def enqueue_batch(
        self, tenant_id: str, invoice_ids: Sequence[str], client_ip: str | None = None
    ) -> int:
        """Schedule a batch run; admission happens per invoice inside the batch task.

        Returns:
            Number of distinct invoices scheduled
        """
        unique_ids = list(dict.fromkeys(invoice_ids))
        if not unique_ids:
            raise ValidationError("No invoice ids given")
        if self.dispatcher is None:
            raise ValidationError("Background processing is not configured")
        if self.rate_limiter is not None:
            await self.rate_limiter.check(UPLOAD_RATE_LIMIT, ip=client_ip, tenant_id=tenant_id)

        await self.dispatcher.dispatch_batch(tenant_id, unique_ids)
        logger.info(f"Batch of {len(unique_ids)} invoices scheduled for tenant {tenant_id}")
        return len(unique_ids)

    async def admit(self, tenant_id: str, invoice_id: str) -> EnqueueResult:
        """Create a QUEUED job after the state, conflict and quota checks (no dispatch)."""
        try:
            async with self.db.transaction() as session:
                invoice = await self._get_invoice(session, tenant_id, invoice_id)
                tenant = await session.get(Tenant, tenant_id)
                if tenant is None:
                    raise NotFoundError(f"Tenant {tenant_id} not found")
                if invoice.status is not InvoiceStatus.UPLOADED:
                    raise ValidationError(
                        f"Invoice status is {invoice.status.value}, expected UPLOADED"
                    )
                if await self._active_job_id(session, invoice_id) is not None:
                    raise ConflictError("Invoice already has an active processing job")
        except ValidationError:
            metrics.jobs_enqueued_total.labels(result="invalid").inc()
            raise
        except ConflictError:
            metrics.jobs_enqueued_total.labels(result="conflict").inc()
            raise

        await self.usage.ensure_record(tenant_id)
        try:
            async with self.db.transaction() as session:
                # The conditional increment is the first write so the lock is taken up front
                await self.usage.admit(session, tenant)
                job = ProcessingJob(
                    invoice_id=invoice_id, tenant_id=tenant_id, status=JobStatus.QUEUED
                )
                session.add(job)
                await session.flush()
        except IntegrityError as e:
            metrics.jobs_enqueued_total.labels(result="conflict").inc()
            raise ConflictError("Invoice already has an active processing job") from e
        except PipelineError:
            metrics.jobs_enqueued_total.labels(result="quota_exceeded").inc()
            raise

        metrics.jobs_enqueued_total.labels(result="queued").inc()
        logger.info(f"Job {job.id} queued for invoice {invoice_id} (tenant {tenant_id})")
        return EnqueueResult(job_id=job.id, invoice_id=invoice_id, status=JobStatus.QUEUED)

    async def _abandon_job(self, job_id: str, message: str) -> None:
        async with self.db.transaction() as session:
            job = await session.get(ProcessingJob, job_id)
            if job is None or job.status is not JobStatus.QUEUED:
                return
            check_job_transition(job.status, JobStatus.FAILED)
            job.status = JobStatus.FAILED
            job.error_message = scrub_secrets(message)
            job.completed_at = self._clock()
        logger.error(f"Job {job_id} abandoned: {message}")

    # Status writes

    async def advance(
        self,
        job_id: str,
        step: ProcessingStep,
        log_status: LogStatus,
        *,
        job_status: JobStatus | None = None,
        invoice_status: InvoiceStatus | Sequence[InvoiceStatus] | None = None,
        invoice_updates: dict[str, Any] | None = None,
        job_updates: dict[str, Any] | None = None,
        result_update: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        submission: SubmissionResult | None = None,
    ) -> Invoice:
        """Apply job and invoice status changes plus one log row atomically.

        Either everything persists or nothing does.

        Raises:
            NotFoundError: Unknown job
            InvalidTransitionError: A status change along an undeclared edge
        """
        if invoice_status is None:
            invoice_path: Sequence[InvoiceStatus] = ()
        elif isinstance(invoice_status, InvoiceStatus):
            invoice_path = (invoice_status,)
        else:
            invoice_path = invoice_status

        async with self.db.transaction() as session:
            job = await session.get(ProcessingJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            invoice = await session.get(Invoice, job.invoice_id)
            if invoice is None:
                raise NotFoundError(f"Invoice {job.invoice_id} not found")

            if job_status is not None:
                check_job_transition(job.status, job_status)
                job.status = job_status
            for target in invoice_path:
                check_invoice_transition(invoice.status, target)
                invoice.status = target

            for name, value in (invoice_updates or {}).items():
                setattr(invoice, name, value)
            for name, value in (job_updates or {}).items():
                setattr(job, name, value)
            if result_update:
                job.result = {**(job.result or {}), **result_update}

            if submission is not None:
                await self._save_submission(session, invoice, submission)

            session.add(
                ProcessingLog(
                    job_id=job.id,
                    tenant_id=job.tenant_id,
                    step=step,
                    status=log_status,
                    metadata_=metadata,
                    created_at=self._clock(),
                )
            )
        return invoice

    async def _save_submission(
        self, session: AsyncSession, invoice: Invoice, result: SubmissionResult
    ) -> SubmissionRecord:
        record = await session.scalar(
            select(SubmissionRecord).where(SubmissionRecord.invoice_id == invoice.id)
        )
        if record is None:
            record = SubmissionRecord(invoice_id=invoice.id, tenant_id=invoice.tenant_id)
            session.add(record)
        elif record.status is SubmissionStatus.ACCEPTED:
            raise ConflictError(f"Submission for invoice {invoice.id} already accepted")

        record.reference_number = result.reference_number
        record.status = result.status
        record.rejection_reason = result.rejection_reason
        if result.document_xml is not None:
            record.document_xml = result.document_xml
            record.submitted_at = self._clock()
        if result.status is SubmissionStatus.ACCEPTED:
            record.external_number = result.ksef_number
            record.receipt_reference = result.receipt_reference
            record.accepted_at = self._clock()
            invoice.ksef_number = result.ksef_number
        return record

    # Pipeline

    async def run_job(self, job_id: str) -> JobView:
        """Run every stage of a QUEUED job to a terminal or review state.

        Never raises for stage failures: they are recorded on the job, the
        invoice and the audit trail.
        """
        async with self.db.transaction() as session:
            job = await session.get(ProcessingJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            if job.status is not JobStatus.QUEUED:
                logger.warning(f"Job {job_id} is {job.status.value}, not running it again")
                return JobView.model_validate(job)
            tenant = await session.get(Tenant, job.tenant_id)
            tenant_nip = tenant.nip if tenant else None

        logger.info(f"Running job {job_id} for invoice {job.invoice_id}")
        step = ProcessingStep.OCR
        try:
            invoice = await self.advance(
                job_id,
                ProcessingStep.OCR,
                LogStatus.STARTED,
                job_status=JobStatus.PROCESSING,
                invoice_status=InvoiceStatus.PROCESSING,
                job_updates={"started_at": self._clock()},
                metadata={"engine": self.settings.ocr_engine},
            )
            text, image_png = await self._run_ocr(job_id, invoice)

            step = ProcessingStep.AI_EXTRACT
            extraction = await self._run_extraction(job_id, text, image_png)

            step = ProcessingStep.CLASSIFY
            direction = await self._run_classification(job_id, extraction, tenant_nip, text)

            step = ProcessingStep.RESOLVE
            seller, buyer, unresolved = await self._run_resolution(
                job_id, invoice.tenant_id, extraction
            )

            step = ProcessingStep.VALIDATE
            invoice = await self._run_validation(job_id, extraction, direction, unresolved)

            step = ProcessingStep.SUBMIT
            await self._run_submission(job_id, invoice, seller, buyer, tenant_nip)
        except _StageHalt:
            pass
        except PipelineError as e:
            await self._fail(job_id, step, e)
        except Exception as e:
            logger.exception(f"Job {job_id} failed unexpectedly at {step.value}: {e}")
            await self._fail(
                job_id,
                step,
                PipelineError(f"Internal error during {step.value}: {type(e).__name__}"),
            )

        return await self._job_view(job_id)

    @asynccontextmanager
    async def _measure(self, step: ProcessingStep) -> AsyncIterator[None]:
        started = time.perf_counter()
        try:
            yield
        except _StageHalt:
            metrics.pipeline_stage_total.labels(step=step.value, outcome="completed").inc()
            raise
        except BaseException:
            metrics.pipeline_stage_total.labels(step=step.value, outcome="failed").inc()
            raise
        else:
            metrics.pipeline_stage_total.labels(step=step.value, outcome="completed").inc()
        finally:
            metrics.pipeline_stage_duration_seconds.labels(step=step.value).observe(
                time.perf_counter() - started
            )

    async def _run_ocr(self, job_id: str, invoice: Invoice) -> tuple[str | None, bytes | None]:
        async with self._measure(ProcessingStep.OCR):
            content = await self.store.fetch(invoice.file_path)
            image = await asyncio.to_thread(
                load_page_image, content, invoice.content_type, self.settings.pdf_render_scale
            )

            if self.ocr is None:
                # Vision path: recognition happens inside the extraction call
                image_png = await asyncio.to_thread(image_to_png_bytes, image)
                await self.advance(
                    job_id,
                    ProcessingStep.OCR,
                    LogStatus.COMPLETED,
                    job_status=JobStatus.TEXT_EXTRACTED,
                    metadata={"engine": "vision", "image_bytes": len(image_png)},
                )
                return None, image_png

            result = await self.ocr.extract_text(image)
            if not result.success:
                raise ExternalServiceError(
                    f"OCR failed: {result.error}",
                    provider=result.engine,
                    latency_ms=result.elapsed_ms,
                )
            if not result.text.strip():
                raise DocumentError("No text recognised on the document")

            await self.advance(
                job_id,
                ProcessingStep.OCR,
                LogStatus.COMPLETED,
                job_status=JobStatus.TEXT_EXTRACTED,
                invoice_updates={
                    "raw_ocr_text": result.text,
                    "ocr_confidence": result.confidence,
                },
                result_update={
                    "ocr": {"confidence": result.confidence, "chars": len(result.text)}
                },
                metadata={
                    "engine": result.engine,
                    "confidence": result.confidence,
                    "elapsed_ms": result.elapsed_ms,
                },
            )
            return result.text, None

    async def _run_extraction(
        self, job_id: str, text: str | None, image_png: bytes | None
    ) -> ExtractionOutcome:
        async with self._measure(ProcessingStep.AI_EXTRACT):
            await self.advance(job_id, ProcessingStep.AI_EXTRACT, LogStatus.STARTED)
            if text is not None:
                outcome = await self.extraction.extract(text=text)
            else:
                outcome = await self.extraction.extract(image_png=image_png)

            data = outcome.data
            await self.advance(
                job_id,
                ProcessingStep.AI_EXTRACT,
                LogStatus.COMPLETED,
                invoice_status=InvoiceStatus.EXTRACTED,
                invoice_updates={
                    "invoice_number": data.invoice_number,
                    "issue_date": data.issue_date,
                    "due_date": data.due_date,
                    "sale_date": data.sale_date,
                    "currency": data.currency,
                    "net_amount": data.net_amount,
                    "vat_amount": data.vat_amount,
                    "gross_amount": data.gross_amount,
                    "line_items": [item.model_dump(mode="json") for item in data.line_items],
                    "seller_name": data.seller.name,
                    "seller_nip": data.seller.nip,
                    "seller_address": data.seller.address,
                    "buyer_name": data.buyer.name,
                    "buyer_nip": data.buyer.nip,
                    "buyer_address": data.buyer.address,
                    "extracted_data": data.model_dump(mode="json"),
                    "confidence_scores": outcome.confidence.model_dump(exclude_none=True),
                    "overall_confidence": outcome.overall_confidence,
                },
                result_update={
                    "extraction": {
                        "provider": outcome.provider,
                        "attempts": outcome.attempts,
                        "overall_confidence": outcome.overall_confidence,
                    }
                },
                metadata={
                    "provider": outcome.provider,
                    "attempts": outcome.attempts,
                    "overall_confidence": outcome.overall_confidence,
                    "amounts_consistent": outcome.amounts_consistent,
                    "latency_ms": outcome.latency_ms,
                },
            )
            return outcome

    async def _run_classification(
        self,
        job_id: str,
        extraction: ExtractionOutcome,
        tenant_nip: str | None,
        text: str | None,
    ) -> InvoiceDirection:
        async with self._measure(ProcessingStep.CLASSIFY):
            await self.advance(job_id, ProcessingStep.CLASSIFY, LogStatus.STARTED)
            classification = await self.classifier.classify(extraction.data, tenant_nip, text)
            await self.advance(
                job_id,
                ProcessingStep.CLASSIFY,
                LogStatus.COMPLETED,
                invoice_updates={
                    "direction": classification.direction,
                    "direction_confidence": classification.confidence,
                },
                result_update={"direction": classification.direction.value},
                metadata={
                    "direction": classification.direction.value,
                    "confidence": classification.confidence,
                    "method": classification.method,
                },
            )
            return classification.direction

    async def _run_resolution(
        self, job_id: str, tenant_id: str, extraction: ExtractionOutcome
    ) -> tuple[Company | None, Company | None, list[str]]:
        async with self._measure(ProcessingStep.RESOLVE):
            await self.advance(job_id, ProcessingStep.RESOLVE, LogStatus.STARTED)

            data = extraction.data
            parties = [
                (label, party.nip)
                for label, party in (("seller", data.seller), ("buyer", data.buyer))
                if party.nip
            ]
            outcomes: list[ResolutionOutcome] = await self.resolver.resolve_batch(
                tenant_id, [nip for _, nip in parties]
            )
            by_party = dict(zip((label for label, _ in parties), outcomes, strict=True))

            unresolved = [label for label, outcome in by_party.items() if not outcome.resolved]
            seller_id = by_party["seller"].company_id if "seller" in by_party else None
            buyer_id = by_party["buyer"].company_id if "buyer" in by_party else None

            invoice = await self.advance(
                job_id,
                ProcessingStep.RESOLVE,
                LogStatus.COMPLETED,
                invoice_updates={"seller_company_id": seller_id, "buyer_company_id": buyer_id},
                metadata={
                    label: {
                        "nip": outcome.nip,
                        "action": outcome.action.value,
                        "message": outcome.message,
                    }
                    for label, outcome in by_party.items()
                },
            )

            async with self.db.session() as session:
                seller, buyer = await self._parties(session, invoice)
            return seller, buyer, unresolved

    async def _run_validation(
        self,
        job_id: str,
        extraction: ExtractionOutcome,
        direction: InvoiceDirection,
        unresolved: list[str],
    ) -> Invoice:
        async with self._measure(ProcessingStep.VALIDATE):
            await self.advance(job_id, ProcessingStep.VALIDATE, LogStatus.STARTED)
            report = self.validator.validate(
                extraction.data,
                confidence=extraction.confidence,
                overall_confidence=extraction.overall_confidence,
                direction=direction,
                unresolved_parties=unresolved,
            )
            report.raise_for_outcome()

            now = self._clock()
            metadata = {"outcome": report.outcome.value, "reasons": report.review_reasons}
            if report.outcome is ValidationOutcome.SOFT_FAIL:
                await self.advance(
                    job_id,
                    ProcessingStep.VALIDATE,
                    LogStatus.COMPLETED,
                    job_status=JobStatus.COMPLETED,
                    invoice_status=InvoiceStatus.NEEDS_REVIEW,
                    invoice_updates={"review_reasons": report.review_reasons, "processed_at": now},
                    job_updates={"completed_at": now},
                    result_update={"validation": metadata},
                    metadata=metadata,
                )
                metrics.invoice_outcomes_total.labels(status=InvoiceStatus.NEEDS_REVIEW.value).inc()
                logger.info(f"Job {job_id}: invoice needs review: {report.review_reasons}")
                raise _StageHalt()

            submit_now = self.settings.auto_submit and self.submission is not None
            invoice = await self.advance(
                job_id,
                ProcessingStep.VALIDATE,
                LogStatus.COMPLETED,
                job_status=None if submit_now else JobStatus.COMPLETED,
                invoice_status=InvoiceStatus.VALIDATED,
                invoice_updates={"review_reasons": [], "processed_at": now},
                job_updates=None if submit_now else {"completed_at": now},
                result_update={"validation": metadata},
                metadata=metadata,
            )
            if not submit_now:
                metrics.invoice_outcomes_total.labels(status=InvoiceStatus.VALIDATED.value).inc()
                raise _StageHalt()
            return invoice

    async def _run_submission(
        self,
        job_id: str,
        invoice: Invoice,
        seller: Company | None,
        buyer: Company | None,
        tenant_nip: str | None,
    ) -> None:
        assert self.submission is not None
        async with self._measure(ProcessingStep.SUBMIT):
            self._guard_resubmission(invoice)
            await self.advance(job_id, ProcessingStep.SUBMIT, LogStatus.STARTED)
            result = await self.submission.submit(
                invoice, seller, buyer, context_nip=tenant_nip
            )

            now = self._clock()
            metadata = {
                "reference_number": result.reference_number,
                "status": result.status.value,
                "polls": result.polls,
                "ksef_number": result.ksef_number,
            }
            if result.status is SubmissionStatus.REJECTED:
                message = f"Gateway rejected the invoice: {result.rejection_reason}"
                await self.advance(
                    job_id,
                    ProcessingStep.SUBMIT,
                    LogStatus.FAILED,
                    job_status=JobStatus.FAILED,
                    invoice_status=(InvoiceStatus.SUBMITTED, InvoiceStatus.REJECTED),
                    job_updates={
                        "error_message": scrub_secrets(message),
                        "failed_step": ProcessingStep.SUBMIT,
                        "completed_at": now,
                    },
                    result_update={"submission": metadata},
                    metadata={**metadata, "error": message},
                    submission=result,
                )
                metrics.invoice_outcomes_total.labels(status=InvoiceStatus.REJECTED.value).inc()
                return

            path = (
                (InvoiceStatus.SUBMITTED, InvoiceStatus.ACCEPTED)
                if result.status is SubmissionStatus.ACCEPTED
                else (InvoiceStatus.SUBMITTED,)
            )
            await self.advance(
                job_id,
                ProcessingStep.SUBMIT,
                LogStatus.COMPLETED,
                job_status=JobStatus.COMPLETED,
                invoice_status=path,
                job_updates={"completed_at": now},
                result_update={"submission": metadata},
                metadata=metadata,
                submission=result,
            )
            metrics.invoice_outcomes_total.labels(status=path[-1].value).inc()

            if result.status is SubmissionStatus.PENDING and self.dispatcher is not None:
                await self.dispatcher.schedule_submission_poll(
                    invoice.id, self.settings.ksef_status_recheck_seconds
                )

    async def _fail(self, job_id: str, step: ProcessingStep, error: PipelineError) -> None:
        message = scrub_secrets(error.message)
        metadata: dict[str, Any] = {"error": error.code, "message": message}
        if isinstance(error, ExternalServiceError):
            metadata["provider"] = error.provider
            metadata["latency_ms"] = error.latency_ms
            metrics.external_call_failures_total.labels(provider=error.provider).inc()
        if isinstance(error, StructuralValidationError):
            metadata["severity"] = error.severity
            metadata["reasons"] = [scrub_secrets(r) for r in error.reasons]

        now = self._clock()
        async with self.db.transaction() as session:
            job = await session.get(ProcessingJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            invoice = await session.get(Invoice, job.invoice_id)

            if job.status not in ACTIVE_JOB_STATUSES:
                logger.error(
                    f"Job {job_id} already {job.status.value}; failure at {step.value} ignored"
                )
                return
            check_job_transition(job.status, JobStatus.FAILED)
            job.status = JobStatus.FAILED
            job.error_message = f"{step.value}: {message}"
            job.failed_step = step
            job.completed_at = now

            if invoice is not None:
                target = (
                    InvoiceStatus.REJECTED
                    if isinstance(error, GatewayRejectedError)
                    else InvoiceStatus.FAILED
                )
                if can_transition_invoice(invoice.status, target):
                    invoice.status = target
                    invoice.processed_at = now
                    if isinstance(error, StructuralValidationError):
                        invoice.review_reasons = list(metadata["reasons"])
                else:
                    logger.warning(
                        f"Invoice {invoice.id} left at {invoice.status.value} after job failure"
                    )
                metrics.invoice_outcomes_total.labels(status=invoice.status.value).inc()

            session.add(
                ProcessingLog(
                    job_id=job_id,
                    tenant_id=job.tenant_id,
                    step=step,
                    status=LogStatus.FAILED,
                    metadata_=metadata,
                    created_at=now,
                )
            )
        logger.warning(f"Job {job_id} failed at {step.value}: {message}")

    # Submission outside the pipeline

    @staticmethod
    def _guard_resubmission(invoice: Invoice) -> None:
        if invoice.ksef_number:
            raise ConflictError(
                f"Invoice already accepted by the gateway as {invoice.ksef_number}"
            )

    async def submit_invoice(self, tenant_id: str, invoice_id: str) -> SubmissionResult:
        """Manually submit a VALIDATED invoice.

        An invoice holding an external number is refused before any network call.

        Raises:
            NotFoundError: Invoice missing or owned by another tenant
            ConflictError: Already accepted, or a job is active for the invoice
            ValidationError: Invoice not VALIDATED, or submission not configured
            ExternalServiceError: Gateway authentication or transport failure
        """
        async with self.db.session() as session:
            invoice = await self._get_invoice(session, tenant_id, invoice_id)
            self._guard_resubmission(invoice)
            if invoice.status is not InvoiceStatus.VALIDATED:
                raise ValidationError(
                    f"Invoice status is {invoice.status.value}, expected VALIDATED"
                )
            if await self._active_job_id(session, invoice_id) is not None:
                raise ConflictError("Invoice has an active processing job")
            seller, buyer = await self._parties(session, invoice)
            tenant = await session.get(Tenant, tenant_id)

        if self.submission is None:
            raise ValidationError("Gateway submission is not configured")

        try:
            result = await self.submission.submit(
                invoice, seller, buyer, context_nip=tenant.nip if tenant else None
            )
        except GatewayRejectedError as e:
            await self._record_manual_rejection(invoice_id, scrub_secrets(e.message))
            raise

        await self._apply_submission(invoice_id, result)
        if result.status is SubmissionStatus.PENDING and self.dispatcher is not None:
            await self.dispatcher.schedule_submission_poll(
                invoice_id, self.settings.ksef_status_recheck_seconds
            )
        return result

    async def _record_manual_rejection(self, invoice_id: str, reason: str) -> None:
        async with self.db.transaction() as session:
            invoice = await session.get(Invoice, invoice_id)
            if invoice is None:
                return
            check_invoice_transition(invoice.status, InvoiceStatus.REJECTED)
            invoice.status = InvoiceStatus.REJECTED
            invoice.review_reasons = [reason]
        logger.info(f"Invoice {invoice_id} rejected by the gateway: {reason}")

    async def _apply_submission(self, invoice_id: str, result: SubmissionResult) -> None:
        async with self.db.transaction() as session:
            invoice = await session.get(Invoice, invoice_id)
            if invoice is None:
                raise NotFoundError(f"Invoice {invoice_id} not found")
            if invoice.status is InvoiceStatus.VALIDATED:
                check_invoice_transition(invoice.status, InvoiceStatus.SUBMITTED)
                invoice.status = InvoiceStatus.SUBMITTED
            if result.status is SubmissionStatus.ACCEPTED:
                check_invoice_transition(invoice.status, InvoiceStatus.ACCEPTED)
                invoice.status = InvoiceStatus.ACCEPTED
            elif result.status is SubmissionStatus.REJECTED:
                check_invoice_transition(invoice.status, InvoiceStatus.REJECTED)
                invoice.status = InvoiceStatus.REJECTED
                invoice.review_reasons = [result.rejection_reason or "Rejected by the gateway"]
            await self._save_submission(session, invoice, result)

    async def refresh_submission(self, invoice_id: str) -> SubmissionResult | None:
        """Re-poll a PENDING submission and record a final decision.

        Returns:
            The refreshed result, or None when nothing is pending for the invoice
        """
        async with self.db.session() as session:
            invoice = await session.get(Invoice, invoice_id)
            if invoice is None:
                raise NotFoundError(f"Invoice {invoice_id} not found")
            record = await session.scalar(
                select(SubmissionRecord).where(SubmissionRecord.invoice_id == invoice_id)
            )
            tenant = await session.get(Tenant, invoice.tenant_id)

        if (
            self.submission is None
            or invoice.status is not InvoiceStatus.SUBMITTED
            or record is None
            or record.status is not SubmissionStatus.PENDING
            or not record.reference_number
        ):
            logger.info(f"No pending submission for invoice {invoice_id}")
            return None

        result = await self.submission.refresh(
            invoice, record.reference_number, tenant.nip if tenant else None
        )
        if result.status is not SubmissionStatus.PENDING:
            await self._apply_submission(invoice_id, result)
            metrics.invoice_outcomes_total.labels(status=result.status.value).inc()
        return result

    # Operator actions and reads

    async def reset_for_reprocessing(self, tenant_id: str, invoice_id: str) -> InvoiceStatus:
        """Send a FAILED, NEEDS_REVIEW or REJECTED invoice back to UPLOADED.

        Raises:
            NotFoundError: Invoice missing or owned by another tenant
            ValidationError: Invoice is in a state that cannot be reprocessed
            ConflictError: A job is still active for the invoice
        """
        async with self.db.transaction() as session:
            invoice = await self._get_invoice(session, tenant_id, invoice_id)
            if invoice.status not in REPROCESSABLE_STATUSES:
                raise ValidationError(
                    f"Invoice status {invoice.status.value} cannot be reprocessed"
                )
            if await self._active_job_id(session, invoice_id) is not None:
                raise ConflictError("Invoice has an active processing job")
            check_invoice_transition(invoice.status, InvoiceStatus.UPLOADED)
            previous = invoice.status
            invoice.status = InvoiceStatus.UPLOADED
            invoice.review_reasons = None
        logger.info(f"Invoice {invoice_id} reset from {previous.value} for reprocessing")
        return InvoiceStatus.UPLOADED

    async def process_batch(self, tenant_id: str, invoice_ids: Sequence[str]) -> BatchResult:
        """Admit and run each invoice in turn, then send one completion summary."""
        items: list[BatchItem] = []
        for invoice_id in invoice_ids:
            try:
                admitted = await self.admit(tenant_id, invoice_id)
            except PipelineError as e:
                items.append(
                    BatchItem(
                        invoice_id=invoice_id, succeeded=False, status=e.code, error=e.message
                    )
                )
                continue
            job = await self.run_job(admitted.job_id)
            items.append(
                BatchItem(
                    invoice_id=invoice_id,
                    job_id=job.id,
                    succeeded=job.status is JobStatus.COMPLETED,
                    status=job.status.value,
                    error=job.error_message,
                )
            )

        succeeded = sum(1 for item in items if item.succeeded)
        result = BatchResult(
            tenant_id=tenant_id,
            total=len(items),
            succeeded=succeeded,
            failed=len(items) - succeeded,
            items=items,
        )
        logger.info(f"Batch for tenant {tenant_id}: {succeeded}/{len(items)} succeeded")

        if self.notifier is not None:
            await self.notifier.send_batch_summary(
                BatchCompletionSummary(
                    tenant_id=tenant_id,
                    total=result.total,
                    succeeded=result.succeeded,
                    failed=result.failed,
                )
            )
        return result

    async def job_audit(self, job_id: str, tenant_id: str | None = None) -> JobAudit:
        """Job header plus its log rows in write order."""
        async with self.db.session() as session:
            job = await session.get(ProcessingJob, job_id)
            if job is None or (tenant_id is not None and job.tenant_id != tenant_id):
                raise NotFoundError(f"Job {job_id} not found")
            logs = (
                await session.scalars(
                    select(ProcessingLog)
                    .where(ProcessingLog.job_id == job_id)
                    .order_by(ProcessingLog.id)
                )
            ).all()
        return JobAudit(
            job=JobView.model_validate(job),
            logs=[LogView.model_validate(row) for row in logs],
        )

    async def _job_view(self, job_id: str) -> JobView:
        async with self.db.session() as session:
            job = await session.get(ProcessingJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            return JobView.model_validate(job)

    @staticmethod
    async def _parties(
        session: AsyncSession, invoice: Invoice
    ) -> tuple[Company | None, Company | None]:
        seller = (
            await session.get(Company, invoice.seller_company_id)
            if invoice.seller_company_id
            else None
        )
        buyer = (
            await session.get(Company, invoice.buyer_company_id)
            if invoice.buyer_company_id
            else None
        )
        return seller, buyer

    @staticmethod
    async def _get_invoice(session: AsyncSession, tenant_id: str, invoice_id: str) -> Invoice:
        invoice = await session.get(Invoice, invoice_id)
        if invoice is None or invoice.tenant_id != tenant_id:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    @staticmethod
    async def _active_job_id(session: AsyncSession, invoice_id: str) -> str | None:
        return await session.scalar(
            select(ProcessingJob.id).where(
                ProcessingJob.invoice_id == invoice_id,
                ProcessingJob.status.in_(ACTIVE_JOB_STATUSES),
            )
        )

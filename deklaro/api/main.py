"""FastAPI application for invoice processing.

Production-ready API with:
- Health and readiness checks for Kubernetes
- Processing admission (single invoice and batch)
- Manual gateway submission and operator reset
- Job audit trail and quota snapshot
- Structured error responses with rate limit headers
- Prometheus metrics for monitoring

Run with: uvicorn deklaro.api.main:create_app --factory

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from deklaro.api import metrics
from deklaro.db.models import InvoiceStatus, JobStatus, SubmissionStatus
from deklaro.orchestrator.orchestrator import JobAudit
from deklaro.shared.config import get_settings
from deklaro.shared.container import ServiceContainer, build_services
from deklaro.shared.errors import PipelineError, RateLimitedError, ValidationError
from deklaro.shared.logging import configure_logging, scrub_secrets
from deklaro.usage.tracker import QuotaSnapshot

MAX_BATCH_SIZE = 100


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool


class ProcessResponse(BaseModel):
    """Processing admission response."""

    job_id: str
    invoice_id: str
    status: JobStatus


class BatchRequest(BaseModel):
    invoice_ids: list[str] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE)


class BatchResponse(BaseModel):
    accepted: int


class SubmitResponse(BaseModel):
    invoice_id: str
    reference_number: str
    status: SubmissionStatus
    ksef_number: str | None = None
    rejection_reason: str | None = None


class ResetResponse(BaseModel):
    invoice_id: str
    status: InvoiceStatus


def tenant_id_header(x_tenant_id: str | None = Header(default=None)) -> str:
    """Tenant context supplied by the authenticating front end."""
    if not x_tenant_id:
        raise ValidationError("Missing X-Tenant-Id header")
    return x_tenant_id


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def create_app(services: ServiceContainer | None = None) -> FastAPI:
    """Build the API.

    Args:
        services: Prebuilt container (tests); built from settings at startup if None
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if services is not None:
            app.state.services = services
            yield
            return
        settings = get_settings()
        configure_logging(settings)
        app.state.services = await build_services(settings)
        try:
            yield
        finally:
            await app.state.services.aclose()

    app = FastAPI(
        title="Deklaro Invoice Pipeline",
        description="Invoice OCR, extraction, validation and e-invoicing submission API",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    def get_services(request: Request) -> ServiceContainer:
        return request.app.state.services

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Middleware to collect request metrics.

        Tracks:
        - Request count by method, route, and status
        - Request duration by method and route
        """
        # Skip metrics for /metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        metrics.http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
        ).inc()
        metrics.http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        body = exc.to_dict()
        body["message"] = scrub_secrets(exc.message)
        headers = exc.headers() if isinstance(exc, RateLimitedError) else None
        return JSONResponse(status_code=exc.http_status, content=body, headers=headers)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def health_check(request: Request) -> HealthResponse:
        """Health check endpoint for liveness probe."""
        settings = get_services(request).settings
        return HealthResponse(
            status="healthy", version=settings.service_version, service=settings.service_name
        )

    @app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
    async def readiness_check(request: Request, response: Response) -> ReadinessResponse:
        """Readiness check endpoint: the database must answer."""
        try:
            async with get_services(request).db.session() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return ReadinessResponse(ready=False)
        return ReadinessResponse(ready=True)

    @app.get("/metrics", tags=["Monitoring"])
    def get_metrics() -> Response:
        """Prometheus metrics endpoint."""
        metrics_data, content_type = metrics.get_metrics()
        return Response(content=metrics_data, media_type=content_type)

    @app.post(
        "/api/v1/invoices/batch",
        response_model=BatchResponse,
        status_code=status.HTTP_202_ACCEPTED,
        tags=["Invoices"],
    )
    async def process_batch(
        body: BatchRequest,
        request: Request,
        tenant_id: str = Depends(tenant_id_header),  # noqa: B008
    ) -> BatchResponse:
        """Schedule processing of several uploaded invoices.

        Each invoice is admitted individually inside the batch task; one summary
        notification is sent when the batch finishes.
        """
        accepted = await get_services(request).orchestrator.enqueue_batch(
            tenant_id, body.invoice_ids, _client_ip(request)
        )
        return BatchResponse(accepted=accepted)

    @app.post(
        "/api/v1/invoices/{invoice_id}/process",
        response_model=ProcessResponse,
        status_code=status.HTTP_202_ACCEPTED,
        tags=["Invoices"],
    )
    async def process_invoice(
        invoice_id: str,
        request: Request,
        tenant_id: str = Depends(tenant_id_header),  # noqa: B008
    ) -> ProcessResponse:
        """Admit an uploaded invoice for processing.

        ## Error Handling

        - Returns 400 if the invoice is not UPLOADED
        - Returns 404 if the invoice does not exist for the tenant
        - Returns 409 if a processing job is already active
        - Returns 429 if the monthly quota or the rate limit is exceeded
        """
        result = await get_services(request).orchestrator.enqueue(
            tenant_id, invoice_id, _client_ip(request)
        )
        return ProcessResponse(
            job_id=result.job_id, invoice_id=result.invoice_id, status=result.status
        )

    @app.post(
        "/api/v1/invoices/{invoice_id}/submit",
        response_model=SubmitResponse,
        tags=["Invoices"],
    )
    async def submit_invoice(
        invoice_id: str,
        request: Request,
        tenant_id: str = Depends(tenant_id_header),  # noqa: B008
    ) -> SubmitResponse:
        """Submit a VALIDATED invoice to the e-invoicing gateway."""
        result = await get_services(request).orchestrator.submit_invoice(tenant_id, invoice_id)
        return SubmitResponse(
            invoice_id=invoice_id,
            reference_number=result.reference_number,
            status=result.status,
            ksef_number=result.ksef_number,
            rejection_reason=result.rejection_reason,
        )

    @app.post(
        "/api/v1/invoices/{invoice_id}/reset",
        response_model=ResetResponse,
        tags=["Invoices"],
    )
    async def reset_invoice(
        invoice_id: str,
        request: Request,
        tenant_id: str = Depends(tenant_id_header),  # noqa: B008
    ) -> ResetResponse:
        """Return a failed, rejected or reviewed invoice to UPLOADED for reprocessing."""
        new_status = await get_services(request).orchestrator.reset_for_reprocessing(
            tenant_id, invoice_id
        )
        return ResetResponse(invoice_id=invoice_id, status=new_status)

    @app.get("/api/v1/jobs/{job_id}", response_model=JobAudit, tags=["Jobs"])
    async def get_job(
        job_id: str,
        request: Request,
        tenant_id: str = Depends(tenant_id_header),  # noqa: B008
    ) -> JobAudit:
        """Job header and its audit trail, one row per stage transition."""
        return await get_services(request).orchestrator.job_audit(job_id, tenant_id)

    @app.get("/api/v1/usage", response_model=QuotaSnapshot, tags=["Usage"])
    async def get_usage(
        request: Request,
        tenant_id: str = Depends(tenant_id_header),  # noqa: B008
    ) -> QuotaSnapshot:
        """Current period's quota for the tenant."""
        return await get_services(request).usage.quota_snapshot(tenant_id)

    return app

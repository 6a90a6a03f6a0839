"""Unit tests for the invoice processing API.

Tests cover:
- Health, readiness and metrics endpoints
- Processing admission (single and batch)
- Error mapping, including rate limit headers and secret scrubbing
- Submission, reset, job audit and usage reads
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from deklaro.api.main import create_app
from deklaro.db.models import (
    InvoiceStatus,
    JobStatus,
    LogStatus,
    ProcessingStep,
    SubmissionStatus,
    SubscriptionTier,
)
from deklaro.orchestrator.orchestrator import EnqueueResult, JobAudit, JobView, LogView
from deklaro.shared.config import Settings
from deklaro.shared.errors import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    QuotaExceededError,
    RateLimitedError,
)
from deklaro.submission.service import SubmissionResult
from deklaro.usage.tracker import InvoiceQuota, QuotaSnapshot

TENANT = {"X-Tenant-Id": "tenant-1"}
CREATED = datetime(2024, 1, 15, 10, 0, tzinfo=UTC)


@pytest.fixture
def services(settings: Settings) -> MagicMock:
    """Service container with mocked orchestrator, usage and database."""
    container = MagicMock()
    container.settings = settings
    container.orchestrator = AsyncMock()
    container.usage = AsyncMock()
    session = MagicMock()
    session.execute = AsyncMock()
    container.db.session.return_value.__aenter__.return_value = session
    return container


@pytest.fixture
def client(services: MagicMock) -> TestClient:
    """Create test client."""
    return TestClient(create_app(services))


class TestHealth:
    def test_health_check(self, client: TestClient, settings: Settings) -> None:
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == settings.service_name
        assert data["version"] == settings.service_version

    def test_ready(self, client: TestClient) -> None:
        response = client.get("/ready")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"ready": True}

    def test_not_ready_when_database_down(
        self, client: TestClient, services: MagicMock
    ) -> None:
        session = services.db.session.return_value.__aenter__.return_value
        session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("locked"))

        response = client.get("/ready")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json() == {"ready": False}

    def test_metrics_endpoint(self, client: TestClient) -> None:
        """Should expose request and pipeline metrics in Prometheus format."""
        client.get("/health")

        response = client.get("/metrics")

        assert response.status_code == status.HTTP_200_OK
        assert "text/plain" in response.headers["content-type"]
        assert "http_requests_total" in response.text
        assert "jobs_enqueued_total" in response.text


class TestProcess:
    def test_admitted(self, client: TestClient, services: MagicMock) -> None:
        services.orchestrator.enqueue.return_value = EnqueueResult(
            job_id="job-1", invoice_id="inv-1", status=JobStatus.QUEUED
        )

        response = client.post(
            "/api/v1/invoices/inv-1/process",
            headers={**TENANT, "X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
        )

        assert response.status_code == status.HTTP_202_ACCEPTED
        assert response.json() == {"job_id": "job-1", "invoice_id": "inv-1", "status": "QUEUED"}
        services.orchestrator.enqueue.assert_awaited_once_with(
            "tenant-1", "inv-1", "203.0.113.7"
        )

    def test_missing_tenant_header(self, client: TestClient, services: MagicMock) -> None:
        response = client.post("/api/v1/invoices/inv-1/process")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "validation_error"
        services.orchestrator.enqueue.assert_not_awaited()

    def test_conflict(self, client: TestClient, services: MagicMock) -> None:
        services.orchestrator.enqueue.side_effect = ConflictError(
            "Invoice already has an active processing job"
        )

        response = client.post("/api/v1/invoices/inv-1/process", headers=TENANT)

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json() == {
            "error": "conflict",
            "message": "Invoice already has an active processing job",
        }

    def test_quota_exceeded(self, client: TestClient, services: MagicMock) -> None:
        services.orchestrator.enqueue.side_effect = QuotaExceededError(
            "Monthly invoice limit reached", tier="STARTER", current=100, limit=100
        )

        response = client.post("/api/v1/invoices/inv-1/process", headers=TENANT)

        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        body = response.json()
        assert (body["tier"], body["current"], body["limit"]) == ("STARTER", 100, 100)

    def test_rate_limited_headers(self, client: TestClient, services: MagicMock) -> None:
        services.orchestrator.enqueue.side_effect = RateLimitedError(
            "Rate limit exceeded", limit=30, remaining=0, retry_after=42
        )

        response = client.post("/api/v1/invoices/inv-1/process", headers=TENANT)

        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert response.headers["Retry-After"] == "42"
        assert response.headers["X-RateLimit-Limit"] == "30"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_error_message_scrubbed(self, client: TestClient, services: MagicMock) -> None:
        services.orchestrator.enqueue.side_effect = ExternalServiceError(
            "Queue unavailable: password=hunter2", provider="queue"
        )

        response = client.post("/api/v1/invoices/inv-1/process", headers=TENANT)

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert "hunter2" not in response.text
        assert response.json()["provider"] == "queue"


class TestBatch:
    def test_scheduled(self, client: TestClient, services: MagicMock) -> None:
        services.orchestrator.enqueue_batch.return_value = 2

        response = client.post(
            "/api/v1/invoices/batch", json={"invoice_ids": ["a", "b", "a"]}, headers=TENANT
        )

        assert response.status_code == status.HTTP_202_ACCEPTED
        assert response.json() == {"accepted": 2}
        args = services.orchestrator.enqueue_batch.await_args.args
        assert args[:2] == ("tenant-1", ["a", "b", "a"])

    def test_empty_batch_rejected(self, client: TestClient, services: MagicMock) -> None:
        response = client.post("/api/v1/invoices/batch", json={"invoice_ids": []}, headers=TENANT)

        assert response.status_code == 422
        services.orchestrator.enqueue_batch.assert_not_awaited()

    def test_batch_too_large(self, client: TestClient) -> None:
        ids = [f"inv-{i}" for i in range(101)]

        response = client.post("/api/v1/invoices/batch", json={"invoice_ids": ids}, headers=TENANT)

        assert response.status_code == 422


class TestInvoiceActions:
    def test_submit(self, client: TestClient, services: MagicMock) -> None:
        services.orchestrator.submit_invoice.return_value = SubmissionResult(
            reference_number="20240115-EE-0001",
            status=SubmissionStatus.ACCEPTED,
            ksef_number="1234563218-20240115-0A1B2C3D4E-5F",
            document_xml=b"<Faktura/>",
        )

        response = client.post("/api/v1/invoices/inv-1/submit", headers=TENANT)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "invoice_id": "inv-1",
            "reference_number": "20240115-EE-0001",
            "status": "ACCEPTED",
            "ksef_number": "1234563218-20240115-0A1B2C3D4E-5F",
            "rejection_reason": None,
        }

    def test_reset(self, client: TestClient, services: MagicMock) -> None:
        services.orchestrator.reset_for_reprocessing.return_value = InvoiceStatus.UPLOADED

        response = client.post("/api/v1/invoices/inv-1/reset", headers=TENANT)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"invoice_id": "inv-1", "status": "UPLOADED"}
        services.orchestrator.reset_for_reprocessing.assert_awaited_once_with(
            "tenant-1", "inv-1"
        )


class TestReads:
    def test_job_audit(self, client: TestClient, services: MagicMock) -> None:
        services.orchestrator.job_audit.return_value = JobAudit(
            job=JobView(
                id="job-1",
                invoice_id="inv-1",
                tenant_id="tenant-1",
                status=JobStatus.FAILED,
                error_message="OCR: OCR failed: OCR engine timed out: 30s",
                failed_step=ProcessingStep.OCR,
                result={},
                created_at=CREATED,
            ),
            logs=[
                LogView(step=ProcessingStep.OCR, status=LogStatus.STARTED, created_at=CREATED),
                LogView(
                    step=ProcessingStep.OCR,
                    status=LogStatus.FAILED,
                    metadata_={"error": "external_service_error"},
                    created_at=CREATED,
                ),
            ],
        )

        response = client.get("/api/v1/jobs/job-1", headers=TENANT)

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["job"]["failed_step"] == "OCR"
        assert [(row["step"], row["status"]) for row in body["logs"]] == [
            ("OCR", "STARTED"),
            ("OCR", "FAILED"),
        ]
        assert body["logs"][1]["metadata"] == {"error": "external_service_error"}
        services.orchestrator.job_audit.assert_awaited_once_with("job-1", "tenant-1")

    def test_job_not_found(self, client: TestClient, services: MagicMock) -> None:
        services.orchestrator.job_audit.side_effect = NotFoundError("Job job-9 not found")

        response = client.get("/api/v1/jobs/job-9", headers=TENANT)

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_usage(self, client: TestClient, services: MagicMock) -> None:
        services.usage.quota_snapshot.return_value = QuotaSnapshot(
            tier=SubscriptionTier.PRO,
            invoices=InvoiceQuota(current=42, limit=500),
            period="2024-01",
        )

        response = client.get("/api/v1/usage", headers=TENANT)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "tier": "PRO",
            "invoices": {"current": 42, "limit": 500},
            "period": "2024-01",
        }

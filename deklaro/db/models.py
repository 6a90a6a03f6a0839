"""SQLAlchemy ORM models for invoices, processing jobs and their audit trail.

Uniqueness rules are enforced here rather than in process memory, so they hold
across worker processes:

- at most one non-terminal processing job per invoice (partial unique index)
- one company per (tenant, NIP)
- one usage record per (tenant, period)
- one submission record per invoice
"""

import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class InvoiceStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    EXTRACTED = "EXTRACTED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    VALIDATED = "VALIDATED"
    SUBMITTED = "SUBMITTED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    TEXT_EXTRACTED = "TEXT_EXTRACTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.TEXT_EXTRACTED)
TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class ProcessingStep(str, Enum):
    OCR = "OCR"
    AI_EXTRACT = "AI_EXTRACT"
    CLASSIFY = "CLASSIFY"
    RESOLVE = "RESOLVE"
    VALIDATE = "VALIDATE"
    SUBMIT = "SUBMIT"


class LogStatus(str, Enum):
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class InvoiceDirection(str, Enum):
    INCOMING = "INCOMING"
    OUTGOING = "OUTGOING"
    UNKNOWN = "UNKNOWN"


class CompanyProvenance(str, Enum):
    MANUAL = "MANUAL"
    AUTO_FROM_REGISTRY = "AUTO_FROM_REGISTRY"


class SubmissionStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class SubscriptionTier(str, Enum):
    STARTER = "STARTER"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


def _enum(enum_cls: type[Enum]) -> SAEnum:
    return SAEnum(enum_cls, native_enum=False, length=32, validate_strings=True)


_ACTIVE_JOB_PREDICATE = text("status IN ('QUEUED', 'PROCESSING', 'TEXT_EXTRACTED')")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    """Isolated business customer; owns invoices, companies and usage."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    nip: Mapped[str | None] = mapped_column(String(10))
    subscription: Mapped[SubscriptionTier] = mapped_column(
        _enum(SubscriptionTier), nullable=False, default=SubscriptionTier.STARTER
    )
    notification_email: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Company(Base):
    """Trading party known to a tenant, keyed by normalised NIP."""

    __tablename__ = "companies"
    __table_args__ = (UniqueConstraint("tenant_id", "nip", name="uq_companies_tenant_nip"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    nip: Mapped[str] = mapped_column(String(10), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    street: Mapped[str | None] = mapped_column(String(255))
    postal_code: Mapped[str | None] = mapped_column(String(6))
    city: Mapped[str | None] = mapped_column(String(128))
    country: Mapped[str] = mapped_column(String(2), nullable=False, default="PL")
    regon: Mapped[str | None] = mapped_column(String(14))
    krs: Mapped[str | None] = mapped_column(String(10))
    vat_registration_date: Mapped[date | None] = mapped_column(Date)
    provenance: Mapped[CompanyProvenance] = mapped_column(
        _enum(CompanyProvenance), nullable=False, default=CompanyProvenance.MANUAL
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Invoice(Base):
    """Invoice document and its extracted tax data."""

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    status: Mapped[InvoiceStatus] = mapped_column(
        _enum(InvoiceStatus), nullable=False, default=InvoiceStatus.UPLOADED, index=True
    )

    # Uploaded document (object storage key)
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False)
    file_size: Mapped[int | None] = mapped_column(BigInteger)

    # Structured fields
    invoice_number: Mapped[str | None] = mapped_column(String(128))
    issue_date: Mapped[date | None] = mapped_column(Date)
    due_date: Mapped[date | None] = mapped_column(Date)
    sale_date: Mapped[date | None] = mapped_column(Date)
    currency: Mapped[str | None] = mapped_column(String(3))
    net_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    vat_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    gross_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    line_items: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)

    seller_name: Mapped[str | None] = mapped_column(String(512))
    seller_nip: Mapped[str | None] = mapped_column(String(32))
    seller_address: Mapped[str | None] = mapped_column(String(512))
    buyer_name: Mapped[str | None] = mapped_column(String(512))
    buyer_nip: Mapped[str | None] = mapped_column(String(32))
    buyer_address: Mapped[str | None] = mapped_column(String(512))
    seller_company_id: Mapped[str | None] = mapped_column(ForeignKey("companies.id"))
    buyer_company_id: Mapped[str | None] = mapped_column(ForeignKey("companies.id"))

    # Pipeline outputs
    raw_ocr_text: Mapped[str | None] = mapped_column(Text)
    ocr_confidence: Mapped[float | None] = mapped_column(Float)
    extracted_data: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    confidence_scores: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    overall_confidence: Mapped[int | None] = mapped_column(Integer)
    direction: Mapped[InvoiceDirection | None] = mapped_column(_enum(InvoiceDirection))
    direction_confidence: Mapped[float | None] = mapped_column(Float)
    review_reasons: Mapped[list[Any] | None] = mapped_column(JSON)

    # Gateway
    ksef_number: Mapped[str | None] = mapped_column(String(64), unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ProcessingJob(Base):
    """One processing attempt for one invoice."""

    __tablename__ = "processing_jobs"
    __table_args__ = (
        Index(
            "uq_processing_jobs_active_invoice",
            "invoice_id",
            unique=True,
            sqlite_where=_ACTIVE_JOB_PREDICATE,
            postgresql_where=_ACTIVE_JOB_PREDICATE,
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(
        _enum(JobStatus), nullable=False, default=JobStatus.QUEUED
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    failed_step: Mapped[ProcessingStep | None] = mapped_column(_enum(ProcessingStep))
    result: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ProcessingLog(Base):
    """Append-only audit row: one per (job, stage, transition)."""

    __tablename__ = "processing_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        ForeignKey("processing_jobs.id"), nullable=False, index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    step: Mapped[ProcessingStep] = mapped_column(_enum(ProcessingStep), nullable=False)
    status: Mapped[LogStatus] = mapped_column(_enum(LogStatus), nullable=False)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class UsageRecord(Base):
    """Monthly usage counters for one tenant."""

    __tablename__ = "usage_records"
    __table_args__ = (UniqueConstraint("tenant_id", "period", name="uq_usage_tenant_period"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id"), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    invoice_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class SubmissionRecord(Base):
    """Gateway submission of one invoice."""

    __tablename__ = "submission_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    invoice_id: Mapped[str] = mapped_column(
        ForeignKey("invoices.id"), nullable=False, unique=True
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    reference_number: Mapped[str | None] = mapped_column(String(128))
    external_number: Mapped[str | None] = mapped_column(String(64))
    status: Mapped[SubmissionStatus] = mapped_column(
        _enum(SubmissionStatus), nullable=False, default=SubmissionStatus.PENDING
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    receipt_reference: Mapped[str | None] = mapped_column(String(1024))
    document_xml: Mapped[bytes | None] = mapped_column(LargeBinary)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

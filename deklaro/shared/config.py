"""Shared configuration management for the invoice pipeline.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from decimal import Decimal
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_LOG_LEVEL=debug

    ``ocr_engine`` has no default. The deployment must choose between the local
    text engine followed by text extraction, and the combined vision model.
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="deklaro-invoice-pipeline",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Persistence
    database_url: str = Field(
        default="sqlite+aiosqlite:///./deklaro.db",
        description="Async SQLAlchemy database URL",
    )

    # Queue configuration (arq on Redis)
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for the job queue and shared rate-limit counters",
    )
    queue_max_jobs: int = Field(default=10, ge=1, description="Concurrent jobs per worker")
    queue_job_timeout: int = Field(default=300, ge=1, description="Job timeout in seconds")

    # OCR configuration
    ocr_engine: Literal["tesseract", "vision"] = Field(
        ...,
        description=(
            "OCR path: tesseract (local engine, then text extraction), "
            "vision (single vision-model call doing OCR and extraction)"
        ),
    )
    tesseract_languages: str = Field(default="pol+eng", description="Tesseract language set")
    tesseract_psm: int = Field(default=3, ge=0, le=13, description="Page segmentation mode")
    tesseract_oem: int = Field(default=1, ge=0, le=3, description="OCR engine mode")
    ocr_timeout_seconds: float = Field(default=60.0, gt=0, description="OCR engine timeout")
    pdf_render_scale: float = Field(
        default=2.0,
        gt=0,
        le=6,
        description="PDF rasterisation scale (1.0 = native 72 DPI)",
    )

    # Extraction provider configuration
    extraction_provider: Literal["openai", "ollama"] = Field(
        default="openai",
        description="Extraction provider: openai (cloud API), ollama (self-hosted LLM)",
    )
    openai_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("APP_OPENAI_API_KEY", "OPENAI_API_KEY"),
        description="OpenAI API key",
    )
    openai_model: str = Field(default="gpt-4o-mini", description="Text extraction model")
    openai_vision_model: str = Field(default="gpt-4o", description="Vision extraction model")
    classification_model: str = Field(default="gpt-4o-mini", description="Classifier model")
    ai_timeout_seconds: float = Field(default=60.0, gt=0, description="AI call timeout")
    ai_max_attempts: int = Field(
        default=3, ge=1, le=5, description="Transport attempts per AI call"
    )

    # Ollama configuration (for extraction_provider="ollama")
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5:7b",
        description="Ollama model to use for extraction (e.g., qwen2.5:7b, llama3.1:8b)",
    )

    # Confidence gating
    confidence_threshold: int = Field(
        default=80,
        ge=0,
        le=100,
        description="Overall confidence below which results go to manual review",
    )
    field_confidence_threshold: int = Field(
        default=70,
        ge=0,
        le=100,
        description="Minimum confidence for critical fields (number, NIPs, amounts)",
    )
    reextraction_enabled: bool = Field(
        default=True,
        description="Allow one re-extraction when overall confidence is low",
    )

    # Validation
    amount_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        ge=0,
        description="Tolerance for gross == net + vat",
    )
    allowed_vat_rates: list[int] = Field(
        default=[23, 8, 5, 0],
        description="VAT rates accepted on line items",
    )

    # Business registry (White List VAT API)
    registry_base_url: str = Field(
        default="https://wl-api.mf.gov.pl",
        description="Business registry base URL",
    )
    registry_timeout_seconds: float = Field(default=15.0, gt=0)
    registry_batch_delay_seconds: float = Field(
        default=0.1,
        ge=0,
        description="Spacing between registry calls in a batch",
    )
    registry_batch_concurrency: int = Field(default=1, ge=1, le=10)

    # E-invoicing gateway (KSeF)
    ksef_environment: Literal["test", "demo", "production"] = Field(default="test")
    ksef_base_url: str | None = Field(
        default=None,
        description="Override for the gateway base URL",
    )
    ksef_token: SecretStr | None = Field(
        default=None,
        description="Gateway authorisation token (use env var APP_KSEF_TOKEN)",
    )
    ksef_context_nip: str | None = Field(
        default=None,
        description="Fallback gateway context NIP for tenants without a NIP of their own",
    )
    ksef_session_ttl_seconds: int = Field(default=3600, ge=60)
    ksef_timeout_seconds: float = Field(default=30.0, gt=0)
    ksef_poll_interval_seconds: float = Field(default=2.0, ge=0)
    ksef_poll_max_attempts: int = Field(default=10, ge=1)
    ksef_status_recheck_seconds: int = Field(
        default=300,
        ge=1,
        description="Delay before re-polling a submission still pending after a job",
    )
    auto_submit: bool = Field(
        default=True,
        description="Submit validated invoices to the gateway within the processing job",
    )

    # Storage configuration (S3-compatible object storage)
    storage_enabled: bool = Field(
        default=False,
        description="Enable document storage in S3-compatible storage (MinIO)",
    )
    storage_endpoint: str = Field(
        default="localhost:9000",
        description="S3-compatible storage endpoint (host:port)",
    )
    storage_access_key: str = Field(
        default="",
        description="Storage access key (use env var APP_STORAGE_ACCESS_KEY)",
    )
    storage_secret_key: SecretStr = Field(
        default=SecretStr(""),
        description="Storage secret key (use env var APP_STORAGE_SECRET_KEY)",
    )
    storage_bucket: str = Field(
        default="invoices",
        description="Bucket holding uploaded invoices and gateway receipts",
    )
    storage_secure: bool = Field(
        default=False,
        description="Use HTTPS for storage connections",
    )
    local_storage_root: Path = Field(
        default=Path("./data/documents"),
        description="Document directory used when object storage is disabled",
    )

    # Notifications
    notification_webhook_url: str | None = Field(
        default=None,
        description="Endpoint of the notification dispatcher (batch summaries)",
    )
    notification_timeout_seconds: float = Field(default=10.0, gt=0)


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance

    Raises:
        pydantic.ValidationError: If required settings (e.g. APP_OCR_ENGINE) are missing
    """
    return Settings()  # type: ignore[call-arg]

"""Error taxonomy shared by the pipeline stages, the orchestrator and the API.

Every error carries the HTTP status it maps to, so the API layer can translate
it without inspecting the concrete type.
"""

from collections.abc import Sequence
from typing import Any, Literal


class PipelineError(Exception):
    """Base class for all expected pipeline failures."""

    http_status = 500
    code = "pipeline_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Serialise for API responses and log metadata."""
        return {"error": self.code, "message": self.message}


class ValidationError(PipelineError):
    """Malformed request or invoice in the wrong state. Not retried."""

    http_status = 400
    code = "validation_error"


class NotFoundError(PipelineError):
    """Missing invoice, job or tenant."""

    http_status = 404
    code = "not_found"


class ConflictError(PipelineError):
    """Duplicate active job, or resubmission of an already-accepted invoice."""

    http_status = 409
    code = "conflict"


class QuotaExceededError(PipelineError):
    """Admission blocked by the tenant's subscription ceiling."""

    http_status = 429
    code = "quota_exceeded"

    def __init__(self, message: str, *, tier: str, current: int, limit: int | None) -> None:
        super().__init__(message)
        self.tier = tier
        self.current = current
        self.limit = limit

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "tier": self.tier,
            "current": self.current,
            "limit": self.limit,
        }


class RateLimitedError(PipelineError):
    """Fixed-window request ceiling reached."""

    http_status = 429
    code = "rate_limited"

    def __init__(self, message: str, *, limit: int, remaining: int, retry_after: int) -> None:
        super().__init__(message)
        self.limit = limit
        self.remaining = remaining
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "limit": self.limit,
            "remaining": self.remaining,
            "retry_after": self.retry_after,
        }

    def headers(self) -> dict[str, str]:
        """Standard rate limit response headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "Retry-After": str(self.retry_after),
        }


class DocumentError(PipelineError):
    """Unreadable or unsupported input document."""

    http_status = 422
    code = "document_error"


class ExternalServiceError(PipelineError):
    """Failure of an outbound collaborator (OCR engine, AI model, registry, gateway)."""

    http_status = 502
    code = "external_service_error"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        latency_ms: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.latency_ms = latency_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "provider": self.provider,
            "latency_ms": self.latency_ms,
        }


class GatewayAuthenticationError(ExternalServiceError):
    """Credential or environment problem while opening a gateway session."""

    code = "gateway_authentication_error"
    retryable = False


class GatewayTransportError(ExternalServiceError):
    """Network failure or unexpected non-2xx from the gateway. Caller may retry."""

    code = "gateway_transport_error"
    retryable = True


class GatewayRejectedError(ExternalServiceError):
    """Business rejection by the gateway. Terminal until the document is corrected."""

    http_status = 422
    code = "gateway_rejected"
    retryable = False


class StructuralValidationError(PipelineError):
    """Financial or tax-ID inconsistency found by the validation stage."""

    http_status = 422
    code = "structural_validation_error"

    def __init__(
        self,
        message: str,
        *,
        severity: Literal["soft", "hard"],
        reasons: Sequence[str],
    ) -> None:
        super().__init__(message)
        self.severity = severity
        self.reasons = list(reasons)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "severity": self.severity, "reasons": self.reasons}

"""Abstract base class for extraction providers.

Enables switching between extraction providers (OpenAI, Ollama) while keeping a
consistent interface and type safety.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python

Providers never raise for expected failures: they return an ``ExtractionResult``
with ``success=False``. The extraction service turns those into stage errors.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from deklaro.extraction.schema import ExtractionPayload
from deklaro.shared.config import Settings

ModelT = TypeVar("ModelT", bound=BaseModel)


class SchemaMismatchError(ValueError):
    """AI response does not match the expected function call schema."""


class ExtractionResult(BaseModel):
    """Result of one provider call.

    Attributes:
        payload: Validated extraction payload, None if the call failed
        success: Whether operation succeeded
        error: Error message if operation failed
        provider: Name of provider that performed extraction (e.g., 'openai', 'ollama')
        latency_ms: Wall time of the provider call
    """

    payload: ExtractionPayload | None
    success: bool
    error: str | None = None
    provider: str
    latency_ms: int = 0


def parse_function_call(
    name: str | None,
    arguments: str | dict[str, Any] | None,
    expected_name: str,
    model: type[ModelT],
) -> ModelT:
    """Validate a tagged function call against a strict model.

    Args:
        name: Function name returned by the model
        arguments: JSON string (OpenAI) or already-decoded object (Ollama)
        expected_name: Tag the response must carry
        model: Pydantic model for the arguments

    Returns:
        Validated model instance

    Raises:
        SchemaMismatchError: Wrong tag, invalid JSON or schema violation
    """
    if name != expected_name:
        raise SchemaMismatchError(f"Unexpected function call: {name!r}")

    if isinstance(arguments, str):
        try:
            data = json.loads(arguments)
        except json.JSONDecodeError as e:
            raise SchemaMismatchError(f"Function arguments are not valid JSON: {e.msg}") from e
    else:
        data = arguments

    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "<root>"
        raise SchemaMismatchError(
            f"Response failed schema validation ({e.error_count()} errors, "
            f"first at {location}: {first['msg']})"
        ) from e


class ExtractionProvider(ABC):
    """Abstract base class for invoice extraction providers.

    Example implementations:
    - OpenAIExtractionProvider: OpenAI API, text and vision
    - OllamaExtractionProvider: self-hosted LLM, text only
    """

    supports_vision: bool = False

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @abstractmethod
    async def extract_from_text(
        self, ocr_text: str, previous: dict[str, Any] | None = None
    ) -> ExtractionResult:
        """Extract structured invoice data from OCR text.

        Args:
            ocr_text: Raw text from OCR engine
            previous: Prior low-confidence result, passed back as context on re-extraction

        Returns:
            ExtractionResult with validated payload or error
        """

    async def extract_from_image(
        self, image_png: bytes, previous: dict[str, Any] | None = None
    ) -> ExtractionResult:
        """Recognise and extract in one vision-model call.

        Args:
            image_png: Rendered first page as PNG
            previous: Prior low-confidence result for re-extraction

        Returns:
            ExtractionResult with validated payload or error
        """
        return ExtractionResult(
            payload=None,
            success=False,
            error=f"Provider '{self.provider_name}' does not support vision extraction",
            provider=self.provider_name,
        )

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured (API keys, endpoints)."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier for logging/metrics (e.g., 'openai', 'ollama')."""

    async def aclose(self) -> None:
        """Release HTTP clients owned by the provider."""
        return None

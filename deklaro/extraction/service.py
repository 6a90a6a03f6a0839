"""AI extraction stage: provider call, confidence scoring and one re-extraction.

Rules applied after every provider call:

- overall confidence is the mean of the reported field scores
- if gross deviates from net + vat beyond the tolerance, overall confidence is
  capped below the review threshold whatever the field scores say
- below the threshold, at most one re-extraction runs with the prior result as
  context, and the better-scored of the two results is kept
- an unsuccessful or schema-invalid response raises ``ExternalServiceError``
"""

import logging
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from deklaro.extraction.base import ExtractionProvider, ExtractionResult
from deklaro.extraction.schema import ConfidenceScores, ExtractedInvoice, ExtractionPayload
from deklaro.shared.config import Settings
from deklaro.shared.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class ExtractionOutcome(BaseModel):
    """Scored extraction result handed to the next stages."""

    data: ExtractedInvoice
    confidence: ConfidenceScores
    overall_confidence: int
    amounts_consistent: bool
    attempts: int
    provider: str
    latency_ms: int

    def as_context(self) -> dict[str, Any]:
        """Prior result in the shape fed back to the model on re-extraction."""
        return {
            "extracted_data": self.data.model_dump(mode="json"),
            "confidence": self.confidence.model_dump(exclude_none=True),
        }


def amounts_consistent(
    net: Decimal | None, vat: Decimal | None, gross: Decimal | None, tolerance: Decimal
) -> bool:
    """gross == net + vat within tolerance; True when any amount is missing."""
    if net is None or vat is None or gross is None:
        return True
    return abs(gross - (net + vat)) <= tolerance


class ExtractionService:
    """Runs the configured provider on OCR text or on the page image."""

    def __init__(self, provider: ExtractionProvider, settings: Settings) -> None:
        self.provider = provider
        self.settings = settings

    async def extract(
        self, *, text: str | None = None, image_png: bytes | None = None
    ) -> ExtractionOutcome:
        """Extract structured fields from exactly one of ``text`` or ``image_png``.

        Raises:
            ValueError: Neither or both inputs given
            ExternalServiceError: Provider failure or schema-invalid response
        """
        if (text is None) == (image_png is None):
            raise ValueError("Provide exactly one of text or image_png")

        first = self._score(await self._call(text, image_png, None), attempts=1)
        threshold = self.settings.confidence_threshold

        if first.overall_confidence >= threshold or not self.settings.reextraction_enabled:
            return first

        logger.info(
            f"Overall confidence {first.overall_confidence} below {threshold}, re-extracting"
        )
        second = self._score(
            await self._call(text, image_png, first.as_context()),
            attempts=2,
        )
        best = second if second.overall_confidence >= first.overall_confidence else first
        return best.model_copy(
            update={"attempts": 2, "latency_ms": first.latency_ms + second.latency_ms}
        )

    async def _call(
        self, text: str | None, image_png: bytes | None, previous: dict[str, Any] | None
    ) -> ExtractionResult:
        if text is not None:
            result = await self.provider.extract_from_text(text, previous)
        else:
            assert image_png is not None
            result = await self.provider.extract_from_image(image_png, previous)

        if not result.success or result.payload is None:
            raise ExternalServiceError(
                f"Extraction failed: {result.error or 'empty response'}",
                provider=result.provider,
                latency_ms=result.latency_ms,
            )
        return result

    def _score(self, result: ExtractionResult, attempts: int) -> ExtractionOutcome:
        payload: ExtractionPayload = result.payload  # type: ignore[assignment]
        data = payload.extracted_data
        overall = payload.confidence.mean()

        consistent = amounts_consistent(
            data.net_amount, data.vat_amount, data.gross_amount, self.settings.amount_tolerance
        )
        if not consistent:
            capped = max(self.settings.confidence_threshold - 1, 0)
            if overall > capped:
                logger.info(
                    f"Amounts inconsistent (net={data.net_amount}, vat={data.vat_amount}, "
                    f"gross={data.gross_amount}); overall confidence {overall} -> {capped}"
                )
                overall = capped

        return ExtractionOutcome(
            data=data,
            confidence=payload.confidence,
            overall_confidence=overall,
            amounts_consistent=consistent,
            attempts=attempts,
            provider=result.provider,
            latency_ms=result.latency_ms,
        )

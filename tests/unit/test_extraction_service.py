"""Unit tests for the extraction stage: scoring, amount consistency and re-extraction.

Tests cover:
- Overall confidence from field scores
- Confidence capping on inconsistent amounts
- At most one re-extraction, keeping the better result
- Provider failures surfacing as stage errors
"""

from decimal import Decimal

import pytest
from doubles import (
    FULL_CONFIDENCE,
    ScriptedExtractionProvider,
    extraction_arguments,
    failure,
    success,
)

from deklaro.extraction.service import ExtractionService, amounts_consistent
from deklaro.shared.config import Settings
from deklaro.shared.errors import ExternalServiceError

LOW_CONFIDENCE = {name: 50 for name in FULL_CONFIDENCE}
MID_CONFIDENCE = {name: 70 for name in FULL_CONFIDENCE}


def test_amounts_consistent() -> None:
    tolerance = Decimal("0.01")
    assert amounts_consistent(Decimal("100"), Decimal("23"), Decimal("123"), tolerance)
    assert amounts_consistent(Decimal("100"), Decimal("23"), Decimal("123.01"), tolerance)
    assert not amounts_consistent(Decimal("100"), Decimal("23"), Decimal("200"), tolerance)
    assert amounts_consistent(None, Decimal("23"), Decimal("200"), tolerance)


class TestExtract:
    @pytest.mark.asyncio
    async def test_confident_result_returned_after_one_call(self, settings: Settings) -> None:
        provider = ScriptedExtractionProvider(settings, success(extraction_arguments()))
        service = ExtractionService(provider, settings)

        outcome = await service.extract(text="FAKTURA VAT FV/2024/01/123")

        assert outcome.overall_confidence == 93
        assert outcome.amounts_consistent is True
        assert outcome.attempts == 1
        assert len(provider.calls) == 1
        assert provider.calls[0]["previous"] is None

    @pytest.mark.asyncio
    async def test_inconsistent_amounts_cap_confidence(self, settings: Settings) -> None:
        arguments = extraction_arguments(net=100, vat=23, gross=200)
        no_retry = settings.model_copy(update={"reextraction_enabled": False})
        service = ExtractionService(
            ScriptedExtractionProvider(no_retry, success(arguments)), no_retry
        )

        outcome = await service.extract(text="text")

        assert outcome.amounts_consistent is False
        assert outcome.overall_confidence == settings.confidence_threshold - 1

    @pytest.mark.asyncio
    async def test_low_confidence_triggers_single_reextraction(self, settings: Settings) -> None:
        provider = ScriptedExtractionProvider(
            settings,
            success(extraction_arguments(confidence=LOW_CONFIDENCE)),
            success(extraction_arguments(confidence=FULL_CONFIDENCE)),
        )
        service = ExtractionService(provider, settings)

        outcome = await service.extract(text="text")

        assert outcome.attempts == 2
        assert outcome.overall_confidence == 93
        assert len(provider.calls) == 2
        previous = provider.calls[1]["previous"]
        assert previous["confidence"]["invoice_number"] == 50
        assert previous["extracted_data"]["invoice_number"] == "FV/2024/01/123"

    @pytest.mark.asyncio
    async def test_better_first_result_kept(self, settings: Settings) -> None:
        provider = ScriptedExtractionProvider(
            settings,
            success(extraction_arguments(confidence=MID_CONFIDENCE)),
            success(extraction_arguments(confidence=LOW_CONFIDENCE)),
        )
        service = ExtractionService(provider, settings)

        outcome = await service.extract(text="text")

        assert outcome.attempts == 2
        assert outcome.overall_confidence == 70
        assert outcome.latency_ms == 10

    @pytest.mark.asyncio
    async def test_no_second_reextraction(self, settings: Settings) -> None:
        provider = ScriptedExtractionProvider(
            settings,
            success(extraction_arguments(confidence=LOW_CONFIDENCE)),
            success(extraction_arguments(confidence=LOW_CONFIDENCE)),
        )
        service = ExtractionService(provider, settings)

        outcome = await service.extract(text="text")

        assert outcome.overall_confidence == 50
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_reextraction_disabled(self, settings: Settings) -> None:
        no_retry = settings.model_copy(update={"reextraction_enabled": False})
        provider = ScriptedExtractionProvider(
            no_retry, success(extraction_arguments(confidence=LOW_CONFIDENCE))
        )

        outcome = await ExtractionService(provider, no_retry).extract(text="text")

        assert outcome.attempts == 1
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_image_path(self, settings: Settings) -> None:
        provider = ScriptedExtractionProvider(settings, success(extraction_arguments()))

        outcome = await ExtractionService(provider, settings).extract(image_png=b"\x89PNG")

        assert outcome.attempts == 1
        assert provider.calls[0]["image_bytes"] == 4

    @pytest.mark.asyncio
    async def test_provider_failure_raises(self, settings: Settings) -> None:
        provider = ScriptedExtractionProvider(settings, failure("No function call in response"))

        with pytest.raises(ExternalServiceError, match="No function call") as exc_info:
            await ExtractionService(provider, settings).extract(text="text")
        assert exc_info.value.provider == "scripted"

    @pytest.mark.asyncio
    async def test_exactly_one_input_required(self, settings: Settings) -> None:
        service = ExtractionService(ScriptedExtractionProvider(settings), settings)

        with pytest.raises(ValueError):
            await service.extract()
        with pytest.raises(ValueError):
            await service.extract(text="text", image_png=b"png")

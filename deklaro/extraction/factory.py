"""Extraction provider selection.

``Settings.extraction_provider`` names a registered provider class; the factory
also rejects an OCR path the chosen provider cannot serve, so a bad
combination fails at startup instead of on the first job.
"""

import logging
from typing import Any

from deklaro.extraction.base import ExtractionProvider
from deklaro.extraction.ollama_provider import OllamaExtractionProvider
from deklaro.extraction.openai_provider import OpenAIExtractionProvider
from deklaro.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Provider name -> implementation class. Extendable at runtime."""

    _providers: dict[str, type[ExtractionProvider]] = {
        "openai": OpenAIExtractionProvider,
        "ollama": OllamaExtractionProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: type[ExtractionProvider]) -> None:
        cls._providers[name] = provider_class
        logger.info(f"Registered extraction provider: {name}")

    @classmethod
    def get_provider_class(cls, name: str) -> type[ExtractionProvider]:
        """Look up a provider class.

        Raises:
            ValueError: Name not registered
        """
        try:
            return cls._providers[name]
        except KeyError:
            raise ValueError(
                f"Unknown extraction provider: '{name}'. "
                f"Registered: {', '.join(sorted(cls._providers))}"
            ) from None

    @classmethod
    def list_providers(cls) -> list[str]:
        return sorted(cls._providers)


def create_extraction_provider(settings: Settings, client: Any = None) -> ExtractionProvider:
    """Build the configured provider.

    Args:
        settings: Application settings
        client: Pre-built AsyncOpenAI or httpx.AsyncClient to share, if any

    Raises:
        ValueError: Unknown provider, or ``ocr_engine='vision'`` with a text-only provider
    """
    name = settings.extraction_provider
    provider_class = ProviderRegistry.get_provider_class(name)

    if settings.ocr_engine == "vision" and not provider_class.supports_vision:
        raise ValueError(
            f"OCR engine 'vision' requires a vision-capable extraction provider; "
            f"'{name}' is text only"
        )

    provider = provider_class(settings, client)  # type: ignore[call-arg]
    if not provider.is_available():
        logger.warning(f"Extraction provider '{name}' is not configured (API key or server URL)")
    logger.info(f"Extraction provider: {name} (vision={provider.supports_vision})")
    return provider

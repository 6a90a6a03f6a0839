"""Factory for the OCR stage based on configuration.

The engine is an explicit deployment choice. ``vision`` means the vision model
does recognition and extraction in one call, so there is no separate OCR engine.
"""

import logging

from deklaro.ocr.service import TesseractOCRService
from deklaro.shared.config import Settings

logger = logging.getLogger(__name__)

AVAILABLE_ENGINES = ("tesseract", "vision")


def create_ocr_service(settings: Settings) -> TesseractOCRService | None:
    """Create the OCR engine for the configured path.

    Args:
        settings: Application settings with ocr_engine field

    Returns:
        Tesseract service, or None when the vision model handles recognition

    Raises:
        ValueError: If configured engine is unknown
    """
    engine = settings.ocr_engine

    if engine == "tesseract":
        logger.info(
            f"Created OCR service: tesseract (lang={settings.tesseract_languages}, "
            f"psm={settings.tesseract_psm}, oem={settings.tesseract_oem})"
        )
        return TesseractOCRService(settings)

    elif engine == "vision":
        logger.info("OCR handled by vision extraction model")
        return None

    else:
        raise ValueError(
            f"Unknown OCR engine: '{engine}'. Available: {', '.join(AVAILABLE_ENGINES)}"
        )

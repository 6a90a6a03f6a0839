"""OCR service using Tesseract.

Based on pytesseract documentation:
https://github.com/madmaze/pytesseract

pytesseract shells out to the tesseract binary, so recognition runs in a worker
thread and the configured timeout is passed to the subprocess.
"""

import asyncio
import logging
import os
import time

import pytesseract
from PIL import Image
from pydantic import BaseModel, Field

from deklaro.shared.config import Settings

logger = logging.getLogger(__name__)


class OCRResult(BaseModel):
    """Result of OCR operation.

    Attributes:
        text: Extracted text content
        success: Whether operation succeeded
        error: Error message if operation failed
        confidence: Mean word confidence (0-100)
        elapsed_ms: Wall time spent in the engine
        engine: Engine identifier
    """

    text: str
    success: bool
    error: str | None = None
    confidence: float = Field(default=0.0, ge=0, le=100)
    elapsed_ms: int = 0
    engine: str = "tesseract"


class TesseractOCRService:
    """Local Tesseract engine with configurable language set, PSM and OEM."""

    engine = "tesseract"

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._configure_tesseract()

    def _configure_tesseract(self) -> None:
        """Allow overriding the Tesseract binary via TESSERACT_CMD."""
        tesseract_cmd = os.getenv("TESSERACT_CMD")
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    @property
    def config(self) -> str:
        return f"--psm {self.settings.tesseract_psm} --oem {self.settings.tesseract_oem}"

    def _recognise(self, image: Image.Image) -> OCRResult:
        started = time.perf_counter()
        try:
            data = pytesseract.image_to_data(
                image,
                lang=self.settings.tesseract_languages,
                config=self.config,
                timeout=self.settings.ocr_timeout_seconds,
                output_type=pytesseract.Output.DICT,
            )
        except RuntimeError as e:
            # pytesseract raises RuntimeError when the subprocess times out
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            return OCRResult(
                text="",
                success=False,
                error=f"OCR engine timed out: {e}",
                elapsed_ms=elapsed_ms,
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as e:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            return OCRResult(
                text="",
                success=False,
                error=f"OCR processing failed: {e}",
                elapsed_ms=elapsed_ms,
            )

        text, confidence = _assemble(data)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        return OCRResult(text=text, success=True, confidence=confidence, elapsed_ms=elapsed_ms)

    async def extract_text(self, image: Image.Image) -> OCRResult:
        """Recognise text on one page.

        Args:
            image: Rendered document page

        Returns:
            OCRResult with text and mean confidence, or error information
        """
        result = await asyncio.to_thread(self._recognise, image)
        if result.success:
            logger.info(
                f"OCR completed: {len(result.text)} chars, "
                f"confidence {result.confidence:.1f}, {result.elapsed_ms}ms"
            )
        else:
            logger.warning(f"OCR failed after {result.elapsed_ms}ms: {result.error}")
        return result


def _assemble(data: dict[str, list]) -> tuple[str, float]:
    """Rebuild line-ordered text and mean word confidence from image_to_data output."""
    lines: dict[tuple[int, int, int], list[str]] = {}
    confidences: list[float] = []

    for i, word in enumerate(data.get("text", [])):
        word = (word or "").strip()
        conf = float(data["conf"][i])
        # Layout rows (pages, blocks, lines) carry conf -1
        if not word or conf < 0:
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(key, []).append(word)
        confidences.append(conf)

    text = "\n".join(" ".join(words) for words in lines.values())
    confidence = sum(confidences) / len(confidences) if confidences else 0.0
    return text, round(min(max(confidence, 0.0), 100.0), 2)

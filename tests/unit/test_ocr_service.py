"""Unit tests for the OCR stage.

Tests cover:
- Document loading (images, PDFs, unsupported input)
- Tesseract recognition with a mocked engine
- Engine selection from configuration
"""

import io
from unittest.mock import MagicMock, patch

import pytest
import pytesseract
from pdf2image.exceptions import PDFPageCountError
from PIL import Image

from deklaro.ocr.document import image_to_png_bytes, load_page_image
from deklaro.ocr.factory import create_ocr_service
from deklaro.ocr.service import OCRResult, TesseractOCRService, _assemble
from deklaro.shared.config import Settings
from deklaro.shared.errors import DocumentError


def png_bytes(size: tuple[int, int] = (200, 50)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color="white").save(buffer, format="PNG")
    return buffer.getvalue()


def tesseract_data(words: list[tuple[str, float, int]]) -> dict[str, list]:
    """image_to_data dict with one layout row followed by the given (word, conf, line) rows."""
    data: dict[str, list] = {
        "text": [""],
        "conf": [-1],
        "block_num": [1],
        "par_num": [1],
        "line_num": [0],
    }
    for word, conf, line in words:
        data["text"].append(word)
        data["conf"].append(conf)
        data["block_num"].append(1)
        data["par_num"].append(1)
        data["line_num"].append(line)
    return data


@pytest.fixture
def ocr_service(settings: Settings) -> TesseractOCRService:
    """Create OCR service instance."""
    return TesseractOCRService(settings)


class TestLoadPageImage:
    def test_png_loaded_as_rgb(self) -> None:
        image = load_page_image(png_bytes(), "image/png")
        assert image.mode == "RGB"
        assert image.size == (200, 50)

    def test_content_type_parameters_ignored(self) -> None:
        image = load_page_image(png_bytes(), "Image/PNG; charset=binary")
        assert image.size == (200, 50)

    def test_empty_document(self) -> None:
        with pytest.raises(DocumentError, match="empty"):
            load_page_image(b"", "image/png")

    def test_unsupported_type(self) -> None:
        with pytest.raises(DocumentError, match="Unsupported document type: text/plain"):
            load_page_image(b"hello", "text/plain")

    def test_corrupt_image(self) -> None:
        with pytest.raises(DocumentError, match="Unreadable image"):
            load_page_image(b"not an image", "image/jpeg")

    @patch("deklaro.ocr.document.convert_from_bytes")
    def test_pdf_first_page_rendered(self, mock_convert: MagicMock) -> None:
        mock_convert.return_value = [Image.new("L", (100, 100))]

        image = load_page_image(b"%PDF-1.7", "application/pdf", scale=2.0)

        assert image.mode == "RGB"
        mock_convert.assert_called_once_with(b"%PDF-1.7", dpi=144, first_page=1, last_page=1)

    @patch("deklaro.ocr.document.convert_from_bytes")
    def test_unreadable_pdf(self, mock_convert: MagicMock) -> None:
        mock_convert.side_effect = PDFPageCountError("Unable to get page count")

        with pytest.raises(DocumentError, match="Unreadable PDF"):
            load_page_image(b"%PDF-broken", "application/pdf")

    def test_png_encoding(self) -> None:
        encoded = image_to_png_bytes(Image.new("RGB", (10, 10)))
        assert encoded.startswith(b"\x89PNG")


class TestAssemble:
    def test_words_grouped_by_line(self) -> None:
        data = tesseract_data(
            [("FAKTURA", 96, 1), ("VAT", 94, 1), ("FV/2024/01/123", 90, 2)]
        )

        text, confidence = _assemble(data)

        assert text == "FAKTURA VAT\nFV/2024/01/123"
        assert confidence == 93.33

    def test_blank_words_and_layout_rows_skipped(self) -> None:
        data = tesseract_data([("  ", 50, 1), ("NIP", 80, 1)])

        text, confidence = _assemble(data)

        assert text == "NIP"
        assert confidence == 80.0

    def test_no_words(self) -> None:
        assert _assemble(tesseract_data([])) == ("", 0.0)


class TestTesseractOCRService:
    def test_config_string(self, ocr_service: TesseractOCRService) -> None:
        assert ocr_service.config == "--psm 3 --oem 1"

    @pytest.mark.asyncio
    @patch("deklaro.ocr.service.pytesseract.image_to_data")
    async def test_extract_text_success(
        self, mock_ocr: MagicMock, ocr_service: TesseractOCRService, settings: Settings
    ) -> None:
        """Test successful text extraction from image."""
        mock_ocr.return_value = tesseract_data([("Faktura", 91, 1), ("VAT", 89, 1)])

        result = await ocr_service.extract_text(Image.new("RGB", (200, 50), "white"))

        assert isinstance(result, OCRResult)
        assert result.success is True
        assert result.text == "Faktura VAT"
        assert result.confidence == 90.0
        assert result.error is None
        kwargs = mock_ocr.call_args.kwargs
        assert kwargs["lang"] == "pol+eng"
        assert kwargs["timeout"] == settings.ocr_timeout_seconds

    @pytest.mark.asyncio
    @patch("deklaro.ocr.service.pytesseract.image_to_data")
    async def test_engine_timeout(
        self, mock_ocr: MagicMock, ocr_service: TesseractOCRService
    ) -> None:
        mock_ocr.side_effect = RuntimeError("Tesseract process timeout")

        result = await ocr_service.extract_text(Image.new("RGB", (10, 10)))

        assert result.success is False
        assert result.text == ""
        assert "timed out" in (result.error or "")

    @pytest.mark.asyncio
    @patch("deklaro.ocr.service.pytesseract.image_to_data")
    async def test_engine_missing(
        self, mock_ocr: MagicMock, ocr_service: TesseractOCRService
    ) -> None:
        mock_ocr.side_effect = pytesseract.TesseractNotFoundError()

        result = await ocr_service.extract_text(Image.new("RGB", (10, 10)))

        assert result.success is False
        assert "OCR processing failed" in (result.error or "")


class TestCreateOCRService:
    def test_tesseract(self, settings: Settings) -> None:
        assert isinstance(create_ocr_service(settings), TesseractOCRService)

    def test_vision_has_no_engine(self, settings: Settings) -> None:
        assert create_ocr_service(settings.model_copy(update={"ocr_engine": "vision"})) is None

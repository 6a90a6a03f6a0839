"""Load an uploaded invoice document as a single raster page.

PDFs are rasterised to their first page with pdf2image (poppler); raster formats
are opened with Pillow.
"""

import io
import logging

from pdf2image import convert_from_bytes
from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError
from PIL import Image, UnidentifiedImageError

from deklaro.shared.errors import DocumentError

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
IMAGE_CONTENT_TYPES = frozenset(
    {"image/png", "image/jpeg", "image/jpg", "image/webp", "image/tiff"}
)
NATIVE_PDF_DPI = 72


def load_page_image(content: bytes, content_type: str, scale: float = 2.0) -> Image.Image:
    """Decode a document into an RGB image of its first page.

    Args:
        content: Raw document bytes
        content_type: MIME type recorded at upload
        scale: PDF render scale relative to 72 DPI

    Returns:
        PIL image of the first page

    Raises:
        DocumentError: Empty, unreadable or unsupported document
    """
    if not content:
        raise DocumentError("Document is empty")

    content_type = content_type.lower().split(";")[0].strip()

    if content_type == PDF_CONTENT_TYPE:
        dpi = int(NATIVE_PDF_DPI * scale)
        try:
            pages = convert_from_bytes(content, dpi=dpi, first_page=1, last_page=1)
        except (PDFPageCountError, PDFSyntaxError) as e:
            raise DocumentError(f"Unreadable PDF: {e}") from e
        except PDFInfoNotInstalledError as e:
            raise DocumentError("PDF rendering unavailable (poppler not installed)") from e
        if not pages:
            raise DocumentError("PDF has no pages")
        logger.debug(f"Rendered PDF first page at {dpi} DPI")
        return pages[0].convert("RGB")

    if content_type in IMAGE_CONTENT_TYPES:
        try:
            image = Image.open(io.BytesIO(content))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            raise DocumentError(f"Unreadable image: {e}") from e
        return image.convert("RGB")

    raise DocumentError(f"Unsupported document type: {content_type}")


def image_to_png_bytes(image: Image.Image) -> bytes:
    """Encode an image as PNG (vision model payload)."""
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()

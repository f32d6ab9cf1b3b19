from __future__ import annotations

import mimetypes
from collections.abc import Iterator
from io import BytesIO

import fitz  # PyMuPDF
from PIL import Image
from pypdf import PdfReader

from fatural.core.config import settings
from fatural.core.errors import CorruptDocument, UnsupportedFormat
from fatural.core.logging import get_logger, log_event
from fatural.core.storage import ObjectStorage, get_storage
from fatural.modules.extraction.schemas import PageImage

logger = get_logger(__name__)

PDF_MEDIA_TYPE = "application/pdf"

# 2.0 == 144 DPI; lower scales measurably hurt oracle accuracy on small print.
MIN_RASTER_SCALE = 2.0

# Formats the oracle accepts as-is.
_PASSTHROUGH_IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/gif"})
# Formats that are decoded with Pillow and re-encoded as PNG.
_CONVERTED_IMAGE_TYPES = frozenset({"image/tiff", "image/bmp"})
SUPPORTED_IMAGE_TYPES = _PASSTHROUGH_IMAGE_TYPES | _CONVERTED_IMAGE_TYPES

_MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
    "image/tif": "image/tiff",
    "image/x-ms-bmp": "image/bmp",
    "application/x-pdf": PDF_MEDIA_TYPE,
}


def rasterize(
    blob_path: str,
    mime_hint: str | None,
    *,
    filename: str | None = None,
    storage: ObjectStorage | None = None,
) -> Iterator[PageImage]:
    """
    Download a stored document and yield its pages as raster images, in order.

    Format problems surface immediately; page rendering happens lazily as the
    returned iterator is consumed.
    """
    body = (storage or get_storage()).get(key=blob_path)
    return rasterize_bytes(body, mime_hint, filename=filename)


def rasterize_bytes(
    body: bytes, mime_hint: str | None, *, filename: str | None = None
) -> Iterator[PageImage]:
    media_type = detect_media_type(body, mime_hint, filename=filename)
    if media_type == PDF_MEDIA_TYPE:
        page_count = pdf_page_count(body)
        scale = max(float(settings.rasterize_scale or 0), MIN_RASTER_SCALE)
        log_event(
            logger,
            "rasterize.pdf",
            page_count=page_count,
            scale=scale,
            byte_size=len(body),
        )
        return _render_pdf_pages(body, page_count=page_count, scale=scale)

    page = _image_page(body, media_type)
    log_event(
        logger,
        "rasterize.image",
        media_type=page.media_type,
        width=page.width,
        height=page.height,
        byte_size=len(body),
    )
    return iter([page])


def detect_media_type(body: bytes, mime_hint: str | None, *, filename: str | None = None) -> str:
    sniffed = _sniff_media_type(body)
    if sniffed:
        return sniffed

    hint = _normalize_hint(mime_hint, filename)
    if hint == PDF_MEDIA_TYPE:
        raise CorruptDocument("Document is labelled as PDF but does not start with a %PDF header")
    if hint in SUPPORTED_IMAGE_TYPES:
        raise CorruptDocument(f"Document is labelled as {hint} but the image data is not readable")
    raise UnsupportedFormat(f"Unsupported document type: {hint or 'unknown'}")


def pdf_page_count(body: bytes) -> int:
    try:
        reader = PdfReader(BytesIO(body))
        if reader.is_encrypted:
            reader.decrypt("")
        count = len(reader.pages)
    except Exception as e:  # noqa: BLE001
        raise CorruptDocument(f"Could not determine PDF page count: {e}") from e
    if count <= 0:
        raise CorruptDocument("PDF has no pages")
    return count


def _render_pdf_pages(body: bytes, *, page_count: int, scale: float) -> Iterator[PageImage]:
    try:
        doc = fitz.open(stream=body, filetype="pdf")
    except Exception as e:  # noqa: BLE001
        raise CorruptDocument(f"Could not open PDF for rendering: {e}") from e

    with doc:
        if doc.page_count != page_count:
            raise CorruptDocument(
                f"PDF page count mismatch (expected {page_count}, renderer saw {doc.page_count})"
            )
        matrix = fitz.Matrix(scale, scale)
        for idx in range(page_count):
            try:
                pix = doc.load_page(idx).get_pixmap(matrix=matrix, alpha=False)
                data = pix.tobytes("png")
            except Exception as e:  # noqa: BLE001
                raise CorruptDocument(f"Page {idx + 1} failed to render: {e}") from e
            yield PageImage(
                page_number=idx + 1,
                media_type="image/png",
                data=data,
                width=pix.width,
                height=pix.height,
            )


def _image_page(body: bytes, media_type: str) -> PageImage:
    try:
        with Image.open(BytesIO(body)) as image:
            image.load()
            width, height = image.size
            if media_type in _CONVERTED_IMAGE_TYPES:
                converted = image if image.mode in {"RGB", "L"} else image.convert("RGB")
                buf = BytesIO()
                converted.save(buf, format="PNG")
                return PageImage(
                    page_number=1,
                    media_type="image/png",
                    data=buf.getvalue(),
                    width=width,
                    height=height,
                )
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise CorruptDocument(f"Image could not be decoded: {e}") from e
    return PageImage(page_number=1, media_type=media_type, data=body, width=width, height=height)


def _sniff_media_type(body: bytes) -> str | None:
    if not body:
        return None
    b = body.lstrip()
    if b.startswith(b"\xef\xbb\xbf"):
        b = b[3:].lstrip()
    if b.startswith(b"%PDF"):
        return PDF_MEDIA_TYPE
    if b.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if b.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if b.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if len(b) >= 12 and b.startswith(b"RIFF") and b[8:12] == b"WEBP":
        return "image/webp"
    if b.startswith((b"II*\x00", b"MM\x00*")):
        return "image/tiff"
    if b.startswith(b"BM"):
        return "image/bmp"
    return None


def _normalize_hint(mime_hint: str | None, filename: str | None) -> str | None:
    hint = (mime_hint or "").split(";", 1)[0].strip().lower() or None
    if hint in (None, "application/octet-stream") and filename:
        hint = mimetypes.guess_type(filename)[0] or hint
    if hint:
        hint = _MIME_ALIASES.get(hint, hint)
    return hint

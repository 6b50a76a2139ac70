# =============================================================================
# Text Extractor — Docling for PDFs, UTF-8 for text formats
# =============================================================================
#
# Turns an uploaded knowledge file into raw text for the chunker.
#
#   application/pdf          → Docling conversion, items in reading order
#   text/* , application/json → decoded as UTF-8 (invalid bytes replaced)
#   anything else            → UnsupportedFileType
#
# DESIGN DECISION: Docling's DocumentConverter is expensive to build (it
# loads layout and table models), so it is created lazily on first PDF and
# cached for the lifetime of the worker process.
# =============================================================================

from __future__ import annotations

import logging
from io import BytesIO

from docling.datamodel.base_models import DocumentStream, InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption
from docling_core.types.doc.labels import DocItemLabel

from backoffice_agent.errors import UnsupportedFileType, ValidationFailure

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
_TEXT_MIME_TYPES = {"application/json"}

_TEXT_LABELS = {
    DocItemLabel.TITLE,
    DocItemLabel.SECTION_HEADER,
    DocItemLabel.TEXT,
    DocItemLabel.PARAGRAPH,
    DocItemLabel.LIST_ITEM,
    DocItemLabel.CAPTION,
    DocItemLabel.FOOTNOTE,
}


# ---------------------------------------------------------------------------
# Docling Converter (Lazy Singleton)
# ---------------------------------------------------------------------------

_converter: DocumentConverter | None = None


def _get_converter() -> DocumentConverter:
    """Lazily initialize and cache the Docling DocumentConverter."""
    global _converter
    if _converter is None:
        logger.info(
            "Initializing Docling DocumentConverter "
            "(first use, may take a few seconds)..."
        )
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = True
        pipeline_options.do_ocr = True

        _converter = DocumentConverter(
            format_options={
                InputFormat.PDF: PdfFormatOption(
                    pipeline_options=pipeline_options,
                ),
            }
        )
        logger.info("Docling DocumentConverter initialized")
    return _converter


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def is_supported(mime_type: str) -> bool:
    """True when `extract()` can handle this MIME type."""
    base = _base_mime(mime_type)
    return (
        base == PDF_MIME_TYPE
        or base.startswith("text/")
        or base in _TEXT_MIME_TYPES
    )


def extract(file_bytes: bytes, mime_type: str, file_name: str = "document") -> str:
    """
    Extract raw text from an uploaded file.

    Args:
        file_bytes: File content.
        mime_type: Declared MIME type (parameters such as charset are ignored).
        file_name: Used for Docling's stream name and error messages.

    Returns:
        The extracted text (may be empty for a blank document).

    Raises:
        UnsupportedFileType: For MIME types other than PDF, text/* or JSON.
        ValidationFailure: If Docling cannot convert the PDF.
    """
    base = _base_mime(mime_type)

    if base == PDF_MIME_TYPE:
        return _extract_pdf(file_bytes, file_name)

    if base.startswith("text/") or base in _TEXT_MIME_TYPES:
        return file_bytes.decode("utf-8", errors="replace")

    raise UnsupportedFileType(mime_type, file_name)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _base_mime(mime_type: str) -> str:
    return mime_type.split(";", 1)[0].strip().lower()


def _extract_pdf(file_bytes: bytes, file_name: str) -> str:
    converter = _get_converter()
    stream = DocumentStream(name=file_name, stream=BytesIO(file_bytes))

    try:
        result = converter.convert(stream)
    except Exception as exc:
        raise ValidationFailure(
            f"Docling failed to parse '{file_name}'",
            identifier=file_name,
            upstream=str(exc),
        ) from exc

    document = result.document
    blocks: list[str] = []

    # Reading order; tables are exported as markdown so row/column
    # structure survives chunking.
    for item, _level in document.iterate_items():
        label = getattr(item, "label", None)
        if label == DocItemLabel.TABLE:
            table_md = item.export_to_markdown(doc=document).strip()
            if table_md:
                blocks.append(table_md)
        elif label in _TEXT_LABELS:
            text = getattr(item, "text", "").strip()
            if text:
                blocks.append(text)

    logger.info("Extracted %d text blocks from PDF '%s'", len(blocks), file_name)
    return "\n\n".join(blocks)

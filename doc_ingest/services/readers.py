# =============================================================================
# Document Readers — Raw Bytes → Document
# =============================================================================
#
# Turns an upload's byte stream into a `Document`: an ordered list of
# structural elements (paragraphs, headings, tables, images) tagged with the
# upload id and its media type.
#
# READERS:
#   DoclingDocumentReader   — PDF, Office formats, HTML, Markdown, images
#                             (IBM Docling, table- and layout-aware)
#   TextDocumentReader      — plain text, CSV, JSON (decoded as UTF-8)
#   MediaTypeDocumentReader — routes by media type to one of the above;
#                             anything else is an UnsupportedFormatError
#
# Our own dataclasses (DocumentElement, Document) are passed downstream, not
# Docling types, so the chunker and enrichers never import the parsing library.
# =============================================================================

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import BinaryIO, Protocol

from doc_ingest.errors import UnsupportedFormatError

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE = "application/octet-stream"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class DocumentElement:
    """
    A single structural element of a document.

    Image elements carry the raw image bytes so a document enricher can
    generate alternative text for them; they contribute their alt text (or
    caption) to the document text.
    """

    text: str  # Text content (markdown for tables, caption for images)
    element_type: str = "text"  # "text", "table", "heading", or "image"
    page_number: int = 0  # 1-indexed page, 0 when the format has no pages
    section_title: str | None = None  # Current section header
    level: int = 0  # Heading level (0 = body text)
    image_data: bytes | None = None
    image_media_type: str | None = None
    alt_text: str | None = None

    def render(self) -> str:
        """Text this element contributes to the document body."""
        if self.element_type != "image":
            return self.text
        description = (self.alt_text or self.text or "").strip()
        return f"[Image: {description}]" if description else ""


@dataclass
class Document:
    """
    A document read from one upload.

    `id` is normally the upload id; a reader that splits one upload into
    several logical documents gives each its own id.
    """

    id: str
    media_type: str
    elements: list[DocumentElement] = field(default_factory=list)
    page_count: int = 0

    @property
    def text(self) -> str:
        """Full document text: rendered elements joined by blank lines."""
        return "\n\n".join(
            rendered for rendered in (e.render() for e in self.elements) if rendered
        )


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class DocumentReader(Protocol):
    """Reads a byte stream into a Document."""

    async def read(
        self,
        stream: BinaryIO,
        identifier: str,
        media_type: str,
    ) -> Document:
        """
        Args:
            stream: Binary stream positioned at the start of the file.
            identifier: Document id to assign (the upload id).
            media_type: Declared content type of the upload.

        Raises:
            UnsupportedFormatError: If the content cannot be parsed.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Plain Text
# ---------------------------------------------------------------------------


class TextDocumentReader:
    """Decodes text-like uploads as UTF-8 into a single text element."""

    async def read(
        self,
        stream: BinaryIO,
        identifier: str,
        media_type: str,
    ) -> Document:
        raw = await asyncio.to_thread(stream.read)
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise UnsupportedFormatError(
                f"Content declared as '{media_type}' is not valid UTF-8 text"
            ) from exc

        elements = [DocumentElement(text=text)] if text.strip() else []
        logger.info(
            "Read text document %s (%d characters, media_type=%s)",
            identifier, len(text), media_type,
        )
        return Document(id=identifier, media_type=media_type, elements=elements)


# ---------------------------------------------------------------------------
# Implementation 2: Docling
# ---------------------------------------------------------------------------

# Docling picks its backend from the file extension of the stream name.
DOCLING_EXTENSIONS: dict[str, str] = {
    "application/pdf": ".pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": ".pptx",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "text/html": ".html",
    "application/xhtml+xml": ".html",
    "text/markdown": ".md",
    "text/x-markdown": ".md",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/tiff": ".tiff",
    "image/bmp": ".bmp",
}


class DoclingDocumentReader:
    """
    Docling-backed reader for layout-rich formats.

    The DocumentConverter loads ML models on first use (a few seconds), so a
    single converter is created lazily and reused across uploads.
    """

    def __init__(self, extract_images: bool = True) -> None:
        self._extract_images = extract_images
        self._converter = None

    def _get_converter(self):
        """Lazily initialize and cache the Docling DocumentConverter."""
        if self._converter is None:
            from docling.datamodel.base_models import InputFormat
            from docling.datamodel.pipeline_options import PdfPipelineOptions
            from docling.document_converter import DocumentConverter, PdfFormatOption

            logger.info(
                "Initializing Docling DocumentConverter "
                "(first use, may take a few seconds)..."
            )
            pipeline_options = PdfPipelineOptions()
            pipeline_options.do_table_structure = True
            pipeline_options.do_ocr = True
            # Picture bitmaps are needed by the alt-text enricher.
            pipeline_options.generate_picture_images = self._extract_images

            self._converter = DocumentConverter(
                format_options={
                    InputFormat.PDF: PdfFormatOption(
                        pipeline_options=pipeline_options,
                    ),
                }
            )
        return self._converter

    async def read(
        self,
        stream: BinaryIO,
        identifier: str,
        media_type: str,
    ) -> Document:
        extension = DOCLING_EXTENSIONS.get(media_type)
        if extension is None:
            raise UnsupportedFormatError(f"Docling cannot read '{media_type}'")

        raw = await asyncio.to_thread(stream.read)
        return await asyncio.to_thread(
            self._convert, raw, identifier, media_type, extension,
        )

    def _convert(
        self,
        raw: bytes,
        identifier: str,
        media_type: str,
        extension: str,
    ) -> Document:
        from docling.datamodel.base_models import DocumentStream

        converter = self._get_converter()
        source = DocumentStream(name=f"{identifier}{extension}", stream=io.BytesIO(raw))
        try:
            result = converter.convert(source)
        except Exception as exc:
            raise UnsupportedFormatError(
                f"Docling failed to parse '{media_type}' content: {exc}"
            ) from exc

        elements, page_count = _collect_elements(result.document)

        logger.info(
            "Read document %s: %d elements (%d headings, %d tables, %d images), %d pages",
            identifier,
            len(elements),
            sum(1 for e in elements if e.element_type == "heading"),
            sum(1 for e in elements if e.element_type == "table"),
            sum(1 for e in elements if e.element_type == "image"),
            page_count,
        )
        return Document(
            id=identifier,
            media_type=media_type,
            elements=elements,
            page_count=page_count,
        )


def _collect_elements(doc: object) -> tuple[list[DocumentElement], int]:
    """Walk a DoclingDocument in reading order and build our elements."""
    from docling_core.types.doc.labels import DocItemLabel

    elements: list[DocumentElement] = []
    current_section: str | None = None
    pages_seen: set[int] = set()

    for item, level in doc.iterate_items():
        page_no = 0
        if getattr(item, "prov", None):
            page_no = item.prov[0].page_no
        pages_seen.add(page_no)

        label = getattr(item, "label", None)

        if label in (DocItemLabel.SECTION_HEADER, DocItemLabel.TITLE):
            text = getattr(item, "text", "").strip()
            if text:
                current_section = text
                elements.append(DocumentElement(
                    text=text,
                    element_type="heading",
                    page_number=page_no,
                    section_title=current_section,
                    level=level,
                ))

        elif label == DocItemLabel.TABLE:
            table_md = _table_to_markdown(item, doc)
            if table_md:
                elements.append(DocumentElement(
                    text=table_md,
                    element_type="table",
                    page_number=page_no,
                    section_title=current_section,
                    level=level,
                ))

        elif label == DocItemLabel.PICTURE:
            elements.append(DocumentElement(
                text=_picture_caption(item, doc),
                element_type="image",
                page_number=page_no,
                section_title=current_section,
                level=level,
                image_data=_picture_png(item, doc),
                image_media_type="image/png",
            ))

        elif label in (DocItemLabel.TEXT, DocItemLabel.PARAGRAPH,
                       DocItemLabel.LIST_ITEM, DocItemLabel.CAPTION,
                       DocItemLabel.FOOTNOTE, DocItemLabel.CODE):
            text = getattr(item, "text", "").strip()
            if text:
                elements.append(DocumentElement(
                    text=text,
                    element_type="text",
                    page_number=page_no,
                    section_title=current_section,
                    level=level,
                ))

    page_count = max(pages_seen) if pages_seen - {0} else 0
    return elements, page_count


def _table_to_markdown(table_item: object, document: object) -> str:
    """Export a Docling table as markdown, falling back to its text."""
    try:
        if hasattr(table_item, "export_to_markdown"):
            return table_item.export_to_markdown(doc=document).strip()
    except Exception as exc:
        logger.warning("Table export to markdown failed: %s", exc)

    text = getattr(table_item, "text", "")
    return text.strip() if text else ""


def _picture_caption(picture_item: object, document: object) -> str:
    try:
        return picture_item.caption_text(document).strip()
    except Exception:
        return ""


def _picture_png(picture_item: object, document: object) -> bytes | None:
    """Render a Docling picture to PNG bytes, or None if no bitmap exists."""
    try:
        image = picture_item.get_image(document)
    except Exception as exc:
        logger.debug("Picture bitmap unavailable: %s", exc)
        return None
    if image is None:
        return None
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

TEXT_MEDIA_TYPES = {
    "application/json",
    "application/x-ndjson",
    "application/xml",
    "application/x-yaml",
}


def normalize_media_type(media_type: str | None) -> str:
    """Lower-case a content type and strip parameters such as charset."""
    if not media_type or not media_type.strip():
        return DEFAULT_MEDIA_TYPE
    return media_type.split(";", 1)[0].strip().lower()


class MediaTypeDocumentReader:
    """
    Routes each upload to the reader that understands its media type.

    `application/octet-stream` uploads are sniffed for a PDF signature,
    since browsers often send that type for files they do not recognise.
    """

    def __init__(
        self,
        text_reader: DocumentReader | None = None,
        docling_reader: DocumentReader | None = None,
    ) -> None:
        self._text_reader = text_reader or TextDocumentReader()
        self._docling_reader = docling_reader or DoclingDocumentReader()

    async def read(
        self,
        stream: BinaryIO,
        identifier: str,
        media_type: str,
    ) -> Document:
        resolved = normalize_media_type(media_type)
        if resolved == DEFAULT_MEDIA_TYPE:
            resolved = await asyncio.to_thread(_sniff_media_type, stream)

        if resolved in DOCLING_EXTENSIONS:
            return await self._docling_reader.read(stream, identifier, resolved)
        if resolved.startswith("text/") or resolved in TEXT_MEDIA_TYPES:
            return await self._text_reader.read(stream, identifier, resolved)

        raise UnsupportedFormatError(f"No reader for media type '{media_type}'")


def _sniff_media_type(stream: BinaryIO) -> str:
    """Best-effort detection for untyped uploads; rewinds the stream."""
    if not stream.seekable():
        return DEFAULT_MEDIA_TYPE
    head = stream.read(8)
    stream.seek(0)
    if head.startswith(b"%PDF"):
        return "application/pdf"
    return DEFAULT_MEDIA_TYPE

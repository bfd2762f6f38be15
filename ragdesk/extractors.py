"""Format-specific content extraction from raw uploaded bytes.

Provides:
- DocumentFormat: closed set of supported formats.
- detect_format: the single format-detection function (MIME type first,
  file extension as tiebreak when the MIME type is missing or generic).
- One extractor class per format, each implementing extract(data) -> ExtractedContent.
- extract_content: detect, dispatch once, and enforce the non-empty result rule.

Known approximations:
- PDF image extraction is not supported; PdfExtractor reports it through
  ExtractedContent.image_support instead of returning a silent empty list.
- CSV rows are split on raw commas, so quoted fields containing commas are split too.
"""
import enum
import io
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd
from bs4 import BeautifulSoup
from docx import Document as DocxDocument
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from pypdf import PdfReader

from ragdesk.errors import ExtractionError, UnsupportedFormatError

logger = logging.getLogger(__name__)

GENERIC_MIME_TYPES = {"", "application/octet-stream", "binary/octet-stream"}


class DocumentFormat(str, enum.Enum):
    PDF = "pdf"
    DOCX = "docx"
    TEXT = "text"
    CSV = "csv"
    SPREADSHEET = "spreadsheet"
    JSON = "json"
    MARKUP = "markup"


class ImageSupport(str, enum.Enum):
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"
    NOT_APPLICABLE = "not_applicable"


@dataclass
class ExtractedImage:
    """An embedded image with its position among the document's images."""
    data: bytes
    index: int
    content_type: str = "image/png"


@dataclass
class ExtractedContent:
    text: str
    images: List[ExtractedImage] = field(default_factory=list)
    image_support: ImageSupport = ImageSupport.NOT_APPLICABLE


def _extension(file_name: str) -> str:
    name = (file_name or "").lower()
    return name.rsplit(".", 1)[-1] if "." in name else ""


def detect_format(file_name: str, mime_type: Optional[str] = None) -> DocumentFormat:
    """Pick the extractor format for a file.

    Args:
        file_name: Original file name (extension is used as tiebreak).
        mime_type: Declared MIME type, may be None or generic.

    Returns:
        DocumentFormat: The detected format.

    Raises:
        UnsupportedFormatError: If neither MIME type nor extension is supported.
    """
    ext = _extension(file_name)
    mime = (mime_type or "").lower().strip()
    if mime in GENERIC_MIME_TYPES:
        mime = ""

    if "pdf" in mime or ext == "pdf":
        return DocumentFormat.PDF
    if ext == "docx" or "wordprocessingml" in mime:
        return DocumentFormat.DOCX
    if ext in ("txt", "md", "markdown") or mime in ("text/plain", "text/markdown"):
        return DocumentFormat.TEXT
    if ext == "csv" or "csv" in mime:
        return DocumentFormat.CSV
    if ext in ("xlsx", "xls") or "spreadsheet" in mime or "ms-excel" in mime:
        return DocumentFormat.SPREADSHEET
    if ext == "json" or mime == "application/json":
        return DocumentFormat.JSON
    if ext in ("xml", "html", "htm") or mime in ("text/html", "application/xml", "text/xml"):
        return DocumentFormat.MARKUP
    raise UnsupportedFormatError(f"Unsupported file type: {ext or mime or 'unknown'}")


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


class Extractor:
    """Base class: turn raw bytes into text (+ images where supported)."""

    format: DocumentFormat

    def extract(self, data: bytes) -> ExtractedContent:
        raise NotImplementedError


class PdfExtractor(Extractor):
    format = DocumentFormat.PDF

    def extract(self, data: bytes) -> ExtractedContent:
        reader = PdfReader(io.BytesIO(data))
        parts = [page.extract_text() or "" for page in reader.pages]
        text = "\n".join(p for p in parts if p)
        logger.info("PDF image extraction not supported; extracted text from %d pages", len(parts))
        return ExtractedContent(text=text, images=[], image_support=ImageSupport.UNSUPPORTED)


class DocxExtractor(Extractor):
    """Paragraph/table text plus images from the document's image relationships."""

    format = DocumentFormat.DOCX

    def extract(self, data: bytes) -> ExtractedContent:
        doc = DocxDocument(io.BytesIO(data))

        lines: List[str] = [p.text for p in doc.paragraphs if p.text.strip()]
        for table in doc.tables:
            for row in table.rows:
                cells = [c.text.strip() for c in row.cells]
                if any(cells):
                    lines.append(" | ".join(cells))

        images: List[ExtractedImage] = []
        # rIds sort in insertion order (rId1, rId2, ...)
        rels = sorted(doc.part.rels.values(), key=lambda r: _rid_number(r.rId))
        for rel in rels:
            if rel.reltype != RT.IMAGE or rel.is_external:
                continue
            part = rel.target_part
            images.append(
                ExtractedImage(data=part.blob, index=len(images), content_type=part.content_type)
            )

        logger.info("Extracted %d images from DOCX", len(images))
        return ExtractedContent(text="\n".join(lines).strip(), images=images, image_support=ImageSupport.SUPPORTED)


def _rid_number(rid: str) -> int:
    m = re.search(r"(\d+)$", rid or "")
    return int(m.group(1)) if m else 0


class TextExtractor(Extractor):
    format = DocumentFormat.TEXT

    def extract(self, data: bytes) -> ExtractedContent:
        return ExtractedContent(text=_decode(data))


class CsvExtractor(Extractor):
    format = DocumentFormat.CSV

    def extract(self, data: bytes) -> ExtractedContent:
        lines = _decode(data).split("\n")
        formatted = [" | ".join(f.strip() for f in line.split(",")) for line in lines]
        return ExtractedContent(text="\n".join(formatted))


class SpreadsheetExtractor(Extractor):
    format = DocumentFormat.SPREADSHEET

    def extract(self, data: bytes) -> ExtractedContent:
        # sheet_name=None loads every sheet, preserving workbook order
        sheets: Dict[str, pd.DataFrame] = pd.read_excel(io.BytesIO(data), sheet_name=None, header=None)
        out: List[str] = []
        for name, df in sheets.items():
            out.append(f"=== Sheet: {name} ===")
            out.append(df.to_csv(index=False, header=False).strip())
        return ExtractedContent(text="\n".join(out).strip())


class JsonExtractor(Extractor):
    format = DocumentFormat.JSON

    def extract(self, data: bytes) -> ExtractedContent:
        raw = _decode(data)
        try:
            parsed = json.loads(raw)
        except ValueError:
            return ExtractedContent(text=raw)
        return ExtractedContent(text=json.dumps(parsed, ensure_ascii=False, indent=2))


class MarkupExtractor(Extractor):
    format = DocumentFormat.MARKUP

    def extract(self, data: bytes) -> ExtractedContent:
        soup = BeautifulSoup(_decode(data), "lxml")
        for tag in soup(["script", "style"]):
            tag.decompose()
        text = soup.get_text(" ")
        text = re.sub(r"\s+", " ", text).strip()
        return ExtractedContent(text=text)


EXTRACTORS: Dict[DocumentFormat, Extractor] = {
    e.format: e
    for e in (
        PdfExtractor(),
        DocxExtractor(),
        TextExtractor(),
        CsvExtractor(),
        SpreadsheetExtractor(),
        JsonExtractor(),
        MarkupExtractor(),
    )
}


def extract_content(data: bytes, file_name: str, mime_type: Optional[str] = None) -> ExtractedContent:
    """Detect the format and extract text and images.

    Args:
        data: Raw file bytes.
        file_name: Original file name.
        mime_type: Declared MIME type.

    Returns:
        ExtractedContent: Non-empty text plus any embedded images.

    Raises:
        ExtractionError: Unsupported format, extractor failure, or empty text.
    """
    fmt = detect_format(file_name, mime_type)
    try:
        content = EXTRACTORS[fmt].extract(data)
    except Exception as e:
        raise ExtractionError(f"Failed to parse document: {e}") from e

    if not content.text or not content.text.strip():
        raise ExtractionError("No text could be extracted from document")

    logger.info(
        "Extracted %d characters and %d images (format=%s)", len(content.text), len(content.images), fmt.value
    )
    return content

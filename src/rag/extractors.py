"""Document text extraction for various file types.

Supports: PDF, DOC, DOCX, TXT, Markdown

Dispatch is a closed table from MIME type to FileKind and from FileKind
to an extraction function. Adding a kind without an extractor fails at
import time.
"""

import logging
import re
from collections.abc import Callable
from enum import Enum
from io import BytesIO

from docx import Document
from pypdf import PdfReader

from src.core.exceptions import EmptyExtractedContent, ExtractionFailure, UnsupportedFileType

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH = 10


class FileKind(str, Enum):
    PDF = "pdf"
    LEGACY_WORD = "doc"
    WORD = "docx"
    TEXT = "txt"
    MARKDOWN = "md"


MIME_TO_KIND: dict[str, FileKind] = {
    "application/pdf": FileKind.PDF,
    "application/msword": FileKind.LEGACY_WORD,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": FileKind.WORD,
    "text/plain": FileKind.TEXT,
    "text/markdown": FileKind.MARKDOWN,
    "text/x-markdown": FileKind.MARKDOWN,
}


def _extract_plain_text(content: bytes) -> str:
    return content.decode("utf-8", errors="replace")


def _extract_pdf(content: bytes) -> str:
    """Extract text from all pages of a PDF.

    pypdf reports recoverable structure problems through its own logger;
    those are left as warnings and only a failed read aborts.
    """
    try:
        reader = PdfReader(BytesIO(content))
        pages = list(reader.pages)
    except Exception as e:
        raise ExtractionFailure(f"PDF extraction failed: {e}") from e

    text_parts = []
    for page_num, page in enumerate(pages, 1):
        try:
            page_text = page.extract_text()
        except Exception as e:
            logger.warning(f"[Extractor] PDF page {page_num} unreadable: {e}")
            continue
        if page_text and page_text.strip():
            text_parts.append(f"[Page {page_num}]\n{page_text}")

    return "\n\n".join(text_parts)


def _extract_docx(content: bytes) -> str:
    """Extract text from Word documents, preserving headings and tables."""
    try:
        doc = Document(BytesIO(content))
    except Exception as e:
        raise ExtractionFailure(f"Word extraction failed: {e}") from e

    text_parts = []
    for para in doc.paragraphs:
        text = para.text.strip()
        if not text:
            continue
        style_name = para.style.name if para.style is not None else ""
        if style_name.startswith("Heading"):
            level = style_name.replace("Heading ", "")
            prefix = "#" * int(level) + " " if level.isdigit() else "# "
            text_parts.append(f"{prefix}{text}")
        else:
            text_parts.append(text)

    for table_idx, table in enumerate(doc.tables, 1):
        rows = []
        for row in table.rows:
            row_text = " | ".join(cell.text.strip() for cell in row.cells)
            if row_text.replace("|", "").strip():
                rows.append(row_text)
        if rows:
            text_parts.append(f"[Table {table_idx}]")
            text_parts.extend(rows)

    return "\n\n".join(text_parts)


# Legacy .doc goes through python-docx too; binary Word files fail as
# ExtractionFailure rather than being silently skipped.
KIND_EXTRACTORS: dict[FileKind, Callable[[bytes], str]] = {
    FileKind.PDF: _extract_pdf,
    FileKind.LEGACY_WORD: _extract_docx,
    FileKind.WORD: _extract_docx,
    FileKind.TEXT: _extract_plain_text,
    FileKind.MARKDOWN: _extract_plain_text,
}

_missing = set(FileKind) - set(KIND_EXTRACTORS)
if _missing:
    raise RuntimeError(f"No extractor registered for: {sorted(k.value for k in _missing)}")


def kind_for(mime_type: str) -> FileKind:
    """Resolve a MIME type to its FileKind, ignoring parameters like charset."""
    base = mime_type.split(";", 1)[0].strip().lower()
    kind = MIME_TO_KIND.get(base)
    if kind is None:
        raise UnsupportedFileType(mime_type)
    return kind


def supports(mime_type: str) -> bool:
    try:
        kind_for(mime_type)
    except UnsupportedFileType:
        return False
    return True


def supported_types() -> list[str]:
    return list(MIME_TO_KIND.keys())


def clean_text(text: str) -> str:
    """Clean and normalize extracted text."""
    # Normalize line endings
    text = text.replace("\r\n", "\n").replace("\r", "\n")

    # Collapse runs of spaces/tabs, cap blank lines at one
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)

    lines = [line.strip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def extract(
    content: bytes,
    mime_type: str,
    file_name: str = "",
    min_length: int = MIN_TEXT_LENGTH,
) -> str:
    """Extract normalized text from a document.

    Args:
        content: Raw document bytes
        mime_type: Declared MIME type
        file_name: Used only in log messages
        min_length: Shortest text accepted

    Returns:
        Cleaned text of at least `min_length` characters

    Raises:
        UnsupportedFileType: MIME type is not in the dispatch table
        ExtractionFailure: The parser could not read the document
        EmptyExtractedContent: Fewer than `min_length` characters came out
    """
    kind = kind_for(mime_type)
    text = clean_text(KIND_EXTRACTORS[kind](content))

    if len(text) < min_length:
        logger.info(f"[Extractor] {file_name or kind.value}: only {len(text)} chars extracted")
        raise EmptyExtractedContent()

    return text

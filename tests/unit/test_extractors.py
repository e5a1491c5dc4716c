"""Unit tests for document text extraction."""

from __future__ import annotations

import io

import pytest
from docx import Document

from src.core.exceptions import EmptyExtractedContent, ExtractionFailure, UnsupportedFileType
from src.rag import extractors
from src.rag.extractors import FileKind, KIND_EXTRACTORS, clean_text, extract, kind_for


def _docx_bytes() -> bytes:
    doc = Document()
    doc.add_heading("Onboarding Guide", level=1)
    doc.add_paragraph("New starters receive a laptop on their first day.")
    table = doc.add_table(rows=2, cols=2)
    table.cell(0, 0).text = "Team"
    table.cell(0, 1).text = "Owner"
    table.cell(1, 0).text = "Platform"
    table.cell(1, 1).text = "Dana"
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    def test_every_kind_has_an_extractor(self) -> None:
        assert set(KIND_EXTRACTORS) == set(FileKind)

    @pytest.mark.parametrize(
        ("mime_type", "kind"),
        [
            ("application/pdf", FileKind.PDF),
            ("application/msword", FileKind.LEGACY_WORD),
            (
                "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
                FileKind.WORD,
            ),
            ("text/plain", FileKind.TEXT),
            ("text/markdown", FileKind.MARKDOWN),
            ("text/x-markdown", FileKind.MARKDOWN),
        ],
    )
    def test_kind_for_known_types(self, mime_type: str, kind: FileKind) -> None:
        assert kind_for(mime_type) is kind

    def test_kind_for_ignores_parameters_and_case(self) -> None:
        assert kind_for("Text/Plain; charset=utf-8") is FileKind.TEXT

    def test_unsupported_type_raises(self) -> None:
        with pytest.raises(UnsupportedFileType) as exc_info:
            kind_for("image/png")
        assert exc_info.value.message == "Unsupported file type: image/png"

    def test_supports(self) -> None:
        assert extractors.supports("application/pdf") is True
        assert extractors.supports("application/zip") is False

    def test_supported_types_lists_all_mime_types(self) -> None:
        assert "text/markdown" in extractors.supported_types()
        assert len(extractors.supported_types()) == 6


# ---------------------------------------------------------------------------
# clean_text
# ---------------------------------------------------------------------------


class TestCleanText:
    def test_collapses_spaces_and_blank_lines(self) -> None:
        assert clean_text("a  \t b\r\n\n\n\nc") == "a b\n\nc"

    def test_strips_line_edges(self) -> None:
        assert clean_text("  first  \n   second ") == "first\nsecond"


# ---------------------------------------------------------------------------
# extract
# ---------------------------------------------------------------------------


class TestExtract:
    def test_plain_text(self) -> None:
        text = extract(b"Hello   world.\r\nSecond line here.", "text/plain", "notes.txt")
        assert text == "Hello world.\nSecond line here."

    def test_markdown_with_charset(self) -> None:
        content = "# Title\n\nSome *markdown* body text.".encode()
        text = extract(content, "text/markdown; charset=utf-8")
        assert text.startswith("# Title")

    def test_invalid_utf8_is_replaced(self) -> None:
        text = extract(b"Caf\xe9 menu for the week ahead.", "text/plain")
        assert "menu for the week ahead." in text

    def test_short_text_is_empty_content(self) -> None:
        with pytest.raises(EmptyExtractedContent) as exc_info:
            extract(b"  tiny  ", "text/plain")
        assert exc_info.value.message == "Extracted text is too short or empty"

    def test_empty_content_is_an_extraction_failure(self) -> None:
        with pytest.raises(ExtractionFailure):
            extract(b"", "text/plain")

    def test_custom_min_length(self) -> None:
        assert extract(b"tiny", "text/plain", min_length=2) == "tiny"

    def test_unsupported_type(self) -> None:
        with pytest.raises(UnsupportedFileType):
            extract(b"\x89PNG....", "image/png")

    def test_corrupt_pdf_fails(self) -> None:
        with pytest.raises(ExtractionFailure):
            extract(b"this is not a pdf document", "application/pdf", "broken.pdf")

    def test_docx_headings_and_tables(self) -> None:
        text = extract(
            _docx_bytes(),
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "guide.docx",
        )
        assert "# Onboarding Guide" in text
        assert "New starters receive a laptop on their first day." in text
        assert "[Table 1]" in text
        assert "Platform | Dana" in text

    def test_legacy_word_binary_fails(self) -> None:
        with pytest.raises(ExtractionFailure):
            extract(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 64, "application/msword")

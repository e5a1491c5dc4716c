"""Unit tests for FileProcessor."""

from __future__ import annotations

import pytest

from src.core.config import Settings
from src.rag.processor import FileProcessor
from tests.conftest import SAMPLE_TEXT, make_raw_file


@pytest.fixture()
def processor(settings: Settings) -> FileProcessor:
    return FileProcessor(settings)


class TestFileProcessor:
    @pytest.mark.asyncio
    async def test_partial_failure_keeps_order(self, processor: FileProcessor) -> None:
        files = [
            make_raw_file("good.txt"),
            make_raw_file("photo.png", b"\x89PNG", "image/png"),
            make_raw_file("empty.txt", b"   "),
            make_raw_file("notes.md", b"# Notes\n\nShip the release on Friday.", "text/markdown"),
        ]

        results = await processor.process_files(files, user_id="user-1")

        assert [r.file_name for r in results] == ["good.txt", "photo.png", "empty.txt", "notes.md"]
        assert [r.status for r in results] == ["completed", "error", "error", "completed"]
        assert results[1].error == "Unsupported file type: image/png"
        assert results[2].error == "Extracted text is too short or empty"
        assert results[1].entries == []

    @pytest.mark.asyncio
    async def test_entry_metadata(self, processor: FileProcessor) -> None:
        raw = make_raw_file("good.txt")

        [result] = await processor.process_files([raw], user_id="user-1", agent_id="agent-1")

        assert result.succeeded
        assert result.chunks == 1
        assert result.processed_size == raw.size
        [entry] = result.entries
        assert entry.content == SAMPLE_TEXT
        assert entry.metadata["user_id"] == "user-1"
        assert entry.metadata["agent_id"] == "agent-1"
        assert entry.metadata["file_name"] == "good.txt"
        assert entry.metadata["file_type"] == "text/plain"
        assert entry.metadata["file_size"] == raw.size
        assert entry.metadata["chunk_index"] == 0
        assert entry.metadata["total_chunks"] == 1
        assert entry.metadata["is_from_file"] is True
        assert "processed_at" in entry.metadata

    @pytest.mark.asyncio
    async def test_chunk_size_and_overlap_are_applied(self, processor: FileProcessor) -> None:
        text = " ".join(f"Line {i} of the runbook explains one step." for i in range(80))
        raw = make_raw_file("runbook.txt", text.encode())

        [result] = await processor.process_files([raw], user_id="u", chunk_size=500, overlap=50)

        assert result.chunks > 1
        assert all(len(e.content) <= 550 for e in result.entries)
        assert [e.metadata["chunk_index"] for e in result.entries] == list(range(result.chunks))
        assert {e.metadata["total_chunks"] for e in result.entries} == {result.chunks}
        assert len({e.id for e in result.entries}) == result.chunks

    @pytest.mark.asyncio
    async def test_oversized_file(self) -> None:
        processor = FileProcessor(Settings(_env_file=None, max_file_size_bytes=10))

        [result] = await processor.process_files([make_raw_file("big.txt")], user_id="u")

        assert result.status == "error"
        assert result.error == "File exceeds maximum size of 10 bytes"

    @pytest.mark.asyncio
    async def test_overlap_is_clamped_below_chunk_size(self, processor: FileProcessor) -> None:
        [result] = await processor.process_files(
            [make_raw_file("good.txt")], user_id="u", chunk_size=100, overlap=100
        )
        assert result.status == "completed"

    @pytest.mark.asyncio
    async def test_corrupt_pdf_is_a_file_error(self, processor: FileProcessor) -> None:
        [result] = await processor.process_files(
            [make_raw_file("broken.pdf", b"not a pdf", "application/pdf")], user_id="u"
        )
        assert result.status == "error"
        assert result.error.startswith("PDF extraction failed")

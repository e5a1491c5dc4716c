"""File processor for knowledge ingestion.

Turns received files into chunk entries: extract text, pick a chunk size,
split, and attach per-chunk metadata. Files are processed concurrently and
each file fails on its own.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from src.core.config import Settings, get_settings
from src.core.exceptions import FileSizeExceeded, KnowledgeServiceError
from src.observability.metrics import CHUNKS_CREATED, FILES_PROCESSED
from src.rag import extractors
from src.rag.chunking import chunk_text, effective_chunk_size
from src.rag.uploads import RawFile

logger = logging.getLogger(__name__)


@dataclass
class ChunkEntry:
    """One chunk of a processed file, keyed by the id shared with its vector."""

    id: str
    content: str
    metadata: dict[str, Any]


@dataclass
class StreamingProcessingResult:
    """Result of processing a single file."""

    file_id: str
    file_name: str
    status: str  # completed, error
    chunks: int = 0
    total_size: int = 0
    processed_size: int = 0
    error: str | None = None
    entries: list[ChunkEntry] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


class FileProcessor:
    """Processes received files into chunk entries.

    Pipeline per file:
    1. Validate type and size
    2. Extract text (in a worker thread)
    3. Split into chunks
    4. Build ChunkEntry records
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    async def process_files(
        self,
        files: list[RawFile],
        user_id: str,
        agent_id: str | None = None,
        chunk_size: int | None = None,
        overlap: int | None = None,
    ) -> list[StreamingProcessingResult]:
        """Process all files concurrently; results keep the input order."""
        chunk_size = chunk_size or self.settings.default_chunk_size
        overlap = self.settings.default_chunk_overlap if overlap is None else overlap

        logger.info(f"[Processor] Processing {len(files)} files for user {user_id}")
        results = await asyncio.gather(
            *(self.process_file(f, user_id, agent_id, chunk_size, overlap) for f in files)
        )
        completed = sum(1 for r in results if r.succeeded)
        logger.info(f"[Processor] Done: {completed}/{len(files)} files succeeded")
        return list(results)

    async def process_file(
        self,
        file: RawFile,
        user_id: str,
        agent_id: str | None,
        chunk_size: int,
        overlap: int,
    ) -> StreamingProcessingResult:
        result = StreamingProcessingResult(
            file_id=file.id,
            file_name=file.file_name,
            status="error",
            total_size=file.size,
        )

        try:
            if file.size > self.settings.max_file_size_bytes:
                raise FileSizeExceeded(file.file_name, self.settings.max_file_size_bytes)

            # Raises UnsupportedFileType before any parsing work
            extractors.kind_for(file.mime_type)
            text = await asyncio.to_thread(
                extractors.extract,
                file.content,
                file.mime_type,
                file.file_name,
                self.settings.min_extracted_chars,
            )

            size = effective_chunk_size(len(text), chunk_size)
            if size != chunk_size:
                logger.info(
                    f"[Processor] {file.file_name}: {len(text)} chars, chunk size raised to {size}"
                )
            chunks = chunk_text(text, max_length=size, overlap=min(overlap, size - 1))
        except KnowledgeServiceError as e:
            result.error = e.message
        except ValueError as e:
            result.error = str(e)
        else:
            result.entries = self._build_entries(chunks, file, user_id, agent_id)
            result.chunks = len(result.entries)
            result.processed_size = file.size
            result.status = "completed"
            CHUNKS_CREATED.inc(result.chunks)

        FILES_PROCESSED.labels(status=result.status).inc()
        if result.error:
            logger.warning(f"[Processor] {file.file_name} failed: {result.error}")
        else:
            logger.info(f"[Processor] {file.file_name}: {result.chunks} chunks")
        return result

    @staticmethod
    def _build_entries(
        chunks: list[str],
        file: RawFile,
        user_id: str,
        agent_id: str | None,
    ) -> list[ChunkEntry]:
        processed_at = datetime.now(UTC).isoformat()
        return [
            ChunkEntry(
                id=str(uuid4()),
                content=chunk,
                metadata={
                    "user_id": user_id,
                    "agent_id": agent_id,
                    "file_name": file.file_name,
                    "file_type": file.mime_type,
                    "file_size": file.size,
                    "chunk_index": index,
                    "total_chunks": len(chunks),
                    "is_from_file": True,
                    "processed_at": processed_at,
                },
            )
            for index, chunk in enumerate(chunks)
        ]


# Singleton instance
_processor: FileProcessor | None = None


def get_processor() -> FileProcessor:
    """Get or create the global FileProcessor instance."""
    global _processor
    if _processor is None:
        _processor = FileProcessor(get_settings())
    return _processor

"""Knowledge ingestion coordinator.

Takes the files of one upload through processing, blob storage and
metadata persistence, then hands the chunks to a background writer that
embeds them and upserts the vectors. The request returns once metadata is
committed; vector writes finish later.
"""

import asyncio
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from src.core.exceptions import BlobUploadFailure
from src.db.models import KnowledgeEntry
from src.observability.metrics import VECTOR_WRITE_FAILURES
from src.rag.embedder import Embedder, get_embedder
from src.rag.processor import ChunkEntry, FileProcessor, StreamingProcessingResult
from src.rag.uploads import RawFile
from src.rag.vector_store import VectorStore, get_vector_store, store_chunks
from src.storage.blob_store import BlobStore, build_object_path

logger = logging.getLogger(__name__)

CONTENT_PREVIEW = "Content stored in vector database"


class AgentDirectory(Protocol):
    async def exists_in_tenant(self, agent_id: str, tenant_id: str) -> bool: ...


class KnowledgeStore(Protocol):
    async def bulk_insert(self, entries: list[KnowledgeEntry]) -> list[KnowledgeEntry]: ...


@dataclass
class IngestionRequest:
    files: list[RawFile]
    user_id: str
    tenant_id: str
    agent_id: str | None = None
    title: str | None = None
    chunk_size: int | None = None
    overlap: int | None = None
    session_id: str | None = None


@dataclass
class FileOutcome:
    file_name: str
    status: str  # success, error
    chunks: int = 0
    error: str | None = None
    file_id: str | None = None


@dataclass
class StoredEntry:
    id: str
    title: str
    content_preview: str
    agent_id: str | None
    created_at: str


@dataclass
class IngestionSummary:
    session_id: str | None
    success: bool
    files_processed: int
    total_chunks: int
    total_knowledge_entries: int
    files: list[FileOutcome] = field(default_factory=list)
    entries: list[StoredEntry] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def add_rejected(self, file_name: str, error: str) -> None:
        """Record a file the upload receiver refused before processing."""
        self.files.append(FileOutcome(file_name=file_name, status="error", error=error))
        self.errors.append(f"{file_name}: {error}")

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "session_id": self.session_id,
            "files_processed": self.files_processed,
            "total_chunks": self.total_chunks,
            "total_knowledge_entries": self.total_knowledge_entries,
            "files": [
                {"file_name": f.file_name, "status": f.status, "chunks": f.chunks, "error": f.error}
                for f in self.files
            ],
            "knowledge": {"entries": [asdict(e) for e in self.entries]},
            "errors": list(self.errors),
        }


def entry_title(file_name: str, chunk_index: int, total_chunks: int, title: str | None) -> str:
    stem = os.path.splitext(file_name)[0]
    if total_chunks > 1:
        return f"{stem} (Part {chunk_index + 1})"
    return title or stem


class BackgroundVectorWriter:
    """Runs embedding + vector upsert as detached tasks.

    Tasks are held in a set until done so they are not garbage collected;
    failures are logged and counted, never raised to the request.
    """

    def __init__(self, embedder: Embedder, vector_store: VectorStore):
        self.embedder = embedder
        self.vector_store = vector_store
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, entries: list[ChunkEntry], label: str = "") -> asyncio.Task:
        task = asyncio.create_task(
            store_chunks(entries, self.embedder, self.vector_store),
            name=f"vector-write:{label}" if label else None,
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.info(f"[VectorWriter] Queued {len(entries)} chunks ({label or 'unlabelled'})")
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"[VectorWriter] {task.get_name()} cancelled before completion")
            return
        error = task.exception()
        if error is not None:
            VECTOR_WRITE_FAILURES.inc()
            logger.error(f"[VectorWriter] {task.get_name()} failed: {error}", exc_info=error)
            return
        logger.info(f"[VectorWriter] {task.get_name()} stored {task.result()} vectors")

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight writes (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)


class KnowledgeIngestionCoordinator:
    """Runs one upload's files through the ingestion pipeline.

    Steps:
    1. Validate the agent (unknown agents are dropped, not fatal)
    2. Extract and chunk every file concurrently
    3. Store each successful file's original bytes in blob storage
    4. Bulk insert one metadata record per chunk (fatal on failure)
    5. Queue embedding + vector upsert in the background
    """

    def __init__(
        self,
        processor: FileProcessor,
        blob_store: BlobStore,
        knowledge_store: KnowledgeStore,
        agents: AgentDirectory,
        vector_writer: BackgroundVectorWriter,
    ):
        self.processor = processor
        self.blob_store = blob_store
        self.knowledge_store = knowledge_store
        self.agents = agents
        self.vector_writer = vector_writer

    async def ingest(self, request: IngestionRequest) -> IngestionSummary:
        agent_id = await self._resolve_agent(request.agent_id, request.tenant_id)

        results = await self.processor.process_files(
            request.files,
            user_id=request.user_id,
            agent_id=agent_id,
            chunk_size=request.chunk_size,
            overlap=request.overlap,
        )
        files_by_id = {f.id: f for f in request.files}

        outcomes: list[FileOutcome] = []
        errors: list[str] = []
        records: list[KnowledgeEntry] = []
        vector_entries: list[ChunkEntry] = []

        for result in results:
            if not result.succeeded:
                outcomes.append(self._failed(result.file_name, result.error, result.file_id, errors))
                continue

            raw = files_by_id[result.file_id]
            path = build_object_path(
                request.tenant_id, request.user_id, raw.file_name, int(time.time() * 1000)
            )
            try:
                file_url = await self.blob_store.upload(path, raw.content, raw.mime_type)
            except BlobUploadFailure as e:
                outcomes.append(self._failed(raw.file_name, e.message, raw.id, errors))
                continue

            self._collect(result, raw, file_url, agent_id, request, records, vector_entries)
            outcomes.append(
                FileOutcome(
                    file_name=raw.file_name,
                    status="success",
                    chunks=result.chunks,
                    file_id=raw.id,
                )
            )

        # Raises MetadataPersistFailure; nothing is queued for vectors in that case
        await self.knowledge_store.bulk_insert(records)

        if vector_entries:
            self.vector_writer.submit(vector_entries, label=request.session_id or "")

        created_at = datetime.now(UTC).isoformat()
        files_processed = sum(1 for o in outcomes if o.status == "success")
        summary = IngestionSummary(
            session_id=request.session_id,
            success=files_processed > 0,
            files_processed=files_processed,
            total_chunks=len(vector_entries),
            total_knowledge_entries=len(records),
            files=outcomes,
            entries=[
                StoredEntry(
                    id=r.id,
                    title=r.title,
                    content_preview=CONTENT_PREVIEW,
                    agent_id=r.agent_id,
                    created_at=created_at,
                )
                for r in records
            ],
            errors=errors,
        )
        logger.info(
            f"[Ingestion] Session {request.session_id}: {files_processed}/{len(results)} files, "
            f"{len(records)} entries stored"
        )
        return summary

    async def _resolve_agent(self, agent_id: str | None, tenant_id: str) -> str | None:
        if not agent_id:
            return None
        try:
            exists = await self.agents.exists_in_tenant(agent_id, tenant_id)
        except Exception as e:
            logger.warning(f"[Ingestion] Agent lookup for {agent_id} failed, ingesting without agent: {e}")
            return None
        if not exists:
            logger.warning(f"[Ingestion] Agent {agent_id} not found in tenant {tenant_id}, ignoring")
            return None
        return agent_id

    @staticmethod
    def _failed(file_name: str, error: str | None, file_id: str | None, errors: list[str]) -> FileOutcome:
        message = error or "Unknown error"
        errors.append(f"{file_name}: {message}")
        return FileOutcome(file_name=file_name, status="error", error=message, file_id=file_id)

    @staticmethod
    def _collect(
        result: StreamingProcessingResult,
        raw: RawFile,
        file_url: str,
        agent_id: str | None,
        request: IngestionRequest,
        records: list[KnowledgeEntry],
        vector_entries: list[ChunkEntry],
    ) -> None:
        for entry in result.entries:
            index = entry.metadata["chunk_index"]
            total = entry.metadata["total_chunks"]
            title = entry_title(raw.file_name, index, total, request.title)
            records.append(
                KnowledgeEntry(
                    id=entry.id,
                    title=title,
                    tenant_id=request.tenant_id,
                    user_id=request.user_id,
                    agent_id=agent_id,
                    file_url=file_url,
                    file_name=raw.file_name,
                    file_type=raw.mime_type,
                    file_size=raw.size,
                    chunk_index=index,
                    total_chunks=total,
                    upload_session_id=request.session_id,
                    extra_metadata={
                        "is_from_file": True,
                        "processed_at": entry.metadata["processed_at"],
                    },
                )
            )
            vector_entries.append(
                ChunkEntry(
                    id=entry.id,
                    content=entry.content,
                    metadata={
                        **entry.metadata,
                        "tenant_id": request.tenant_id,
                        "title": title,
                        "file_url": file_url,
                        "session_id": request.session_id,
                    },
                )
            )


# Singleton instance
_vector_writer: BackgroundVectorWriter | None = None


def get_vector_writer() -> BackgroundVectorWriter:
    """Get or create the global BackgroundVectorWriter instance."""
    global _vector_writer
    if _vector_writer is None:
        _vector_writer = BackgroundVectorWriter(get_embedder(), get_vector_store())
    return _vector_writer


async def shutdown_vector_writer(timeout: float = 30) -> None:
    """Let in-flight vector writes finish before the process exits."""
    if _vector_writer is not None:
        await _vector_writer.drain(timeout=timeout)

"""Knowledge ingestion, management, search and query endpoints."""

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.api.deps import (
    AppSettings,
    Arena,
    Blobs,
    Coordinator,
    CurrentUser,
    KnowledgeRepo,
    Orchestrator,
    UploadReceiver,
    Vectors,
)
from src.core.config import Settings
from src.core.exceptions import KnowledgeServiceError, ValidationFailure
from src.jobs.cleanup import remove_entry_artifacts
from src.rag.ingestion import IngestionRequest
from src.rag.uploads import ProgressStatus

logger = logging.getLogger(__name__)

router = APIRouter()

MIN_CHUNK_SIZE = 100
MAX_CHUNK_SIZE = 50000


# ============================================
# Request/Response Models
# ============================================


class FileOutcomeResponse(BaseModel):
    file_name: str
    status: str
    chunks: int
    error: str | None = None


class StoredEntryResponse(BaseModel):
    id: str
    title: str
    content_preview: str
    agent_id: str | None
    created_at: str


class StoredEntries(BaseModel):
    entries: list[StoredEntryResponse]


class UploadResponse(BaseModel):
    """Ingestion summary for one upload."""

    success: bool
    session_id: str | None
    files_processed: int
    total_chunks: int
    total_knowledge_entries: int
    files: list[FileOutcomeResponse]
    knowledge: StoredEntries
    errors: list[str]


class FileProgressResponse(BaseModel):
    file_id: str
    file_name: str
    bytes_received: int
    total_bytes: int
    percentage: int
    status: str
    error: str | None = None


class UploadProgressResponse(BaseModel):
    session_id: str
    completed: bool
    error: str | None
    files: list[FileProgressResponse]


class KnowledgeEntryResponse(BaseModel):
    id: str
    title: str
    file_name: str
    file_type: str
    file_url: str | None
    chunk_index: int
    total_chunks: int
    agent_id: str | None
    created_at: str


class DeleteResponse(BaseModel):
    success: bool
    id: str


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=10000)
    top_k: int = Field(5, ge=1, le=50)
    score_threshold: float = Field(0.7, ge=0.0, le=1.0)
    agent_id: str | None = None


class SearchHit(BaseModel):
    id: str
    score: float
    content: str
    title: str | None
    file_name: str | None
    chunk_index: int | None


class SearchResponse(BaseModel):
    query: str
    results: list[SearchHit]


class QueryRequest(BaseModel):
    """RAG query request."""

    query: str = Field(..., min_length=1, max_length=10000)
    top_k: int = Field(5, ge=1, le=50)
    score_threshold: float = Field(0.7, ge=0.0, le=1.0)
    agent_id: str | None = None
    system_prompt: str | None = Field(None, max_length=10000)


class QuerySource(BaseModel):
    id: str
    score: float
    file_name: str | None
    chunk_index: int | None


class QueryResponse(BaseModel):
    """RAG query response."""

    query: str
    answer: str
    sources: list[QuerySource]
    context_tokens: int


# ============================================
# Helpers
# ============================================


def _parse_int_field(fields: dict[str, str], names: tuple[str, ...], errors: list[dict]) -> int | None:
    for name in names:
        raw = fields.get(name)
        if raw is None or raw.strip() == "":
            continue
        try:
            return int(raw)
        except ValueError:
            errors.append({"field": names[0], "message": f"{names[0]} must be an integer"})
            return None
    return None


def parse_chunking_fields(fields: dict[str, str], settings: Settings) -> tuple[int, int]:
    """Read chunkSize/overlap form fields, falling back to configured defaults.

    Raises:
        ValidationFailure: Non-integer or out-of-range values
    """
    errors: list[dict] = []
    chunk_size = _parse_int_field(fields, ("chunkSize", "chunk_size"), errors)
    overlap = _parse_int_field(fields, ("overlap",), errors)
    chunk_size = settings.default_chunk_size if chunk_size is None else chunk_size
    overlap = settings.default_chunk_overlap if overlap is None else overlap

    if not errors:
        if not MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE:
            errors.append(
                {
                    "field": "chunkSize",
                    "message": f"chunkSize must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE}",
                }
            )
        elif not 0 <= overlap < chunk_size:
            errors.append({"field": "overlap", "message": "overlap must be >= 0 and less than chunkSize"})

    if errors:
        raise ValidationFailure("Invalid upload parameters", errors)
    return chunk_size, overlap


def _content_length(request: Request) -> int | None:
    value = request.headers.get("content-length")
    return int(value) if value and value.isdigit() else None


def _entry_response(e) -> KnowledgeEntryResponse:
    return KnowledgeEntryResponse(
        id=e.id,
        title=e.title,
        file_name=e.file_name,
        file_type=e.file_type,
        file_url=e.file_url,
        chunk_index=e.chunk_index,
        total_chunks=e.total_chunks,
        agent_id=e.agent_id,
        created_at=e.created_at.isoformat(),
    )


# ============================================
# Upload Endpoints
# ============================================


@router.post(
    "/knowledge/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_knowledge(
    request: Request,
    user: CurrentUser,
    receiver: UploadReceiver,
    coordinator: Coordinator,
    arena: Arena,
    settings: AppSettings,
):
    """Upload one or more files into the knowledge base.

    The multipart body is streamed, not buffered by the framework. Form
    fields: title, agentId (or agent_id), chunkSize, overlap. Files are
    processed concurrently; a failing file does not fail the others.
    Embedding runs in the background after the response is sent.

    Send X-Upload-Session-Id to poll progress while the upload runs.
    """
    upload = await receiver.receive(
        request.stream(),
        content_type=request.headers.get("content-type", ""),
        content_length=_content_length(request),
        user_id=user.sub,
        session_id=request.headers.get("X-Upload-Session-Id"),
    )

    try:
        chunk_size, overlap = parse_chunking_fields(upload.fields, settings)

        if not upload.files:
            errors = [{"field": "files", "message": e} for e in upload.errors]
            raise ValidationFailure(
                "No valid files uploaded",
                errors or [{"field": "files", "message": "At least one file is required"}],
            )

        summary = await coordinator.ingest(
            IngestionRequest(
                files=upload.files,
                user_id=user.sub,
                tenant_id=user.tenant_id,
                agent_id=upload.fields.get("agentId") or upload.fields.get("agent_id") or None,
                title=upload.fields.get("title") or None,
                chunk_size=chunk_size,
                overlap=overlap,
                session_id=upload.session_id,
            )
        )
    except KnowledgeServiceError as e:
        arena.fail_pending(upload.session_id, e.message)
        raise
    except Exception:
        arena.fail_pending(upload.session_id, "Ingestion failed")
        raise
    finally:
        arena.release(upload.session_id, settings.session_release_grace_seconds)

    for rejected in upload.rejected:
        summary.add_rejected(rejected.file_name, rejected.error)

    for outcome in summary.files:
        if outcome.file_id:
            arena.set_file_status(
                upload.session_id,
                outcome.file_id,
                ProgressStatus.COMPLETED if outcome.status == "success" else ProgressStatus.ERROR,
                outcome.error,
            )

    return summary.to_dict()


@router.get("/knowledge/upload/{session_id}/progress", response_model=UploadProgressResponse)
async def get_upload_progress(session_id: str, user: CurrentUser, arena: Arena):
    """Per-file progress of an upload session."""
    session = arena.get(session_id)
    if session is None or session.user_id != user.sub:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Upload session not found"
        ) from None

    return UploadProgressResponse(
        session_id=session.id,
        completed=session.completed,
        error=session.error,
        files=[FileProgressResponse(**p.to_dict()) for p in session.progress.values()],
    )


# ============================================
# Knowledge Entry Endpoints
# ============================================


@router.get("/knowledge/entries", response_model=list[KnowledgeEntryResponse])
async def list_knowledge_entries(
    user: CurrentUser,
    repo: KnowledgeRepo,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Knowledge entries uploaded by the current user, newest first."""
    entries = await repo.list_for_user(user.sub, user.tenant_id, limit=limit, offset=offset)
    return [_entry_response(e) for e in entries]


@router.get("/knowledge/entries/{entry_id}", response_model=KnowledgeEntryResponse)
async def get_knowledge_entry(entry_id: str, user: CurrentUser, repo: KnowledgeRepo):
    entry = await repo.get_for_user(entry_id, user.sub, user.tenant_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Knowledge entry not found"
        )
    return _entry_response(entry)


@router.delete("/knowledge/entries/{entry_id}", response_model=DeleteResponse)
async def delete_knowledge_entry(
    entry_id: str,
    user: CurrentUser,
    repo: KnowledgeRepo,
    vectors: Vectors,
    blobs: Blobs,
    background_tasks: BackgroundTasks,
):
    """Delete one entry owned by the caller.

    The metadata row goes first. Its vector, and the stored file once no
    other entry points at it, are removed after the response is sent.
    """
    entry = await repo.get_for_user(entry_id, user.sub, user.tenant_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Knowledge entry not found"
        )

    file_url = entry.file_url
    await repo.delete(entry)

    file_path = None
    # Chunks of one upload share a file
    if file_url and await repo.count_by_file_url(file_url) == 0:
        file_path = blobs.object_path(file_url)

    background_tasks.add_task(remove_entry_artifacts, entry_id, file_path, vectors, blobs)
    logger.info(f"[Knowledge] Entry {entry_id} deleted by {user.sub}")
    return DeleteResponse(success=True, id=entry_id)


# ============================================
# Search / Query Endpoints
# ============================================


@router.post("/knowledge/search", response_model=SearchResponse)
async def search_knowledge(body: SearchRequest, user: CurrentUser, orchestrator: Orchestrator):
    """Chunks matching the query, without generating an answer."""
    results = await orchestrator.search(
        body.query,
        user_id=user.sub,
        tenant_id=user.tenant_id,
        agent_id=body.agent_id,
        top_k=body.top_k,
        score_threshold=body.score_threshold,
    )
    return SearchResponse(
        query=body.query,
        results=[
            SearchHit(
                id=r.id,
                score=r.score,
                content=r.content,
                title=r.payload.get("title"),
                file_name=r.payload.get("file_name"),
                chunk_index=r.payload.get("chunk_index"),
            )
            for r in results
        ],
    )


@router.post("/knowledge/query", response_model=QueryResponse)
async def query_knowledge(body: QueryRequest, user: CurrentUser, orchestrator: Orchestrator):
    """Answer a question from the caller's knowledge."""
    result = await orchestrator.answer(
        body.query,
        user_id=user.sub,
        tenant_id=user.tenant_id,
        agent_id=body.agent_id,
        top_k=body.top_k,
        score_threshold=body.score_threshold,
        system_prompt=body.system_prompt,
    )
    return QueryResponse(
        query=body.query,
        answer=result.answer,
        sources=[QuerySource(**s) for s in result.sources],
        context_tokens=result.context_tokens,
    )

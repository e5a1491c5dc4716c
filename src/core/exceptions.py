"""Error taxonomy for the knowledge ingestion and query pipeline.

Every error raised deliberately by the pipeline derives from
KnowledgeServiceError so the API layer can map it to a response without
leaking internals. Per-file errors (unsupported type, size, extraction,
blob upload) are collected into summaries; the rest abort the request.
"""

from typing import Any


class KnowledgeServiceError(Exception):
    """Base class for pipeline errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ============================================
# Per-file errors
# ============================================


class UnsupportedFileType(KnowledgeServiceError):
    def __init__(self, mime_type: str):
        super().__init__(f"Unsupported file type: {mime_type}", {"mime_type": mime_type})
        self.mime_type = mime_type


class FileSizeExceeded(KnowledgeServiceError):
    def __init__(self, file_name: str, limit_bytes: int):
        super().__init__(
            f"File exceeds maximum size of {limit_bytes} bytes",
            {"file_name": file_name, "limit_bytes": limit_bytes},
        )
        self.file_name = file_name
        self.limit_bytes = limit_bytes


class ExtractionFailure(KnowledgeServiceError):
    """Parser failed on the document body."""


# Older name kept for callers that import it
ExtractionError = ExtractionFailure


class EmptyExtractedContent(ExtractionFailure):
    def __init__(self, message: str = "Extracted text is too short or empty"):
        super().__init__(message)


class BlobUploadFailure(KnowledgeServiceError):
    """Raw file could not be stored in blob storage."""


class BlobDeleteFailure(KnowledgeServiceError):
    """Stored file could not be removed."""


# ============================================
# Request-level errors
# ============================================


class UploadStreamError(KnowledgeServiceError):
    """Multipart stream was malformed or ended early."""


class ValidationFailure(KnowledgeServiceError):
    """Request input failed validation.

    `errors` is a list of {"field": ..., "message": ...} dicts and is
    returned to the client verbatim.
    """

    def __init__(self, message: str, errors: list[dict[str, str]] | None = None):
        super().__init__(message, {"errors": errors or []})
        self.errors = errors or []


class MetadataPersistFailure(KnowledgeServiceError):
    """Bulk insert of knowledge entries failed."""


class EmbeddingOrVectorUpsertFailure(KnowledgeServiceError):
    """Background embedding or vector upsert failed."""


class RetrievalFailure(KnowledgeServiceError):
    """Query embedding or vector search failed."""


# ============================================
# Generation errors
# ============================================


class GenerationFailure(KnowledgeServiceError):
    """Model generation failed after all retries."""

    def __init__(self, message: str, last_error: BaseException | None = None):
        super().__init__(message)
        self.last_error = last_error


class GenerationTimeout(GenerationFailure):
    def __init__(self, timeout_seconds: float):
        super().__init__("Operation timeout")
        self.timeout_seconds = timeout_seconds


class NonRetryableModelError(GenerationFailure):
    """Model rejected the request (auth, permission, unknown model, bad input)."""


class QuotaExceeded(GenerationFailure):
    """Provider quota or rate limit was still exhausted after retries."""

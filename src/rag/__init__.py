"""RAG (Retrieval-Augmented Generation) package.

Components:
- Uploads: streaming multipart receiver and upload session arena
- Extractors: text extraction from PDF, DOC/DOCX, TXT, MD
- Chunking: sentence-packing chunker with overlap
- Processor: concurrent per-file extraction and chunking
- Ingestion: blob storage, metadata persistence, background vector writes
- Embedder: Azure OpenAI embedding service with Redis cache
- VectorStore: Qdrant client for vector operations
- Orchestrator: retrieval, context assembly and generation
"""

from src.rag.chunking import chunk_text, effective_chunk_size
from src.rag.embedder import Embedder, get_embedder
from src.rag.extractors import FileKind, extract
from src.rag.ingestion import (
    BackgroundVectorWriter,
    IngestionRequest,
    IngestionSummary,
    KnowledgeIngestionCoordinator,
)
from src.rag.orchestrator import RAGAnswer, RAGOrchestrator, get_orchestrator
from src.rag.processor import ChunkEntry, FileProcessor, StreamingProcessingResult, get_processor
from src.rag.uploads import RawFile, StreamingUploadReceiver, UploadSessionArena
from src.rag.vector_store import RetrievalResult, VectorStore, get_vector_store

__all__ = [
    "BackgroundVectorWriter",
    "ChunkEntry",
    "Embedder",
    "FileKind",
    "FileProcessor",
    "IngestionRequest",
    "IngestionSummary",
    "KnowledgeIngestionCoordinator",
    "RAGAnswer",
    "RAGOrchestrator",
    "RawFile",
    "RetrievalResult",
    "StreamingProcessingResult",
    "StreamingUploadReceiver",
    "UploadSessionArena",
    "VectorStore",
    "chunk_text",
    "effective_chunk_size",
    "extract",
    "get_embedder",
    "get_orchestrator",
    "get_processor",
    "get_vector_store",
]

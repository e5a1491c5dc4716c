"""Qdrant vector store client.

Holds one vector per knowledge entry, keyed by the entry id. The payload
carries the chunk text under `content` plus its metadata fields. The Qdrant
client is blocking, so every call runs in a worker thread.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from qdrant_client import QdrantClient
from qdrant_client.http import models as qdrant_models
from qdrant_client.http.models import Distance, PayloadSchemaType, VectorParams

from src.core.config import get_settings
from src.core.exceptions import EmbeddingOrVectorUpsertFailure
from src.observability.metrics import VECTORS_UPSERTED
from src.rag.embedder import Embedder
from src.rag.processor import ChunkEntry

logger = logging.getLogger(__name__)

INDEXED_FIELDS = ("user_id", "agent_id", "file_name")


@dataclass
class VectorEntry:
    id: str
    vector: list[float]
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrievalResult:
    id: str
    score: float
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> str:
        return self.payload.get("content", "")


def build_filter(conditions: dict[str, Any] | None) -> qdrant_models.Filter | None:
    """Equality filter over payload fields; None values are skipped."""
    if not conditions:
        return None
    must = [
        qdrant_models.FieldCondition(key=key, match=qdrant_models.MatchValue(value=value))
        for key, value in conditions.items()
        if value is not None
    ]
    return qdrant_models.Filter(must=must) if must else None


class VectorStore:
    """Qdrant vector store for knowledge chunks."""

    def __init__(
        self,
        client: QdrantClient,
        collection_name: str,
        embedding_dim: int | None = None,
        batch_size: int = 100,
    ):
        self.client = client
        self.collection_name = collection_name
        self.embedding_dim = embedding_dim or get_settings().embedding_dimensions
        self.batch_size = batch_size

    async def ensure_collection(self) -> bool:
        """Create the collection if missing.

        Returns:
            True if created, False if already exists
        """
        collections = await asyncio.to_thread(self.client.get_collections)
        if self.collection_name in [c.name for c in collections.collections]:
            return False

        logger.info(f"[VectorStore] Creating collection '{self.collection_name}'")
        await asyncio.to_thread(
            self.client.create_collection,
            collection_name=self.collection_name,
            vectors_config=VectorParams(
                size=self.embedding_dim,
                distance=Distance.COSINE,
            ),
            # Chunk texts are large; keep payloads on disk
            on_disk_payload=True,
            hnsw_config=qdrant_models.HnswConfigDiff(payload_m=16, m=16),
            optimizers_config=qdrant_models.OptimizersConfigDiff(indexing_threshold=1000),
        )

        # Tenant index co-locates each tenant's vectors on disk
        await asyncio.to_thread(
            self.client.create_payload_index,
            collection_name=self.collection_name,
            field_name="tenant_id",
            field_schema=qdrant_models.KeywordIndexParams(
                type=qdrant_models.KeywordIndexType.KEYWORD,
                is_tenant=True,
            ),
        )
        for field_name in INDEXED_FIELDS:
            await asyncio.to_thread(
                self.client.create_payload_index,
                collection_name=self.collection_name,
                field_name=field_name,
                field_schema=PayloadSchemaType.KEYWORD,
            )
        return True

    async def upsert(self, entries: list[VectorEntry]) -> int:
        """Insert or update vectors in sequential batches.

        Returns:
            Number of entries upserted
        """
        if not entries:
            return 0

        total_batches = (len(entries) + self.batch_size - 1) // self.batch_size
        total_upserted = 0

        for i in range(0, len(entries), self.batch_size):
            batch = entries[i : i + self.batch_size]
            logger.debug(
                f"[VectorStore] Upserting batch {i // self.batch_size + 1}/{total_batches} "
                f"({len(batch)} points)"
            )
            await asyncio.to_thread(
                self.client.upsert,
                collection_name=self.collection_name,
                points=[
                    qdrant_models.PointStruct(id=e.id, vector=e.vector, payload=e.payload)
                    for e in batch
                ],
            )
            total_upserted += len(batch)

        VECTORS_UPSERTED.inc(total_upserted)
        logger.info(f"[VectorStore] Upserted {total_upserted} points to '{self.collection_name}'")
        return total_upserted

    async def query(
        self,
        vector: list[float],
        top_k: int = 5,
        filter: dict[str, Any] | None = None,
        include_metadata: bool = True,
    ) -> list[RetrievalResult]:
        """Nearest neighbours of `vector`, best first."""
        results = await asyncio.to_thread(
            self.client.query_points,
            collection_name=self.collection_name,
            query=vector,
            limit=top_k,
            query_filter=build_filter(filter),
            with_payload=include_metadata,
        )
        return [
            RetrievalResult(id=str(point.id), score=point.score, payload=point.payload or {})
            for point in results.points
        ]

    async def delete(self, entry_id: str) -> None:
        await asyncio.to_thread(
            self.client.delete,
            collection_name=self.collection_name,
            points_selector=qdrant_models.PointIdsList(points=[entry_id]),
        )


def build_payload(entry: ChunkEntry, created_at: str) -> dict[str, Any]:
    payload = {**entry.metadata, "content": entry.content, "created_at": created_at}
    return {k: v for k, v in payload.items() if v is not None}


async def store_chunks(
    entries: list[ChunkEntry],
    embedder: Embedder,
    vector_store: VectorStore,
) -> int:
    """Embed chunk contents and upsert one vector per chunk id.

    Raises:
        EmbeddingOrVectorUpsertFailure: Embedding or upsert failed
    """
    if not entries:
        return 0

    try:
        vectors = await embedder.embed_texts([e.content for e in entries])
        created_at = datetime.now(UTC).isoformat()
        vector_entries = [
            VectorEntry(id=entry.id, vector=vector, payload=build_payload(entry, created_at))
            for entry, vector in zip(entries, vectors, strict=True)
        ]
        return await vector_store.upsert(vector_entries)
    except Exception as e:
        raise EmbeddingOrVectorUpsertFailure(
            f"Failed to store {len(entries)} chunks: {e}",
            {"entry_ids": [entry.id for entry in entries]},
        ) from e


# Singleton instance
_vector_store: VectorStore | None = None


def get_vector_store() -> VectorStore:
    """Get or create the global VectorStore instance."""
    global _vector_store

    if _vector_store is None:
        settings = get_settings()
        # Batched upserts of large payloads outlast the 5s client default
        client = QdrantClient(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            timeout=settings.qdrant_timeout_seconds,
        )
        _vector_store = VectorStore(
            client,
            collection_name=settings.qdrant_collection,
            embedding_dim=settings.embedding_dimensions,
            batch_size=settings.vector_upsert_batch_size,
        )

    return _vector_store

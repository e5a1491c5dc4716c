"""Embedding service using Azure OpenAI.

Generates vector embeddings for chunk contents and queries, with an
optional Redis cache in front of the API.
"""

import logging

import httpx
from openai import AsyncAzureOpenAI
from redis.asyncio import Redis

from src.core.caching.embedding_cache import EmbeddingCache
from src.core.config import get_settings
from src.observability.metrics import EMBEDDING_CACHE

logger = logging.getLogger(__name__)


class Embedder:
    """Azure OpenAI embedding service.

    Uses text-embedding-3-small by default for cost-effective embeddings.
    """

    DEFAULT_MODEL = "text-embedding-3-small"
    BATCH_SIZE = 100  # Azure limit per request

    def __init__(
        self,
        client: AsyncAzureOpenAI,
        model: str = DEFAULT_MODEL,
        cache: EmbeddingCache | None = None,
        dimensions: int = 1536,
    ):
        self.client = client
        self.model = model
        self.cache = cache
        self.dimensions = dimensions

    async def embed_text(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        text = text.strip()
        if not text:
            raise ValueError("Cannot embed empty text")

        [embedding] = await self.embed_texts([text])
        return embedding

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts in batches.

        Cached vectors are reused; only misses hit the API. Blank texts get a
        zero vector so positions line up with the input.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors, same order as `texts`
        """
        if not texts:
            return []

        cleaned = [(i, t.strip()) for i, t in enumerate(texts)]
        non_empty = [(i, t) for i, t in cleaned if t]

        if not non_empty:
            raise ValueError("All texts are empty")

        all_embeddings: list[list[float] | None] = [None] * len(texts)

        pending = non_empty
        if self.cache is not None:
            cached = await self.cache.get_many(self.model, [t for _, t in non_empty])
            pending = []
            for (original_idx, text), vector in zip(non_empty, cached, strict=True):
                if vector is None:
                    pending.append((original_idx, text))
                else:
                    all_embeddings[original_idx] = vector
            hits = len(non_empty) - len(pending)
            EMBEDDING_CACHE.labels(result="hit").inc(hits)
            EMBEDDING_CACHE.labels(result="miss").inc(len(pending))

        for batch_start in range(0, len(pending), self.BATCH_SIZE):
            batch = pending[batch_start : batch_start + self.BATCH_SIZE]
            batch_texts = [t for _, t in batch]

            response = await self.client.embeddings.create(
                input=batch_texts,
                model=self.model,
            )

            fresh = []
            for j, (original_idx, text) in enumerate(batch):
                vector = response.data[j].embedding
                all_embeddings[original_idx] = vector
                fresh.append((text, vector))

            if self.cache is not None:
                await self.cache.set_many(self.model, fresh)

        zero_vector = [0.0] * self.dimensions
        return [e if e is not None else zero_vector for e in all_embeddings]

    async def embed_query(self, query: str) -> list[float]:
        """Embed a search query."""
        return await self.embed_text(query)


# Singleton instance
_embedder: Embedder | None = None


def get_embedder() -> Embedder:
    """Get or create the global Embedder instance."""
    global _embedder

    if _embedder is None:
        settings = get_settings()

        if not settings.azure_openai_endpoint or not settings.azure_openai_api_key:
            raise RuntimeError(
                "No Azure OpenAI endpoint configured for embeddings. "
                "Set AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_API_KEY."
            )

        logger.info(f"Initializing embedder with model '{settings.embedding_model}'")

        # Batch embedding of large documents needs more than the default timeout
        client = AsyncAzureOpenAI(
            api_key=settings.azure_openai_api_key,
            api_version=settings.azure_openai_api_version,
            azure_endpoint=settings.azure_openai_endpoint,
            timeout=httpx.Timeout(120.0, connect=30.0),
        )

        cache = None
        if settings.embedding_cache_enabled:
            cache = EmbeddingCache(
                Redis.from_url(settings.redis_url, decode_responses=True),
                ttl=settings.embedding_cache_ttl,
            )

        _embedder = Embedder(
            client=client,
            model=settings.embedding_model,
            cache=cache,
            dimensions=settings.embedding_dimensions,
        )

    return _embedder


async def shutdown_embedder() -> None:
    """Close the embedding client and its cache connection."""
    global _embedder
    if _embedder is None:
        return
    if _embedder.cache is not None:
        await _embedder.cache.close()
    await _embedder.client.close()
    _embedder = None

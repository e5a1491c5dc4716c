"""RAG orchestrator - retrieval plus generation.

Embeds the question, pulls the nearest chunks, keeps those above the score
threshold and packs them into a token-bounded context for the model.
Retrieval problems degrade to an answer without context; generation
errors propagate.
"""

import logging
from dataclasses import dataclass, field

from src.agent.runtime import GenerationOptions, ModelGateway, get_model_gateway
from src.core.config import Settings, get_settings
from src.core.exceptions import RetrievalFailure
from src.observability.metrics import RETRIEVAL_FAILURES
from src.rag.embedder import Embedder, get_embedder
from src.rag.vector_store import RetrievalResult, VectorStore, get_vector_store

logger = logging.getLogger(__name__)


@dataclass
class ContextWindow:
    text: str
    used: list[RetrievalResult] = field(default_factory=list)
    tokens: int = 0


@dataclass
class RAGAnswer:
    answer: str
    context: str
    sources: list[dict] = field(default_factory=list)
    context_tokens: int = 0


class RAGOrchestrator:
    """Answers questions from the knowledge base."""

    def __init__(
        self,
        embedder: Embedder,
        vector_store: VectorStore,
        gateway: ModelGateway,
        settings: Settings,
    ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.gateway = gateway
        self.settings = settings

    def build_context(self, results: list[RetrievalResult], max_tokens: int) -> ContextWindow:
        """Pack results best-first until the next one would exceed `max_tokens`."""
        used: list[RetrievalResult] = []
        parts: list[str] = []
        total = 0
        for result in sorted(results, key=lambda r: r.score, reverse=True):
            tokens = self.gateway.count_tokens(result.content)
            if total + tokens > max_tokens:
                break
            parts.append(result.content)
            used.append(result)
            total += tokens
        return ContextWindow(text="\n\n".join(parts), used=used, tokens=total)

    async def retrieve(
        self,
        query: str,
        top_k: int,
        filters: dict,
    ) -> list[RetrievalResult]:
        """Embed and search.

        Raises:
            RetrievalFailure: Embedding or vector search failed
        """
        try:
            vector = await self.embedder.embed_query(query)
            return await self.vector_store.query(vector, top_k=top_k, filter=filters)
        except Exception as e:
            raise RetrievalFailure(f"Retrieval failed: {e}") from e

    async def search(
        self,
        query: str,
        user_id: str | None = None,
        tenant_id: str | None = None,
        agent_id: str | None = None,
        top_k: int | None = None,
        score_threshold: float | None = None,
    ) -> list[RetrievalResult]:
        """Matching chunks above the threshold, best first, without generation.

        Raises:
            RetrievalFailure: Embedding or vector search failed
        """
        if score_threshold is None:
            score_threshold = self.settings.rag_score_threshold
        filters = {"user_id": user_id, "tenant_id": tenant_id, "agent_id": agent_id}
        results = await self.retrieve(query, top_k or self.settings.rag_top_k, filters)
        relevant = [r for r in results if r.score >= score_threshold]
        return sorted(relevant, key=lambda r: r.score, reverse=True)

    async def answer(
        self,
        query: str,
        user_id: str | None = None,
        tenant_id: str | None = None,
        agent_id: str | None = None,
        top_k: int | None = None,
        score_threshold: float | None = None,
        max_context_tokens: int | None = None,
        system_prompt: str | None = None,
    ) -> RAGAnswer:
        top_k = top_k or self.settings.rag_top_k
        if score_threshold is None:
            score_threshold = self.settings.rag_score_threshold
        max_context_tokens = max_context_tokens or self.settings.rag_max_context_tokens

        filters = {"user_id": user_id, "tenant_id": tenant_id, "agent_id": agent_id}
        try:
            results = await self.retrieve(query, top_k, filters)
        except RetrievalFailure as e:
            RETRIEVAL_FAILURES.inc()
            logger.warning(f"[RAG] {e.message}; answering without context")
            results = []

        relevant = [r for r in results if r.score >= score_threshold]
        budget = max(0, max_context_tokens - self.gateway.count_tokens(query))
        window = self.build_context(relevant, budget)
        logger.info(
            f"[RAG] {len(results)} retrieved, {len(relevant)} above {score_threshold}, "
            f"{len(window.used)} in context ({window.tokens} tokens)"
        )

        answer = await self.gateway.generate_rag_response(
            query,
            window.text,
            system_prompt=system_prompt,
            options=GenerationOptions(use_case="rag"),
        )
        return RAGAnswer(
            answer=answer,
            context=window.text,
            sources=[
                {
                    "id": r.id,
                    "score": r.score,
                    "file_name": r.payload.get("file_name"),
                    "chunk_index": r.payload.get("chunk_index"),
                }
                for r in window.used
            ],
            context_tokens=window.tokens,
        )


# Singleton instance
_orchestrator: RAGOrchestrator | None = None


def get_orchestrator() -> RAGOrchestrator:
    """Get or create the global RAGOrchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = RAGOrchestrator(
            embedder=get_embedder(),
            vector_store=get_vector_store(),
            gateway=get_model_gateway(),
            settings=get_settings(),
        )
    return _orchestrator

"""Unit tests for the RAG orchestrator."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.agent.runtime import count_tokens
from src.core.config import Settings
from src.core.exceptions import GenerationFailure, RetrievalFailure
from src.rag.orchestrator import RAGOrchestrator
from src.rag.vector_store import RetrievalResult


def _result(id: str, score: float, content: str, **payload) -> RetrievalResult:
    return RetrievalResult(id=id, score=score, payload={"content": content, **payload})


@pytest.fixture()
def embedder() -> AsyncMock:
    embedder = AsyncMock()
    embedder.embed_query.return_value = [0.1, 0.2, 0.3]
    return embedder


@pytest.fixture()
def vector_store() -> AsyncMock:
    store = AsyncMock()
    store.query.return_value = [
        _result("a", 0.9, "Refunds are issued within 14 days.", file_name="policy.md", chunk_index=0),
        _result("b", 0.75, "Refunds require a receipt.", file_name="policy.md", chunk_index=1),
        _result("c", 0.5, "The office closes at six.", file_name="office.md", chunk_index=0),
    ]
    return store


@pytest.fixture()
def gateway() -> MagicMock:
    gateway = MagicMock()
    gateway.count_tokens.side_effect = count_tokens
    gateway.generate_rag_response = AsyncMock(return_value="Within 14 days, with a receipt.")
    return gateway


@pytest.fixture()
def orchestrator(
    embedder: AsyncMock, vector_store: AsyncMock, gateway: MagicMock, settings: Settings
) -> RAGOrchestrator:
    return RAGOrchestrator(embedder, vector_store, gateway, settings)


# ---------------------------------------------------------------------------
# build_context
# ---------------------------------------------------------------------------


class TestBuildContext:
    def test_orders_best_first(self, orchestrator: RAGOrchestrator) -> None:
        results = [_result("low", 0.6, "second"), _result("high", 0.95, "first")]

        window = orchestrator.build_context(results, max_tokens=100)

        assert window.text == "first\n\nsecond"
        assert [r.id for r in window.used] == ["high", "low"]

    def test_stops_at_token_budget(self, orchestrator: RAGOrchestrator) -> None:
        ten_words = " ".join(["word"] * 10)  # 13 tokens
        results = [_result(str(i), 0.9 - i / 100, ten_words) for i in range(4)]

        window = orchestrator.build_context(results, max_tokens=30)

        assert len(window.used) == 2
        assert window.tokens == 26

    def test_empty_results(self, orchestrator: RAGOrchestrator) -> None:
        window = orchestrator.build_context([], max_tokens=100)
        assert window.text == ""
        assert window.tokens == 0


# ---------------------------------------------------------------------------
# answer
# ---------------------------------------------------------------------------


class TestAnswer:
    @pytest.mark.asyncio
    async def test_filters_by_score_threshold(
        self, orchestrator: RAGOrchestrator, gateway: MagicMock
    ) -> None:
        answer = await orchestrator.answer("How do refunds work?", score_threshold=0.7)

        assert answer.answer == "Within 14 days, with a receipt."
        assert [s["id"] for s in answer.sources] == ["a", "b"]
        assert answer.sources[0] == {
            "id": "a",
            "score": 0.9,
            "file_name": "policy.md",
            "chunk_index": 0,
        }
        assert "office closes" not in answer.context
        args, kwargs = gateway.generate_rag_response.await_args
        assert args == ("How do refunds work?", answer.context)
        assert kwargs["options"].use_case == "rag"

    @pytest.mark.asyncio
    async def test_scopes_search_to_caller(
        self, orchestrator: RAGOrchestrator, embedder: AsyncMock, vector_store: AsyncMock
    ) -> None:
        await orchestrator.answer("Q", user_id="u1", tenant_id="t1", top_k=3)

        embedder.embed_query.assert_awaited_once_with("Q")
        kwargs = vector_store.query.await_args.kwargs
        assert kwargs["top_k"] == 3
        assert kwargs["filter"] == {"user_id": "u1", "tenant_id": "t1", "agent_id": None}

    @pytest.mark.asyncio
    async def test_uses_configured_defaults(
        self, orchestrator: RAGOrchestrator, vector_store: AsyncMock
    ) -> None:
        answer = await orchestrator.answer("Q")

        assert vector_store.query.await_args.kwargs["top_k"] == 5
        assert len(answer.sources) == 2

    @pytest.mark.asyncio
    async def test_retrieval_failure_degrades(
        self, orchestrator: RAGOrchestrator, vector_store: AsyncMock, gateway: MagicMock
    ) -> None:
        vector_store.query.side_effect = RuntimeError("qdrant unavailable")

        answer = await orchestrator.answer("Q")

        assert answer.context == ""
        assert answer.sources == []
        assert gateway.generate_rag_response.await_args.args == ("Q", "")

    @pytest.mark.asyncio
    async def test_embedding_failure_degrades(
        self, orchestrator: RAGOrchestrator, embedder: AsyncMock
    ) -> None:
        embedder.embed_query.side_effect = RuntimeError("embedding quota")

        answer = await orchestrator.answer("Q")

        assert answer.sources == []

    @pytest.mark.asyncio
    async def test_context_budget_accounts_for_query(self, orchestrator: RAGOrchestrator) -> None:
        # Query alone exhausts the budget, so nothing fits
        query = " ".join(["q"] * 20)

        answer = await orchestrator.answer(query, max_context_tokens=20)

        assert answer.sources == []
        assert answer.context_tokens == 0

    @pytest.mark.asyncio
    async def test_generation_errors_propagate(
        self, orchestrator: RAGOrchestrator, gateway: MagicMock
    ) -> None:
        gateway.generate_rag_response.side_effect = GenerationFailure("Generation failed: down")

        with pytest.raises(GenerationFailure):
            await orchestrator.answer("Q")

    @pytest.mark.asyncio
    async def test_custom_system_prompt_is_forwarded(
        self, orchestrator: RAGOrchestrator, gateway: MagicMock
    ) -> None:
        await orchestrator.answer("Q", system_prompt="Answer in French.")
        assert gateway.generate_rag_response.await_args.kwargs["system_prompt"] == "Answer in French."


# ---------------------------------------------------------------------------
# search
# ---------------------------------------------------------------------------


class TestSearch:
    @pytest.mark.asyncio
    async def test_returns_hits_above_threshold_without_generating(
        self, orchestrator: RAGOrchestrator, vector_store: AsyncMock, gateway: MagicMock
    ) -> None:
        results = await orchestrator.search(
            "refunds", user_id="u1", tenant_id="t1", agent_id="a1", top_k=3, score_threshold=0.7
        )

        assert [r.id for r in results] == ["a", "b"]
        assert vector_store.query.await_args.kwargs["filter"] == {
            "user_id": "u1",
            "tenant_id": "t1",
            "agent_id": "a1",
        }
        gateway.generate_rag_response.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_propagates(
        self, orchestrator: RAGOrchestrator, vector_store: AsyncMock
    ) -> None:
        vector_store.query.side_effect = RuntimeError("qdrant unavailable")

        with pytest.raises(RetrievalFailure):
            await orchestrator.search("refunds")

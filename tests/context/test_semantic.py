"""
Unit tests for SemanticSearch and its collaborators.

Uses a deterministic bag-of-words embedder, the in-memory index, an
in-process Qdrant client and httpx.MockTransport for the embedding endpoint.
"""

import json

import httpx
import pytest
from qdrant_client import AsyncQdrantClient

from review_forge.context.chunker import Chunker
from review_forge.context.models import RetrievalMethod
from review_forge.context.semantic import (
    InMemoryVectorIndex,
    OllamaEmbedder,
    QdrantVectorIndex,
    SemanticSearch,
)
from review_forge.errors import MethodUnavailableError


VOCABULARY = ["invoice", "total", "customer", "email", "retry", "queue"]


class KeywordEmbedder:
    """Counts vocabulary words; similar text gives similar vectors."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.fail:
            raise ConnectionError("embedding endpoint unreachable")
        return [
            [float(text.lower().count(word)) + 0.01 for word in VOCABULARY] for text in texts
        ]


FILES = {
    "billing.py": "def invoice_total(invoice):\n    return invoice.total\n",
    "mail.py": "def send_customer_email(customer):\n    return customer.email\n",
    "jobs.py": "def retry_queue(queue):\n    return queue.retry()\n",
}


@pytest.fixture
def search() -> SemanticSearch:
    return SemanticSearch(KeywordEmbedder(), InMemoryVectorIndex(), Chunker(), clock=lambda: 1000.0)


# =============================================================================
# UNIT TESTS: SemanticSearch
# =============================================================================


class TestSemanticSearch:
    @pytest.mark.asyncio
    async def test_nearest_unit_ranks_first(self, search: SemanticSearch):
        await search.index_files("/repo", FILES)

        result = await search.search("/repo", "customer email address", k=2)

        assert result.method == RetrievalMethod.VECTOR
        assert len(result) == 2
        assert result.items[0].unit.file_path == "mail.py"
        assert result.items[0].score >= result.items[1].score

    @pytest.mark.asyncio
    async def test_index_update_recorded(self, search: SemanticSearch):
        assert search.is_index_available("/repo") is False

        written = await search.index_files("/repo", FILES)

        assert written == 3
        assert search.is_index_available("/repo") is True
        assert search.last_index_update("/repo") == 1000.0

    @pytest.mark.asyncio
    async def test_reindex_replaces_stale_units(self, search: SemanticSearch):
        await search.index_files("/repo", FILES)
        await search.index_files("/repo", {"billing.py": "def queue_retry():\n    pass\n"})

        result = await search.search("/repo", "invoice total", k=10)

        contents = [item.unit.content for item in result.items]
        assert not any("invoice_total" in c for c in contents)
        assert len(search.index) == 3

    @pytest.mark.asyncio
    async def test_deleted_file_removed(self, search: SemanticSearch):
        await search.index_files("/repo", FILES)
        await search.index_files("/repo", {"jobs.py": None})

        result = await search.search("/repo", "retry queue", k=10)

        assert "jobs.py" not in {item.unit.file_path for item in result.items}

    @pytest.mark.asyncio
    async def test_repositories_are_isolated(self, search: SemanticSearch):
        await search.index_files("/repo-a", FILES)

        result = await search.search("/repo-b", "invoice", k=5)

        assert len(result) == 0

    @pytest.mark.asyncio
    async def test_search_leaves_indexed_units_untouched(self, search: SemanticSearch):
        await search.index_files("/repo", FILES)

        first = await search.search("/repo", "invoice total", k=3)
        second = await search.search("/repo", "retry queue", k=3)

        for result in (first, second):
            for item in result.items:
                assert item.unit.relevance_score == item.score
        billing_first = next(i for i in first.items if i.unit.file_path == "billing.py")
        billing_second = next(i for i in second.items if i.unit.file_path == "billing.py")
        assert billing_first.unit.relevance_score > billing_second.unit.relevance_score
        stored = [e.unit for e in search.index._points.values()]
        assert all(unit.relevance_score == 0.0 for unit in stored)

    @pytest.mark.asyncio
    async def test_embedder_failure_is_method_unavailable(self):
        search = SemanticSearch(KeywordEmbedder(fail=True), InMemoryVectorIndex(), Chunker())

        with pytest.raises(MethodUnavailableError) as exc_info:
            await search.search("/repo", "invoice", k=5)

        assert exc_info.value.method == "vector"

    @pytest.mark.asyncio
    async def test_failed_index_update_not_recorded(self):
        search = SemanticSearch(KeywordEmbedder(fail=True), InMemoryVectorIndex(), Chunker())

        with pytest.raises(MethodUnavailableError):
            await search.index_files("/repo", FILES)

        assert search.last_index_update("/repo") is None


# =============================================================================
# UNIT TESTS: OllamaEmbedder
# =============================================================================


class TestOllamaEmbedder:
    @pytest.mark.asyncio
    async def test_posts_batch_to_embed_endpoint(self):
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"embeddings": [[0.1, 0.2], [0.3, 0.4]]})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        embedder = OllamaEmbedder("http://ollama:11434/", "nomic-embed-text", client=client)

        vectors = await embedder.embed(["a", "b"])

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]
        assert seen["url"] == "http://ollama:11434/api/embed"
        assert seen["body"] == {"model": "nomic-embed-text", "input": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_vector_count_mismatch_raises(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"embeddings": [[0.1]]})
            )
        )
        embedder = OllamaEmbedder(client=client)

        with pytest.raises(ValueError):
            await embedder.embed(["a", "b"])

    @pytest.mark.asyncio
    async def test_server_error_surfaces_through_search(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )
        search = SemanticSearch(OllamaEmbedder(client=client), InMemoryVectorIndex(), Chunker())

        with pytest.raises(MethodUnavailableError):
            await search.search("/repo", "anything", k=3)


# =============================================================================
# UNIT TESTS: QdrantVectorIndex
# =============================================================================


class TestQdrantVectorIndex:
    @pytest.mark.asyncio
    async def test_local_collection_roundtrip(self):
        index = QdrantVectorIndex(
            AsyncQdrantClient(location=":memory:"), collection="units", dimension=len(VOCABULARY)
        )
        search = SemanticSearch(KeywordEmbedder(), index, Chunker())

        await search.index_files("/repo", FILES)
        result = await search.search("/repo", "retry the queue", k=1)

        assert [item.unit.file_path for item in result.items] == ["jobs.py"]
        assert result.items[0].unit.symbol == "retry_queue"

        await search.index_files("/repo", {"jobs.py": None})
        result = await search.search("/repo", "retry the queue", k=3)
        assert "jobs.py" not in {item.unit.file_path for item in result.items}

"""
Semantic Search

Embedding-based retrieval: an Embedder turns unit text into vectors, a
VectorIndex stores them and answers nearest-neighbour queries. Any failure
in either collaborator surfaces as ``MethodUnavailableError`` so the router
can fall back; nothing here retries.
"""

import math
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import datetime, timezone
from typing import Protocol

import httpx
import structlog
from qdrant_client import AsyncQdrantClient, models

from review_forge.errors import MethodUnavailableError

from .chunker import Chunker
from .models import CodeUnit, RetrievalMethod, RetrievalResult, ScoredUnit, UnitEmbedding, UnitKind

logger = structlog.get_logger(__name__)


class Embedder(Protocol):
    """Protocol for text embedding providers."""

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts.

        Args:
            texts: Texts to embed

        Returns:
            One fixed-length vector per input text, in input order
        """
        ...


class VectorIndex(Protocol):
    """Protocol for vector stores holding unit embeddings."""

    async def upsert(self, embeddings: list[UnitEmbedding]) -> None:
        """Insert or replace embeddings by id."""
        ...

    async def delete_file(self, repository_path: str, file_path: str) -> None:
        """Remove every embedding for one file of one repository."""
        ...

    async def query(
        self, repository_path: str, vector: list[float], limit: int
    ) -> list[tuple[CodeUnit, float]]:
        """Nearest neighbours within one repository, best first."""
        ...


def point_id(repository_path: str, unit_id: str) -> str:
    """Stable vector id for a unit; re-indexing the same unit overwrites it."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{repository_path}#{unit_id}"))


class OllamaEmbedder:
    """Embedder backed by an Ollama-compatible ``/api/embed`` endpoint."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        response = await self._client.post(
            f"{self.base_url}/api/embed",
            json={"model": self.model, "input": texts},
        )
        response.raise_for_status()
        embeddings = response.json().get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise ValueError(
                f"Embedding response carried {len(embeddings or [])} vectors for {len(texts)} texts"
            )
        return embeddings

    async def aclose(self) -> None:
        await self._client.aclose()


class InMemoryVectorIndex:
    """Cosine-similarity vector index held in process memory."""

    def __init__(self) -> None:
        self._points: dict[str, UnitEmbedding] = {}

    def __len__(self) -> int:
        return len(self._points)

    async def upsert(self, embeddings: list[UnitEmbedding]) -> None:
        for embedding in embeddings:
            self._points[embedding.id] = embedding

    async def delete_file(self, repository_path: str, file_path: str) -> None:
        stale = [
            key
            for key, e in self._points.items()
            if e.repository_path == repository_path and e.unit.file_path == file_path
        ]
        for key in stale:
            del self._points[key]

    async def query(
        self, repository_path: str, vector: list[float], limit: int
    ) -> list[tuple[CodeUnit, float]]:
        scored = [
            (e.unit, _cosine(vector, e.vector))
            for e in self._points.values()
            if e.repository_path == repository_path
        ]
        scored.sort(key=lambda item: (-item[1], item[0].file_path, item[0].start_line))
        return scored[:limit]


class QdrantVectorIndex:
    """Vector index stored in a Qdrant collection (cosine distance)."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        collection: str = "code-embeddings",
        dimension: int = 768,
    ):
        self.client = client
        self.collection = collection
        self.dimension = dimension
        self._ready = False

    async def _ensure_collection(self) -> None:
        if self._ready:
            return
        if not await self.client.collection_exists(self.collection):
            await self.client.create_collection(
                collection_name=self.collection,
                vectors_config=models.VectorParams(
                    size=self.dimension, distance=models.Distance.COSINE
                ),
            )
            logger.info("Created vector collection", collection=self.collection)
        self._ready = True

    async def upsert(self, embeddings: list[UnitEmbedding]) -> None:
        if not embeddings:
            return
        await self._ensure_collection()
        points = [
            models.PointStruct(id=e.id, vector=e.vector, payload=_payload(e))
            for e in embeddings
        ]
        await self.client.upsert(collection_name=self.collection, points=points)

    async def delete_file(self, repository_path: str, file_path: str) -> None:
        await self._ensure_collection()
        await self.client.delete(
            collection_name=self.collection,
            points_selector=models.FilterSelector(
                filter=models.Filter(
                    must=[
                        _match("repository_path", repository_path),
                        _match("file_path", file_path),
                    ]
                )
            ),
        )

    async def query(
        self, repository_path: str, vector: list[float], limit: int
    ) -> list[tuple[CodeUnit, float]]:
        await self._ensure_collection()
        response = await self.client.query_points(
            collection_name=self.collection,
            query=vector,
            query_filter=models.Filter(must=[_match("repository_path", repository_path)]),
            limit=limit,
            with_payload=True,
        )
        return [(_unit_from_payload(p.payload or {}), float(p.score)) for p in response.points]


class SemanticSearch:
    """Query-to-ranked-units search over embedded code units.

    Fails as a unit: any embedder or index error is raised as
    ``MethodUnavailableError``. Partial results are never returned.
    """

    def __init__(
        self,
        embedder: Embedder,
        index: VectorIndex,
        chunker: Chunker,
        batch_size: int = 32,
        clock: Callable[[], float] = time.time,
    ):
        self.embedder = embedder
        self.index = index
        self.chunker = chunker
        self.batch_size = batch_size
        self._clock = clock
        self._last_update: dict[str, float] = {}

    def last_index_update(self, repository_path: str) -> float | None:
        """Time of the last completed index update for a repository."""
        return self._last_update.get(repository_path)

    def is_index_available(self, repository_path: str) -> bool:
        return repository_path in self._last_update

    async def index_files(
        self, repository_path: str, files: Mapping[str, str | None]
    ) -> int:
        """
        Index (or re-index) files of a repository.

        Prior vectors for each file are removed before the new ones are
        written; a ``None`` content removes the file from the index.

        Args:
            repository_path: Repository the files belong to
            files: Mapping of file path to current content (None if deleted)

        Returns:
            Number of unit embeddings written
        """
        written = 0
        try:
            for file_path, text in files.items():
                await self.index.delete_file(repository_path, file_path)
                if not text:
                    continue
                units = self.chunker.chunk(file_path, text)
                for offset in range(0, len(units), self.batch_size):
                    batch = units[offset : offset + self.batch_size]
                    vectors = await self.embedder.embed([u.content for u in batch])
                    indexed_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
                    await self.index.upsert(
                        [
                            UnitEmbedding(
                                id=point_id(repository_path, unit.id),
                                repository_path=repository_path,
                                unit=unit,
                                vector=vector,
                                indexed_at=indexed_at,
                            )
                            for unit, vector in zip(batch, vectors)
                        ]
                    )
                    written += len(batch)
        except Exception as e:
            logger.warning(
                "Index update failed", repository=repository_path, error=str(e)
            )
            raise MethodUnavailableError("vector", f"index update failed: {e}") from e

        self._last_update[repository_path] = self._clock()
        logger.info(
            "Indexed files",
            repository=repository_path,
            files=len(files),
            embeddings=written,
        )
        return written

    async def search(self, repository_path: str, query: str, k: int) -> RetrievalResult:
        """Return the ``k`` units nearest to ``query``."""
        try:
            [vector] = await self.embedder.embed([query])
            hits = await self.index.query(repository_path, vector, k)
        except Exception as e:
            raise MethodUnavailableError("vector", str(e) or type(e).__name__) from e

        items = [
            ScoredUnit(
                unit=replace(unit, relevance_score=score),
                score=score,
                method=RetrievalMethod.VECTOR,
            )
            for unit, score in hits
        ]
        return RetrievalResult(query=query, items=items, method=RetrievalMethod.VECTOR)


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def _match(key: str, value: str) -> models.FieldCondition:
    return models.FieldCondition(key=key, match=models.MatchValue(value=value))


def _payload(embedding: UnitEmbedding) -> dict:
    unit = embedding.unit
    return {
        "repository_path": embedding.repository_path,
        "file_path": unit.file_path,
        "unit_id": unit.id,
        "start_line": unit.start_line,
        "end_line": unit.end_line,
        "kind": unit.kind.value,
        "content": unit.content,
        "token_count": unit.token_count,
        "symbol": unit.symbol,
        "language": unit.language,
        "indexed_at": embedding.indexed_at.isoformat(),
    }


def _unit_from_payload(payload: dict) -> CodeUnit:
    return CodeUnit(
        id=payload["unit_id"],
        file_path=payload["file_path"],
        start_line=int(payload["start_line"]),
        end_line=int(payload["end_line"]),
        kind=UnitKind(payload.get("kind", UnitKind.WINDOW.value)),
        content=payload.get("content", ""),
        token_count=int(payload.get("token_count", 0)),
        symbol=payload.get("symbol"),
        language=payload.get("language"),
    )

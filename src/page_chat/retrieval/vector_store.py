"""In-memory embedding index with cosine-similarity retrieval."""

from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from math import isfinite, sqrt

from pydantic import BaseModel, Field

from page_chat.config import RetrievalConfig
from page_chat.errors import MalformedVectorError
from page_chat.ingest.embedder import Embedder
from page_chat.obs.logging import get_logger
from page_chat.types import Chunk

logger = get_logger(__name__)


class ChunkRecord(BaseModel):
    text: str
    start: int = 0
    overlap: int = 0


class IndexSnapshot(BaseModel):
    """Serialisable form of an index: chunk records plus their vectors."""

    chunks: list[ChunkRecord] = Field(default_factory=list)
    vectors: list[list[float] | None] = Field(default_factory=list)


class EmbeddingIndex:
    """Parallel sequences of chunks and vectors, plus the query embedder.

    The index is immutable after construction. Chunks whose embedding failed
    keep a `None` vector and are never scored.
    """

    def __init__(
        self,
        chunks: Sequence[Chunk],
        vectors: Sequence[list[float] | None],
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ) -> None:
        if len(chunks) != len(vectors):
            raise ValueError("chunks and vectors must have the same length")
        self._chunks = tuple(chunks)
        self._vectors = tuple(vectors)
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    @classmethod
    def build(
        cls,
        chunks: Sequence[Chunk],
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ) -> "EmbeddingIndex":
        """Embed every chunk concurrently and return the finished index."""

        config = config or RetrievalConfig()
        if not chunks:
            return cls([], [], embedder, config)

        def _embed(chunk: Chunk) -> list[float] | None:
            try:
                return _validate_vector(embedder.embed_query(chunk.text))
            except Exception as exc:  # noqa: BLE001 - one failed chunk stays unembedded
                logger.warning("chunk_embedding_failed", chunk_index=chunk.index, error=str(exc))
                return None

        workers = min(config.max_workers, len(chunks))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            vectors = list(pool.map(_embed, chunks))

        failed = sum(vector is None for vector in vectors)
        logger.info("index_built", chunks=len(chunks), failed=failed)
        return cls(chunks, vectors, embedder, config)

    @classmethod
    def from_snapshot(
        cls,
        snapshot: IndexSnapshot,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ) -> "EmbeddingIndex":
        chunks = [
            Chunk(index=i, text=record.text, start=record.start, overlap=record.overlap)
            for i, record in enumerate(snapshot.chunks)
        ]
        vectors = list(snapshot.vectors)
        if len(vectors) < len(chunks):
            vectors.extend([None] * (len(chunks) - len(vectors)))
        return cls(chunks, vectors[: len(chunks)], embedder, config)

    def snapshot(self) -> IndexSnapshot:
        return IndexSnapshot(
            chunks=[
                ChunkRecord(text=chunk.text, start=chunk.start, overlap=chunk.overlap)
                for chunk in self._chunks
            ],
            vectors=[list(vector) if vector is not None else None for vector in self._vectors],
        )

    @property
    def chunks(self) -> tuple[Chunk, ...]:
        return self._chunks

    @property
    def vectors(self) -> tuple[list[float] | None, ...]:
        return self._vectors

    def __len__(self) -> int:
        return len(self._chunks)

    def scored_query(
        self,
        text: str,
        k: int | None = None,
        score_threshold: float | None = None,
    ) -> list[tuple[Chunk, float]]:
        """Return up to `k` chunks scoring at least `score_threshold`.

        Ranking is by descending cosine similarity; Python's stable sort keeps
        chunk order for equal scores. Vectors that are missing or whose
        dimension differs from the query are skipped.
        """

        k = self.config.top_k if k is None else k
        threshold = self.config.score_threshold if score_threshold is None else score_threshold
        if not self._chunks:
            return []

        try:
            query_vector = _validate_vector(self.embedder.embed_query(text))
        except Exception as exc:  # noqa: BLE001
            logger.warning("query_embedding_failed", error=str(exc))
            return []

        candidates: list[tuple[Chunk, float]] = []
        for chunk, vector in zip(self._chunks, self._vectors, strict=True):
            if vector is None or len(vector) != len(query_vector):
                continue
            score = cosine_similarity(query_vector, vector)
            if score >= threshold:
                candidates.append((chunk, score))

        ranked = sorted(candidates, key=lambda item: item[1], reverse=True)[:k]
        logger.debug("retrieval_scored", kept=len(ranked), scores=[round(s, 3) for _, s in ranked])
        return ranked

    def query(
        self,
        text: str,
        k: int | None = None,
        score_threshold: float | None = None,
    ) -> list[str]:
        return [chunk.text for chunk, _ in self.scored_query(text, k, score_threshold)]

    def join(self, texts: Sequence[str]) -> str:
        return self.config.separator.join(texts)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty, mismatched or zero-magnitude vectors."""

    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(-1.0, min(1.0, numerator / (norm_a * norm_b)))


def _validate_vector(vector: object) -> list[float]:
    if not isinstance(vector, (list, tuple)) or not vector:
        raise MalformedVectorError("embedding is empty or not a sequence")
    values: list[float] = []
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not isfinite(value):
            raise MalformedVectorError("embedding contains a non-numeric value")
        values.append(float(value))
    return values

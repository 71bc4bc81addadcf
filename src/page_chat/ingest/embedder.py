"""Embedding capability adapters."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt
from typing import Any

from page_chat.errors import classify_provider_error

_WORD = re.compile(r"\w+", flags=re.UNICODE)


class Embedder(ABC):
    """Embedding capability consumed by the index.

    `embed_query` embeds a single text and is used both for chunks and for
    questions, so one failing call only invalidates that one text.
    """

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Embed one text."""

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self.embed_query(text) for text in texts]


class LangChainEmbedder(Embedder):
    """Adapts a LangChain `Embeddings` object and classifies its failures."""

    def __init__(self, embeddings: Any) -> None:
        self._embeddings = embeddings

    def embed_query(self, text: str) -> list[float]:
        try:
            return list(self._embeddings.embed_query(text))
        except Exception as exc:
            raise classify_provider_error(exc) from exc


def openai_embedder(model: str, api_key: str | None = None) -> LangChainEmbedder:
    from langchain_openai import OpenAIEmbeddings

    kwargs: dict[str, Any] = {"model": model}
    if api_key:
        kwargs["api_key"] = api_key
    return LangChainEmbedder(OpenAIEmbeddings(**kwargs))


class HashingEmbedder(Embedder):
    """Signed feature hashing over lowercase word tokens.

    Offline stand-in for a provider embedding: no network, same vector for
    the same text, and texts sharing words score higher under cosine.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    def embed_query(self, text: str) -> list[float]:
        counts = [0.0] * self.dimension
        for token in _WORD.findall(text.lower()):
            slot, sign = self._bucket(token)
            counts[slot] += sign

        norm = sqrt(sum(value * value for value in counts))
        return counts if norm == 0 else [value / norm for value in counts]

    def _bucket(self, token: str) -> tuple[int, float]:
        digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
        return int.from_bytes(digest[:4], "little") % self.dimension, (-1.0 if digest[4] & 1 else 1.0)

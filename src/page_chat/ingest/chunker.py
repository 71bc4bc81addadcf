"""Structure-aware overlapping chunking and safe truncation."""

from __future__ import annotations

import re

from page_chat.config import ChunkBand, ChunkingConfig
from page_chat.types import Chunk

# Highest-priority boundaries first. A split lands at the end of the match.
_BOUNDARIES: tuple[re.Pattern[str], ...] = (
    re.compile(r"\n(?=#{1,6} )"),
    re.compile(r"\n(?=```)"),
    re.compile(r"\n[ \t]*\n\s*"),
    re.compile(r"\n(?=[ \t]*(?:[-*+]|\d+[.)]) )"),
    re.compile(r"\n"),
    re.compile(r"[.!?](?:[\"')\]]*)[ \t]+"),
    re.compile(r"\s+"),
)
_OVERLAP_START = re.compile(r"\s+")

TRUNCATION_MARKER = "\n\n... [content truncated at natural markdown boundary]"


class StructureAwareChunker:
    """Splits document text into overlapping chunks along markdown structure.

    Design notes:
    1. Bodies partition the text.
       Every chunk owns a body that starts where the previous body ended, so
       joining the bodies reproduces the document exactly. The overlap is a
       prefix copied from the tail of the previous body and is the only
       redundancy between chunks.

    2. Structure first, hard cuts last.
       Within the window available to a body, the splitter looks for the
       last heading start, code fence, paragraph break, list item, line break,
       sentence end and whitespace run, in that order of preference. Only
       boundaries in the back part of the window (`min_fill_ratio`) qualify,
       which keeps chunks from degenerating into fragments. When no boundary
       qualifies the body is cut at the window edge.

    3. Overlaps start on a word.
       The overlap prefix is advanced to the first whitespace boundary inside
       the overlap span, so a chunk never opens mid-word unless the whole
       span is one word.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    def split(self, text: str, chunk_size: int, overlap: int) -> list[Chunk]:
        """Split `text` into chunks of at most `chunk_size` characters.

        Args:
            text: Document text.
            chunk_size: Upper bound on a chunk's length, overlap included.
            overlap: Characters repeated from the previous chunk.

        Returns:
            Ordered chunks whose bodies concatenate to `text`.
        """

        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if overlap < 0 or overlap >= chunk_size:
            raise ValueError("overlap must be in [0, chunk_size)")

        chunks: list[Chunk] = []
        position = 0
        length = len(text)
        while position < length:
            prefix_start = self._overlap_start(text, position, overlap) if chunks else position
            budget = chunk_size - (position - prefix_start)
            end = self._body_end(text, position, budget)
            chunks.append(
                Chunk(
                    index=len(chunks),
                    text=text[prefix_start:end],
                    start=prefix_start,
                    overlap=position - prefix_start,
                )
            )
            position = end
        return chunks

    def split_for_retrieval(self, text: str) -> list[Chunk]:
        band = self.retrieval_band(len(text))
        return self.split(text, band.chunk_size, band.overlap)

    def retrieval_band(self, document_length: int) -> ChunkBand:
        return _select_band(self.config.retrieval_bands, document_length)

    def truncation_band(self, document_length: int) -> ChunkBand:
        return _select_band(self.config.truncation_bands, document_length)

    def truncate(self, text: str, max_chars: int) -> str:
        """Return a bounded prefix of `text` that ends on a chunk boundary.

        Whole chunk bodies are appended while they fit. If the next body does
        not fit, a partial body is added only when the remaining budget is
        larger than `truncation_floor_chars`. The marker is appended whenever
        anything was dropped.
        """

        if len(text) <= max_chars:
            return text

        band = self.truncation_band(len(text))
        parts: list[str] = []
        used = 0
        for chunk in self.split(text, band.chunk_size, band.overlap):
            body = chunk.body
            if used + len(body) <= max_chars:
                parts.append(body)
                used += len(body)
                continue
            remaining = max_chars - used
            if remaining > self.config.truncation_floor_chars:
                parts.append(body[:remaining])
            break
        return "".join(parts) + TRUNCATION_MARKER

    def _body_end(self, text: str, start: int, budget: int) -> int:
        limit = start + budget
        if limit >= len(text):
            return len(text)

        floor = start + max(1, int(budget * self.config.min_fill_ratio))
        window = text[start:limit]
        for pattern in _BOUNDARIES:
            best = None
            for match in pattern.finditer(window):
                cut = start + match.end()
                if floor <= cut <= limit:
                    best = cut
            if best is not None:
                return best
        return limit

    @staticmethod
    def _overlap_start(text: str, position: int, overlap: int) -> int:
        if overlap == 0:
            return position
        start = max(0, position - overlap)
        match = _OVERLAP_START.search(text, start, position)
        if match is None or match.end() >= position:
            return start
        return match.end()


def _select_band(bands: list[ChunkBand], document_length: int) -> ChunkBand:
    for band in bands:
        if band.max_length is None or document_length < band.max_length:
            return band
    return bands[-1]

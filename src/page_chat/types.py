"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal


def estimate_tokens(text: str) -> float:
    """Approximate model tokens from character length (chars / 4)."""
    return len(text) / 4


class Strategy(str, Enum):
    DIRECT = "direct"
    HYBRID = "hybrid"
    PURE_RETRIEVAL = "pure_retrieval"


class SummarySize(str, Enum):
    COMPACT = "compact"
    STANDARD = "standard"


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    """Processing strategy selected for one document."""

    strategy: Strategy
    summary_size: SummarySize | None = None

    @classmethod
    def direct(cls) -> "RoutingDecision":
        return cls(Strategy.DIRECT)

    @classmethod
    def hybrid(cls, size: SummarySize) -> "RoutingDecision":
        return cls(Strategy.HYBRID, size)

    @classmethod
    def pure_retrieval(cls) -> "RoutingDecision":
        return cls(Strategy.PURE_RETRIEVAL)

    @property
    def label(self) -> str:
        if self.strategy is Strategy.HYBRID and self.summary_size is not None:
            return f"hybrid-{self.summary_size.value}"
        return self.strategy.value.replace("_", "-")


@dataclass(frozen=True, slots=True)
class PageContent:
    """Output of the page-extraction collaborator."""

    text: str
    title: str
    url: str


@dataclass(frozen=True, slots=True)
class Document:
    """Extracted page text scoped to one session."""

    session_key: str
    url: str
    text: str
    title: str = ""

    @property
    def char_length(self) -> int:
        return len(self.text)

    @property
    def token_estimate(self) -> float:
        return estimate_tokens(self.text)

    @property
    def word_count(self) -> int:
        return len(self.text.split())


@dataclass(frozen=True, slots=True)
class Chunk:
    """A contiguous segment of a document.

    `overlap` counts the leading characters repeated from the previous chunk,
    so `body` is the part of the document this chunk contributes uniquely.
    """

    index: int
    text: str
    start: int
    overlap: int = 0

    @property
    def body(self) -> str:
        return self.text[self.overlap :]

    @property
    def size(self) -> int:
        return len(self.text)


@dataclass(frozen=True, slots=True)
class Summary:
    """Condensed representation of a document."""

    text: str
    size: SummarySize

    @property
    def token_estimate(self) -> float:
        return estimate_tokens(self.text)


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    role: Literal["user", "assistant"]
    text: str


@dataclass(slots=True)
class AnswerEvent:
    """One unit of streamed output for a question.

    Kinds:
    - `delta`: append `text` to the answer being displayed.
    - `escalating`: discard the partial answer; `text` names the missing detail.
    - `final`: `text` is the complete answer.
    - `error`: `text` is a user-facing message; `error` is the taxonomy kind.
    """

    kind: Literal["delta", "escalating", "final", "error"]
    text: str = ""
    error: str | None = None
    switch_to: str | None = None
    escalated: bool = False

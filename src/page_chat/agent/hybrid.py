"""Summary-first answering with a single escalation to retrieval."""

from __future__ import annotations

from collections.abc import Generator, Iterator, Sequence
from enum import Enum

from page_chat.agent.prompts import (
    HYBRID_DETAIL_PROMPT,
    HYBRID_SUMMARY_PROMPT,
    NO_DETAIL_FOUND_MESSAGE,
    find_detail_request,
)
from page_chat.config import RetrievalConfig
from page_chat.llm.chat import ChatCompletion
from page_chat.obs.logging import get_logger
from page_chat.retrieval.vector_store import EmbeddingIndex
from page_chat.types import AnswerEvent, ConversationTurn, Summary

logger = get_logger(__name__)


class HybridState(str, Enum):
    ANSWERING_FROM_SUMMARY = "answering_from_summary"
    ESCALATING = "escalating"
    RETRIEVING_DETAIL = "retrieving_detail"
    DONE = "done"


class HybridController:
    """Two-phase state machine for one question in hybrid mode.

    Phase one streams an answer grounded only in the summary. If the complete
    response carries the detail marker, phase two queries the index with the
    user's original question and, when anything is retrieved, streams a
    second answer from summary plus details. Phase two runs at most once and
    its output is final even if it repeats the marker.

    A controller instance serves exactly one question; after `run` finishes,
    `escalated`, `retrieved` and `completion_calls` describe what happened.
    """

    def __init__(
        self,
        chat: ChatCompletion,
        summary: Summary,
        index: EmbeddingIndex,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.chat = chat
        self.summary = summary
        self.index = index
        self.config = config or RetrievalConfig()
        self.state = HybridState.ANSWERING_FROM_SUMMARY
        self.escalated = False
        self.detail_request: str | None = None
        self.retrieved: list[str] = []
        self.completion_calls = 0

    def run(self, question: str, history: Sequence[ConversationTurn]) -> Iterator[AnswerEvent]:
        if self.state is not HybridState.ANSWERING_FROM_SUMMARY or self.completion_calls:
            raise RuntimeError("HybridController instances answer a single question")

        summary_answer = yield from self._stream(
            HYBRID_SUMMARY_PROMPT, {"context": self.summary.text}, history, question
        )
        self.detail_request = find_detail_request(summary_answer)
        if self.detail_request is None:
            self.state = HybridState.DONE
            yield AnswerEvent(kind="final", text=summary_answer)
            return

        self.state = HybridState.ESCALATING
        self.escalated = True
        logger.info("hybrid_escalating", detail=self.detail_request)
        yield AnswerEvent(kind="escalating", text=self.detail_request, escalated=True)

        self.state = HybridState.RETRIEVING_DETAIL
        self.retrieved = self.index.query(
            question, k=self.config.top_k, score_threshold=self.config.score_threshold
        )
        if not self.retrieved:
            logger.info("hybrid_no_detail_found")
            self.state = HybridState.DONE
            yield AnswerEvent(kind="final", text=NO_DETAIL_FOUND_MESSAGE, escalated=True)
            return

        detail_answer = yield from self._stream(
            HYBRID_DETAIL_PROMPT,
            {"summary": self.summary.text, "context": self.index.join(self.retrieved)},
            history,
            question,
        )
        self.state = HybridState.DONE
        yield AnswerEvent(kind="final", text=detail_answer, escalated=True)

    def _stream(
        self,
        system_template: str,
        variables: dict[str, str],
        history: Sequence[ConversationTurn],
        question: str,
    ) -> Generator[AnswerEvent, None, str]:
        self.completion_calls += 1
        pieces: list[str] = []
        for piece in self.chat.stream(
            system_template=system_template,
            variables=variables,
            history=history,
            question=question,
        ):
            pieces.append(piece)
            yield AnswerEvent(kind="delta", text=piece, escalated=self.escalated)
        return "".join(pieces)

"""Bounded-size document summaries via the chat-completion capability."""

from __future__ import annotations

from page_chat.agent.prompts import COMPACT_SUMMARY_PROMPT, STANDARD_SUMMARY_PROMPT
from page_chat.config import SummaryConfig
from page_chat.errors import ProviderError
from page_chat.ingest.chunker import StructureAwareChunker
from page_chat.llm.chat import ChatCompletion
from page_chat.obs.logging import get_logger
from page_chat.types import Summary, SummarySize

logger = get_logger(__name__)

_PROMPTS = {
    SummarySize.COMPACT: COMPACT_SUMMARY_PROMPT,
    SummarySize.STANDARD: STANDARD_SUMMARY_PROMPT,
}


class Summarizer:
    """Produces a compact or standard summary, or nothing on failure.

    Inputs above `max_input_chars` are cut down with the chunker's truncation
    policy before they are sent, which bounds provider cost and latency.
    """

    def __init__(
        self,
        chat: ChatCompletion,
        chunker: StructureAwareChunker,
        config: SummaryConfig | None = None,
    ) -> None:
        self.chat = chat
        self.chunker = chunker
        self.config = config or SummaryConfig()

    def summarize(self, text: str, size: SummarySize = SummarySize.STANDARD) -> Summary | None:
        content = text
        if len(text) > self.config.max_input_chars:
            content = self.chunker.truncate(text, self.config.max_input_chars)
            logger.info("summary_input_truncated", original=len(text), truncated=len(content))

        prompt = _PROMPTS[size].replace("{content}", content)
        try:
            summary_text = self.chat.complete(prompt).strip()
        except ProviderError as exc:
            logger.warning("summary_failed", size=size.value, error_kind=exc.kind.value, error=str(exc))
            return None

        if not summary_text:
            logger.warning("summary_empty", size=size.value)
            return None

        summary = Summary(text=summary_text, size=size)
        logger.info(
            "summary_generated",
            size=size.value,
            input_tokens=round(len(content) / 4),
            summary_tokens=round(summary.token_estimate),
        )
        return summary

"""Chat-completion capability: protocol, LangChain adapter, offline fallback."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator, Mapping, Sequence
from typing import Any, Protocol

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

from page_chat.agent.prompts import CONTENT_HEADER
from page_chat.errors import classify_provider_error
from page_chat.types import ConversationTurn

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_WORD = re.compile(r"\w+", flags=re.UNICODE)


class ChatCompletion(Protocol):
    """Minimal chat-completion contract used by the engine."""

    model_name: str

    def stream(
        self,
        *,
        system_template: str,
        variables: Mapping[str, str],
        history: Sequence[ConversationTurn],
        question: str,
    ) -> Iterator[str]:
        """Stream the answer to `question` as text pieces."""

    def complete(self, prompt: str) -> str:
        """Return a single non-streamed completion for a plain prompt."""


ChatModelFactory = Callable[..., ChatCompletion]


def to_langchain_messages(history: Sequence[ConversationTurn]) -> list[BaseMessage]:
    return [
        HumanMessage(content=turn.text) if turn.role == "user" else AIMessage(content=turn.text)
        for turn in history
    ]


class LangChainChatCompletion:
    """Wraps any LangChain chat model behind the `ChatCompletion` contract.

    Every provider failure, whether raised when the stream opens or halfway
    through it, is converted to the error taxonomy here and nowhere else.
    """

    def __init__(self, llm: Any, model_name: str) -> None:
        self.llm = llm
        self.model_name = model_name

    def stream(
        self,
        *,
        system_template: str,
        variables: Mapping[str, str],
        history: Sequence[ConversationTurn],
        question: str,
    ) -> Iterator[str]:
        prompt = ChatPromptTemplate.from_messages(
            [
                ("system", system_template),
                MessagesPlaceholder(variable_name="history", optional=True),
                ("human", "{question}"),
            ]
        )
        chain = prompt | self.llm | StrOutputParser()
        payload = {
            **variables,
            "question": question,
            "history": to_langchain_messages(history),
        }
        try:
            yield from chain.stream(payload)
        except Exception as exc:
            raise classify_provider_error(exc) from exc

    def complete(self, prompt: str) -> str:
        try:
            response = self.llm.invoke(prompt)
        except Exception as exc:
            raise classify_provider_error(exc) from exc
        return str(getattr(response, "content", response))


def openai_chat_factory(
    model: str,
    *,
    api_key: str | None = None,
    temperature: float | None = None,
) -> LangChainChatCompletion:
    from langchain_openai import ChatOpenAI

    kwargs: dict[str, Any] = {"model": model, "streaming": True}
    if api_key:
        kwargs["api_key"] = api_key
    if temperature is not None:
        kwargs["temperature"] = temperature
    return LangChainChatCompletion(ChatOpenAI(**kwargs), model_name=model)


class ExtractiveChatCompletion:
    """Deterministic chat completion for environments without an API key.

    Answers by quoting the context sentences that share the most words with
    the question, and "summarises" by keeping the leading sentences. It never
    emits the detail-request marker, so hybrid sessions answer from the
    summary stage.
    """

    def __init__(self, model_name: str = "extractive", max_sentences: int = 3) -> None:
        self.model_name = model_name
        self.max_sentences = max_sentences

    def stream(
        self,
        *,
        system_template: str,
        variables: Mapping[str, str],
        history: Sequence[ConversationTurn],
        question: str,
    ) -> Iterator[str]:
        del system_template, history
        context = variables.get("context", "")
        answer = _best_sentences(context, question, self.max_sentences)
        if not answer:
            yield "Not found on this page."
            return
        for position, word in enumerate(answer.split(" ")):
            yield word if position == 0 else " " + word

    def complete(self, prompt: str) -> str:
        _, _, content = prompt.rpartition(CONTENT_HEADER)
        content = content.rsplit("\n\n", 1)[0] if "\n\n" in content else content
        sentences = [part.strip() for part in _SENTENCE_SPLIT.split(content) if part.strip()]
        return " ".join(sentences[: self.max_sentences * 4])


def extractive_chat_factory(
    model: str,
    *,
    api_key: str | None = None,
    temperature: float | None = None,
) -> ExtractiveChatCompletion:
    del api_key, temperature
    return ExtractiveChatCompletion(model_name=model)


def _best_sentences(context: str, question: str, limit: int) -> str:
    query_terms = {token.lower() for token in _WORD.findall(question)}
    sentences = [part.strip() for part in _SENTENCE_SPLIT.split(context) if part.strip()]
    scored = []
    for position, sentence in enumerate(sentences):
        terms = {token.lower() for token in _WORD.findall(sentence)}
        overlap = len(query_terms & terms)
        if overlap:
            scored.append((overlap, -position, sentence))
    scored.sort(reverse=True)
    chosen = sorted(scored[:limit], key=lambda item: -item[1])
    return " ".join(sentence for _, _, sentence in chosen)

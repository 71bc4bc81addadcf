import re
from collections.abc import Iterator, Mapping, Sequence

import pytest

from page_chat.cache.store import InMemorySessionStore
from page_chat.config import EngineConfig
from page_chat.engine import ChatEngine
from page_chat.ingest.embedder import Embedder
from page_chat.types import ConversationTurn

FILLER = "The quarterly report covers market trends and regional growth figures in detail. "
REFUND_PARAGRAPH = (
    "Refund policy: a refund can be requested within 30 days of delivery. "
    "Every refund request needs the original order number."
)
VOCABULARY = ("refund", "warranty", "shipping", "battery", "courier")
_WORD = re.compile(r"\w+")


def make_page(total_chars: int, needle: str = REFUND_PARAGRAPH) -> str:
    """Markdown page of exactly `total_chars` characters with `needle` in the middle."""

    sections: list[str] = []
    size = 0
    index = 0
    while size < total_chars:
        section = f"## Section {index}\n\n" + FILLER * 6 + "\n\n"
        sections.append(section)
        size += len(section)
        index += 1
    sections.insert(len(sections) // 2, "## Customer care\n\n" + needle + "\n\n")
    return "".join(sections)[:total_chars]


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class KeywordEmbedder(Embedder):
    """Counts vocabulary words; a small constant dimension keeps vectors non-zero."""

    def __init__(self, fail_on: str | None = None) -> None:
        self.calls = 0
        self.fail_on = fail_on

    def embed_query(self, text: str) -> list[float]:
        self.calls += 1
        if self.fail_on is not None and self.fail_on in text:
            raise ConnectionError("embedding endpoint unreachable")
        words = [word.lower() for word in _WORD.findall(text)]
        return [float(words.count(term)) for term in VOCABULARY] + [0.01]


class MidStreamFailure:
    """Stream reply that yields `text` and then raises `error`."""

    def __init__(self, text: str, error: Exception) -> None:
        self.text = text
        self.error = error


class ScriptedChat:
    def __init__(self, factory: "ScriptedChatFactory", model_name: str) -> None:
        self.factory = factory
        self.model_name = model_name

    def stream(
        self,
        *,
        system_template: str,
        variables: Mapping[str, str],
        history: Sequence[ConversationTurn],
        question: str,
    ) -> Iterator[str]:
        self.factory.stream_calls.append(
            {
                "model": self.model_name,
                "system_template": system_template,
                "variables": dict(variables),
                "history": list(history),
                "question": question,
            }
        )
        reply = self.factory.next_stream_reply()
        if isinstance(reply, Exception):
            raise reply
        text = reply.text if isinstance(reply, MidStreamFailure) else reply
        for position, word in enumerate(text.split(" ")):
            yield word if position == 0 else " " + word
        if isinstance(reply, MidStreamFailure):
            raise reply.error

    def complete(self, prompt: str) -> str:
        self.factory.complete_calls.append({"model": self.model_name, "prompt": prompt})
        reply = self.factory.next_complete_reply()
        if isinstance(reply, Exception):
            raise reply
        return reply


class ScriptedChatFactory:
    """Chat factory whose models replay queued replies and record every call."""

    def __init__(
        self,
        stream_replies: Sequence[str | Exception | MidStreamFailure] = (),
        complete_replies: Sequence[str | Exception] = (),
        *,
        default_stream: str = "The page answers this directly.",
        default_complete: str = "A short summary of the page.",
    ) -> None:
        self.stream_replies = list(stream_replies)
        self.complete_replies = list(complete_replies)
        self.default_stream = default_stream
        self.default_complete = default_complete
        self.stream_calls: list[dict[str, object]] = []
        self.complete_calls: list[dict[str, object]] = []
        self.built: list[tuple[str, str | None]] = []

    def __call__(
        self, model: str, *, api_key: str | None = None, temperature: float | None = None
    ) -> ScriptedChat:
        del temperature
        self.built.append((model, api_key))
        return ScriptedChat(self, model)

    def next_stream_reply(self) -> str | Exception | MidStreamFailure:
        return self.stream_replies.pop(0) if self.stream_replies else self.default_stream

    def next_complete_reply(self) -> str | Exception:
        return self.complete_replies.pop(0) if self.complete_replies else self.default_complete


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def chat_factory() -> ScriptedChatFactory:
    return ScriptedChatFactory()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(chat_factory, embedder, store, clock) -> ChatEngine:
    return ChatEngine(
        EngineConfig(),
        chat_factory=chat_factory,
        embedder_factory=lambda _api_key: embedder,
        store=store,
        clock=clock,
    )

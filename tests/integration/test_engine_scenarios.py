import threading

import pytest

from conftest import KeywordEmbedder, MidStreamFailure, ScriptedChatFactory, make_page
from page_chat.agent.prompts import (
    DIRECT_SYSTEM_PROMPT,
    NO_RELEVANT_CONTEXT,
    RETRIEVAL_SYSTEM_PROMPT,
)
from page_chat.config import EngineConfig
from page_chat.engine import ChatEngine
from page_chat.errors import (
    MODELS_EXHAUSTED_MESSAGE,
    DocumentNotLoadedError,
    ErrorKind,
    InvalidCredentialError,
    RateLimitedError,
    ServerError,
    ServiceUnavailableError,
    SessionBusyError,
)
from page_chat.types import Document, PageContent, RoutingDecision, Strategy, SummarySize

URL = "https://example.com/help"


def _page(total_chars: int, url: str = URL) -> PageContent:
    return PageContent(text=make_page(total_chars), title="Help centre", url=url)


def _answer(engine: ChatEngine, session, question: str) -> list:
    return list(engine.ask(session, question))


def test_direct_page_uses_one_completion_and_no_preprocessing(engine, chat_factory, embedder) -> None:
    session = engine.new_session("s1")

    report = engine.load_document(session, _page(32_000))
    events = _answer(engine, session, "What does the quarterly report cover?")

    assert report.decision.strategy is Strategy.DIRECT
    assert report.token_estimate == 8_000
    assert not report.cache_hit
    assert embedder.calls == 0
    assert chat_factory.complete_calls == []
    assert len(chat_factory.stream_calls) == 1
    assert chat_factory.stream_calls[0]["system_template"] == DIRECT_SYSTEM_PROMPT
    assert events[-1].kind == "final"
    assert events[-1].text == chat_factory.default_stream
    assert len(session.history) == 2
    assert engine.cache.load("s1", URL) is None


def test_hybrid_compact_page_answers_from_summary_then_escalates(engine, chat_factory, embedder) -> None:
    chat_factory.complete_replies = ["Help centre summary: reports, trends and customer care."]
    chat_factory.stream_replies = [
        "The page covers quarterly reports.",
        "🔍 NEEDS_DETAIL: refund window",
        "A refund can be requested within 30 days of delivery.",
    ]
    session = engine.new_session("s1")

    report = engine.load_document(session, _page(60_000))

    assert report.decision.strategy is Strategy.HYBRID
    assert report.decision.summary_size is SummarySize.COMPACT
    assert report.chunk_count > 0
    assert report.context_tokens == session.summary.token_estimate
    assert len(chat_factory.complete_calls) == 1
    assert embedder.calls > 0

    overview = _answer(engine, session, "What is this page about?")
    assert overview[-1].text == "The page covers quarterly reports."
    assert not overview[-1].escalated
    assert len(chat_factory.stream_calls) == 1

    detail = _answer(engine, session, "How long is the refund window?")
    kinds = [event.kind for event in detail]
    assert kinds.count("escalating") == 1
    assert detail[-1].kind == "final"
    assert detail[-1].escalated
    assert "30 days" in detail[-1].text
    assert len(chat_factory.stream_calls) == 3
    assert "Refund policy" in chat_factory.stream_calls[2]["variables"]["context"]

    trace = engine.trace_store.get(session.last_trace_id)
    assert trace.escalated
    assert trace.completion_calls == 2
    assert trace.retrieved_chunks >= 1
    assert trace.strategy == "hybrid-compact"


class _RendezvousEmbedder(KeywordEmbedder):
    """Blocks its first call until the summary call reaches the same barrier."""

    def __init__(self, barrier: threading.Barrier) -> None:
        super().__init__()
        self.barrier = barrier
        self.met = False
        self._first = threading.Lock()

    def embed_query(self, text: str) -> list[float]:
        if self._first.acquire(blocking=False):
            self.barrier.wait(timeout=5)
            self.met = True
        return super().embed_query(text)


class _RendezvousChatFactory(ScriptedChatFactory):
    def __init__(self, barrier: threading.Barrier) -> None:
        super().__init__()
        self.barrier = barrier
        self.met = False

    def next_complete_reply(self) -> str | Exception:
        self.barrier.wait(timeout=5)
        self.met = True
        return super().next_complete_reply()


def test_summary_and_index_are_built_concurrently(store, clock) -> None:
    barrier = threading.Barrier(2)
    chat_factory = _RendezvousChatFactory(barrier)
    embedder = _RendezvousEmbedder(barrier)
    engine = ChatEngine(
        EngineConfig(),
        chat_factory=chat_factory,
        embedder_factory=lambda _api_key: embedder,
        store=store,
        clock=clock,
    )
    session = engine.new_session("s1")

    report = engine.load_document(session, _page(60_000))

    assert chat_factory.met
    assert embedder.met
    assert not barrier.broken
    assert report.decision.strategy is Strategy.HYBRID


def test_hybrid_decision_without_summary_size_is_rejected(engine) -> None:
    session = engine.new_session("s1")
    document = Document(session_key="s1", url=URL, text=make_page(60_000))

    with pytest.raises(RuntimeError):
        engine._process(session, document, RoutingDecision(Strategy.HYBRID))


def test_warm_reopen_makes_no_provider_calls(engine, chat_factory, embedder) -> None:
    session = engine.new_session("s1")
    first = engine.load_document(session, _page(60_000))
    summary = session.summary
    complete_calls = len(chat_factory.complete_calls)
    embed_calls = embedder.calls

    second = engine.load_document(session, _page(60_000))

    assert second.cache_hit
    assert second.decision == first.decision
    assert session.summary == summary
    assert len(session.index) == first.chunk_count
    assert len(chat_factory.complete_calls) == complete_calls
    assert embedder.calls == embed_calls


def test_cache_is_scoped_to_session(engine, chat_factory) -> None:
    engine.load_document(engine.new_session("s1"), _page(60_000))
    report = engine.load_document(engine.new_session("s2"), _page(60_000))

    assert not report.cache_hit
    assert len(chat_factory.complete_calls) == 2


def test_hybrid_standard_without_summary_falls_back_to_direct(engine, chat_factory) -> None:
    chat_factory.complete_replies = [ServerError("summary backend down")]
    session = engine.new_session("s1")

    report = engine.load_document(session, _page(100_000))

    assert report.routed.summary_size is SummarySize.STANDARD
    assert report.decision.strategy is Strategy.DIRECT
    assert report.degraded
    assert any(ErrorKind.SUMMARY_UNAVAILABLE.value in warning for warning in report.warnings)
    assert session.summary is None
    assert session.index is None
    assert engine.cache.load("s1", URL) is None


def test_hybrid_compact_without_summary_falls_back_to_direct(engine, chat_factory) -> None:
    chat_factory.complete_replies = [ServiceUnavailableError("busy")]
    session = engine.new_session("s1")

    report = engine.load_document(session, _page(60_000))
    events = _answer(engine, session, "What is covered?")

    assert report.decision.strategy is Strategy.DIRECT
    assert report.warnings
    assert engine.cache.load("s1", URL) is None
    assert chat_factory.stream_calls[0]["system_template"] == DIRECT_SYSTEM_PROMPT
    assert events[-1].kind == "final"


def test_pure_retrieval_uses_relevant_chunks_or_fixed_context(engine, chat_factory) -> None:
    session = engine.new_session("s1")

    report = engine.load_document(session, _page(130_000))
    _answer(engine, session, "Tell me about the refund rules")
    _answer(engine, session, "Which courier handles shipping?")

    assert report.decision.strategy is Strategy.PURE_RETRIEVAL
    assert chat_factory.complete_calls == []
    relevant, irrelevant = chat_factory.stream_calls
    assert relevant["system_template"] == RETRIEVAL_SYSTEM_PROMPT
    assert "Refund policy" in relevant["variables"]["context"]
    assert irrelevant["variables"]["context"] == NO_RELEVANT_CONTEXT


def test_failed_indexing_falls_back_to_direct(chat_factory, store, clock) -> None:
    engine = ChatEngine(
        EngineConfig(),
        chat_factory=chat_factory,
        embedder_factory=lambda _api_key: KeywordEmbedder(fail_on=""),
        store=store,
        clock=clock,
    )
    session = engine.new_session("s1")

    report = engine.load_document(session, _page(130_000))

    assert report.decision.strategy is Strategy.DIRECT
    assert report.warnings
    assert session.index is None


def test_rate_limit_offers_switch_then_ignores_noise(engine, chat_factory, clock) -> None:
    chat_factory.stream_replies = [RateLimitedError("429"), RateLimitedError("429")]
    session = engine.new_session("s1")
    engine.load_document(session, _page(32_000))

    first = _answer(engine, session, "What is covered?")
    clock.advance(1.0)
    second = _answer(engine, session, "Anything else?")

    assert first[-1].kind == "error"
    assert first[-1].error == ErrorKind.RATE_LIMITED.value
    assert first[-1].switch_to == "gpt-4.1-mini"
    assert second[-1].kind == "error"
    assert second[-1].switch_to is None
    assert session.coordinator.current_model().name == "gpt-4o-mini"

    switch = engine.confirm_model_switch(session)

    assert switch is not None
    assert switch.model.name == "gpt-4.1-mini"
    assert switch.resubmit_question == "What is covered?"

    retried = _answer(engine, session, switch.resubmit_question)
    assert retried[-1].kind == "final"
    assert chat_factory.stream_calls[-1]["model"] == "gpt-4.1-mini"
    assert len(session.history) == 2


def test_rate_limit_mid_stream_discards_partial_answer(engine, chat_factory) -> None:
    chat_factory.stream_replies = [MidStreamFailure("Partial answer so", RateLimitedError("429"))]
    session = engine.new_session("s1")
    engine.load_document(session, _page(32_000))

    events = _answer(engine, session, "What is covered?")

    assert [event.kind for event in events[:3]] == ["delta", "delta", "delta"]
    assert events[-1].kind == "error"
    assert events[-1].switch_to == "gpt-4.1-mini"
    assert len(session.history) == 0
    assert engine.trace_store.get(session.last_trace_id).error == ErrorKind.RATE_LIMITED.value


def test_cancelled_switch_keeps_model(engine, chat_factory) -> None:
    chat_factory.stream_replies = [RateLimitedError("429")]
    session = engine.new_session("s1")
    engine.load_document(session, _page(32_000))
    _answer(engine, session, "What is covered?")

    engine.cancel_model_switch(session)

    assert not session.coordinator.handling
    assert session.coordinator.current_model().name == "gpt-4o-mini"
    assert session.coordinator.take_failed_question() is None


def test_exhausted_chain_is_reported(chat_factory, embedder, store, clock) -> None:
    config = EngineConfig(fallback={"models": [{"name": "only", "display_name": "Only"}]})
    engine = ChatEngine(
        config,
        chat_factory=chat_factory,
        embedder_factory=lambda _api_key: embedder,
        store=store,
        clock=clock,
    )
    chat_factory.stream_replies = [RateLimitedError("429"), RateLimitedError("429")]
    session = engine.new_session("s1")
    engine.load_document(session, _page(32_000))

    events = _answer(engine, session, "What is covered?")
    clock.advance(1.0)
    again = _answer(engine, session, "Anything else?")

    for last in (events[-1], again[-1]):
        assert last.kind == "error"
        assert last.error == ErrorKind.MODELS_EXHAUSTED.value
        assert last.text == MODELS_EXHAUSTED_MESSAGE
        assert last.switch_to is None
    assert engine.confirm_model_switch(session) is None


def test_open_stream_blocks_next_question_until_closed(engine, chat_factory) -> None:
    """Provider calls carry no timeout, so a hung stream holds the session."""

    session = engine.new_session("s1")
    engine.load_document(session, _page(32_000))
    stream = engine.ask(session, "What is covered?")

    first_event = next(stream)

    assert first_event.kind == "delta"
    assert session.busy
    for _ in range(2):
        with pytest.raises(SessionBusyError):
            engine.ask(session, "Another one?")

    stream.close()
    assert not session.busy
    assert len(session.history) == 0

    follow_up = _answer(engine, session, "Another one?")
    assert follow_up[-1].kind == "final"
    assert len(session.history) == 2


def test_answer_stream_without_document_does_not_take_the_lock(engine) -> None:
    session = engine.new_session("s1")

    with pytest.raises(DocumentNotLoadedError):
        next(engine._answer(session, "What is covered?"))

    assert not session.busy


def test_invalid_credentials_lock_session_until_replaced(engine, chat_factory) -> None:
    chat_factory.stream_replies = [InvalidCredentialError("401")]
    session = engine.new_session("s1", api_key="bad-key")
    engine.load_document(session, _page(32_000))

    events = _answer(engine, session, "What is covered?")

    assert events[-1].error == ErrorKind.INVALID_CREDENTIAL.value
    with pytest.raises(InvalidCredentialError):
        engine.ask(session, "Try again")

    engine.replace_credentials(session, "good-key")
    retried = _answer(engine, session, "Try again")

    assert retried[-1].kind == "final"
    assert chat_factory.built[-1] == ("gpt-4o-mini", "good-key")


def test_transient_errors_surface_as_retryable_events(engine, chat_factory) -> None:
    chat_factory.stream_replies = [ServiceUnavailableError("503")]
    session = engine.new_session("s1")
    engine.load_document(session, _page(32_000))

    events = _answer(engine, session, "What is covered?")
    retry = _answer(engine, session, "What is covered?")

    assert events[-1].error == ErrorKind.SERVICE_UNAVAILABLE.value
    assert events[-1].text == ServiceUnavailableError.user_message
    assert not session.coordinator.handling
    assert retry[-1].kind == "final"
    assert engine.trace_store.summary()["failed_requests"] == 1


def test_questions_require_a_loaded_document(engine) -> None:
    session = engine.new_session("s1")

    with pytest.raises(DocumentNotLoadedError):
        engine.ask(session, "Hello?")
    with pytest.raises(ValueError):
        engine.ask(session, "   ")


def test_end_session_drops_cache_and_history(engine, store) -> None:
    session = engine.new_session("s1")
    engine.load_document(session, _page(60_000))
    _answer(engine, session, "What is covered?")

    engine.end_session("s1")

    assert engine.get_session("s1") is None
    assert store.keys("s1") == []

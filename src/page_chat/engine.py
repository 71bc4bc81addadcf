"""Session orchestration: document loading, strategy execution, model switching."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from page_chat.agent.fallback import ModelFallbackCoordinator, RateLimitOutcome
from page_chat.agent.hybrid import HybridController
from page_chat.agent.prompts import DIRECT_SYSTEM_PROMPT, NO_RELEVANT_CONTEXT, RETRIEVAL_SYSTEM_PROMPT
from page_chat.agent.router import classify
from page_chat.agent.summarizer import Summarizer
from page_chat.cache.history import ConversationHistory
from page_chat.cache.processing_cache import ProcessingCache
from page_chat.cache.store import InMemorySessionStore, SessionStore
from page_chat.config import EngineConfig, ModelSpec
from page_chat.errors import (
    MODELS_EXHAUSTED_MESSAGE,
    DocumentNotLoadedError,
    ErrorKind,
    InvalidCredentialError,
    ProviderError,
    RateLimitedError,
    SessionBusyError,
)
from page_chat.ingest.chunker import StructureAwareChunker
from page_chat.ingest.embedder import Embedder, HashingEmbedder
from page_chat.llm.chat import ChatCompletion, ChatModelFactory, extractive_chat_factory
from page_chat.obs.logging import get_logger
from page_chat.obs.tracing import Timer, TraceStore, estimate_token_count
from page_chat.retrieval.vector_store import EmbeddingIndex
from page_chat.types import (
    AnswerEvent,
    Document,
    PageContent,
    RoutingDecision,
    Strategy,
    Summary,
    SummarySize,
)

logger = get_logger(__name__)

EmbedderFactory = Callable[[str | None], Embedder]


@dataclass(slots=True)
class ProcessingReport:
    """What `load_document` did, for display and tests."""

    decision: RoutingDecision
    routed: RoutingDecision
    cache_hit: bool
    token_estimate: float
    word_count: int
    context_tokens: float
    chunk_count: int = 0
    processing_ms: float = 0.0
    warnings: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.decision != self.routed


@dataclass(slots=True)
class ModelSwitch:
    model: ModelSpec
    resubmit_question: str | None = None


@dataclass(eq=False)
class SessionContext:
    """All mutable state belonging to one viewing session."""

    session_key: str
    coordinator: ModelFallbackCoordinator
    history: ConversationHistory
    api_key: str | None = None
    document: Document | None = None
    decision: RoutingDecision | None = None
    summary: Summary | None = None
    index: EmbeddingIndex | None = None
    chat: ChatCompletion | None = None
    embedder: Embedder | None = None
    credentials_invalid: bool = False
    last_trace_id: str | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def busy(self) -> bool:
        return self.lock.locked()

    @property
    def model(self) -> ModelSpec:
        return self.coordinator.current_model()


class ChatEngine:
    """Owns shared services and runs per-session operations.

    Nothing here is module-global: every operation takes the `SessionContext`
    it acts on, so sessions are isolated and tests can inject fakes for the
    chat model, the embedder, the store and the clock.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        chat_factory: ChatModelFactory = extractive_chat_factory,
        embedder_factory: EmbedderFactory | None = None,
        store: SessionStore | None = None,
        trace_store: TraceStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or EngineConfig()
        self.chat_factory = chat_factory
        self.embedder_factory: EmbedderFactory = embedder_factory or (lambda _api_key: HashingEmbedder())
        self.store: SessionStore = store if store is not None else InMemorySessionStore()
        self.cache = ProcessingCache(self.store)
        self.trace_store = trace_store or TraceStore()
        self.chunker = StructureAwareChunker(self.config.chunking)
        self.clock = clock
        self.sessions: dict[str, SessionContext] = {}
        self._sessions_lock = threading.Lock()

    # -- session lifecycle -------------------------------------------------

    def new_session(self, session_key: str, api_key: str | None = None) -> SessionContext:
        if not session_key:
            raise ValueError("session_key must be non-empty")
        history = ConversationHistory(self.store, session_key, limit=self.config.session.history_limit)
        history.load()
        session = SessionContext(
            session_key=session_key,
            coordinator=ModelFallbackCoordinator.from_config(self.config.fallback, clock=self.clock),
            history=history,
            api_key=api_key,
        )
        with self._sessions_lock:
            self.sessions[session_key] = session
        logger.info("session_started", session_key=session_key, history_turns=len(history))
        return session

    def get_session(self, session_key: str) -> SessionContext | None:
        with self._sessions_lock:
            return self.sessions.get(session_key)

    def end_session(self, session_key: str) -> None:
        with self._sessions_lock:
            self.sessions.pop(session_key, None)
        self.store.end_session(session_key)
        logger.info("session_ended", session_key=session_key)

    def replace_credentials(self, session: SessionContext, api_key: str) -> None:
        """Swap the API key and rebuild every provider handle that used it."""

        session.api_key = api_key
        session.credentials_invalid = False
        session.chat = None
        session.embedder = None
        if session.index is not None:
            session.index = EmbeddingIndex(
                session.index.chunks,
                session.index.vectors,
                self._embedder(session),
                self.config.retrieval,
            )
        logger.info("credentials_replaced", session_key=session.session_key)

    # -- document processing -------------------------------------------------

    def load_document(self, session: SessionContext, page: PageContent) -> ProcessingReport:
        document = Document(
            session_key=session.session_key, url=page.url, text=page.text, title=page.title
        )
        session.document = document
        session.summary = None
        session.index = None
        routed = classify(document.token_estimate, self.config.routing)

        with Timer() as timer:
            report = self._load_cached(session, document, routed)
            if report is None:
                report = self._process(session, document, routed)
        report.processing_ms = timer.elapsed_ms
        session.decision = report.decision

        logger.info(
            "document_loaded",
            session_key=session.session_key,
            url=document.url,
            tokens=round(document.token_estimate),
            routed=routed.label,
            strategy=report.decision.label,
            cache_hit=report.cache_hit,
            chunks=report.chunk_count,
            processing_ms=round(report.processing_ms, 1),
        )
        return report

    def _load_cached(
        self, session: SessionContext, document: Document, routed: RoutingDecision
    ) -> ProcessingReport | None:
        entry = self.cache.load(session.session_key, document.url)
        if entry is None or entry.index is None:
            return None

        session.summary = entry.cached_summary()
        session.index = EmbeddingIndex.from_snapshot(
            entry.index, self._embedder(session), self.config.retrieval
        )
        decision = entry.routing_decision()
        if decision.strategy is not Strategy.HYBRID:
            session.summary = None
        return ProcessingReport(
            decision=decision,
            routed=routed,
            cache_hit=True,
            token_estimate=document.token_estimate,
            word_count=document.word_count,
            context_tokens=self._context_tokens(document, decision, session.summary),
            chunk_count=len(session.index),
        )

    def _process(
        self, session: SessionContext, document: Document, routed: RoutingDecision
    ) -> ProcessingReport:
        warnings: list[str] = []
        summary: Summary | None = None
        index: EmbeddingIndex | None = None

        if routed.strategy is Strategy.HYBRID:
            if routed.summary_size is None:
                raise RuntimeError("hybrid routing decision without a summary size")
            with ThreadPoolExecutor(max_workers=2) as pool:
                summary_future = pool.submit(self._summarize, session, document.text, routed.summary_size)
                index_future = pool.submit(self._build_index, session, document.text)
                summary = summary_future.result()
                index = index_future.result()
            decision = self._degrade_hybrid(routed, summary, index, warnings)
        elif routed.strategy is Strategy.PURE_RETRIEVAL:
            index = self._build_index(session, document.text)
            if index is None:
                warnings.append("Indexing failed; answering from the truncated page instead.")
                decision = RoutingDecision.direct()
            else:
                decision = routed
        else:
            decision = routed

        if decision.strategy is Strategy.DIRECT:
            summary, index = None, None
        elif decision.strategy is Strategy.PURE_RETRIEVAL:
            summary = None

        session.summary = summary
        session.index = index
        if decision.strategy is not Strategy.DIRECT and index is not None:
            self.cache.store(
                session.session_key,
                document.url,
                summary=summary,
                index=index.snapshot(),
                decision=decision,
            )

        for warning in warnings:
            logger.warning("processing_degraded", session_key=session.session_key, detail=warning)
        return ProcessingReport(
            decision=decision,
            routed=routed,
            cache_hit=False,
            token_estimate=document.token_estimate,
            word_count=document.word_count,
            context_tokens=self._context_tokens(document, decision, summary),
            chunk_count=len(index) if index is not None else 0,
            warnings=warnings,
        )

    @staticmethod
    def _degrade_hybrid(
        routed: RoutingDecision,
        summary: Summary | None,
        index: EmbeddingIndex | None,
        warnings: list[str],
    ) -> RoutingDecision:
        if summary is not None and index is not None:
            return routed
        if summary is None:
            warnings.append(f"{ErrorKind.SUMMARY_UNAVAILABLE.value}: summary generation failed.")
        if index is None:
            warnings.append("Indexing failed; retrieval is unavailable for this page.")

        warnings.append("Falling back to direct answers over the truncated page.")
        return RoutingDecision.direct()

    def _summarize(self, session: SessionContext, text: str, size: SummarySize) -> Summary | None:
        chat = self.chat_factory(
            self.config.summary.model,
            api_key=session.api_key,
            temperature=self.config.summary.temperature,
        )
        return Summarizer(chat, self.chunker, self.config.summary).summarize(text, size)

    def _build_index(self, session: SessionContext, text: str) -> EmbeddingIndex | None:
        chunks = self.chunker.split_for_retrieval(text)
        index = EmbeddingIndex.build(chunks, self._embedder(session), self.config.retrieval)
        if not any(vector is not None for vector in index.vectors):
            logger.warning("index_unusable", session_key=session.session_key, chunks=len(chunks))
            return None
        return index

    @staticmethod
    def _context_tokens(
        document: Document, decision: RoutingDecision, summary: Summary | None
    ) -> float:
        if decision.strategy is Strategy.HYBRID and summary is not None:
            return summary.token_estimate
        return document.token_estimate

    # -- answering -----------------------------------------------------------

    def ask(self, session: SessionContext, question: str) -> Iterator[AnswerEvent]:
        """Validate and return the event stream for one question.

        Checks run eagerly; the in-flight lock is taken when the stream is
        first advanced and released when it finishes or is closed.
        """

        question = question.strip()
        if not question:
            raise ValueError("question must be non-empty")
        if session.document is None or session.decision is None:
            raise DocumentNotLoadedError("no document loaded for this session")
        if session.credentials_invalid:
            raise InvalidCredentialError("credentials were rejected; replace them to continue")
        if session.busy:
            raise SessionBusyError("a question is already in flight")
        return self._answer(session, question)

    def _answer(self, session: SessionContext, question: str) -> Iterator[AnswerEvent]:
        decision = session.decision
        document = session.document
        if decision is None or document is None:
            raise DocumentNotLoadedError("no document loaded for this session")
        if not session.lock.acquire(blocking=False):
            raise SessionBusyError("a question is already in flight")

        coordinator = session.coordinator
        request_id = coordinator.begin_request()
        model = coordinator.current_model()
        history = list(session.history.turns)
        started = time.perf_counter()

        answer = ""
        context = ""
        escalated = False
        retrieved = 0
        calls = 0
        error: str | None = None
        try:
            chat = self._chat(session)
            try:
                if decision.strategy is Strategy.HYBRID and session.summary and session.index:
                    controller = HybridController(
                        chat, session.summary, session.index, self.config.retrieval
                    )
                    try:
                        for event in controller.run(question, history):
                            if event.kind == "final":
                                answer = event.text
                            yield event
                    finally:
                        escalated = controller.escalated
                        retrieved = len(controller.retrieved)
                        calls = controller.completion_calls
                        context = session.summary.text + "".join(controller.retrieved)
                else:
                    template, context, retrieved = self._single_call_context(
                        session, document, decision, question
                    )
                    calls = 1
                    pieces: list[str] = []
                    for piece in chat.stream(
                        system_template=template,
                        variables={"context": context},
                        history=history,
                        question=question,
                    ):
                        pieces.append(piece)
                        yield AnswerEvent(kind="delta", text=piece)
                    answer = "".join(pieces)
                    yield AnswerEvent(kind="final", text=answer)
                session.history.append_exchange(question, answer)
            except ProviderError as exc:
                error = exc.kind.value
                logger.warning(
                    "answer_failed",
                    session_key=session.session_key,
                    model=model.name,
                    error_kind=exc.kind.value,
                    error=str(exc),
                )
                yield self._error_event(session, request_id, question, exc)
        finally:
            coordinator.end_request(request_id)
            session.lock.release()
            record = self.trace_store.create_record(
                session_key=session.session_key,
                url=document.url,
                question=question,
                answer=answer,
                strategy=decision.label,
                model=model.name,
                escalated=escalated,
                retrieved_chunks=retrieved,
                completion_calls=calls,
                input_tokens=estimate_token_count(question) + estimate_token_count(context),
                output_tokens=estimate_token_count(answer),
                latency_ms=(time.perf_counter() - started) * 1000.0,
                error=error,
            )
            session.last_trace_id = record.trace_id

    def _single_call_context(
        self,
        session: SessionContext,
        document: Document,
        decision: RoutingDecision,
        question: str,
    ) -> tuple[str, str, int]:
        if decision.strategy is Strategy.DIRECT or session.index is None:
            context = self.chunker.truncate(
                document.text, self.config.session.direct_context_max_chars
            )
            return DIRECT_SYSTEM_PROMPT, context, 0

        chunks = session.index.query(
            question,
            k=self.config.retrieval.top_k,
            score_threshold=self.config.retrieval.score_threshold,
        )
        if not chunks:
            return RETRIEVAL_SYSTEM_PROMPT, NO_RELEVANT_CONTEXT, 0
        return RETRIEVAL_SYSTEM_PROMPT, session.index.join(chunks), len(chunks)

    def _error_event(
        self, session: SessionContext, request_id: str, question: str, exc: ProviderError
    ) -> AnswerEvent:
        if isinstance(exc, InvalidCredentialError):
            session.credentials_invalid = True
            return AnswerEvent(kind="error", text=exc.user_message, error=exc.kind.value)

        if not isinstance(exc, RateLimitedError):
            return AnswerEvent(kind="error", text=exc.user_message, error=exc.kind.value)

        coordinator = session.coordinator
        current = coordinator.current_model()
        outcome = coordinator.on_rate_limited(request_id, question)
        if outcome is RateLimitOutcome.EXHAUSTED:
            return AnswerEvent(
                kind="error", text=MODELS_EXHAUSTED_MESSAGE, error=ErrorKind.MODELS_EXHAUSTED.value
            )
        nxt = coordinator.next_model()
        if outcome is RateLimitOutcome.SWITCH_AVAILABLE and nxt is not None:
            return AnswerEvent(
                kind="error",
                text=(
                    f"{current.display_name} has reached its rate limit. "
                    f"Switch to {nxt.display_name} to continue."
                ),
                error=exc.kind.value,
                switch_to=nxt.name,
            )
        return AnswerEvent(kind="error", text=exc.user_message, error=exc.kind.value)

    # -- model switching -----------------------------------------------------

    def confirm_model_switch(self, session: SessionContext) -> ModelSwitch | None:
        """Advance to the next model and hand back the question to resubmit."""

        model = session.coordinator.confirm_switch()
        if model is None:
            session.coordinator.cancel_switch()
            return None
        session.chat = self._build_chat(session, model)
        question = session.coordinator.take_failed_question()
        logger.info(
            "model_switched",
            session_key=session.session_key,
            model=model.name,
            resubmit=question is not None,
        )
        return ModelSwitch(model=model, resubmit_question=question)

    def cancel_model_switch(self, session: SessionContext) -> None:
        session.coordinator.cancel_switch()
        logger.info("model_switch_cancelled", session_key=session.session_key)

    # -- provider handles ----------------------------------------------------

    def _chat(self, session: SessionContext) -> ChatCompletion:
        if session.chat is None or session.chat.model_name != session.model.name:
            session.chat = self._build_chat(session, session.model)
        return session.chat

    def _build_chat(self, session: SessionContext, model: ModelSpec) -> ChatCompletion:
        return self.chat_factory(model.name, api_key=session.api_key)

    def _embedder(self, session: SessionContext) -> Embedder:
        if session.embedder is None:
            session.embedder = self.embedder_factory(session.api_key)
        return session.embedder

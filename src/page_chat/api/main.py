"""FastAPI entrypoint for session, document, ask and trace endpoints."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from dataclasses import asdict
from typing import Any, Literal

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from page_chat.cache.store import InMemorySessionStore, SessionStore, SqliteSessionStore
from page_chat.config import EngineConfig
from page_chat.engine import ChatEngine, SessionContext
from page_chat.errors import DocumentNotLoadedError, InvalidCredentialError, SessionBusyError
from page_chat.ingest.embedder import HashingEmbedder, openai_embedder
from page_chat.llm.chat import extractive_chat_factory, openai_chat_factory
from page_chat.obs.logging import configure_logging
from page_chat.types import AnswerEvent, PageContent


def _create_store() -> SessionStore:
    db_path = os.getenv("PAGE_CHAT_SQLITE_PATH")
    if db_path:
        return SqliteSessionStore(db_path)
    return InMemorySessionStore()


def _create_engine() -> ChatEngine:
    config = EngineConfig()
    if not os.getenv("OPENAI_API_KEY"):
        return ChatEngine(
            config,
            chat_factory=extractive_chat_factory,
            embedder_factory=lambda _api_key: HashingEmbedder(),
            store=_create_store(),
        )

    embedding_model = config.session.embedding_model
    return ChatEngine(
        config,
        chat_factory=openai_chat_factory,
        embedder_factory=lambda api_key: openai_embedder(embedding_model, api_key=api_key),
        store=_create_store(),
    )


class DocumentRequest(BaseModel):
    url: str = Field(min_length=1)
    text: str
    title: str = ""
    api_key: str | None = None


class AskRequest(BaseModel):
    question: str = Field(min_length=1)


class ModelSwitchRequest(BaseModel):
    action: Literal["confirm", "cancel"]


class CredentialsRequest(BaseModel):
    api_key: str = Field(min_length=1)


def create_app(engine: ChatEngine | None = None) -> FastAPI:
    engine = engine or _create_engine()
    app = FastAPI(title="Page Chat", version="0.1.0")
    app.state.engine = engine

    def _session(session_key: str) -> SessionContext:
        session = engine.get_session(session_key)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Session not found: {session_key}")
        return session

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "llm_configured": engine.chat_factory is not extractive_chat_factory,
            "sessions": len(engine.sessions),
            "trace_count": len(engine.trace_store.list_recent(limit=1000)),
        }

    @app.post("/sessions/{session_key}/document")
    def load_document(session_key: str, request: DocumentRequest) -> dict[str, Any]:
        session = engine.get_session(session_key) or engine.new_session(
            session_key, api_key=request.api_key
        )
        page = PageContent(text=request.text, title=request.title, url=request.url)
        if session.busy:
            raise HTTPException(status_code=409, detail=SessionBusyError.user_message)
        report = engine.load_document(session, page)
        return {
            "strategy": report.decision.label,
            "routed": report.routed.label,
            "cache_hit": report.cache_hit,
            "token_estimate": round(report.token_estimate),
            "word_count": report.word_count,
            "context_tokens": round(report.context_tokens),
            "chunk_count": report.chunk_count,
            "processing_ms": round(report.processing_ms, 1),
            "warnings": report.warnings,
            "model": session.model.name,
        }

    @app.post("/sessions/{session_key}/ask")
    def ask(session_key: str, request: AskRequest) -> StreamingResponse:
        session = _session(session_key)
        try:
            events = engine.ask(session, request.question)
        except SessionBusyError as exc:
            raise HTTPException(status_code=409, detail=exc.user_message) from exc
        except DocumentNotLoadedError as exc:
            raise HTTPException(status_code=409, detail=exc.user_message) from exc
        except InvalidCredentialError as exc:
            raise HTTPException(status_code=401, detail=exc.user_message) from exc
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return StreamingResponse(_ndjson(events), media_type="application/x-ndjson")

    @app.post("/sessions/{session_key}/model-switch")
    def model_switch(session_key: str, request: ModelSwitchRequest) -> dict[str, Any]:
        session = _session(session_key)
        if request.action == "cancel":
            engine.cancel_model_switch(session)
            return {"switched": False, "model": session.model.name}

        switch = engine.confirm_model_switch(session)
        if switch is None:
            return {"switched": False, "model": session.model.name}
        return {
            "switched": True,
            "model": switch.model.name,
            "display_name": switch.model.display_name,
            "resubmit_question": switch.resubmit_question,
        }

    @app.post("/sessions/{session_key}/credentials")
    def replace_credentials(session_key: str, request: CredentialsRequest) -> dict[str, Any]:
        session = _session(session_key)
        engine.replace_credentials(session, request.api_key)
        return {"credentials_invalid": session.credentials_invalid}

    @app.delete("/sessions/{session_key}")
    def end_session(session_key: str) -> dict[str, Any]:
        engine.end_session(session_key)
        return {"ended": session_key}

    @app.get("/traces")
    def traces(limit: int = 20) -> dict[str, Any]:
        records = [asdict(record) for record in engine.trace_store.list_recent(limit=limit)]
        return {"items": records}

    @app.get("/traces/{trace_id}")
    def trace_detail(trace_id: str) -> dict[str, Any]:
        try:
            record = engine.trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return engine.trace_store.summary()

    return app


def _ndjson(events: Iterator[AnswerEvent]) -> Iterator[str]:
    for event in events:
        yield json.dumps(asdict(event)) + "\n"


configure_logging(os.getenv("PAGE_CHAT_LOG_LEVEL", "INFO"), json=os.getenv("PAGE_CHAT_LOG_JSON") == "1")
app = create_app()

"""Bounded conversation history persisted in the session store."""

from __future__ import annotations

import json

from page_chat.cache.store import SessionStore
from page_chat.obs.logging import get_logger
from page_chat.types import ConversationTurn

logger = get_logger(__name__)

HISTORY_KEY = "chat_history"


class ConversationHistory:
    """Append-only turns for one session, truncated to the newest `limit`."""

    def __init__(self, store: SessionStore, session_key: str, limit: int = 20) -> None:
        self._store = store
        self.session_key = session_key
        self.limit = limit
        self.turns: list[ConversationTurn] = []

    def load(self) -> list[ConversationTurn]:
        try:
            raw = self._store.get(self.session_key, HISTORY_KEY)
        except Exception as exc:  # noqa: BLE001
            logger.error("history_load_failed", error=str(exc))
            raw = None
        if raw:
            try:
                payload = json.loads(raw)
                self.turns = [
                    ConversationTurn(role=item["role"], text=item["text"])
                    for item in payload
                    if item.get("role") in ("user", "assistant")
                ][-self.limit :]
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                logger.warning("history_invalid", error=str(exc))
                self.turns = []
        return list(self.turns)

    def append_exchange(self, question: str, answer: str) -> None:
        self.turns.append(ConversationTurn(role="user", text=question))
        self.turns.append(ConversationTurn(role="assistant", text=answer))
        if len(self.turns) > self.limit:
            self.turns = self.turns[-self.limit :]
        self.save()

    def save(self) -> None:
        payload = json.dumps([{"role": turn.role, "text": turn.text} for turn in self.turns])
        try:
            self._store.set(self.session_key, HISTORY_KEY, payload)
        except Exception as exc:  # noqa: BLE001
            logger.error("history_save_failed", error=str(exc))

    def clear(self) -> None:
        self.turns = []
        self._store.delete(self.session_key, HISTORY_KEY)

    def __len__(self) -> int:
        return len(self.turns)

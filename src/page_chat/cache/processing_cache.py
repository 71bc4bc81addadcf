"""Per-session cache of expensive processing artifacts."""

from __future__ import annotations

import time

from pydantic import BaseModel, Field, ValidationError

from page_chat.cache.store import SessionStore
from page_chat.obs.logging import get_logger
from page_chat.retrieval.vector_store import IndexSnapshot
from page_chat.types import RoutingDecision, Summary, SummarySize

logger = get_logger(__name__)


class CacheEntry(BaseModel):
    """Artifacts built for one `(session_key, url)`.

    The cached artifacts, not the router, decide the strategy on a warm load:
    summary + index is hybrid, index alone is pure retrieval, and anything
    else falls back to direct.
    """

    url: str
    summary: str | None = None
    summary_size: SummarySize | None = None
    index: IndexSnapshot | None = None
    created_at: float = Field(default_factory=time.time)
    routed: str | None = None

    def cached_summary(self) -> Summary | None:
        if self.summary is None:
            return None
        return Summary(text=self.summary, size=self.summary_size or SummarySize.STANDARD)

    def routing_decision(self) -> RoutingDecision:
        has_index = self.index is not None and bool(self.index.chunks)
        if self.summary is not None and has_index:
            return RoutingDecision.hybrid(self.summary_size or SummarySize.STANDARD)
        if has_index:
            return RoutingDecision.pure_retrieval()
        return RoutingDecision.direct()


class ProcessingCache:
    """Reads and writes `CacheEntry` records in a session store.

    Entries are keyed by URL inside the session namespace and are never
    invalidated by content changes; ending the session is what evicts them.
    Store failures are logged and treated as misses.
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    @staticmethod
    def cache_key(url: str) -> str:
        return f"processing:{url}"

    def load(self, session_key: str, url: str) -> CacheEntry | None:
        if not session_key or not url:
            return None
        try:
            raw = self._store.get(session_key, self.cache_key(url))
        except Exception as exc:  # noqa: BLE001 - storage errors degrade to a miss
            logger.error("cache_load_failed", url=url, error=str(exc))
            return None
        if raw is None:
            logger.debug("cache_miss", url=url)
            return None

        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("cache_entry_invalid", url=url, error=str(exc))
            return None

        if entry.url != url:
            logger.debug("cache_url_mismatch", url=url, cached_url=entry.url)
            return None
        logger.info("cache_hit", url=url, created_at=entry.created_at)
        return entry

    def store(
        self,
        session_key: str,
        url: str,
        summary: Summary | None = None,
        index: IndexSnapshot | None = None,
        decision: RoutingDecision | None = None,
    ) -> CacheEntry | None:
        if not session_key or not url:
            return None
        entry = CacheEntry(
            url=url,
            summary=summary.text if summary else None,
            summary_size=summary.size if summary else None,
            index=index,
            routed=decision.label if decision else None,
        )
        try:
            self._store.set(session_key, self.cache_key(url), entry.model_dump_json())
        except Exception as exc:  # noqa: BLE001 - caching is best effort
            logger.error("cache_store_failed", url=url, error=str(exc))
            return None
        logger.info("cache_stored", url=url, has_summary=summary is not None, has_index=index is not None)
        return entry

"""Per-session model fallback chain with rate-limit noise suppression."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Sequence
from enum import Enum

from page_chat.config import FallbackConfig, ModelSpec
from page_chat.obs.logging import get_logger

logger = get_logger(__name__)


class RateLimitOutcome(str, Enum):
    SWITCH_AVAILABLE = "switch_available"
    EXHAUSTED = "exhausted"
    IGNORED_STALE = "ignored_stale"
    IGNORED_COOLDOWN = "ignored_cooldown"
    IGNORED_BUSY = "ignored_busy"

    @property
    def honored(self) -> bool:
        return self in (RateLimitOutcome.SWITCH_AVAILABLE, RateLimitOutcome.EXHAUSTED)


class ModelFallbackCoordinator:
    """Tracks the active model and decides what a rate-limit signal means.

    The cursor only moves forward and never wraps. A rate-limit detection is
    honoured only when all three guards pass, checked in this order:

    1. it belongs to the active request (otherwise the request was abandoned
       and the error is stale),
    2. at least `cooldown_seconds` have passed since the last honoured
       detection,
    3. no earlier detection is still waiting for `confirm_switch` or
       `cancel_switch`.

    Once the chain is exhausted, every non-stale detection reports
    `EXHAUSTED` regardless of the cooldown and busy guards.

    Exactly one question is in flight per session, so one active request id
    is enough.
    """

    def __init__(
        self,
        chain: Sequence[ModelSpec] | None = None,
        *,
        cooldown_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        defaults = FallbackConfig()
        self.chain: tuple[ModelSpec, ...] = tuple(chain or defaults.models)
        if not self.chain:
            raise ValueError("fallback chain must contain at least one model")
        self.cooldown_seconds = (
            defaults.cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        )
        self._clock = clock
        self.current_index = 0
        self.active_request_id: str | None = None
        self.failed_question: str | None = None
        self._handling = False
        self._last_detection: float | None = None

    @classmethod
    def from_config(
        cls, config: FallbackConfig, *, clock: Callable[[], float] = time.monotonic
    ) -> "ModelFallbackCoordinator":
        return cls(config.models, cooldown_seconds=config.cooldown_seconds, clock=clock)

    @property
    def handling(self) -> bool:
        return self._handling

    def current_model(self) -> ModelSpec:
        return self.chain[self.current_index]

    def next_model(self) -> ModelSpec | None:
        if self.current_index < len(self.chain) - 1:
            return self.chain[self.current_index + 1]
        return None

    def advance(self) -> ModelSpec | None:
        """Move to the next model; `None` once the chain is exhausted."""

        nxt = self.next_model()
        if nxt is None:
            return None
        self.current_index += 1
        logger.info("model_advanced", model=nxt.name, position=self.current_index)
        return nxt

    def begin_request(self) -> str:
        self.active_request_id = uuid.uuid4().hex
        return self.active_request_id

    def end_request(self, request_id: str) -> None:
        if self.active_request_id == request_id:
            self.active_request_id = None

    def on_rate_limited(self, request_id: str | None, question: str | None = None) -> RateLimitOutcome:
        if request_id is None or request_id != self.active_request_id:
            logger.info("rate_limit_ignored", reason="stale", request_id=request_id)
            return RateLimitOutcome.IGNORED_STALE

        nxt = self.next_model()
        if nxt is None:
            if question and self.failed_question is None:
                self.failed_question = question
            logger.warning("model_chain_exhausted", model=self.current_model().name)
            return RateLimitOutcome.EXHAUSTED

        now = self._clock()
        if self._last_detection is not None and now - self._last_detection < self.cooldown_seconds:
            logger.info(
                "rate_limit_ignored",
                reason="cooldown",
                elapsed=round(now - self._last_detection, 3),
                cooldown=self.cooldown_seconds,
            )
            return RateLimitOutcome.IGNORED_COOLDOWN

        if self._handling:
            logger.info("rate_limit_ignored", reason="busy")
            return RateLimitOutcome.IGNORED_BUSY

        self._last_detection = now
        if question and self.failed_question is None:
            self.failed_question = question

        self._handling = True
        logger.warning("rate_limit_detected", model=self.current_model().name, next_model=nxt.name)
        return RateLimitOutcome.SWITCH_AVAILABLE

    def confirm_switch(self) -> ModelSpec | None:
        """Accept the offered switch; the failed question stays available."""

        self._handling = False
        self._last_detection = None
        return self.advance()

    def cancel_switch(self) -> None:
        self._handling = False
        self.failed_question = None
        self.active_request_id = None

    def take_failed_question(self) -> str | None:
        question, self.failed_question = self.failed_question, None
        return question

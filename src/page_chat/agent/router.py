"""Document routing by estimated token count."""

from __future__ import annotations

from page_chat.config import RoutingConfig
from page_chat.types import RoutingDecision, SummarySize

_DEFAULT_ROUTING = RoutingConfig()


def classify(token_estimate: float, config: RoutingConfig | None = None) -> RoutingDecision:
    """Select the processing strategy for a document.

    Thresholds are exclusive upper bounds, so a value sitting exactly on a
    threshold belongs to the higher bucket.
    """

    config = config or _DEFAULT_ROUTING
    if token_estimate < config.hybrid_compact_min_tokens:
        return RoutingDecision.direct()
    if token_estimate < config.hybrid_standard_min_tokens:
        return RoutingDecision.hybrid(SummarySize.COMPACT)
    if token_estimate < config.pure_retrieval_min_tokens:
        return RoutingDecision.hybrid(SummarySize.STANDARD)
    return RoutingDecision.pure_retrieval()

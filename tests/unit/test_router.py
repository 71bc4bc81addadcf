import pytest

from page_chat.agent.router import classify
from page_chat.config import RoutingConfig
from page_chat.types import Strategy, SummarySize, estimate_tokens


@pytest.mark.parametrize(
    ("tokens", "label"),
    [
        (0, "direct"),
        (9_999.75, "direct"),
        (10_000, "hybrid-compact"),
        (19_999, "hybrid-compact"),
        (20_000, "hybrid-standard"),
        (29_999.5, "hybrid-standard"),
        (30_000, "pure-retrieval"),
        (500_000, "pure-retrieval"),
    ],
)
def test_router_boundaries(tokens: float, label: str) -> None:
    assert classify(tokens).label == label


def test_router_carries_summary_size_only_for_hybrid() -> None:
    assert classify(5_000).summary_size is None
    assert classify(15_000).summary_size is SummarySize.COMPACT
    assert classify(25_000).summary_size is SummarySize.STANDARD
    assert classify(35_000).strategy is Strategy.PURE_RETRIEVAL
    assert classify(35_000).summary_size is None


def test_router_uses_custom_thresholds() -> None:
    config = RoutingConfig(
        hybrid_compact_min_tokens=100,
        hybrid_standard_min_tokens=200,
        pure_retrieval_min_tokens=300,
    )

    assert classify(99, config).strategy is Strategy.DIRECT
    assert classify(250, config).summary_size is SummarySize.STANDARD
    assert classify(300, config).strategy is Strategy.PURE_RETRIEVAL


def test_routing_thresholds_must_ascend() -> None:
    with pytest.raises(ValueError):
        RoutingConfig(hybrid_compact_min_tokens=300, hybrid_standard_min_tokens=200)


def test_token_estimate_is_chars_over_four() -> None:
    assert estimate_tokens("x" * 40_000) == 10_000
    assert estimate_tokens("") == 0

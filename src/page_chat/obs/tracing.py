"""Per-question tracing and token/cost accounting."""

from __future__ import annotations

import threading
import time
import uuid
from collections import Counter, OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


@dataclass(slots=True)
class TraceRecord:
    trace_id: str
    timestamp_utc: str
    session_key: str
    url: str
    question: str
    answer: str
    strategy: str
    model: str
    escalated: bool
    retrieved_chunks: int
    completion_calls: int
    input_tokens: int
    output_tokens: int
    estimated_cost_usd: float
    latency_ms: float
    error: str | None = None


@dataclass(slots=True)
class CostModel:
    """Token pricing in USD per million tokens."""

    input_per_1m: float = 0.15
    output_per_1m: float = 0.60

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens * self.input_per_1m + output_tokens * self.output_per_1m) / 1_000_000


class TraceStore:
    """Bounded, thread-safe record of answered questions.

    The oldest records are evicted once `max_records` is exceeded. `summary`
    feeds the `/metrics` endpoint.
    """

    def __init__(self, *, cost_model: CostModel | None = None, max_records: int = 1000) -> None:
        self._records: OrderedDict[str, TraceRecord] = OrderedDict()
        self._cost_model = cost_model or CostModel()
        self._max_records = max_records
        self._lock = threading.Lock()

    def create_record(self, **fields: Any) -> TraceRecord:
        """Build, store and return a record; cost is derived from the token counts."""

        record = TraceRecord(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            estimated_cost_usd=self._cost_model.estimate_cost(
                fields["input_tokens"], fields["output_tokens"]
            ),
            **fields,
        )
        with self._lock:
            self._records[record.trace_id] = record
            while len(self._records) > self._max_records:
                self._records.popitem(last=False)
        return record

    def get(self, trace_id: str) -> TraceRecord:
        with self._lock:
            record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TraceRecord]:
        with self._lock:
            records = list(self._records.values())
        return records[-limit:] if limit > 0 else []

    def summary(self) -> dict[str, Any]:
        with self._lock:
            records = list(self._records.values())

        total = len(records)
        latencies = sorted(record.latency_ms for record in records)
        p95 = latencies[max(0, int(total * 0.95) - 1)] if latencies else 0.0
        return {
            "total_requests": total,
            "failed_requests": sum(1 for record in records if record.error),
            "escalation_rate": (sum(record.escalated for record in records) / total) if total else 0.0,
            "avg_latency_ms": (sum(latencies) / total) if total else 0.0,
            "p95_latency_ms": p95,
            "total_input_tokens": sum(record.input_tokens for record in records),
            "total_output_tokens": sum(record.output_tokens for record in records),
            "total_estimated_cost_usd": sum(record.estimated_cost_usd for record in records),
            "requests_by_strategy": dict(Counter(record.strategy for record in records)),
            "requests_by_model": dict(Counter(record.model for record in records)),
        }


class Timer:
    """Context manager measuring wall time in milliseconds."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return round(len(text) / 4)

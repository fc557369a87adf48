"""Telemetry aggregation over a window of trace events.

Reduces the numeric and flag fields carried in each event's data payload
into latency percentiles, cost, reliability and quality metrics. Pure
read/reduce: nothing here writes to the trace store. Individual events
with missing or malformed fields are skipped field-by-field, never
discarded wholesale.
"""

from __future__ import annotations

import math
from collections import Counter
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from coachstream.telemetry.cost import estimate_cost
from coachstream.tracing.events import TraceEvent, TraceStage
from coachstream.tracing.sinks import TraceSource

# Payload keys read from TraceEvent.data
TTFF_KEY = "time_to_first_fragment_ms"
DURATION_KEY = "total_duration_ms"
PROMPT_TOKENS_KEY = "prompt_tokens"
COMPLETION_TOKENS_KEY = "completion_tokens"
MODEL_KEY = "model"
CACHE_HIT_KEY = "cache_hit"
RAG_HIT_KEY = "rag_hit"
BREAKER_KEY = "circuit_breaker"
BREAKER_OPEN_KEY = "circuit_breaker_open"
BREAKER_HALF_OPEN_KEY = "circuit_breaker_half_open"
WILL_RETRY_KEY = "will_retry"
ERROR_KIND_KEY = "kind"
SENTIMENT_KEY = "sentiment"
PERSONA_KEY = "persona"
PII_KEY = "pii_detected"


class BreakerStatus(str, Enum):
    """Derived circuit-breaker health signal."""

    closed = "closed"
    half_open = "half_open"
    open = "open"


class LatencyMetrics(BaseModel):
    model_config = {"extra": "forbid"}

    ttff_avg_ms: float = 0.0
    ttff_p95_ms: float = 0.0
    duration_avg_ms: float = 0.0
    duration_p95_ms: float = 0.0


class CostMetrics(BaseModel):
    model_config = {"extra": "forbid"}

    total_usd: float = 0.0
    per_request_usd: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    unpriced_requests: int = 0


class ReliabilityMetrics(BaseModel):
    model_config = {"extra": "forbid"}

    request_count: int = 0
    error_rate: float = 0.0
    cache_hit_rate: float = 0.0
    rag_hit_rate: float = 0.0
    retry_rate: float = 0.0
    circuit_breaker: BreakerStatus = BreakerStatus.closed
    # Every error event, retried or final, by ErrorKind value
    error_counts: dict[str, int] = Field(default_factory=dict)


class QualityMetrics(BaseModel):
    """Domain-specific pass-through aggregates."""

    model_config = {"extra": "forbid"}

    sentiment_avg: float = 0.0
    persona_counts: dict[str, int] = Field(default_factory=dict)
    pii_detections: int = 0


class AggregatedMetrics(BaseModel):
    """Health metrics derived from one window of trace events."""

    model_config = {"extra": "forbid"}

    window_start_ms: int | None = None
    event_count: int = 0
    latency: LatencyMetrics = Field(default_factory=LatencyMetrics)
    cost: CostMetrics = Field(default_factory=CostMetrics)
    reliability: ReliabilityMetrics = Field(default_factory=ReliabilityMetrics)
    quality: QualityMetrics = Field(default_factory=QualityMetrics)


def percentile_95(values: list[float]) -> float:
    """Return the 95th percentile using the nearest-rank method.

    Sorts the sample and takes index ceil(n * 0.95) - 1. An empty
    sample yields 0.0.
    """
    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.ceil(len(ordered) * 0.95) - 1
    return float(ordered[max(index, 0)])


def average(values: list[float]) -> float:
    """Arithmetic mean; 0.0 for an empty sample."""
    if not values:
        return 0.0
    return sum(values) / len(values)


def _number(data: dict[str, Any], key: str) -> float | None:
    """Read a finite numeric field. Booleans and strings are not numbers."""
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _flag(data: dict[str, Any], key: str) -> bool | None:
    value = data.get(key)
    return value if isinstance(value, bool) else None


def _rate(hits: int, total: int) -> float:
    return hits / total if total else 0.0


def breaker_status(events: list[TraceEvent]) -> BreakerStatus:
    """Derive the breaker status: open beats half_open beats closed."""
    half_open = False
    for event in events:
        status = event.data.get(BREAKER_KEY)
        if status == BreakerStatus.open.value or _flag(event.data, BREAKER_OPEN_KEY):
            return BreakerStatus.open
        if status == BreakerStatus.half_open.value or _flag(
            event.data, BREAKER_HALF_OPEN_KEY
        ):
            half_open = True
    return BreakerStatus.half_open if half_open else BreakerStatus.closed


def _request_key(event: TraceEvent) -> str:
    return event.session_id or event.trace_id


def compute_metrics(
    events: list[TraceEvent],
    since_ms: int | None = None,
) -> AggregatedMetrics:
    """Compute aggregated metrics over events at or after since_ms.

    Args:
        events: Trace events to reduce (any order).
        since_ms: Window start in epoch milliseconds. None means all events.

    Returns:
        AggregatedMetrics. An empty window yields all zeros and a closed
        breaker.
    """
    window = [
        e for e in events if since_ms is None or e.timestamp_ms >= since_ms
    ]

    ttff: list[float] = []
    durations: list[float] = []
    sentiments: list[float] = []
    personas: Counter[str] = Counter()
    pii_detections = 0

    total_cost = 0.0
    prompt_tokens = 0
    completion_tokens = 0
    unpriced = 0

    cache_hits = cache_seen = 0
    rag_hits = rag_seen = 0

    requests: set[str] = set()
    failed_requests: set[str] = set()
    backend_calls = 0
    retries = 0
    error_kinds: Counter[str] = Counter()

    for event in window:
        data = event.data
        key = _request_key(event)
        requests.add(key)

        value = _number(data, TTFF_KEY)
        if value is not None:
            ttff.append(value)
        value = _number(data, DURATION_KEY)
        if value is not None:
            durations.append(value)

        prompt = _number(data, PROMPT_TOKENS_KEY)
        completion = _number(data, COMPLETION_TOKENS_KEY)
        if prompt is not None or completion is not None:
            p = int(prompt or 0)
            c = int(completion or 0)
            prompt_tokens += p
            completion_tokens += c
            model = data.get(MODEL_KEY)
            cost = estimate_cost(model, p, c) if isinstance(model, str) else None
            if cost is None:
                unpriced += 1
            else:
                total_cost += cost

        flag = _flag(data, CACHE_HIT_KEY)
        if flag is not None:
            cache_seen += 1
            cache_hits += flag
        flag = _flag(data, RAG_HIT_KEY)
        if flag is not None:
            rag_seen += 1
            rag_hits += flag

        if event.stage == TraceStage.backend_call_started:
            backend_calls += 1
        elif event.stage == TraceStage.error:
            kind = data.get(ERROR_KIND_KEY)
            error_kinds[kind if isinstance(kind, str) and kind else "UNKNOWN"] += 1
            if _flag(data, WILL_RETRY_KEY):
                retries += 1
            else:
                failed_requests.add(key)

        value = _number(data, SENTIMENT_KEY)
        if value is not None:
            sentiments.append(value)
        persona = data.get(PERSONA_KEY)
        if isinstance(persona, str) and persona:
            personas[persona] += 1
        if _flag(data, PII_KEY):
            pii_detections += 1

    request_count = len(requests)

    return AggregatedMetrics(
        window_start_ms=since_ms,
        event_count=len(window),
        latency=LatencyMetrics(
            ttff_avg_ms=average(ttff),
            ttff_p95_ms=percentile_95(ttff),
            duration_avg_ms=average(durations),
            duration_p95_ms=percentile_95(durations),
        ),
        cost=CostMetrics(
            total_usd=round(total_cost, 6),
            per_request_usd=round(total_cost / request_count, 6) if request_count else 0.0,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            unpriced_requests=unpriced,
        ),
        reliability=ReliabilityMetrics(
            request_count=request_count,
            error_rate=_rate(len(failed_requests), request_count),
            cache_hit_rate=_rate(cache_hits, cache_seen),
            rag_hit_rate=_rate(rag_hits, rag_seen),
            retry_rate=_rate(retries, backend_calls),
            circuit_breaker=breaker_status(window),
            error_counts=dict(error_kinds),
        ),
        quality=QualityMetrics(
            sentiment_avg=average(sentiments),
            persona_counts=dict(personas),
            pii_detections=pii_detections,
        ),
    )


class TelemetryAggregator:
    """Pull-based metrics API over a trace source.

    Reads already-persisted events only, so it can run alongside live
    sessions without coordination.
    """

    def __init__(self, source: TraceSource) -> None:
        self.source = source

    def compute_metrics(self, since_ms: int | None = None) -> AggregatedMetrics:
        return compute_metrics(self.source.load_events(since_ms), since_ms)

"""Tests for coachstream.telemetry.aggregation - metrics over trace events."""

from __future__ import annotations

import math

import pytest

from coachstream.telemetry.aggregation import (
    AggregatedMetrics,
    BreakerStatus,
    TelemetryAggregator,
    average,
    breaker_status,
    compute_metrics,
    percentile_95,
)
from coachstream.tracing.events import TraceEvent, TraceStage
from coachstream.tracing.sinks import InMemoryTraceStore


def _event(
    stage: TraceStage,
    session_id: str = "s-1",
    ts: int = 1_000,
    **data,
) -> TraceEvent:
    return TraceEvent(
        trace_id=f"t-{session_id}",
        stage=stage,
        timestamp_ms=ts,
        session_id=session_id,
        data=data,
    )


def _successful_session(session_id: str, ttff: float, duration: float, **done_data) -> list[TraceEvent]:
    return [
        _event(TraceStage.received, session_id),
        _event(TraceStage.backend_call_started, session_id, attempt=1),
        _event(TraceStage.first_fragment, session_id, time_to_first_fragment_ms=ttff),
        _event(TraceStage.stream_done, session_id, **done_data),
        _event(TraceStage.completed, session_id, total_duration_ms=duration),
    ]


class TestPercentile:
    """Test nearest-rank p95 and average."""

    def test_p95_of_five(self):
        assert percentile_95([100, 200, 300, 400, 500]) == 500

    def test_p95_unsorted_input(self):
        assert percentile_95([500, 100, 300, 200, 400]) == 500

    def test_p95_of_twenty(self):
        values = list(range(1, 21))
        # ceil(20 * 0.95) - 1 = 18 -> 19
        assert percentile_95(values) == 19

    def test_p95_single(self):
        assert percentile_95([42]) == 42

    def test_empty(self):
        assert percentile_95([]) == 0.0
        assert average([]) == 0.0

    def test_average(self):
        assert average([100, 200, 600]) == 300


class TestBreakerStatus:
    """Test circuit-breaker derivation."""

    def test_closed_by_default(self):
        assert breaker_status([_event(TraceStage.received)]) == BreakerStatus.closed

    def test_half_open(self):
        events = [_event(TraceStage.context_ready, circuit_breaker="half_open")]
        assert breaker_status(events) == BreakerStatus.half_open

    def test_open_wins(self):
        events = [
            _event(TraceStage.context_ready, circuit_breaker_half_open=True),
            _event(TraceStage.context_ready, circuit_breaker_open=True),
        ]
        assert breaker_status(events) == BreakerStatus.open


class TestComputeMetrics:
    """Test compute_metrics reductions."""

    def test_empty_window(self):
        result = compute_metrics([])
        assert result == AggregatedMetrics()
        assert result.latency.ttff_p95_ms == 0.0
        assert result.cost.total_usd == 0.0
        assert result.reliability.error_rate == 0.0
        assert result.reliability.circuit_breaker == BreakerStatus.closed

    def test_latency(self):
        events = []
        for i, ttff in enumerate([100, 200, 300, 400, 500]):
            events += _successful_session(f"s-{i}", ttff, ttff * 4)
        result = compute_metrics(events)

        assert result.latency.ttff_avg_ms == 300
        assert result.latency.ttff_p95_ms == 500
        assert result.latency.duration_p95_ms == 2000
        assert result.reliability.request_count == 5

    def test_cost_from_stream_done(self):
        events = _successful_session(
            "s-1", 100, 400, prompt_tokens=1000, completion_tokens=500, model="gpt-4o-mini"
        ) + _successful_session(
            "s-2", 100, 400, prompt_tokens=2000, completion_tokens=1000, model="gpt-4o"
        )
        result = compute_metrics(events)

        assert result.cost.total_usd == pytest.approx(0.00045 + 0.015)
        assert result.cost.per_request_usd == pytest.approx((0.00045 + 0.015) / 2, abs=1e-6)
        assert result.cost.prompt_tokens == 3000
        assert result.cost.completion_tokens == 1500
        assert result.cost.total_tokens == 4500
        assert result.cost.unpriced_requests == 0

    def test_unknown_model_is_unpriced(self):
        events = _successful_session(
            "s-1", 100, 400, prompt_tokens=1000, completion_tokens=500, model="mystery"
        )
        result = compute_metrics(events)
        assert result.cost.total_usd == 0.0
        assert result.cost.prompt_tokens == 1000
        assert result.cost.unpriced_requests == 1

    def test_error_and_retry_rates(self):
        events = _successful_session("ok", 100, 400)
        events += [
            _event(TraceStage.received, "retried"),
            _event(TraceStage.backend_call_started, "retried"),
            _event(TraceStage.error, "retried", kind="BACKEND_5XX", will_retry=True),
            _event(TraceStage.backend_call_started, "retried"),
            _event(TraceStage.completed, "retried", total_duration_ms=900),
            _event(TraceStage.received, "failed"),
            _event(TraceStage.backend_call_started, "failed"),
            _event(TraceStage.error, "failed", kind="UNAUTHORIZED", will_retry=False),
        ]
        result = compute_metrics(events)

        assert result.reliability.request_count == 3
        assert result.reliability.error_rate == pytest.approx(1 / 3)
        assert result.reliability.retry_rate == pytest.approx(1 / 4)

    def test_error_counts_by_kind(self):
        events = [
            _event(TraceStage.error, "a", kind="BACKEND_5XX", will_retry=True),
            _event(TraceStage.error, "a", kind="BACKEND_5XX", will_retry=True),
            _event(TraceStage.error, "a", kind="TIMEOUT", will_retry=False),
            _event(TraceStage.error, "b", kind="UNAUTHORIZED", will_retry=False),
            _event(TraceStage.error, "c", kind=42),
            _event(TraceStage.completed, "d", kind="NETWORK"),
        ]
        result = compute_metrics(events)

        assert result.reliability.error_counts == {
            "BACKEND_5XX": 2,
            "TIMEOUT": 1,
            "UNAUTHORIZED": 1,
            "UNKNOWN": 1,
        }

    def test_no_errors_no_counts(self):
        assert compute_metrics(_successful_session("ok", 100, 400)).reliability.error_counts == {}

    def test_hit_rates_only_count_events_with_flag(self):
        events = [
            _event(TraceStage.context_ready, "a", cache_hit=True, rag_hit=True),
            _event(TraceStage.context_ready, "b", cache_hit=False, rag_hit=True),
            _event(TraceStage.context_ready, "c", cache_hit=True),
            _event(TraceStage.received, "d"),
        ]
        result = compute_metrics(events)

        assert result.reliability.cache_hit_rate == pytest.approx(2 / 3)
        assert result.reliability.rag_hit_rate == 1.0

    def test_quality_metrics(self):
        events = [
            _event(TraceStage.stream_done, "a", sentiment=0.5, persona="motivator"),
            _event(TraceStage.stream_done, "b", sentiment=-0.1, persona="motivator"),
            _event(TraceStage.stream_done, "c", persona="analyst", pii_detected=True),
        ]
        result = compute_metrics(events)

        assert result.quality.sentiment_avg == pytest.approx(0.2)
        assert result.quality.persona_counts == {"motivator": 2, "analyst": 1}
        assert result.quality.pii_detections == 1

    def test_invalid_fields_are_skipped(self):
        events = [
            _event(TraceStage.first_fragment, "a", time_to_first_fragment_ms="fast"),
            _event(TraceStage.first_fragment, "b", time_to_first_fragment_ms=True),
            _event(TraceStage.first_fragment, "c", time_to_first_fragment_ms=math.nan),
            _event(TraceStage.first_fragment, "d", time_to_first_fragment_ms=300),
            _event(TraceStage.context_ready, "e", cache_hit="yes"),
        ]
        result = compute_metrics(events)

        assert result.latency.ttff_avg_ms == 300
        assert result.reliability.cache_hit_rate == 0.0
        assert result.reliability.request_count == 5

    def test_window_filter(self):
        events = [
            _event(TraceStage.first_fragment, "old", ts=100, time_to_first_fragment_ms=9999),
            _event(TraceStage.first_fragment, "new", ts=500, time_to_first_fragment_ms=200),
        ]
        result = compute_metrics(events, since_ms=400)

        assert result.window_start_ms == 400
        assert result.event_count == 1
        assert result.latency.ttff_avg_ms == 200

    def test_requests_fall_back_to_trace_id(self):
        events = [
            TraceEvent(trace_id="t-1", stage=TraceStage.received, timestamp_ms=1),
            TraceEvent(trace_id="t-1", stage=TraceStage.completed, timestamp_ms=2),
            TraceEvent(trace_id="t-2", stage=TraceStage.received, timestamp_ms=3),
        ]
        assert compute_metrics(events).reliability.request_count == 2


class TestTelemetryAggregator:
    """Test the source-backed aggregator."""

    @pytest.mark.asyncio
    async def test_reads_from_source(self):
        store = InMemoryTraceStore()
        for event in _successful_session("s-1", 250, 1000):
            await store.append(event)

        result = TelemetryAggregator(store).compute_metrics(since_ms=0)

        assert result.event_count == 5
        assert result.latency.ttff_avg_ms == 250
        assert result.latency.duration_avg_ms == 1000

"""coachstream telemetry - cost estimation and trace aggregation."""

from coachstream.telemetry.aggregation import (
    AggregatedMetrics,
    BreakerStatus,
    TelemetryAggregator,
    average,
    compute_metrics,
    percentile_95,
)
from coachstream.telemetry.cost import estimate_cost

__all__ = [
    "AggregatedMetrics",
    "BreakerStatus",
    "TelemetryAggregator",
    "average",
    "compute_metrics",
    "estimate_cost",
    "percentile_95",
]

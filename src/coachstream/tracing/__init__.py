"""coachstream tracing - trace events, sinks, and the fire-and-forget log."""

from coachstream.tracing.events import TraceEvent, TraceStage
from coachstream.tracing.log import TraceEventLog
from coachstream.tracing.sinks import (
    InMemoryTraceStore,
    JsonlTraceStore,
    TraceSink,
    TraceSource,
)

__all__ = [
    "InMemoryTraceStore",
    "JsonlTraceStore",
    "TraceEvent",
    "TraceEventLog",
    "TraceSink",
    "TraceSource",
    "TraceStage",
]

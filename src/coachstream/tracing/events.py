"""Trace event model for pipeline checkpoints.

Pydantic (not a dataclass) because trace events are serialized to JSON
for the durable sink. Events are frozen: once created they are never
mutated.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class TraceStage(str, Enum):
    """Pipeline checkpoints recorded for a session."""

    received = "received"
    backend_call_started = "backend_call_started"
    connected = "connected"
    context_ready = "context_ready"
    first_fragment = "first_fragment"
    stream_done = "stream_done"
    completed = "completed"
    error = "error"
    aborted = "aborted"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class TraceEvent(BaseModel):
    """A single immutable checkpoint in a session's trace.

    session_id is carried alongside trace_id because a session may adopt
    a backend-issued trace id part way through; grouping by session_id
    keeps all of its events together.
    """

    model_config = {"frozen": True}

    trace_id: str
    stage: TraceStage
    timestamp_ms: int = Field(default_factory=now_ms)
    session_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

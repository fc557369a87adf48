"""Per-state wait timeouts for the session controller.

Each wait for the next backend event is bounded by the timeout of the
state the session is in; exceeding it fails the attempt with TIMEOUT.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from coachstream.execution.session import StreamState


class StageTimeouts(BaseModel):
    """Maximum wait, in milliseconds, for the next event in each state.

    None disables the timeout for that state.
    """

    model_config = {"extra": "forbid"}

    connecting_ms: int | None = Field(default=10_000, gt=0)
    loading_context_ms: int | None = Field(default=30_000, gt=0)
    streaming_ms: int | None = Field(default=45_000, gt=0)
    completing_ms: int | None = Field(default=60_000, gt=0)

    def for_state(self, state: StreamState) -> float | None:
        """Return the timeout for state in seconds, or None."""
        value = {
            StreamState.connecting: self.connecting_ms,
            StreamState.loading_context: self.loading_context_ms,
            StreamState.streaming: self.streaming_ms,
            StreamState.completing: self.completing_ms,
        }.get(state)
        return value / 1000 if value is not None else None

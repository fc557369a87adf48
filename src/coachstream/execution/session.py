"""Stream session state and the snapshots published from it.

These are plain dataclasses (not Pydantic) because they are mutated on
every fragment in the hot path of a stream. Only the owning controller
mutates a StreamSession; everything else reads SessionSnapshot copies.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum

from coachstream.execution.errors import ErrorKind, InvalidTransitionError, StreamError


class StreamState(str, Enum):
    """States of the per-turn stream state machine."""

    idle = "idle"
    connecting = "connecting"
    loading_context = "loading_context"
    streaming = "streaming"
    completing = "completing"
    done = "done"
    error = "error"
    aborted = "aborted"


# Legal transitions. error -> connecting is the retry path; terminal
# states (done, aborted, error without pending retry) are enforced
# separately by StreamSession.is_terminal.
ALLOWED_TRANSITIONS: dict[StreamState, frozenset[StreamState]] = {
    StreamState.idle: frozenset(
        {StreamState.connecting, StreamState.error, StreamState.aborted}
    ),
    StreamState.connecting: frozenset(
        {StreamState.loading_context, StreamState.error, StreamState.aborted}
    ),
    StreamState.loading_context: frozenset(
        {
            StreamState.streaming,
            StreamState.completing,  # empty reply
            StreamState.error,
            StreamState.aborted,
        }
    ),
    StreamState.streaming: frozenset(
        {
            StreamState.streaming,
            StreamState.completing,
            StreamState.error,
            StreamState.aborted,
        }
    ),
    StreamState.completing: frozenset(
        {StreamState.done, StreamState.error, StreamState.aborted}
    ),
    StreamState.error: frozenset({StreamState.connecting, StreamState.aborted}),
    StreamState.done: frozenset(),
    StreamState.aborted: frozenset(),
}


@dataclass(frozen=True)
class ErrorInfo:
    """Structured error attached to a session in the error state."""

    kind: ErrorKind
    message: str
    user_message: str
    status_code: int | None = None

    @classmethod
    def from_error(cls, error: StreamError) -> ErrorInfo:
        return cls(
            kind=error.kind,
            message=error.message,
            user_message=error.user_message,
            status_code=error.status_code,
        )


@dataclass
class SessionMetrics:
    """Per-session timing, filled in as the stream progresses.

    Times are milliseconds from a monotonic clock. time_to_first_fragment_ms
    is measured from the start of the attempt that produced the content;
    total_duration_ms from the start of the session.
    """

    started_at_ms: float | None = None
    attempt_started_at_ms: float | None = None
    time_to_first_fragment_ms: float | None = None
    total_duration_ms: float | None = None
    fragment_count: int = 0
    character_count: int = 0
    fragment_rate: float | None = None  # fragments per second

    def reset_attempt(self, now_ms: float) -> None:
        """Clear per-attempt counters at the start of a new attempt."""
        self.attempt_started_at_ms = now_ms
        self.time_to_first_fragment_ms = None
        self.fragment_count = 0
        self.character_count = 0

    def finalize(self, now_ms: float) -> None:
        """Compute total duration and fragment rate at completion."""
        if self.started_at_ms is None:
            return
        self.total_duration_ms = now_ms - self.started_at_ms
        seconds = self.total_duration_ms / 1000
        self.fragment_rate = self.fragment_count / seconds if seconds > 0 else None


@dataclass
class StreamSession:
    """One user turn, from submission to a terminal state."""

    session_id: str
    trace_id: str
    context_id: str | None = None
    state: StreamState = StreamState.idle
    fragments: list[str] = field(default_factory=list)
    attempt_count: int = 0
    last_error: ErrorInfo | None = None
    retry_pending: bool = False
    metrics: SessionMetrics = field(default_factory=SessionMetrics)

    @classmethod
    def new(cls, context_id: str | None = None) -> StreamSession:
        """Create an idle session with fresh session and trace ids."""
        return cls(
            session_id=uuid.uuid4().hex,
            trace_id=uuid.uuid4().hex,
            context_id=context_id,
        )

    @property
    def content(self) -> str:
        return "".join(self.fragments)

    @property
    def is_terminal(self) -> bool:
        if self.state in (StreamState.done, StreamState.aborted):
            return True
        return self.state == StreamState.error and not self.retry_pending

    def transition(self, target: StreamState) -> None:
        """Move to target state, enforcing the transition table.

        Raises:
            InvalidTransitionError: If the session is terminal or the
                transition is not in ALLOWED_TRANSITIONS.
        """
        if self.is_terminal or target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state.value, target.value)
        self.state = target

    def begin_attempt(self, now_ms: float) -> None:
        """Enter connecting for a new attempt.

        Starts a fresh fragment list so retried content is never mixed
        with partial content. The old list is left intact for snapshots
        taken during the earlier attempt.
        """
        self.transition(StreamState.connecting)
        self.attempt_count += 1
        self.fragments = []
        self.last_error = None
        self.retry_pending = False
        if self.metrics.started_at_ms is None:
            self.metrics.started_at_ms = now_ms
        self.metrics.reset_attempt(now_ms)

    def append_fragment(self, text: str, now_ms: float) -> bool:
        """Append a fragment, entering streaming on the first one.

        Returns:
            True if this was the first fragment of the attempt.
        """
        self.transition(StreamState.streaming)
        first = self.metrics.fragment_count == 0
        if first and self.metrics.attempt_started_at_ms is not None:
            self.metrics.time_to_first_fragment_ms = (
                now_ms - self.metrics.attempt_started_at_ms
            )
        self.fragments.append(text)
        self.metrics.fragment_count += 1
        self.metrics.character_count += len(text)
        return first

    def fail(self, error: StreamError, retry_pending: bool) -> None:
        self.transition(StreamState.error)
        self.last_error = ErrorInfo.from_error(error)
        self.retry_pending = retry_pending

    def abort(self) -> None:
        self.transition(StreamState.aborted)
        self.last_error = None
        self.retry_pending = False


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a session, published on every transition.

    A snapshot references the session's fragment list instead of copying
    it. Fragments are only ever appended within an attempt, so the first
    fragment_count entries are fixed once the snapshot is taken.
    """

    session_id: str
    trace_id: str
    context_id: str | None
    state: StreamState
    attempt_count: int
    last_error: ErrorInfo | None
    metrics: SessionMetrics
    is_terminal: bool
    can_retry: bool
    fragment_count: int = 0
    _fragment_buffer: list[str] = field(default_factory=list, repr=False, compare=False)

    @property
    def fragments(self) -> tuple[str, ...]:
        return tuple(self._fragment_buffer[: self.fragment_count])

    @property
    def content(self) -> str:
        return "".join(self._fragment_buffer[: self.fragment_count])

    @classmethod
    def of(cls, session: StreamSession, can_retry: bool = False) -> SessionSnapshot:
        return cls(
            session_id=session.session_id,
            trace_id=session.trace_id,
            context_id=session.context_id,
            state=session.state,
            attempt_count=session.attempt_count,
            last_error=session.last_error,
            metrics=replace(session.metrics),
            is_terminal=session.is_terminal,
            can_retry=can_retry,
            fragment_count=len(session.fragments),
            _fragment_buffer=session.fragments,
        )

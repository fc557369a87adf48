"""StreamSessionController: the per-turn stream state machine.

Drives one user turn against a backend, from submission to a terminal
state (done, error, aborted). Each transition is recorded as a trace
event and published as a SessionSnapshot to subscribers and to the
session handle's update stream.

One controller serves one conversation context. Starting a new session
while the previous one is live stops the previous one first and waits
for it to reach aborted, so a context never has two live streams.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from coachstream.adapters.base import (
    BackendEvent,
    BaseBackend,
    Connected,
    ContextReady,
    Fragment,
    StreamFinished,
    StreamRequest,
)
from coachstream.execution.errors import (
    ErrorKind,
    InvalidTransitionError,
    StreamError,
    classify_error,
)
from coachstream.execution.retry import RetryConfig, RetryDecision, can_retry, decide
from coachstream.execution.session import SessionSnapshot, StreamSession, StreamState
from coachstream.execution.timeouts import StageTimeouts
from coachstream.tracing.events import TraceStage
from coachstream.tracing.log import TraceEventLog

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[SessionSnapshot], None]
CompletionHook = Callable[[SessionSnapshot], Awaitable[None]]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class SessionHandle:
    """Live handle on one session.

    Keeps every published snapshot so late subscribers to updates() still
    see the full sequence up to the terminal snapshot. Snapshots of one
    attempt share its fragment list, so each entry stays small.
    """

    def __init__(self, session: StreamSession, controller: StreamSessionController) -> None:
        self.session = session
        self._controller = controller
        self._task: asyncio.Task[None] | None = None
        self._history: list[SessionSnapshot] = []
        self._changed = asyncio.Event()
        self._finished = asyncio.Event()
        self._cancel_requested = False

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def trace_id(self) -> str:
        return self.session.trace_id

    @property
    def is_terminal(self) -> bool:
        return self.session.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def snapshot(self) -> SessionSnapshot:
        """Return the most recently published snapshot."""
        if self._history:
            return self._history[-1]
        return SessionSnapshot.of(self.session)

    def _publish(self, snapshot: SessionSnapshot) -> None:
        self._history.append(snapshot)
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()
        if snapshot.is_terminal:
            self._finished.set()

    async def updates(self) -> AsyncIterator[SessionSnapshot]:
        """Yield every snapshot in order, ending with the terminal one."""
        index = 0
        while True:
            while index < len(self._history):
                snapshot = self._history[index]
                index += 1
                yield snapshot
                if snapshot.is_terminal:
                    return
            await self._changed.wait()

    async def wait(self) -> SessionSnapshot:
        """Wait for the session to reach a terminal state."""
        await self._finished.wait()
        return self._history[-1]

    async def stop(self) -> None:
        await self._controller._stop_handle(self)


class StreamSessionController:
    """State machine driving stream sessions for one conversation context.

    Args:
        backend: Model backend to invoke.
        trace_log: Recorder for trace events (best-effort).
        context_id: Conversation context this controller serves.
        retry_config: Retry limits. Defaults to RetryConfig().
        timeouts: Per-state wait timeouts. Defaults to StageTimeouts().
        on_complete: Optional async hook run in the completing state
            (e.g. persisting the reply). Failures are logged, not fatal.
        sleep: Awaitable sleep used for retry backoff.
        clock: Monotonic clock in milliseconds, for session metrics.
    """

    def __init__(
        self,
        backend: BaseBackend,
        trace_log: TraceEventLog,
        *,
        context_id: str | None = None,
        retry_config: RetryConfig | None = None,
        timeouts: StageTimeouts | None = None,
        on_complete: CompletionHook | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.backend = backend
        self.trace_log = trace_log
        self.context_id = context_id
        self.retry_config = retry_config or RetryConfig()
        self.timeouts = timeouts or StageTimeouts()
        self._on_complete = on_complete
        self._sleep = sleep
        self._clock = clock
        self._handle: SessionHandle | None = None
        self._listeners: list[SnapshotListener] = []
        self._start_lock = asyncio.Lock()

    # -- public API ---------------------------------------------------------

    @property
    def current(self) -> SessionHandle | None:
        """Handle of the most recent session, live or terminal."""
        return self._handle

    def snapshot(self) -> SessionSnapshot | None:
        return self._handle.snapshot() if self._handle is not None else None

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener for every snapshot. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def can_retry(self) -> bool:
        if self._handle is None:
            return False
        return can_retry(self._handle.session, self.retry_config)

    async def start(self, request: StreamRequest) -> SessionHandle:
        """Start a new session for request and return its handle.

        A live previous session is stopped (and reaches aborted) before
        the new session is created. A request without text or attachments
        fails immediately with NO_INPUT and never reaches the backend.
        """
        async with self._start_lock:
            previous = self._handle
            if previous is not None and not previous.is_terminal:
                logger.info(
                    "Context %s: stopping live session %s before starting a new one",
                    self.context_id, previous.session_id,
                )
                await self._stop_handle(previous)

            session = StreamSession.new(context_id=self.context_id)
            handle = SessionHandle(session, self)
            self._handle = handle

        self._trace(
            session,
            TraceStage.received,
            {
                "context_id": self.context_id,
                "provider": self.backend.provider_name(),
                "has_text": bool(request.text and request.text.strip()),
                "attachment_count": len(request.attachments),
                "history_length": len(request.history),
            },
        )
        self._publish(handle)

        if not request.has_input:
            error = StreamError(
                ErrorKind.NO_INPUT, "Request has neither text nor attachments"
            )
            self._fail(handle, error, RetryDecision(retry=False))
            return handle

        handle._task = asyncio.create_task(
            self._run(handle, request),
            name=f"stream-session-{session.session_id}",
        )
        return handle

    async def stop(self) -> None:
        """Stop the current session. No-op if it is absent or terminal."""
        if self._handle is not None:
            await self._stop_handle(self._handle)

    # -- session task -------------------------------------------------------

    async def _stop_handle(self, handle: SessionHandle) -> None:
        if handle.is_terminal:
            return

        handle._cancel_requested = True
        task = handle._task

        if task is not None and not task.done():
            if task is asyncio.current_task():
                # Called from inside the session (e.g. a listener); the
                # fragment loop observes the flag at its next iteration.
                return
            # A task cancelled before its first step never reaches _run's handler
            task.add_done_callback(lambda _: self._abort(handle))
            task.cancel()
            # asyncio.wait does not raise, so only the caller's own
            # cancellation escapes from here
            await asyncio.wait({task})

        # The task already ended without reaching a terminal state
        if not handle.is_terminal:
            self._abort(handle)

    async def _run(self, handle: SessionHandle, request: StreamRequest) -> None:
        session = handle.session
        try:
            while True:
                try:
                    await self._attempt(handle, request)
                    return
                except InvalidTransitionError:
                    raise
                except Exception as exc:
                    error = classify_error(exc)
                    decision = decide(error.kind, session.attempt_count, self.retry_config)
                    self._fail(handle, error, decision)
                    if not decision.retry:
                        return
                    self._check_cancelled(handle)
                    await self._sleep(decision.delay_ms / 1000)
        except asyncio.CancelledError:
            # Cancellation ends the session; it is not propagated as an error.
            self._abort(handle)

    async def _attempt(self, handle: SessionHandle, request: StreamRequest) -> None:
        session = handle.session
        self._check_cancelled(handle)

        session.begin_attempt(self._clock())
        self._trace(
            session,
            TraceStage.backend_call_started,
            {"attempt": session.attempt_count, "provider": self.backend.provider_name()},
        )
        self._publish(handle)

        events = aiter(self.backend.stream(request, trace_id=session.trace_id))
        try:
            while True:
                self._check_cancelled(handle)
                event = await self._next_event(events, session.state)

                if event is None:
                    raise StreamError(
                        ErrorKind.UNKNOWN,
                        "Backend stream ended without a completion signal",
                    )

                if isinstance(event, Connected):
                    self._adopt_trace_id(session, event.trace_id)
                    self._ensure_connected(handle)
                elif isinstance(event, ContextReady):
                    self._adopt_trace_id(session, event.trace_id)
                    self._ensure_connected(handle)
                    self._trace(session, TraceStage.context_ready, dict(event.data))
                elif isinstance(event, Fragment):
                    self._ensure_connected(handle)
                    self._on_fragment(handle, event)
                elif isinstance(event, StreamFinished):
                    self._adopt_trace_id(session, event.trace_id)
                    self._ensure_connected(handle)
                    self._on_finished(handle, event)
                    break
                else:
                    raise StreamError(
                        ErrorKind.UNKNOWN,
                        f"Unexpected backend event: {type(event).__name__}",
                    )
        finally:
            await self._close_stream(events)

        await self._complete(handle)

    async def _next_event(
        self,
        events: AsyncIterator[BackendEvent],
        state: StreamState,
    ) -> BackendEvent | None:
        """Wait for the next backend event, bounded by the state's timeout.

        Returns None when the backend stream is exhausted.
        """
        timeout = self.timeouts.for_state(state)
        try:
            async with asyncio.timeout(timeout):
                return await anext(events)
        except StopAsyncIteration:
            return None
        except TimeoutError as exc:
            raise StreamError(
                ErrorKind.TIMEOUT,
                f"No backend event within {timeout}s while {state.value}",
            ) from exc

    async def _close_stream(self, events: AsyncIterator[BackendEvent]) -> None:
        aclose = getattr(events, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            logger.warning("Failed to close backend stream", exc_info=True)

    # -- transitions --------------------------------------------------------

    def _check_cancelled(self, handle: SessionHandle) -> None:
        if handle.cancel_requested:
            raise asyncio.CancelledError()

    def _adopt_trace_id(self, session: StreamSession, trace_id: str | None) -> None:
        if trace_id and trace_id != session.trace_id:
            logger.debug(
                "Session %s adopting backend trace id %s (was %s)",
                session.session_id, trace_id, session.trace_id,
            )
            session.trace_id = trace_id

    def _ensure_connected(self, handle: SessionHandle) -> None:
        """Move connecting -> loading_context once the handshake is observed."""
        session = handle.session
        if session.state != StreamState.connecting:
            return
        session.transition(StreamState.loading_context)
        self._trace(session, TraceStage.connected, {"attempt": session.attempt_count})
        self._publish(handle)

    def _on_fragment(self, handle: SessionHandle, event: Fragment) -> None:
        session = handle.session
        first = session.append_fragment(event.text, self._clock())
        if first:
            self._trace(
                session,
                TraceStage.first_fragment,
                {
                    "attempt": session.attempt_count,
                    "time_to_first_fragment_ms": session.metrics.time_to_first_fragment_ms,
                    "fragment_source": event.source.value,
                },
            )
        self._publish(handle)

    def _on_finished(self, handle: SessionHandle, event: StreamFinished) -> None:
        session = handle.session
        session.transition(StreamState.completing)

        data: dict[str, Any] = dict(event.data)
        data.update(
            {
                "attempt": session.attempt_count,
                "fragment_count": session.metrics.fragment_count,
                "character_count": session.metrics.character_count,
            }
        )
        if event.model:
            data["model"] = event.model
        if event.usage is not None:
            data["prompt_tokens"] = event.usage.prompt_tokens
            data["completion_tokens"] = event.usage.completion_tokens
            data["total_tokens"] = event.usage.total_tokens

        self._trace(session, TraceStage.stream_done, data)
        self._publish(handle)

    async def _complete(self, handle: SessionHandle) -> None:
        session = handle.session

        if self._on_complete is not None:
            try:
                async with asyncio.timeout(self.timeouts.for_state(StreamState.completing)):
                    await self._on_complete(SessionSnapshot.of(session))
            except Exception:
                logger.warning(
                    "Completion hook failed for session %s", session.session_id,
                    exc_info=True,
                )

        self._check_cancelled(handle)
        session.metrics.finalize(self._clock())
        session.transition(StreamState.done)
        self._trace(
            session,
            TraceStage.completed,
            {
                "attempt_count": session.attempt_count,
                "total_duration_ms": session.metrics.total_duration_ms,
                "fragment_count": session.metrics.fragment_count,
                "fragment_rate": session.metrics.fragment_rate,
            },
        )
        self._publish(handle)
        logger.debug(
            "Session %s done after %d attempt(s), %d fragments",
            session.session_id, session.attempt_count, session.metrics.fragment_count,
        )

    def _fail(
        self,
        handle: SessionHandle,
        error: StreamError,
        decision: RetryDecision,
    ) -> None:
        session = handle.session
        session.fail(error, retry_pending=decision.retry)

        if decision.retry:
            logger.info(
                "Session %s attempt %d failed with %s, retrying in %dms",
                session.session_id, session.attempt_count, error.kind.value,
                decision.delay_ms,
            )
        else:
            logger.warning(
                "Session %s failed with %s after %d attempt(s): %s",
                session.session_id, error.kind.value, session.attempt_count,
                error.message,
            )

        self._trace(
            session,
            TraceStage.error,
            {
                "kind": error.kind.value,
                "message": error.message,
                "status_code": error.status_code,
                "attempt": session.attempt_count,
                "will_retry": decision.retry,
                "delay_ms": decision.delay_ms,
            },
        )
        self._publish(handle)

    def _abort(self, handle: SessionHandle) -> None:
        session = handle.session
        if session.is_terminal:
            return

        previous_state = session.state
        session.abort()
        logger.info(
            "Session %s aborted in state %s", session.session_id, previous_state.value
        )
        self._trace(
            session,
            TraceStage.aborted,
            {"state": previous_state.value, "attempt": session.attempt_count},
        )
        self._publish(handle)

    # -- outputs ------------------------------------------------------------

    def _trace(
        self,
        session: StreamSession,
        stage: TraceStage,
        data: dict[str, Any],
    ) -> None:
        try:
            self.trace_log.emit(
                session.trace_id, stage, data, session_id=session.session_id
            )
        except Exception:
            logger.warning("Failed to record trace event %s", stage.value, exc_info=True)

    def _publish(self, handle: SessionHandle) -> None:
        session = handle.session
        logger.debug("Session %s -> %s", session.session_id, session.state.value)
        snapshot = SessionSnapshot.of(
            session, can_retry=can_retry(session, self.retry_config)
        )
        handle._publish(snapshot)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.warning("Snapshot listener failed", exc_info=True)

"""TraceEventLog: fire-and-forget trace recording.

record() only enqueues; a background writer task drains the queue into
the sink in FIFO order, so events of one session reach the sink in the
order their transitions happened. Sink failures are logged and dropped.
Tracing can never abort or delay a session.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from coachstream.tracing.events import TraceEvent, TraceStage
from coachstream.tracing.sinks import TraceSink

logger = logging.getLogger(__name__)


class TraceEventLog:
    """Best-effort, non-blocking trace recorder bound to one sink.

    Attributes:
        sink: Where events are persisted.
        failed_count: Events the sink rejected.
        dropped_count: Events recorded with no running event loop.
    """

    def __init__(self, sink: TraceSink) -> None:
        self.sink = sink
        self.failed_count = 0
        self.dropped_count = 0
        self._queue: asyncio.Queue[TraceEvent] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def record(self, event: TraceEvent) -> None:
        """Enqueue an event for persistence and return immediately."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.dropped_count += 1
            logger.warning(
                "No running event loop, dropping trace event %s for trace %s",
                event.stage.value, event.trace_id,
            )
            return

        if (
            self._queue is None
            or self._worker is None
            or self._worker.done()
            or self._loop is not loop
        ):
            self._queue = asyncio.Queue()
            self._loop = loop
            self._worker = loop.create_task(self._drain(self._queue))

        self._queue.put_nowait(event)

    def emit(
        self,
        trace_id: str,
        stage: TraceStage,
        data: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> TraceEvent:
        """Build a TraceEvent and record it. Returns the event."""
        event = TraceEvent(
            trace_id=trace_id,
            stage=stage,
            session_id=session_id,
            data=data or {},
        )
        self.record(event)
        return event

    async def _drain(self, queue: asyncio.Queue[TraceEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self.sink.append(event)
            except Exception:
                self.failed_count += 1
                logger.warning(
                    "Trace sink %s failed for %s/%s; event dropped",
                    type(self.sink).__name__, event.trace_id, event.stage.value,
                    exc_info=True,
                )
            finally:
                queue.task_done()

    async def flush(self) -> None:
        """Wait until every event recorded so far reached the sink (or failed)."""
        if self._queue is None or self._loop is not asyncio.get_running_loop():
            return
        await self._queue.join()

    async def close(self) -> None:
        """Flush pending events and stop the writer task."""
        await self.flush()
        if self._worker is not None and self._loop is asyncio.get_running_loop():
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None
        self._queue = None
        self._loop = None

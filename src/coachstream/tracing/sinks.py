"""Trace sinks (write side) and sources (read side).

The session pipeline only ever appends; the telemetry aggregator only
ever reads. JsonlTraceStore keeps one JSON object per line under the
project's storage directory, so appends never rewrite earlier events.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import ValidationError

from coachstream.tracing.events import TraceEvent

logger = logging.getLogger(__name__)


class TraceSink(ABC):
    """Durable destination for trace events."""

    @abstractmethod
    async def append(self, event: TraceEvent) -> None:
        """Persist a single event. May raise; callers treat failures as best-effort."""
        ...


class TraceSource(ABC):
    """Read access to previously recorded trace events."""

    @abstractmethod
    def load_events(self, since_ms: int | None = None) -> list[TraceEvent]:
        """Return events with timestamp_ms >= since_ms, oldest first."""
        ...


class InMemoryTraceStore(TraceSink, TraceSource):
    """Keeps events in a list. Used by tests and single-process setups."""

    def __init__(self) -> None:
        self.events: list[TraceEvent] = []

    async def append(self, event: TraceEvent) -> None:
        self.events.append(event)

    def load_events(self, since_ms: int | None = None) -> list[TraceEvent]:
        if since_ms is None:
            return list(self.events)
        return [e for e in self.events if e.timestamp_ms >= since_ms]

    def for_session(self, session_id: str) -> list[TraceEvent]:
        return [e for e in self.events if e.session_id == session_id]


class JsonlTraceStore(TraceSink, TraceSource):
    """Append-only JSON Lines trace store.

    File layout:
        .coachstream/
            traces.jsonl    # one TraceEvent per line

    Writes run in a worker thread so a slow disk never blocks the event
    loop. Malformed lines are skipped when reading.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _write_line(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    async def append(self, event: TraceEvent) -> None:
        await asyncio.to_thread(self._write_line, event.model_dump_json())

    def load_events(self, since_ms: int | None = None) -> list[TraceEvent]:
        if not self.path.exists():
            return []

        events: list[TraceEvent] = []
        # Binary mode: a line torn by a crash mid-append may not be valid UTF-8
        with self.path.open("rb") as fh:
            for lineno, raw in enumerate(fh, start=1):
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    event = TraceEvent.model_validate_json(raw)
                except (ValidationError, UnicodeDecodeError) as exc:
                    logger.warning(
                        "Skipping malformed trace line %s:%d (%s)",
                        self.path, lineno, type(exc).__name__,
                    )
                    continue
                if since_ms is None or event.timestamp_ms >= since_ms:
                    events.append(event)
        return events

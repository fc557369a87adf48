"""Simulated streaming for backends that only return complete responses.

A BlockingBackend answers with the full text at once. SimulatedStreamBackend
wraps one and splits the finished text into word fragments tagged
FragmentSource.simulated, so the session controller drives it exactly
like a real token stream.
"""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from coachstream.adapters.base import (
    BackendEvent,
    BaseBackend,
    Connected,
    Fragment,
    FragmentSource,
    StreamFinished,
    StreamRequest,
    TokenUsage,
)
from coachstream.execution.errors import ErrorKind, StreamError

# Keys checked, in order, for the reply text in a JSON payload
CONTENT_KEYS: tuple[str, ...] = ("response", "message", "content")

_SENTENCE_END = re.compile(r"[.!?]\s*$")


@dataclass
class Completion:
    """A complete (non-streamed) backend reply."""

    content: str
    usage: TokenUsage | None = None
    model: str | None = None
    trace_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class BlockingBackend(ABC):
    """Backend that returns the whole reply in one call."""

    @abstractmethod
    async def complete(
        self,
        request: StreamRequest,
        trace_id: str | None = None,
    ) -> Completion:
        ...


def extract_content(payload: Any) -> str:
    """Pull the reply text out of a JSON response body.

    Accepts a bare string or a dict with one of the CONTENT_KEYS.

    Raises:
        StreamError: UNKNOWN kind if no known shape matches.
    """
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict):
        for key in CONTENT_KEYS:
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    raise StreamError(
        ErrorKind.UNKNOWN,
        f"Unexpected response format: {type(payload).__name__}",
    )


def split_fragments(text: str) -> list[str]:
    """Split text into word fragments, keeping whitespace attached.

    Joining the result reproduces the input exactly.
    """
    parts = re.split(r"(\s+)", text)
    fragments: list[str] = []
    for part in parts:
        if not part:
            continue
        if part.isspace() and fragments:
            fragments[-1] += part
        else:
            fragments.append(part)
    return fragments


class SimulatedStreamBackend(BaseBackend):
    """Presents a BlockingBackend as a fragment stream.

    Args:
        inner: The blocking backend to call.
        delay_ms: Pause between fragments (typewriter effect). Sentence
            ends pause twice as long. 0 disables pacing.
    """

    def __init__(self, inner: BlockingBackend, delay_ms: float = 0) -> None:
        self.inner = inner
        self.delay_ms = delay_ms

    async def stream(
        self,
        request: StreamRequest,
        trace_id: str | None = None,
    ) -> AsyncIterator[BackendEvent]:
        yield Connected()
        completion = await self.inner.complete(request, trace_id=trace_id)

        for piece in split_fragments(completion.content):
            yield Fragment(text=piece, source=FragmentSource.simulated)
            if self.delay_ms > 0:
                pause = self.delay_ms * (2 if _SENTENCE_END.search(piece) else 1)
                await asyncio.sleep(pause / 1000)

        yield StreamFinished(
            trace_id=completion.trace_id,
            usage=completion.usage,
            model=completion.model,
            data=completion.data,
        )

    def provider_name(self) -> str:
        return f"simulated:{type(self.inner).__name__}"

"""BaseBackend ABC and the request/event dataclasses of a model invocation.

All backends (OpenAI, Anthropic, simulated, custom) subclass BaseBackend
and implement stream(). The session controller only sees the events
defined here, so it is agnostic to how the transport works.

These are plain dataclasses (not Pydantic) to avoid overhead in the
hot path of fragment delivery.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


@dataclass
class Attachment:
    """Reference to an uploaded file (image, document) sent with a message."""

    url: str
    media_type: str | None = None


@dataclass
class Message:
    """A single prior message in the conversation history.

    Roles: system, user, assistant.
    """

    role: str
    content: str


@dataclass
class StreamRequest:
    """Opaque payload for one coaching turn.

    A request must carry text, at least one attachment, or both.
    """

    user_id: str
    text: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    history: list[Message] = field(default_factory=list)
    coach_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_input(self) -> bool:
        return bool(self.text and self.text.strip()) or bool(self.attachments)


@dataclass
class TokenUsage:
    """Token usage counts reported at the end of a stream."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class BackendConfig:
    """Configuration passed to a backend at construction.

    Holds model name, generation parameters, and provider-specific
    extras forwarded verbatim to the SDK call.
    """

    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    system_prompt: str | None = None
    streaming: bool = True
    extras: dict[str, Any] = field(default_factory=dict)


class FragmentSource(str, Enum):
    """Where a fragment came from."""

    incremental = "incremental"  # real token stream
    simulated = "simulated"  # complete text split after the fact


@dataclass(frozen=True)
class Connected:
    """Transport handshake and auth check succeeded."""

    trace_id: str | None = None


@dataclass(frozen=True)
class ContextReady:
    """Backend finished assembling context (memory, RAG) for the prompt."""

    trace_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Fragment:
    """One incremental piece of response content."""

    text: str
    source: FragmentSource = FragmentSource.incremental


@dataclass(frozen=True)
class StreamFinished:
    """Explicit end-of-stream signal."""

    trace_id: str | None = None
    usage: TokenUsage | None = None
    model: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


BackendEvent = Union[Connected, ContextReady, Fragment, StreamFinished]


class BaseBackend(ABC):
    """Abstract base class for model backends.

    Subclasses implement stream() as an async generator yielding
    BackendEvents in order: Connected, optional ContextReady, Fragments,
    then StreamFinished. Failures are raised, either as StreamError with
    a known kind or as the transport's own exception.
    """

    @abstractmethod
    def stream(
        self,
        request: StreamRequest,
        trace_id: str | None = None,
    ) -> AsyncIterator[BackendEvent]:
        """Invoke the model for one request and yield its events.

        Args:
            request: The coaching turn to answer.
            trace_id: Client correlation id to forward to the backend.

        Returns:
            Async iterator of BackendEvents.
        """
        ...

    def provider_name(self) -> str:
        """Return the provider name for this backend.

        Default implementation returns the class name.
        Subclasses may override for custom naming.
        """
        return type(self).__name__

"""coachstream adapters - model backend abstraction layer.

Re-exports the BaseBackend ABC, request/event dataclasses, simulated
streaming, the backend registry function, and concrete backends
(when their SDK dependencies are installed).
"""

from coachstream.adapters.base import (
    Attachment,
    BackendConfig,
    BackendEvent,
    BaseBackend,
    Connected,
    ContextReady,
    Fragment,
    FragmentSource,
    Message,
    StreamFinished,
    StreamRequest,
    TokenUsage,
)
from coachstream.adapters.registry import get_backend
from coachstream.adapters.simulated import (
    BlockingBackend,
    Completion,
    SimulatedStreamBackend,
    extract_content,
    split_fragments,
)

__all__ = [
    "Attachment",
    "BackendConfig",
    "BackendEvent",
    "BaseBackend",
    "BlockingBackend",
    "Completion",
    "Connected",
    "ContextReady",
    "Fragment",
    "FragmentSource",
    "Message",
    "SimulatedStreamBackend",
    "StreamFinished",
    "StreamRequest",
    "TokenUsage",
    "extract_content",
    "get_backend",
    "split_fragments",
]

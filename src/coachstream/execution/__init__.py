"""coachstream execution - session state machine, retry policy, and errors."""

from coachstream.execution.errors import (
    ErrorKind,
    InvalidTransitionError,
    StreamError,
    classify_error,
)
from coachstream.execution.retry import RetryConfig, RetryDecision, can_retry, decide
from coachstream.execution.session import (
    SessionSnapshot,
    StreamSession,
    StreamState,
)
from coachstream.execution.timeouts import StageTimeouts
from coachstream.execution.controller import SessionHandle, StreamSessionController
from coachstream.execution.registry import SessionRegistry

__all__ = [
    "ErrorKind",
    "InvalidTransitionError",
    "RetryConfig",
    "RetryDecision",
    "SessionHandle",
    "SessionRegistry",
    "SessionSnapshot",
    "StageTimeouts",
    "StreamError",
    "StreamSession",
    "StreamSessionController",
    "StreamState",
    "can_retry",
    "decide",
    "classify_error",
]

"""Error taxonomy for the streaming pipeline.

Every failure that reaches the session controller is classified into an
ErrorKind. Fatal kinds surface immediately; transient kinds go through
the retry policy. Classification mirrors the transient-error detection
used for SDK exceptions: known exception types first, then HTTP status
attributes, then exception class names.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a session failure."""

    NO_INPUT = "NO_INPUT"
    UNAUTHORIZED = "UNAUTHORIZED"
    CONFIG_MISSING = "CONFIG_MISSING"
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    BACKEND_5XX = "BACKEND_5XX"
    UNKNOWN = "UNKNOWN"


# Kinds where retrying cannot help (bad input, bad auth, bad config)
FATAL_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.NO_INPUT, ErrorKind.UNAUTHORIZED, ErrorKind.CONFIG_MISSING}
)

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NO_INPUT: "Please enter a message or attach a file.",
    ErrorKind.UNAUTHORIZED: "Your session has expired. Please sign in again.",
    ErrorKind.CONFIG_MISSING: "The coach is not configured correctly. Please contact support.",
    ErrorKind.NETWORK: "Connection interrupted. Please try again.",
    ErrorKind.TIMEOUT: "The server is taking too long. Please try again.",
    ErrorKind.BACKEND_5XX: "Server error. Please try again in a few seconds.",
    ErrorKind.UNKNOWN: "Something went wrong. Please try again.",
}

_UNAUTHORIZED_STATUS_CODES: frozenset[int] = frozenset({401, 403})
_TIMEOUT_STATUS_CODES: frozenset[int] = frozenset({408, 504})


def is_fatal(kind: ErrorKind) -> bool:
    """Return True if errors of this kind must never be retried."""
    return kind in FATAL_KINDS


class StreamError(Exception):
    """A classified failure of one session attempt.

    Backends raise this directly when they know the kind (for example a
    backend-reported misconfiguration). The controller converts every
    other exception into one via classify_error().

    Attributes:
        kind: The ErrorKind classification.
        message: Technical description for logs and traces.
        status_code: HTTP status reported by the backend, if any.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str = "",
        status_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.message = message or kind.value
        self.status_code = status_code
        super().__init__(f"{kind.value}: {self.message}")

    @property
    def user_message(self) -> str:
        """User-facing text for this error kind."""
        return USER_MESSAGES[self.kind]

    @property
    def is_fatal(self) -> bool:
        return is_fatal(self.kind)


class InvalidTransitionError(RuntimeError):
    """Raised when a session is asked to make an illegal state transition."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal stream state transition: {current} -> {target}")


def kind_for_status(status: int) -> ErrorKind:
    """Map an HTTP status code to an ErrorKind."""
    if status in _UNAUTHORIZED_STATUS_CODES:
        return ErrorKind.UNAUTHORIZED
    if status in _TIMEOUT_STATUS_CODES:
        return ErrorKind.TIMEOUT
    if 500 <= status < 600:
        return ErrorKind.BACKEND_5XX
    return ErrorKind.UNKNOWN


def classify_error(exc: BaseException) -> StreamError:
    """Classify an arbitrary exception into a StreamError.

    Order of checks:
    1. StreamError passes through unchanged.
    2. TimeoutError -> TIMEOUT; ConnectionError / OSError -> NETWORK.
    3. A status_code or status attribute (set by most HTTP SDKs).
    4. Exception class name containing "Timeout" or "Connection".
    5. Anything else -> UNKNOWN.

    Args:
        exc: The exception raised during an attempt.

    Returns:
        A StreamError carrying the classification and exception message.
    """
    if isinstance(exc, StreamError):
        return exc

    message = str(exc) or type(exc).__name__

    # TimeoutError is a subclass of OSError, so check it first
    if isinstance(exc, TimeoutError):
        return StreamError(ErrorKind.TIMEOUT, message)
    if isinstance(exc, (ConnectionError, OSError)):
        return StreamError(ErrorKind.NETWORK, message)

    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return StreamError(kind_for_status(status), message, status_code=status)

    name = type(exc).__name__
    if "Timeout" in name:
        return StreamError(ErrorKind.TIMEOUT, message)
    if "Connection" in name:
        return StreamError(ErrorKind.NETWORK, message)

    return StreamError(ErrorKind.UNKNOWN, message)

"""Retry recovery policy with deterministic linear backoff.

Pure decision logic: given an error kind and the number of attempts
already made, decide whether the session controller should start a new
attempt and how long to wait first. No randomized jitter, so recovery
behavior is reproducible in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from coachstream.execution.errors import ErrorKind, is_fatal

if TYPE_CHECKING:
    from coachstream.execution.session import StreamSession


class RetryConfig(BaseModel):
    """Retry limits for one session.

    max_attempts counts the initial attempt, so the default of 3 allows
    two retries.
    """

    model_config = {"extra": "forbid"}

    max_attempts: int = Field(default=3, ge=1)
    base_delay_ms: int = Field(default=1000, ge=0)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a retry decision."""

    retry: bool
    delay_ms: int = 0


def decide(
    kind: ErrorKind,
    attempt_count: int,
    config: RetryConfig | None = None,
) -> RetryDecision:
    """Decide whether a failed attempt should be retried.

    Fatal kinds never retry. Transient kinds retry while fewer than
    max_attempts attempts have been made, waiting
    base_delay_ms * attempt_count before the next attempt.

    Args:
        kind: Classification of the failure.
        attempt_count: Attempts made so far, including the failed one.
        config: Retry limits. Defaults to RetryConfig().

    Returns:
        RetryDecision with retry flag and delay in milliseconds.
    """
    config = config or RetryConfig()

    if is_fatal(kind):
        return RetryDecision(retry=False)

    if attempt_count >= config.max_attempts:
        return RetryDecision(retry=False)

    return RetryDecision(retry=True, delay_ms=config.base_delay_ms * attempt_count)


def can_retry(session: StreamSession, config: RetryConfig | None = None) -> bool:
    """Return True if the session's last error still allows another attempt.

    Used by presentation layers to decide whether to show a retry
    affordance. Sessions without an error (running, done, aborted)
    report False.
    """
    if session.last_error is None:
        return False
    return decide(session.last_error.kind, session.attempt_count, config).retry

"""Retry classification and backoff for dispatched actions.

Both the completion path and the stale-lock reaper decide between re-queueing
and terminal failure here, so the two can never drift apart.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from .actions import STATUS_FAILED, STATUS_PENDING

MAX_ATTEMPTS = 5
STALE_LOCK_THRESHOLD = timedelta(minutes=5)
BACKOFF_CAP_MINUTES = 60

RETRYABLE_ERRORS = frozenset({"TEMP_DOM_FAIL", "NETWORK", "RATE_LIMIT"})
NON_RETRYABLE_ERRORS = frozenset({"AUTH_REQUIRED", "CHECKPOINT", "PERMISSION_DENIED"})

UNKNOWN_ERROR_CODE = "UNKNOWN"
UNKNOWN_ERROR_MESSAGE = "Unknown error"
STALE_LOCK_MAX_ATTEMPTS = "STALE_LOCK_MAX_ATTEMPTS"
STALE_LOCK_MESSAGE = "Action stuck in processing and max attempts exceeded"

RETRYABLE = "retryable"
NON_RETRYABLE = "non_retryable"
UNKNOWN = "unknown"


@dataclass(frozen=True)
class FailureOutcome:
    status: str
    next_run_at: datetime | None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def will_retry(self) -> bool:
        return self.status == STATUS_PENDING


def backoff_delay(attempt_count: int) -> timedelta:
    # attempt_count is the post-claim value: first retry waits 2 minutes.
    exponent = max(0, int(attempt_count))
    if exponent >= 6:
        return timedelta(minutes=BACKOFF_CAP_MINUTES)
    return timedelta(minutes=min(2 ** exponent, BACKOFF_CAP_MINUTES))


def classify_error(error_code: str | None) -> str:
    if error_code in NON_RETRYABLE_ERRORS:
        return NON_RETRYABLE
    if error_code in RETRYABLE_ERRORS:
        return RETRYABLE
    return UNKNOWN


def failure_transition(
    attempt_count: int,
    error_code: str | None,
    now: datetime,
    *,
    error_message: str | None = None,
    max_attempts: int = MAX_ATTEMPTS,
    unknown_retryable: bool = True,
) -> FailureOutcome:
    code = error_code or UNKNOWN_ERROR_CODE
    message = error_message or UNKNOWN_ERROR_MESSAGE
    bucket = classify_error(error_code)
    terminal = bucket == NON_RETRYABLE or (bucket == UNKNOWN and not unknown_retryable)
    if terminal or int(attempt_count) >= max_attempts:
        return FailureOutcome(STATUS_FAILED, None, code, message)
    return FailureOutcome(STATUS_PENDING, now + backoff_delay(attempt_count), code, message)


def stale_lock_transition(attempt_count: int, now: datetime, *, max_attempts: int = MAX_ATTEMPTS) -> FailureOutcome:
    if int(attempt_count) >= max_attempts:
        return FailureOutcome(STATUS_FAILED, None, STALE_LOCK_MAX_ATTEMPTS, STALE_LOCK_MESSAGE)
    return FailureOutcome(STATUS_PENDING, now + backoff_delay(attempt_count))

"""Relay dispatch kernel utilities."""

from .actions import ACTION_STATUSES, ACTION_TYPES, REPLY_STATUSES, action_view, message_view, public_action
from .ids import is_uuid
from .retry_policy import (
    MAX_ATTEMPTS,
    STALE_LOCK_MAX_ATTEMPTS,
    STALE_LOCK_THRESHOLD,
    FailureOutcome,
    backoff_delay,
    classify_error,
    failure_transition,
    stale_lock_transition,
)

__all__ = [
    "ACTION_STATUSES",
    "ACTION_TYPES",
    "REPLY_STATUSES",
    "action_view",
    "message_view",
    "public_action",
    "is_uuid",
    "MAX_ATTEMPTS",
    "STALE_LOCK_MAX_ATTEMPTS",
    "STALE_LOCK_THRESHOLD",
    "FailureOutcome",
    "backoff_delay",
    "classify_error",
    "failure_transition",
    "stale_lock_transition",
]

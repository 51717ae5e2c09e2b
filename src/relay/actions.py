"""Action and message enums shared by the stores and the dispatch layer."""

from __future__ import annotations

ACTION_TYPES = {"sendMessage", "refreshSession"}

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
ACTION_STATUSES = {STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED}

REPLY_NONE = "none"
REPLY_QUEUED = "queued"
REPLY_SENT = "sent"
REPLY_FAILED = "failed"
REPLY_STATUSES = {REPLY_NONE, REPLY_QUEUED, REPLY_SENT, REPLY_FAILED}


def public_action(action: dict) -> dict:
    """Project an action onto the fields the polling agent is allowed to see."""
    return {
        "id": str(action.get("id")),
        "type": action.get("type"),
        "payload": action.get("payload") or {},
    }


_ACTION_VIEW_FIELDS = (
    ("id", "id"),
    ("account_id", "accountId"),
    ("client_id", "clientId"),
    ("type", "type"),
    ("payload", "payload"),
    ("status", "status"),
    ("attempt_count", "attemptCount"),
    ("locked_at", "lockedAt"),
    ("lock_owner", "lockOwner"),
    ("next_run_at", "nextRunAt"),
    ("last_error_code", "lastErrorCode"),
    ("last_error_message", "lastErrorMessage"),
    ("created_at", "createdAt"),
    ("updated_at", "updatedAt"),
)

_MESSAGE_VIEW_FIELDS = (
    ("id", "id"),
    ("account_id", "accountId"),
    ("client_id", "clientId"),
    ("conversation_id", "conversationId"),
    ("sender_name", "senderName"),
    ("incoming_text", "incomingText"),
    ("idempotency_key", "idempotencyKey"),
    ("reply_status", "replyStatus"),
    ("reply_text", "replyText"),
    ("action_id", "actionId"),
    ("received_at", "receivedAt"),
)


def action_view(action: dict) -> dict:
    return {out: action.get(key) for key, out in _ACTION_VIEW_FIELDS}


def message_view(message: dict) -> dict:
    return {out: message.get(key) for key, out in _MESSAGE_VIEW_FIELDS}

"""Claim/complete protocol for the polling extension agent.

The store's atomic primitives carry all mutual exclusion: ``claim_batch``
locks eligible rows in a single statement and ``transition`` only applies
when the row is still in the state this module observed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from app.audit import SecurityAudit
from app.config import Settings
from app.errors import RelayError
from relay.actions import (
    REPLY_FAILED,
    REPLY_QUEUED,
    REPLY_SENT,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    public_action,
)
from relay.ids import is_uuid
from relay.retry_policy import failure_transition

logger = logging.getLogger("relay.dispatch")


class DispatchError(RelayError):
    pass


@dataclass
class CompletionResult:
    action: dict
    will_retry: bool
    applied: bool


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_lock_owner() -> str:
    return f"ext_{uuid.uuid4().hex}"


def claim_pending_actions(
    action_store: Any,
    account_id: str,
    settings: Settings,
    lock_owner: str | None = None,
    now: datetime | None = None,
) -> list[dict]:
    now = now or _now()
    owner = lock_owner or new_lock_owner()
    stale_before = now - timedelta(seconds=settings.stale_lock_seconds)
    claimed = action_store.claim_batch(account_id, settings.claim_batch_size, owner, now, stale_before)
    if claimed:
        logger.info(
            "actions_claimed account_id=%s lock_owner=%s count=%s ids=%s",
            account_id,
            owner[:24],
            len(claimed),
            [str(a.get("id")) for a in claimed],
        )
    return [public_action(a) for a in claimed]


def cascade_reply_status(message_store: Any, action: dict, account_id: str, to_status: str) -> int:
    if action.get("type") != "sendMessage":
        return 0
    conversation_id = (action.get("payload") or {}).get("conversationId")
    if not conversation_id:
        return 0
    updated = message_store.update_reply_status(
        account_id,
        action.get("client_id"),
        conversation_id,
        REPLY_QUEUED,
        to_status,
    )
    logger.info(
        "message_reply_status_cascaded action_id=%s conversation_id=%s status=%s updated=%s",
        action.get("id"),
        conversation_id,
        to_status,
        updated,
    )
    return updated


def complete_action(
    action_store: Any,
    message_store: Any,
    audit: SecurityAudit,
    account_id: str,
    action_id: str,
    success: bool,
    settings: Settings,
    error_code: str | None = None,
    error_message: str | None = None,
    lock_owner: str | None = None,
    endpoint: str = "/api/actions/complete",
    now: datetime | None = None,
) -> CompletionResult:
    if not is_uuid(action_id):
        raise DispatchError("ACTION_ID_INVALID", "Invalid actionId format", 400, "id")
    action = action_store.get(account_id, action_id)
    if not action:
        audit.log_cross_account_access(endpoint, account_id, "Action", action_id)
        raise DispatchError("ACTION_NOT_FOUND", "Action not found", 404, "id")

    status = action.get("status")
    if status != STATUS_PROCESSING:
        logger.warning(
            "action_complete_ignored action_id=%s status=%s reason=not_processing",
            action_id,
            status,
        )
        return CompletionResult(action, status == STATUS_PENDING, False)
    if lock_owner and action.get("lock_owner") != lock_owner:
        logger.warning(
            "action_complete_ignored action_id=%s reason=lock_not_held caller=%s holder=%s",
            action_id,
            lock_owner[:24],
            str(action.get("lock_owner"))[:24],
        )
        return CompletionResult(action, False, False)

    expected = {
        "status": STATUS_PROCESSING,
        "locked_at": action.get("locked_at"),
        "lock_owner": action.get("lock_owner"),
    }
    if success:
        changes = {"status": STATUS_COMPLETED, "locked_at": None, "lock_owner": None}
    else:
        outcome = failure_transition(
            int(action.get("attempt_count") or 0),
            error_code,
            now or _now(),
            error_message=error_message,
            max_attempts=settings.max_attempts,
            unknown_retryable=settings.unknown_errors_retryable,
        )
        changes = {
            "status": outcome.status,
            "locked_at": None,
            "lock_owner": None,
            "last_error_code": outcome.error_code,
            "last_error_message": outcome.error_message,
        }
        if outcome.next_run_at is not None:
            changes["next_run_at"] = outcome.next_run_at

    updated = action_store.transition(action_id, expected, changes)
    if updated is None:
        # Lost the race to the reaper or a parallel completion.
        current = action_store.get(account_id, action_id) or action
        logger.warning("action_complete_lost_race action_id=%s status=%s", action_id, current.get("status"))
        return CompletionResult(current, current.get("status") == STATUS_PENDING, False)

    if updated["status"] == STATUS_COMPLETED:
        cascade_reply_status(message_store, updated, account_id, REPLY_SENT)
    elif updated["status"] == STATUS_FAILED:
        cascade_reply_status(message_store, updated, account_id, REPLY_FAILED)

    logger.info(
        "action_completed action_id=%s success=%s status=%s attempt_count=%s error_code=%s next_run_at=%s",
        action_id,
        success,
        updated["status"],
        updated.get("attempt_count"),
        updated.get("last_error_code") if not success else None,
        updated.get("next_run_at") if updated["status"] == STATUS_PENDING else None,
    )
    return CompletionResult(updated, updated["status"] == STATUS_PENDING, True)

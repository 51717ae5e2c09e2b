from __future__ import annotations

import copy
import itertools
import threading
from datetime import datetime, timezone
from typing import Dict, List

from app.secrets import seal_credentials
from relay.ids import new_id
from relay.actions import (
    ACTION_TYPES,
    REPLY_NONE,
    STATUS_PENDING,
    STATUS_PROCESSING,
)


class DuplicateKeyError(RuntimeError):
    """Raised when an insert violates a store uniqueness constraint."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryTx:
    def __init__(self) -> None:
        self.committed = False
        self.rolled_back = False

    def commit(self) -> None:
        self.committed = True

    def rollback(self) -> None:
        self.rolled_back = True


class InMemoryTxManager:
    def begin(self) -> InMemoryTx:
        return InMemoryTx()


class MemoryAccountStore:
    def __init__(self) -> None:
        self._accounts: Dict[str, dict] = {}

    def create(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", new_id())
        item.setdefault("status", "active")
        item.setdefault("created_at", _now())
        self._accounts[item["id"]] = item
        return copy.deepcopy(item)

    def get(self, account_id: str) -> dict | None:
        item = self._accounts.get(account_id)
        return copy.deepcopy(item) if item else None

    def set_status(self, account_id: str, status: str) -> dict | None:
        item = self._accounts.get(account_id)
        if not item:
            return None
        item["status"] = status
        return copy.deepcopy(item)


class MemoryClientStore:
    def __init__(self) -> None:
        self._clients: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def create(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        credentials = item.pop("credentials", None)
        if credentials:
            item["credentials_enc"] = seal_credentials(credentials)
        item.setdefault("id", new_id())
        item.setdefault("ai_active", False)
        item.setdefault("ai_provider", "openai")
        item.setdefault("persona", "")
        item.setdefault("documents", [])
        item.setdefault("reply_template", None)
        item.setdefault("settings_extra", {})
        item.setdefault("credentials_enc", None)
        item.setdefault("total_replies", 0)
        item.setdefault("status", "active")
        item.setdefault("created_at", _now())
        self._clients[item["id"]] = item
        return copy.deepcopy(item)

    def get(self, client_id: str) -> dict | None:
        item = self._clients.get(client_id)
        return copy.deepcopy(item) if item else None

    def get_for_account(self, account_id: str, client_id: str) -> dict | None:
        item = self._clients.get(client_id)
        if not item or item.get("account_id") != account_id:
            return None
        return copy.deepcopy(item)

    def increment_replies(self, client_id: str, count: int = 1) -> None:
        with self._lock:
            item = self._clients.get(client_id)
            if item:
                item["total_replies"] = int(item.get("total_replies") or 0) + count


class MemoryActionStore:
    """Action queue kept in process memory.

    Every read-modify-write runs under one store-level lock, which plays the
    role of Postgres' row locking for the claim and transition primitives.
    """

    def __init__(self) -> None:
        self._actions: Dict[str, dict] = {}
        self._order: Dict[str, int] = {}
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def ping(self) -> bool:
        return True

    def enqueue(self, action: dict) -> dict:
        if action.get("type") not in ACTION_TYPES:
            raise ValueError(f"unknown action type: {action.get('type')}")
        record = copy.deepcopy(action)
        record.setdefault("id", new_id())
        record.setdefault("payload", {})
        record["status"] = STATUS_PENDING
        record["attempt_count"] = 0
        record["locked_at"] = None
        record["lock_owner"] = None
        record.setdefault("next_run_at", None)
        record.setdefault("last_error_code", None)
        record.setdefault("last_error_message", None)
        record.setdefault("created_at", _now())
        record["updated_at"] = record["created_at"]
        with self._lock:
            self._actions[record["id"]] = record
            self._order[record["id"]] = next(self._seq)
        return copy.deepcopy(record)

    def _claimable(self, action: dict, now: datetime, stale_before: datetime) -> bool:
        status = action.get("status")
        if status == STATUS_PENDING:
            next_run_at = action.get("next_run_at")
            return next_run_at is None or next_run_at <= now
        if status == STATUS_PROCESSING:
            locked_at = action.get("locked_at")
            return locked_at is not None and locked_at <= stale_before
        return False

    def claim_batch(self, account_id: str, limit: int, lock_owner: str, now: datetime, stale_before: datetime) -> list[dict]:
        with self._lock:
            ready = [
                a for a in self._actions.values()
                if a.get("account_id") == account_id and self._claimable(a, now, stale_before)
            ]
            ready.sort(key=lambda a: (a["created_at"], self._order[a["id"]]))
            claimed = []
            for action in ready[:limit]:
                action["status"] = STATUS_PROCESSING
                action["locked_at"] = now
                action["lock_owner"] = lock_owner
                action["attempt_count"] = int(action.get("attempt_count", 0)) + 1
                action["updated_at"] = now
                claimed.append(copy.deepcopy(action))
            return claimed

    def get(self, account_id: str, action_id: str) -> dict | None:
        action = self._actions.get(action_id)
        if not action or action.get("account_id") != account_id:
            return None
        return copy.deepcopy(action)

    def transition(self, action_id: str, expected: dict, changes: dict) -> dict | None:
        with self._lock:
            action = self._actions.get(action_id)
            if not action:
                return None
            for key, value in expected.items():
                if action.get(key) != value:
                    return None
            action.update(copy.deepcopy(changes))
            action["updated_at"] = _now()
            return copy.deepcopy(action)

    def list_stale(self, stale_before: datetime, limit: int = 500) -> list[dict]:
        with self._lock:
            items = [
                a for a in self._actions.values()
                if a.get("status") == STATUS_PROCESSING
                and a.get("locked_at") is not None
                and a["locked_at"] <= stale_before
            ]
            items.sort(key=lambda a: a["locked_at"])
            return [copy.deepcopy(a) for a in items[:limit]]

    def list(self, account_id: str, status: str | None = None, limit: int = 200) -> list[dict]:
        items = [a for a in self._actions.values() if a.get("account_id") == account_id]
        if status:
            items = [a for a in items if a.get("status") == status]
        items.sort(key=lambda a: (a["created_at"], self._order[a["id"]]), reverse=True)
        return [copy.deepcopy(a) for a in items[:limit]]


class MemoryMessageStore:
    def __init__(self) -> None:
        self._messages: Dict[str, dict] = {}
        self._by_key: Dict[tuple, str] = {}
        self._lock = threading.Lock()

    def create(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        key = (item.get("account_id"), item.get("idempotency_key"))
        with self._lock:
            if key in self._by_key:
                raise DuplicateKeyError(f"message idempotency key already used: {item.get('idempotency_key')}")
            item.setdefault("id", new_id())
            item.setdefault("reply_status", REPLY_NONE)
            item.setdefault("reply_text", None)
            item.setdefault("action_id", None)
            item.setdefault("received_at", _now())
            item.setdefault("created_at", _now())
            item["updated_at"] = item["created_at"]
            self._messages[item["id"]] = item
            self._by_key[key] = item["id"]
        return copy.deepcopy(item)

    def get(self, account_id: str, message_id: str) -> dict | None:
        item = self._messages.get(message_id)
        if not item or item.get("account_id") != account_id:
            return None
        return copy.deepcopy(item)

    def get_by_idempotency(self, account_id: str, idempotency_key: str) -> dict | None:
        message_id = self._by_key.get((account_id, idempotency_key))
        if not message_id:
            return None
        return copy.deepcopy(self._messages[message_id])

    def update(self, message_id: str, changes: dict) -> dict | None:
        with self._lock:
            item = self._messages.get(message_id)
            if not item:
                return None
            item.update(copy.deepcopy(changes))
            item["updated_at"] = _now()
            return copy.deepcopy(item)

    def update_reply_status(
        self,
        account_id: str,
        client_id: str,
        conversation_id: str,
        from_status: str,
        to_status: str,
    ) -> int:
        updated = 0
        with self._lock:
            for item in self._messages.values():
                if (
                    item.get("account_id") == account_id
                    and item.get("client_id") == client_id
                    and item.get("conversation_id") == conversation_id
                    and item.get("reply_status") == from_status
                ):
                    item["reply_status"] = to_status
                    item["updated_at"] = _now()
                    updated += 1
        return updated

    def list(
        self,
        account_id: str,
        client_id: str | None = None,
        reply_statuses: list[str] | None = None,
        limit: int = 200,
        oldest_first: bool = False,
    ) -> list[dict]:
        items = [m for m in self._messages.values() if m.get("account_id") == account_id]
        if client_id:
            items = [m for m in items if m.get("client_id") == client_id]
        if reply_statuses:
            items = [m for m in items if m.get("reply_status") in reply_statuses]
        items.sort(key=lambda m: m.get("received_at"), reverse=not oldest_first)
        return [copy.deepcopy(m) for m in items[:limit]]


class MemoryAuditStore:
    def __init__(self) -> None:
        self._entries: List[dict] = []

    def add(self, violation_type: str, details: dict) -> dict:
        entry = {
            "id": new_id(),
            "type": violation_type,
            "details": copy.deepcopy(details),
            "created_at": _now(),
        }
        self._entries.append(entry)
        return copy.deepcopy(entry)

    def list(self, violation_type: str | None = None, limit: int = 200) -> list[dict]:
        items = self._entries
        if violation_type:
            items = [e for e in items if e.get("type") == violation_type]
        return [copy.deepcopy(e) for e in items[-limit:]]

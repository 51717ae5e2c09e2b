"""DB-backed stores for the relay queue, messages and tenants."""

from __future__ import annotations

import copy
import json
import logging
from contextvars import ContextVar
from datetime import datetime
from typing import Any

import psycopg2
import psycopg2.errors

from app.db import _get_pool, clear_active_conn, execute, fetch_all, fetch_one, get_conn, init_pool, ping, set_active_conn
from app.secrets import seal_credentials
from app.stores import DuplicateKeyError
from relay.actions import ACTION_TYPES, REPLY_NONE, STATUS_PENDING, STATUS_PROCESSING

logger = logging.getLogger("relay.db")

_UUID_COLUMNS = ("id", "account_id", "client_id", "action_id")
_ACTION_CHANGE_FIELDS = (
    "status",
    "locked_at",
    "lock_owner",
    "next_run_at",
    "attempt_count",
    "last_error_code",
    "last_error_message",
)
_ACTION_EXPECT_FIELDS = ("status", "locked_at", "lock_owner", "attempt_count")
_MESSAGE_CHANGE_FIELDS = ("reply_status", "reply_text", "action_id")


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row(row: dict | None) -> dict | None:
    if not row:
        return None
    item = dict(row)
    for key in _UUID_COLUMNS:
        if item.get(key) is not None:
            item[key] = str(item[key])
    for key in ("payload", "documents", "settings_extra", "details"):
        if key in item:
            item[key] = _ensure_json(item[key])
    return item


class _TxContext:
    def __init__(self, conn, pool):
        self.conn = conn
        self.pool = pool
        self.depth = 1
        self.failed = False


_TX_CONTEXT: ContextVar[_TxContext | None] = ContextVar("relay_tx_context", default=None)


class DbTx:
    def __init__(self, ctx: _TxContext):
        self._ctx = ctx

    @property
    def conn(self):
        return self._ctx.conn

    def _release(self) -> None:
        ctx = self._ctx
        ctx.pool.putconn(ctx.conn)
        _TX_CONTEXT.set(None)
        clear_active_conn()

    def commit(self) -> None:
        ctx = self._ctx
        if ctx.depth > 1:
            ctx.depth -= 1
            return
        try:
            if ctx.failed:
                ctx.conn.rollback()
            else:
                ctx.conn.commit()
        finally:
            self._release()

    def rollback(self) -> None:
        ctx = self._ctx
        ctx.failed = True
        if ctx.depth > 1:
            ctx.depth -= 1
            return
        try:
            ctx.conn.rollback()
        finally:
            self._release()


class DbTxManager:
    """Opens a transaction that every store call on this context joins."""

    def begin(self) -> DbTx:
        ctx = _TX_CONTEXT.get()
        if ctx is not None:
            ctx.depth += 1
            return DbTx(ctx)
        init_pool()
        pool = _get_pool()
        conn = pool.getconn()
        ctx = _TxContext(conn, pool)
        _TX_CONTEXT.set(ctx)
        set_active_conn(conn)
        return DbTx(ctx)


class DbAccountStore:
    def create(self, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into accounts (name, email, status, created_at, updated_at)
                values (%s, %s, %s, now(), now())
                returning *
                """,
                [record.get("name"), record.get("email"), record.get("status", "active")],
                query_name="accounts.insert",
            )
            return _row(row)

    def get(self, account_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select * from accounts where id=%s", [account_id], query_name="accounts.get")
            return _row(row)

    def set_status(self, account_id: str, status: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "update accounts set status=%s, updated_at=now() where id=%s returning *",
                [status, account_id],
                query_name="accounts.set_status",
            )
            return _row(row)


class DbClientStore:
    def create(self, record: dict) -> dict:
        credentials = record.get("credentials")
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into clients (
                  account_id, name, status, ai_active, ai_provider, persona, documents,
                  reply_template, settings_extra, credentials_enc, total_replies, created_at, updated_at
                ) values (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,0,now(),now())
                returning *
                """,
                [
                    record.get("account_id"),
                    record.get("name"),
                    record.get("status", "active"),
                    bool(record.get("ai_active", False)),
                    record.get("ai_provider") or "openai",
                    record.get("persona") or "",
                    _json_dumps(record.get("documents") or []),
                    record.get("reply_template"),
                    _json_dumps(record.get("settings_extra") or {}),
                    seal_credentials(credentials) if credentials else None,
                ],
                query_name="clients.insert",
            )
            return _row(row)

    def get(self, client_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select * from clients where id=%s", [client_id], query_name="clients.get")
            return _row(row)

    def get_for_account(self, account_id: str, client_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select * from clients where id=%s and account_id=%s",
                [client_id, account_id],
                query_name="clients.get_for_account",
            )
            return _row(row)

    def increment_replies(self, client_id: str, count: int = 1) -> None:
        with get_conn() as conn:
            execute(
                conn,
                "update clients set total_replies = total_replies + %s, updated_at=now() where id=%s",
                [count, client_id],
                query_name="clients.increment_replies",
            )


class DbActionStore:
    def ping(self) -> bool:
        return ping()

    def enqueue(self, action: dict) -> dict:
        if action.get("type") not in ACTION_TYPES:
            raise ValueError(f"unknown action type: {action.get('type')}")
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into actions (
                  account_id, client_id, type, payload, status, attempt_count,
                  next_run_at, created_at, updated_at
                ) values (%s,%s,%s,%s,%s,0,%s,now(),now())
                returning *
                """,
                [
                    action.get("account_id"),
                    action.get("client_id"),
                    action.get("type"),
                    _json_dumps(action.get("payload") or {}),
                    STATUS_PENDING,
                    action.get("next_run_at"),
                ],
                query_name="actions.insert",
            )
            return _row(row)

    def claim_batch(self, account_id: str, limit: int, lock_owner: str, now: datetime, stale_before: datetime) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                with candidates as (
                  select id from actions
                  where account_id=%s
                    and (
                      (status=%s and (next_run_at is null or next_run_at <= %s))
                      or (status=%s and locked_at <= %s)
                    )
                  order by created_at asc, id asc
                  for update skip locked
                  limit %s
                )
                update actions a
                set status=%s,
                    locked_at=%s,
                    lock_owner=%s,
                    attempt_count=a.attempt_count+1,
                    updated_at=now()
                from candidates c
                where a.id = c.id
                returning a.*
                """,
                [
                    account_id,
                    STATUS_PENDING,
                    now,
                    STATUS_PROCESSING,
                    stale_before,
                    limit,
                    STATUS_PROCESSING,
                    now,
                    lock_owner,
                ],
                query_name="actions.claim_batch",
            )
        # update ... returning does not preserve the candidate order
        items = [_row(r) for r in rows]
        items.sort(key=lambda a: (a["created_at"], a["id"]))
        return items

    def get(self, account_id: str, action_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select * from actions where id=%s and account_id=%s",
                [action_id, account_id],
                query_name="actions.get",
            )
            return _row(row)

    def transition(self, action_id: str, expected: dict, changes: dict) -> dict | None:
        fields = []
        params: list[Any] = []
        for key in _ACTION_CHANGE_FIELDS:
            if key in changes:
                fields.append(f"{key}=%s")
                params.append(changes[key])
        clauses = ["id=%s"]
        params.append(action_id)
        for key in _ACTION_EXPECT_FIELDS:
            if key in expected:
                clauses.append(f"{key} is not distinct from %s")
                params.append(expected[key])
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                update actions set {', '.join(fields + ['updated_at=now()'])}
                where {' and '.join(clauses)}
                returning *
                """,
                params,
                query_name="actions.transition",
            )
            return _row(row)

    def list_stale(self, stale_before: datetime, limit: int = 500) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select * from actions
                where status=%s and locked_at <= %s
                order by locked_at asc
                limit %s
                """,
                [STATUS_PROCESSING, stale_before, limit],
                query_name="actions.list_stale",
            )
            return [_row(r) for r in rows]

    def list(self, account_id: str, status: str | None = None, limit: int = 200) -> list[dict]:
        clauses = ["account_id=%s"]
        params: list[Any] = [account_id]
        if status:
            clauses.append("status=%s")
            params.append(status)
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"""
                select * from actions where {' and '.join(clauses)}
                order by created_at desc
                limit %s
                """,
                params + [limit],
                query_name="actions.list",
            )
            return [_row(r) for r in rows]


class DbMessageStore:
    def create(self, record: dict) -> dict:
        try:
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    """
                    insert into messages (
                      account_id, client_id, conversation_id, sender_name, incoming_text,
                      idempotency_key, reply_status, received_at, created_at, updated_at
                    ) values (%s,%s,%s,%s,%s,%s,%s,now(),now(),now())
                    returning *
                    """,
                    [
                        record.get("account_id"),
                        record.get("client_id"),
                        record.get("conversation_id"),
                        record.get("sender_name"),
                        record.get("incoming_text"),
                        record.get("idempotency_key"),
                        record.get("reply_status", REPLY_NONE),
                    ],
                    query_name="messages.insert",
                )
        except psycopg2.errors.UniqueViolation as exc:
            logger.info("messages_insert_conflict account_id=%s idempotency_key=%s", record.get("account_id"), record.get("idempotency_key"))
            raise DuplicateKeyError(f"message idempotency key already used: {record.get('idempotency_key')}") from exc
        return _row(row)

    def get(self, account_id: str, message_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select * from messages where id=%s and account_id=%s",
                [message_id, account_id],
                query_name="messages.get",
            )
            return _row(row)

    def get_by_idempotency(self, account_id: str, idempotency_key: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select * from messages where account_id=%s and idempotency_key=%s",
                [account_id, idempotency_key],
                query_name="messages.get_by_idempotency",
            )
            return _row(row)

    def update(self, message_id: str, changes: dict) -> dict | None:
        fields = []
        params: list[Any] = []
        for key in _MESSAGE_CHANGE_FIELDS:
            if key in changes:
                fields.append(f"{key}=%s")
                params.append(changes[key])
        if not fields:
            return None
        params.append(message_id)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"update messages set {', '.join(fields)}, updated_at=now() where id=%s returning *",
                params,
                query_name="messages.update",
            )
            return _row(row)

    def update_reply_status(
        self,
        account_id: str,
        client_id: str,
        conversation_id: str,
        from_status: str,
        to_status: str,
    ) -> int:
        with get_conn() as conn:
            return execute(
                conn,
                """
                update messages set reply_status=%s, updated_at=now()
                where account_id=%s and client_id=%s and conversation_id=%s and reply_status=%s
                """,
                [to_status, account_id, client_id, conversation_id, from_status],
                query_name="messages.update_reply_status",
            )

    def list(
        self,
        account_id: str,
        client_id: str | None = None,
        reply_statuses: list[str] | None = None,
        limit: int = 200,
        oldest_first: bool = False,
    ) -> list[dict]:
        clauses = ["account_id=%s"]
        params: list[Any] = [account_id]
        if client_id:
            clauses.append("client_id=%s")
            params.append(client_id)
        if reply_statuses:
            clauses.append("reply_status = any(%s)")
            params.append(list(reply_statuses))
        order = "asc" if oldest_first else "desc"
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"""
                select * from messages where {' and '.join(clauses)}
                order by received_at {order}
                limit %s
                """,
                params + [limit],
                query_name="messages.list",
            )
            return [_row(r) for r in rows]


class DbAuditStore:
    def add(self, violation_type: str, details: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into security_audit (type, details, created_at)
                values (%s, %s, now())
                returning *
                """,
                [violation_type, _json_dumps(copy.deepcopy(details))],
                query_name="security_audit.insert",
            )
            return _row(row)

    def list(self, violation_type: str | None = None, limit: int = 200) -> list[dict]:
        clauses = []
        params: list[Any] = []
        if violation_type:
            clauses.append("where type=%s")
            params.append(violation_type)
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"""
                select * from security_audit {' '.join(clauses)}
                order by created_at desc
                limit %s
                """,
                params + [limit],
                query_name="security_audit.list",
            )
            return [_row(r) for r in rows]

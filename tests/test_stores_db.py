import os
import sys
import unittest
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

import psycopg2.errors

from app import stores_db
from app.stores import DuplicateKeyError

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
ACCOUNT = str(uuid.uuid4())


class _FakeCursor:
    def __init__(self, conn) -> None:
        self._conn = conn
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> bool:
        return False

    def execute(self, sql, params) -> None:
        self._conn.executed.append((" ".join(sql.split()), list(params)))
        if self._conn.error is not None:
            raise self._conn.error
        self.rowcount = len(self._conn.rows)

    def fetchone(self):
        return self._conn.rows[0] if self._conn.rows else None

    def fetchall(self):
        return list(self._conn.rows)


class _FakeConn:
    def __init__(self, rows: list[dict] | None = None, error: Exception | None = None) -> None:
        self.rows = rows or []
        self.error = error
        self.executed: list[tuple[str, list]] = []

    def cursor(self, cursor_factory=None):
        return _FakeCursor(self)


def _patched(conn: _FakeConn):
    @contextmanager
    def fake_get_conn():
        yield conn

    return patch.object(stores_db, "get_conn", fake_get_conn)


class TestDbActionStore(unittest.TestCase):
    def test_transition_is_conditional_on_expected_fields(self) -> None:
        action_id = uuid.uuid4()
        conn = _FakeConn(rows=[{"id": action_id, "account_id": uuid.UUID(ACCOUNT), "status": "pending", "payload": "{}"}])
        with _patched(conn):
            row = stores_db.DbActionStore().transition(
                str(action_id),
                {"status": "processing", "locked_at": None, "lock_owner": "ext_a"},
                {"status": "pending", "locked_at": None, "lock_owner": None, "next_run_at": T0},
            )
        sql, params = conn.executed[0]
        self.assertIn("update actions set status=%s, locked_at=%s, lock_owner=%s, next_run_at=%s, updated_at=now()", sql)
        self.assertIn(
            "where id=%s and status is not distinct from %s and locked_at is not distinct from %s "
            "and lock_owner is not distinct from %s",
            sql,
        )
        self.assertTrue(sql.endswith("returning *"))
        self.assertEqual(params, ["pending", None, None, T0, str(action_id), "processing", None, "ext_a"])
        self.assertEqual(row["id"], str(action_id))
        self.assertEqual(row["account_id"], ACCOUNT)
        self.assertEqual(row["payload"], {})

    def test_transition_returns_none_when_precondition_misses(self) -> None:
        conn = _FakeConn(rows=[])
        with _patched(conn):
            row = stores_db.DbActionStore().transition(str(uuid.uuid4()), {"status": "processing"}, {"status": "done"})
        self.assertIsNone(row)

    def test_claim_batch_locks_candidates_and_sorts_fifo(self) -> None:
        first = {"id": uuid.uuid4(), "created_at": T0, "payload": {}}
        second = {"id": uuid.uuid4(), "created_at": T0 + timedelta(seconds=5), "payload": {}}
        conn = _FakeConn(rows=[second, first])
        stale_before = T0 - timedelta(minutes=5)
        with _patched(conn):
            claimed = stores_db.DbActionStore().claim_batch(ACCOUNT, 5, "ext_a", T0, stale_before)
        sql, params = conn.executed[0]
        self.assertIn("with candidates as", sql)
        self.assertIn("for update skip locked", sql)
        self.assertIn("attempt_count=a.attempt_count+1", sql)
        self.assertIn("returning a.*", sql)
        self.assertEqual(params, [ACCOUNT, "pending", T0, "processing", stale_before, 5, "processing", T0, "ext_a"])
        self.assertEqual([a["id"] for a in claimed], [str(first["id"]), str(second["id"])])

    def test_enqueue_rejects_unknown_type_before_touching_db(self) -> None:
        conn = _FakeConn()
        with _patched(conn):
            with self.assertRaises(ValueError):
                stores_db.DbActionStore().enqueue({"account_id": ACCOUNT, "type": "likePost", "payload": {}})
        self.assertEqual(conn.executed, [])


class TestDbMessageStore(unittest.TestCase):
    def _record(self) -> dict:
        return {
            "account_id": ACCOUNT,
            "client_id": str(uuid.uuid4()),
            "conversation_id": "c1",
            "sender_name": "Ada",
            "incoming_text": "hello",
            "idempotency_key": "k1",
            "reply_status": "queued",
        }

    def test_unique_violation_becomes_duplicate_key_error(self) -> None:
        conn = _FakeConn(error=psycopg2.errors.UniqueViolation("duplicate key value"))
        with _patched(conn):
            with self.assertRaises(DuplicateKeyError) as ctx:
                stores_db.DbMessageStore().create(self._record())
        self.assertIsInstance(ctx.exception.__cause__, psycopg2.errors.UniqueViolation)
        self.assertIn("k1", str(ctx.exception))

    def test_other_database_errors_propagate(self) -> None:
        conn = _FakeConn(error=psycopg2.errors.NotNullViolation("null value"))
        with _patched(conn):
            with self.assertRaises(psycopg2.errors.NotNullViolation):
                stores_db.DbMessageStore().create(self._record())

    def test_update_reply_status_filters_by_tenant_and_from_status(self) -> None:
        conn = _FakeConn(rows=[{}, {}])
        client_id = str(uuid.uuid4())
        with _patched(conn):
            updated = stores_db.DbMessageStore().update_reply_status(ACCOUNT, client_id, "c1", "queued", "failed")
        sql, params = conn.executed[0]
        self.assertIn("where account_id=%s and client_id=%s and conversation_id=%s and reply_status=%s", sql)
        self.assertEqual(params, ["failed", ACCOUNT, client_id, "c1", "queued"])
        self.assertEqual(updated, 2)


if __name__ == "__main__":
    unittest.main()

import os
import sys
import threading
import unittest
from datetime import datetime, timedelta, timezone

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.stores import MemoryActionStore

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
STALE = timedelta(minutes=5)


def _enqueue(store, account_id="acc-1", offset_s=0, **extra):
    action = {
        "account_id": account_id,
        "type": "sendMessage",
        "payload": {"conversationId": "c1", "messageText": "hi"},
        "created_at": T0 + timedelta(seconds=offset_s),
    }
    action.update(extra)
    return store.enqueue(action)


class TestMemoryActionStore(unittest.TestCase):
    def test_enqueue_starts_pending_without_lock(self) -> None:
        store = MemoryActionStore()
        action = _enqueue(store)
        self.assertEqual(action["status"], "pending")
        self.assertEqual(action["attempt_count"], 0)
        self.assertIsNone(action["locked_at"])
        self.assertIsNone(action["lock_owner"])

    def test_claim_is_fifo_and_bounded(self) -> None:
        store = MemoryActionStore()
        ids = [_enqueue(store, offset_s=i)["id"] for i in range(7)]
        now = T0 + timedelta(minutes=1)
        claimed = store.claim_batch("acc-1", 5, "ext_a", now, now - STALE)
        self.assertEqual([a["id"] for a in claimed], ids[:5])
        for action in claimed:
            self.assertEqual(action["status"], "processing")
            self.assertEqual(action["lock_owner"], "ext_a")
            self.assertEqual(action["locked_at"], now)
            self.assertEqual(action["attempt_count"], 1)

    def test_claim_skips_backoff_and_other_tenants(self) -> None:
        store = MemoryActionStore()
        now = T0 + timedelta(minutes=1)
        deferred = _enqueue(store, next_run_at=now + timedelta(minutes=2))
        foreign = _enqueue(store, account_id="acc-2")
        due = _enqueue(store, offset_s=5, next_run_at=now)
        claimed = store.claim_batch("acc-1", 5, "ext_a", now, now - STALE)
        self.assertEqual([a["id"] for a in claimed], [due["id"]])
        self.assertEqual(store.get("acc-1", deferred["id"])["status"], "pending")
        self.assertEqual(store.get("acc-2", foreign["id"])["status"], "pending")

    def test_stale_processing_is_reclaimable(self) -> None:
        store = MemoryActionStore()
        action = _enqueue(store)
        store.claim_batch("acc-1", 5, "ext_a", T0, T0 - STALE)
        fresh = T0 + timedelta(minutes=4)
        self.assertEqual(store.claim_batch("acc-1", 5, "ext_b", fresh, fresh - STALE), [])
        later = T0 + timedelta(minutes=6)
        claimed = store.claim_batch("acc-1", 5, "ext_b", later, later - STALE)
        self.assertEqual(claimed[0]["id"], action["id"])
        self.assertEqual(claimed[0]["lock_owner"], "ext_b")
        self.assertEqual(claimed[0]["attempt_count"], 2)

    def test_transition_requires_expected_state(self) -> None:
        store = MemoryActionStore()
        action = _enqueue(store)
        claimed = store.claim_batch("acc-1", 5, "ext_a", T0, T0 - STALE)[0]
        expected = {"status": "processing", "locked_at": claimed["locked_at"], "lock_owner": "ext_a"}
        done = store.transition(action["id"], expected, {"status": "completed", "locked_at": None, "lock_owner": None})
        self.assertEqual(done["status"], "completed")
        self.assertIsNone(store.transition(action["id"], expected, {"status": "pending"}))
        self.assertEqual(store.get("acc-1", action["id"])["status"], "completed")

    def test_enqueue_rejects_unknown_type(self) -> None:
        store = MemoryActionStore()
        with self.assertRaises(ValueError):
            _enqueue(store, type="likePost")

    def test_get_is_tenant_scoped(self) -> None:
        store = MemoryActionStore()
        action = _enqueue(store)
        self.assertIsNone(store.get("acc-2", action["id"]))

    def test_list_stale_crosses_tenants(self) -> None:
        store = MemoryActionStore()
        _enqueue(store, account_id="acc-1")
        _enqueue(store, account_id="acc-2")
        store.claim_batch("acc-1", 5, "ext_a", T0, T0 - STALE)
        store.claim_batch("acc-2", 5, "ext_b", T0, T0 - STALE)
        later = T0 + timedelta(minutes=10)
        stale = store.list_stale(later - STALE)
        self.assertEqual({a["account_id"] for a in stale}, {"acc-1", "acc-2"})

    def test_concurrent_claims_never_share_an_action(self) -> None:
        store = MemoryActionStore()
        for i in range(40):
            _enqueue(store, offset_s=i)
        now = T0 + timedelta(minutes=1)
        results: list[list[dict]] = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker(idx: int) -> None:
            barrier.wait()
            claimed = store.claim_batch("acc-1", 5, f"ext_{idx}", now, now - STALE)
            with lock:
                results.append(claimed)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        ids = [a["id"] for batch in results for a in batch]
        self.assertEqual(len(ids), 40)
        self.assertEqual(len(set(ids)), 40)


if __name__ == "__main__":
    unittest.main()

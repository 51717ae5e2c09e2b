import os
import sys
import unittest
from datetime import datetime, timedelta, timezone

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from relay.actions import STATUS_FAILED, STATUS_PENDING
from relay.retry_policy import (
    STALE_LOCK_MAX_ATTEMPTS,
    backoff_delay,
    classify_error,
    failure_transition,
    stale_lock_transition,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestBackoff(unittest.TestCase):
    def test_doubles_per_attempt(self) -> None:
        self.assertEqual(backoff_delay(1), timedelta(minutes=2))
        self.assertEqual(backoff_delay(2), timedelta(minutes=4))
        self.assertEqual(backoff_delay(5), timedelta(minutes=32))

    def test_capped_at_one_hour(self) -> None:
        self.assertEqual(backoff_delay(6), timedelta(minutes=60))
        self.assertEqual(backoff_delay(40), timedelta(minutes=60))


class TestFailureTransition(unittest.TestCase):
    def test_retryable_code_requeues_with_backoff(self) -> None:
        outcome = failure_transition(2, "NETWORK", NOW, error_message="socket closed")
        self.assertEqual(outcome.status, STATUS_PENDING)
        self.assertTrue(outcome.will_retry)
        self.assertEqual(outcome.next_run_at, NOW + timedelta(minutes=4))
        self.assertEqual(outcome.error_code, "NETWORK")
        self.assertEqual(outcome.error_message, "socket closed")

    def test_non_retryable_code_is_terminal_on_first_attempt(self) -> None:
        for code in ("AUTH_REQUIRED", "CHECKPOINT", "PERMISSION_DENIED"):
            outcome = failure_transition(1, code, NOW)
            self.assertEqual(outcome.status, STATUS_FAILED, code)
            self.assertIsNone(outcome.next_run_at)

    def test_attempt_budget_exhausted(self) -> None:
        outcome = failure_transition(5, "RATE_LIMIT", NOW)
        self.assertEqual(outcome.status, STATUS_FAILED)
        self.assertFalse(outcome.will_retry)

    def test_unknown_code_retryable_by_default(self) -> None:
        self.assertEqual(classify_error("SOMETHING_NEW"), "unknown")
        outcome = failure_transition(1, "SOMETHING_NEW", NOW)
        self.assertEqual(outcome.status, STATUS_PENDING)

    def test_unknown_code_terminal_when_disabled(self) -> None:
        outcome = failure_transition(1, "SOMETHING_NEW", NOW, unknown_retryable=False)
        self.assertEqual(outcome.status, STATUS_FAILED)

    def test_missing_code_recorded_as_unknown(self) -> None:
        outcome = failure_transition(1, None, NOW)
        self.assertEqual(outcome.error_code, "UNKNOWN")
        self.assertEqual(outcome.error_message, "Unknown error")


class TestStaleLockTransition(unittest.TestCase):
    def test_requeues_below_budget(self) -> None:
        outcome = stale_lock_transition(3, NOW)
        self.assertEqual(outcome.status, STATUS_PENDING)
        self.assertEqual(outcome.next_run_at, NOW + timedelta(minutes=8))
        self.assertIsNone(outcome.error_code)

    def test_fails_at_budget(self) -> None:
        outcome = stale_lock_transition(5, NOW)
        self.assertEqual(outcome.status, STATUS_FAILED)
        self.assertEqual(outcome.error_code, STALE_LOCK_MAX_ATTEMPTS)


if __name__ == "__main__":
    unittest.main()

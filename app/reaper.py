"""Background sweep that reclaims actions whose extension lock went stale.

Claim calls recover stale locks opportunistically for their own tenant; this
sweep covers every tenant on a fixed interval so abandoned work is released
even when the owning extension never polls again.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from app.config import Settings, load_settings
from app.dispatch import cascade_reply_status
from relay.actions import REPLY_FAILED, STATUS_PROCESSING
from relay.retry_policy import stale_lock_transition

logger = logging.getLogger("relay.reaper")

_SWEEP_LIMIT = 500


def _now() -> datetime:
    return datetime.now(timezone.utc)


def reap_stale_locks(
    action_store: Any,
    settings: Settings,
    now: datetime | None = None,
    message_store: Any = None,
) -> dict:
    """Requeue or fail every stale lock; failed sends mark their queued messages failed."""
    now = now or _now()
    stale_before = now - timedelta(seconds=settings.stale_lock_seconds)
    stale = action_store.list_stale(stale_before, limit=_SWEEP_LIMIT)
    logger.info("reaper_scan stale_count=%s stale_before=%s", len(stale), stale_before.isoformat())
    result = {"processed": 0, "requeued": 0, "failed": 0, "skipped": 0, "errors": 0}
    for action in stale:
        action_id = action.get("id")
        try:
            outcome = stale_lock_transition(int(action.get("attempt_count") or 0), now, max_attempts=settings.max_attempts)
            changes = {"status": outcome.status, "locked_at": None, "lock_owner": None}
            if outcome.next_run_at is not None:
                changes["next_run_at"] = outcome.next_run_at
            if outcome.error_code:
                changes["last_error_code"] = outcome.error_code
                changes["last_error_message"] = outcome.error_message
            updated = action_store.transition(
                action_id,
                {
                    "status": STATUS_PROCESSING,
                    "locked_at": action.get("locked_at"),
                    "lock_owner": action.get("lock_owner"),
                },
                changes,
            )
        except Exception as exc:
            result["errors"] += 1
            logger.error("reaper_action_failed action_id=%s error=%s", action_id, exc)
            continue
        result["processed"] += 1
        if updated is None:
            result["skipped"] += 1
            continue
        if outcome.will_retry:
            result["requeued"] += 1
            logger.info(
                "reaper_requeued action_id=%s account_id=%s attempt_count=%s next_run_at=%s",
                action_id,
                action.get("account_id"),
                action.get("attempt_count"),
                outcome.next_run_at.isoformat(),
            )
        else:
            result["failed"] += 1
            logger.warning(
                "reaper_failed action_id=%s account_id=%s attempt_count=%s code=%s",
                action_id,
                action.get("account_id"),
                action.get("attempt_count"),
                outcome.error_code,
            )
            if message_store is not None:
                try:
                    cascade_reply_status(message_store, updated, updated["account_id"], REPLY_FAILED)
                except Exception as exc:
                    result["errors"] += 1
                    logger.error("reaper_cascade_failed action_id=%s error=%s", action_id, exc)
    return result


class StaleLockReaper:
    def __init__(
        self,
        action_store: Any,
        settings: Settings,
        readiness_poll_s: float = 1.0,
        message_store: Any = None,
    ) -> None:
        self._store = action_store
        self._message_store = message_store
        self._settings = settings
        self._readiness_poll_s = readiness_poll_s
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.started = threading.Event()
        self.gave_up = False
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="stale-lock-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.info("reaper_stopped runs=%s", self.runs)

    def _wait_until_ready(self) -> bool:
        deadline = time.monotonic() + self._settings.reaper_startup_timeout_seconds
        warned = False
        while not self._stop_event.is_set():
            if self._store.ping():
                return True
            if time.monotonic() >= deadline:
                return False
            if not warned:
                logger.warning("reaper_waiting_for_store timeout_s=%s", self._settings.reaper_startup_timeout_seconds)
                warned = True
            self._stop_event.wait(self._readiness_poll_s)
        return False

    def run_once(self) -> dict | None:
        try:
            return reap_stale_locks(self._store, self._settings, message_store=self._message_store)
        except Exception as exc:
            logger.error("reaper_run_failed error=%s", exc)
            return None
        finally:
            self.runs += 1

    def _run(self) -> None:
        if not self._wait_until_ready():
            if not self._stop_event.is_set():
                self.gave_up = True
                logger.error(
                    "reaper_not_started reason=store_unreachable timeout_s=%s",
                    self._settings.reaper_startup_timeout_seconds,
                )
            return
        self.started.set()
        logger.info("reaper_started interval_s=%s", self._settings.reaper_interval_seconds)
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self._settings.reaper_interval_seconds)


def main() -> None:
    from app.stores_db import DbActionStore, DbMessageStore

    logging.basicConfig(level=logging.INFO)
    settings = load_settings()
    if not settings.use_db:
        raise SystemExit("USE_DB=1 is required to run the reaper as a separate process")
    reaper = StaleLockReaper(DbActionStore(), settings, message_store=DbMessageStore())
    reaper.start()
    try:
        while reaper.is_running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        reaper.stop()
    if reaper.gave_up:
        raise SystemExit(1)


if __name__ == "__main__":
    main()

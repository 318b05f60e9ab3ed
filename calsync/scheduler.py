from __future__ import annotations

import random
import threading
from typing import Optional

from calsync.config_manager import ConfigManager
from calsync.models import SyncResult, SyncSettings
from calsync.sync_engine import SyncEngine

MIN_INTERVAL_SECONDS = 30
MAX_FAILURE_STREAK = 5
MAX_BACKOFF_MINUTES = 30
JITTER_RATIO = 0.1


def backoff_seconds(failure_count: int) -> int:
    if failure_count <= 0:
        return 0
    streak = min(failure_count, MAX_FAILURE_STREAK)
    return min(2**streak, MAX_BACKOFF_MINUTES) * 60


def next_delay(interval_seconds: int, failure_count: int, rng: random.Random) -> float:
    base = max(MIN_INTERVAL_SECONDS, int(interval_seconds)) + backoff_seconds(failure_count)
    jittered = base * rng.uniform(1 - JITTER_RATIO, 1 + JITTER_RATIO)
    return max(float(MIN_INTERVAL_SECONDS), jittered)


def cycle_failed(results: list[SyncResult]) -> bool:
    return any(result.status == "error" for result in results)


class SyncScheduler:
    def __init__(
        self,
        sync_engine: SyncEngine,
        config_manager: ConfigManager,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.rng = rng or random.Random()
        self.failure_count = 0
        self.last_error: Optional[str] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calsync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def next_delay(self) -> float:
        try:
            interval = self.config_manager.load().sync.interval_seconds
        except Exception as exc:
            self.last_error = f"Config unreadable: {type(exc).__name__}: {exc}"
            interval = SyncSettings().interval_seconds
        return next_delay(interval, self.failure_count, self.rng)

    def run_cycle(self, trigger: str) -> list[SyncResult]:
        try:
            results = self.sync_engine.run_once(trigger=trigger)
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            results = [SyncResult(status="error", message=message, duration_ms=0, trigger=trigger, sync_id="system")]
            self._record_failure(message)
        if cycle_failed(results):
            self.failure_count = min(self.failure_count + 1, MAX_FAILURE_STREAK)
        else:
            self.failure_count = 0
        return results

    def _record_failure(self, message: str) -> None:
        self.last_error = message
        try:
            self.sync_engine.record_failure(message)
        except Exception as exc:
            self.last_error = f"{message} (status not saved: {type(exc).__name__}: {exc})"

    def _loop(self) -> None:
        self.run_cycle("startup")

        while not self._stop_event.is_set():
            manual = self._manual_trigger_event.wait(timeout=self.next_delay())
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_cycle("manual" if manual else "scheduled")

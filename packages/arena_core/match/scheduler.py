"""Single-clock timer heap driving every match's repeating tick and one-shots."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import heapq
import itertools
import logging
import threading
from typing import Any, Callable, Optional


logger = logging.getLogger("arena_core.match.scheduler")

TimerCallback = Callable[[], Any]


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class _Timer:
    match_id: str
    kind: str
    callback: TimerCallback
    fire_at: float
    interval: Optional[float] = None
    cancelled: bool = False
    seq: int = field(default=0)


class MatchScheduler:
    """Priority queue of ``(fire_at, seq, timer)`` advanced by one driving clock.

    ``run_due`` fires every due timer serially while holding ``lock``. A
    repeating timer re-arms only when its callback returns something truthy,
    so a tick that observes a non-ACTIVE match retires itself.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float],
        lock: threading.RLock,
        idle_wait_seconds: float = 0.05,
    ) -> None:
        self._clock = clock
        self._lock = lock
        self._heap: list[tuple[float, int, _Timer]] = []
        self._timers: dict[tuple[str, str], _Timer] = {}
        self._seq = itertools.count()
        self._idle_wait_seconds = max(0.01, float(idle_wait_seconds))
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._wake = threading.Event()
        self._fired_total = 0
        self._last_error: str | None = None
        self._last_loop_finished_at: str | None = None

    def schedule_repeating(self, match_id: str, interval: float, callback: TimerCallback, *, kind: str = "tick") -> None:
        with self._lock:
            self._push(match_id, kind, callback, self._clock() + float(interval), float(interval))

    def call_later(self, match_id: str, delay: float, callback: TimerCallback, *, kind: str) -> None:
        with self._lock:
            self._push(match_id, kind, callback, self._clock() + max(0.0, float(delay)), None)

    def cancel(self, match_id: str, kind: str | None = None) -> int:
        with self._lock:
            keys = [key for key in self._timers if key[0] == match_id and (kind is None or key[1] == kind)]
            for key in keys:
                self._timers.pop(key).cancelled = True
            return len(keys)

    def has_timer(self, match_id: str, kind: str) -> bool:
        with self._lock:
            return (match_id, kind) in self._timers

    def pending_count(self) -> int:
        with self._lock:
            return len(self._timers)

    def next_fire_at(self) -> Optional[float]:
        with self._lock:
            self._drop_cancelled_head()
            return self._heap[0][0] if self._heap else None

    def run_due(self, now: float | None = None) -> int:
        """Fire every timer due at ``now`` (default: the clock). Returns the count fired."""
        fired = 0
        with self._lock:
            current = self._clock() if now is None else float(now)
            while True:
                self._drop_cancelled_head()
                if not self._heap or self._heap[0][0] > current:
                    break
                _, _, timer = heapq.heappop(self._heap)
                self._timers.pop((timer.match_id, timer.kind), None)
                fired += 1
                try:
                    keep = timer.callback()
                except Exception as exc:
                    keep = timer.interval is not None
                    self._last_error = f"{exc.__class__.__name__}: {exc}"
                    logger.exception("[SCHED] Timer %s/%s failed: %s", timer.match_id, timer.kind, exc)
                if timer.interval is not None and keep and not timer.cancelled:
                    if (timer.match_id, timer.kind) not in self._timers:
                        next_at = timer.fire_at + timer.interval
                        if next_at <= current:
                            next_at = current + timer.interval
                        self._push(timer.match_id, timer.kind, timer.callback, next_at, timer.interval)
            self._fired_total += fired
        return fired

    def start(self) -> bool:
        with self._state_lock:
            if self._thread and self._thread.is_alive():
                return False
            self._stop_event.clear()
            thread = threading.Thread(target=self._run_loop, name="arena-match-scheduler", daemon=True)
            thread.start()
            self._thread = thread
            logger.info("[SCHED] Match scheduler started")
            return True

    def stop(self, *, join_timeout_seconds: float = 3.0) -> bool:
        with self._state_lock:
            thread = self._thread
            if not thread:
                return False
            self._stop_event.set()
            self._wake.set()
        thread.join(timeout=max(0.1, float(join_timeout_seconds)))
        with self._state_lock:
            if self._thread is thread:
                self._thread = None
        logger.info("[SCHED] Match scheduler stopped")
        return True

    def status(self) -> dict[str, object]:
        with self._state_lock:
            running = bool(self._thread and self._thread.is_alive())
            thread_name = self._thread.name if self._thread else None
        return {
            "running": running,
            "thread_name": thread_name,
            "pending_timers": self.pending_count(),
            "fired_total": self._fired_total,
            "last_loop_finished_at": self._last_loop_finished_at,
            "last_error": self._last_error,
        }

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_due()
            except Exception as exc:
                self._last_error = f"{exc.__class__.__name__}: {exc}"
                logger.exception("[SCHED] Scheduler loop error: %s", exc)
            self._last_loop_finished_at = _utc_iso()
            next_at = self.next_fire_at()
            wait = self._idle_wait_seconds
            if next_at is not None:
                wait = max(0.0, min(wait, next_at - self._clock()))
            self._wake.wait(wait)
            self._wake.clear()

    def _push(self, match_id: str, kind: str, callback: TimerCallback, fire_at: float, interval: Optional[float]) -> None:
        existing = self._timers.pop((match_id, kind), None)
        if existing is not None:
            existing.cancelled = True
        timer = _Timer(match_id=match_id, kind=kind, callback=callback, fire_at=fire_at, interval=interval, seq=next(self._seq))
        self._timers[(match_id, kind)] = timer
        heapq.heappush(self._heap, (fire_at, timer.seq, timer))
        self._wake.set()

    def _drop_cancelled_head(self) -> None:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)

"""Background autopilot that keeps the arena populated with NPC challenges."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import logging
import random
import threading

from packages.arena_core.match import (
    MATCH_TYPES,
    ArenaError,
    MatchEngine,
    MatchStatus,
    count_active,
)
from packages.arena_core.match.profiles import ROLE_NPC

from .arena_engine import get_engine


logger = logging.getLogger("arena_api.auto_challenger")

MIN_AUTO_STAKE = Decimal("0.0001")
MAX_AUTO_STAKE = Decimal("0.001")
MAX_ACTIVE_AUTO_MATCHES = 2


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _random_stake(rng: random.Random) -> Decimal:
    span = int((MAX_AUTO_STAKE - MIN_AUTO_STAKE) / MIN_AUTO_STAKE)
    return MIN_AUTO_STAKE + MIN_AUTO_STAKE * rng.randint(0, span)


def run_autopilot_pass(engine: MatchEngine, rng: random.Random) -> dict[str, object]:
    """One pass: keep an OPEN challenge per type and start NPC fights while few are running."""
    npcs = [p for p in engine.profiles.list_profiles() if p.role == ROLE_NPC]
    created: list[str] = []
    accepted: list[str] = []
    if len(npcs) < 2:
        return {"created": created, "accepted": accepted}

    for match_type in MATCH_TYPES:
        open_matches = [m for m in engine.list_matches(MatchStatus.OPEN) if m["type"] == match_type]
        if not open_matches:
            creator = rng.choice(npcs)
            try:
                match = engine.create_match(creator.agent_id, _random_stake(rng), match_type)
                created.append(match["id"])
            except ArenaError as exc:
                logger.info("[AUTO] %s could not open a %s challenge: %s", creator.agent_id, match_type, exc)
            # A fresh challenge stays open for one pass so a player can take it.
            continue

        if count_active(engine, match_type) >= MAX_ACTIVE_AUTO_MATCHES:
            continue
        target = open_matches[-1]
        candidates = [p for p in npcs if p.agent_id != target["creator"]]
        if not candidates:
            continue
        opponent = rng.choice(candidates)
        try:
            engine.accept_match(target["id"], opponent.agent_id)
            accepted.append(target["id"])
            logger.info("[AUTO] %s accepted %s from %s", opponent.agent_id, target["id"], target["creator"])
        except ArenaError as exc:
            logger.info("[AUTO] %s could not accept %s: %s", opponent.agent_id, target["id"], exc)
    return {"created": created, "accepted": accepted}


class AutoChallenger:
    def __init__(self, *, interval_seconds: float = 15.0, rng: random.Random | None = None) -> None:
        self._interval_seconds = max(1.0, float(interval_seconds))
        self._rng = rng or random.Random()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._last_loop_finished_at: str | None = None
        self._last_error: str | None = None

    def start(self) -> bool:
        with self._state_lock:
            if self._thread and self._thread.is_alive():
                return False
            self._stop_event.clear()
            thread = threading.Thread(target=self._run_loop, name="arena-auto-challenger", daemon=True)
            thread.start()
            self._thread = thread
            logger.info("[AUTO] Auto challenger started")
            return True

    def stop(self, *, join_timeout_seconds: float = 3.0) -> bool:
        with self._state_lock:
            thread = self._thread
            if not thread:
                return False
            self._stop_event.set()
        thread.join(timeout=max(0.1, float(join_timeout_seconds)))
        with self._state_lock:
            if self._thread is thread:
                self._thread = None
        logger.info("[AUTO] Auto challenger stopped")
        return True

    def status(self) -> dict[str, object]:
        with self._state_lock:
            running = bool(self._thread and self._thread.is_alive())
        return {
            "running": running,
            "interval_seconds": self._interval_seconds,
            "last_loop_finished_at": self._last_loop_finished_at,
            "last_error": self._last_error,
        }

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                run_autopilot_pass(get_engine(), self._rng)
            except Exception as exc:
                self._last_error = f"{exc.__class__.__name__}: {exc}"
                logger.exception("[AUTO] Autopilot loop error: %s", exc)
            self._last_loop_finished_at = _utc_iso()
            self._stop_event.wait(self._interval_seconds)


_AUTO_CHALLENGER = AutoChallenger()


def start_auto_challenger() -> bool:
    return _AUTO_CHALLENGER.start()


def stop_auto_challenger() -> bool:
    return _AUTO_CHALLENGER.stop()


def auto_challenger_status() -> dict[str, object]:
    return _AUTO_CHALLENGER.status()

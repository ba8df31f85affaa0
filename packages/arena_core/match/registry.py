"""Explicit per-engine context holding matches, timers, and collaborators."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Callable, Optional

from packages.arena_core.puzzles.oracle import PuzzleOracle

from .config import EngineConfig
from .errors import MatchNotFound
from .models import Match, MatchStatus
from .profiles import AgentProfileStore
from .scheduler import MatchScheduler


logger = logging.getLogger("arena_core.match.registry")

ResultListener = Callable[[Any], None]


class MatchRegistry:
    def __init__(
        self,
        *,
        profiles: AgentProfileStore,
        oracle: PuzzleOracle,
        config: EngineConfig | None = None,
        clock: Callable[[], float] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.profiles = profiles
        self.oracle = oracle
        self.config = config or EngineConfig()
        self.clock = clock or time.time
        self.rng = rng or random.Random()
        self.lock = threading.RLock()
        self.matches: dict[str, Match] = {}
        self.scheduler = MatchScheduler(clock=self.clock, lock=self.lock)
        self._listeners: list[ResultListener] = []

    def now(self) -> float:
        return float(self.clock())

    def add_match(self, match: Match) -> Match:
        with self.lock:
            self.matches[match.id] = match
            self.prune_finished()
            return match

    def prune_finished(self) -> int:
        """Drop the oldest FINISHED matches beyond ``config.retain_finished``; settled results live in history."""
        with self.lock:
            finished = [m for m in self.matches.values() if m.status == MatchStatus.FINISHED]
            excess = len(finished) - max(0, int(self.config.retain_finished))
            if excess <= 0:
                return 0
            finished.sort(key=lambda m: (m.finished_at or 0.0, m.created_at))
            for match in finished[:excess]:
                del self.matches[match.id]
            logger.debug("[MATCH] Evicted %d finished matches", excess)
            return excess

    def get(self, match_id: str) -> Match:
        with self.lock:
            match = self.matches.get(str(match_id))
            if match is None:
                raise MatchNotFound(f"Challenge not found: {match_id}")
            return match

    def find(self, match_id: str) -> Optional[Match]:
        with self.lock:
            return self.matches.get(str(match_id))

    def list_matches(self, status: MatchStatus | str | None = None) -> list[Match]:
        with self.lock:
            items = list(self.matches.values())
        if status is not None:
            wanted = MatchStatus(str(getattr(status, "value", status)).upper())
            items = [m for m in items if m.status == wanted]
        return sorted(items, key=lambda m: m.created_at, reverse=True)

    def add_listener(self, listener: ResultListener) -> None:
        with self.lock:
            self._listeners.append(listener)

    def notify(self, result: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception as exc:
                logger.exception("[MATCH] Result listener failed: %s", exc)

    def close(self) -> None:
        self.scheduler.stop()
        self.oracle.close()

"""Facade over a MatchRegistry exposing the operations callers use."""

from __future__ import annotations

import logging
import random
from typing import Any, Callable, Optional

from packages.arena_core.puzzles.oracle import PuzzleOracle

from . import lifecycle, resolution, settlement
from .config import EngineConfig
from .models import Match, MatchStatus
from .profiles import AgentProfileStore
from .registry import MatchRegistry
from .settlement import SettlementResult
from .views import project_match


logger = logging.getLogger("arena_core.match.engine")


class MatchEngine:
    def __init__(
        self,
        *,
        profiles: AgentProfileStore,
        oracle: PuzzleOracle,
        config: EngineConfig | None = None,
        clock: Callable[[], float] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = MatchRegistry(profiles=profiles, oracle=oracle, config=config, clock=clock, rng=rng)

    @property
    def profiles(self) -> AgentProfileStore:
        return self.registry.profiles

    @property
    def config(self) -> EngineConfig:
        return self.registry.config

    def create_match(self, creator: str, stake: Any, match_type: str = "BEAM_BATTLE") -> dict[str, Any]:
        with self.registry.lock:
            return project_match(lifecycle.create_match(self.registry, creator, stake, match_type))

    def accept_match(self, match_id: str, opponent: str) -> dict[str, Any]:
        with self.registry.lock:
            return project_match(lifecycle.accept_match(self.registry, match_id, opponent))

    def get_match(self, match_id: str) -> dict[str, Any]:
        with self.registry.lock:
            return project_match(self.registry.get(match_id))

    def list_matches(self, status: MatchStatus | str | None = None) -> list[dict[str, Any]]:
        with self.registry.lock:
            return [project_match(m) for m in self.registry.list_matches(status)]

    def submit_answer(self, match_id: str, agent_id: str, answer: Any) -> dict[str, Any]:
        with self.registry.lock:
            return project_match(resolution.submit_answer(self.registry, match_id, agent_id, answer))

    def match_record(self, match_id: str) -> Match:
        """Internal record, for tests and in-process collaborators only."""
        return self.registry.get(match_id)

    def run_due(self, now: float | None = None) -> int:
        return self.registry.scheduler.run_due(now)

    def start(self) -> bool:
        return self.registry.scheduler.start()

    def stop(self) -> bool:
        return self.registry.scheduler.stop()

    def status(self) -> dict[str, object]:
        with self.registry.lock:
            counts = {s.value: 0 for s in MatchStatus}
            for match in self.registry.matches.values():
                counts[match.status.value] += 1
        return {"scheduler": self.registry.scheduler.status(), "matches": counts}

    def add_result_listener(self, listener: Callable[[SettlementResult], None]) -> None:
        self.registry.add_listener(listener)

    def recover(self) -> list[dict[str, Any]]:
        refunds = settlement.refund_orphaned_stakes(self.registry.profiles)
        if refunds:
            logger.warning("[MATCH] Refunded %d orphaned stakes from a previous run", len(refunds))
        return refunds

    def close(self) -> None:
        self.registry.close()


def count_active(engine: MatchEngine, match_type: Optional[str] = None) -> int:
    with engine.registry.lock:
        return sum(
            1
            for m in engine.registry.matches.values()
            if m.status == MatchStatus.ACTIVE and (match_type is None or m.type == match_type)
        )

"""In-memory match records and their transition tables."""

from __future__ import annotations

from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from packages.arena_core.puzzles.generators import MAX_DIFFICULTY, Puzzle


MAX_HP = 100


class MatchStatus(str, Enum):
    OPEN = "OPEN"
    ACTIVE = "ACTIVE"
    FINISHED = "FINISHED"


MATCH_TRANSITIONS: dict[MatchStatus, frozenset[MatchStatus]] = {
    MatchStatus.OPEN: frozenset({MatchStatus.ACTIVE, MatchStatus.FINISHED}),
    MatchStatus.ACTIVE: frozenset({MatchStatus.FINISHED}),
    MatchStatus.FINISHED: frozenset(),
}


class PowerPuzzlePhase(str, Enum):
    LOCKED = "LOCKED"
    GENERATING = "GENERATING"
    READY = "READY"
    CLAIMED = "CLAIMED"


POWER_TRANSITIONS: dict[PowerPuzzlePhase, frozenset[PowerPuzzlePhase]] = {
    PowerPuzzlePhase.LOCKED: frozenset({PowerPuzzlePhase.GENERATING}),
    PowerPuzzlePhase.GENERATING: frozenset({PowerPuzzlePhase.READY}),
    PowerPuzzlePhase.READY: frozenset({PowerPuzzlePhase.CLAIMED}),
    PowerPuzzlePhase.CLAIMED: frozenset(),
}


@dataclass
class CombatantState:
    agent_id: str
    hp: int = MAX_HP
    puzzles_solved: int = 0
    difficulty: int = 1
    solving: bool = False
    solve_at: float = 0.0
    power_puzzle_available: bool = False
    power_puzzle_solving: bool = False
    power_solve_at: float = 0.0
    current_anim: str = "IDLE"
    pending_answer: Optional[str] = None

    def take_damage(self, amount: int) -> int:
        """Apply damage clamped to the hp floor and return what was actually dealt."""
        dealt = max(0, min(int(amount), self.hp))
        self.hp -= dealt
        return dealt

    def bump_difficulty(self) -> int:
        self.difficulty = min(MAX_DIFFICULTY, self.difficulty + 1)
        return self.difficulty

    @property
    def knocked_out(self) -> bool:
        return self.hp <= 0


@dataclass(frozen=True)
class Finisher:
    agent_id: str
    anim: str
    at: float


@dataclass
class MatchRound:
    players: dict[str, CombatantState]
    current_puzzle: Puzzle
    warmup_ends_at: float
    puzzle_threshold: int = 5
    onboarding_underdog: Optional[str] = None
    power_puzzle: Optional[Puzzle] = None
    power_phase: PowerPuzzlePhase = PowerPuzzlePhase.LOCKED
    power_request: Optional[Future] = None
    power_requested_at: Optional[float] = None
    tick_count: int = 0
    finisher: Optional[Finisher] = None
    log: deque = field(default_factory=lambda: deque(maxlen=100))
    anim_events: deque = field(default_factory=lambda: deque(maxlen=20))

    @property
    def order(self) -> list[str]:
        return list(self.players.keys())

    def opponent_of(self, agent_id: str) -> str:
        for other in self.players:
            if other != agent_id:
                return other
        raise KeyError(agent_id)

    def advance_power_phase(self, target: PowerPuzzlePhase) -> bool:
        if target not in POWER_TRANSITIONS[self.power_phase]:
            return False
        self.power_phase = target
        return True

    def narrate(self, agent: str, message: str, at: float) -> None:
        self.log.append({"agent": agent, "msg": message, "t": at})

    def animate(self, agent: str, anim: str, at: float, *, hit: bool = False, finisher: bool = False, dmg: int | None = None) -> None:
        event: dict[str, Any] = {"agent": agent, "anim": anim, "t": at, "hit": hit, "finisher": finisher}
        if dmg is not None:
            event["dmg"] = int(dmg)
        self.anim_events.append(event)


@dataclass
class Match:
    id: str
    type: str
    creator: str
    stake: Decimal
    created_at: float
    status: MatchStatus = MatchStatus.OPEN
    opponent: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    winner: Optional[str] = None
    voided: bool = False
    finish_reason: Optional[str] = None
    round: Optional[MatchRound] = None
    summary: Optional[dict[str, Any]] = None

    def transition(self, target: MatchStatus) -> bool:
        """Move to ``target`` if the transition table allows it; False is a no-op."""
        if target not in MATCH_TRANSITIONS[self.status]:
            return False
        self.status = target
        return True

    @property
    def parties(self) -> list[str]:
        return [aid for aid in (self.creator, self.opponent) if aid]

    @property
    def pot(self) -> Decimal:
        return self.stake * 2

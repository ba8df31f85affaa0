"""Stochastic skill model: solve chance and think time for one attempt."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import random
from typing import Optional

from .profiles import ROLE_PLAYER, AgentProfile, SkillProfile


MOOD_MODIFIERS: dict[str, dict[str, float]] = {
    "DOMINANT": {"speed": 1.08, "accuracy": 1.05, "dodge": 1.03, "collect": 1.02},
    "CONFIDENT": {"speed": 1.03, "accuracy": 1.02, "dodge": 1.01, "collect": 1.01},
    "NEUTRAL": {"speed": 1.0, "accuracy": 1.0, "dodge": 1.0, "collect": 1.0},
    "FRUSTRATED": {"speed": 0.97, "accuracy": 0.95, "dodge": 1.05, "collect": 0.98},
    "DESPERATE": {"speed": 1.10, "accuracy": 0.88, "dodge": 0.90, "collect": 0.95},
}

MIN_SOLVE_CHANCE = 0.05
UNDERDOG_CHANCE_BOOST = 0.4
UNDERDOG_CHANCE_CAP = 0.98
OVERMATCHED_CHANCE_PENALTY = 0.3
POWER_BASE_CHANCE = 0.02
POWER_ACCURACY_WEIGHT = 0.13
POWER_UNDERDOG_CHANCE = 0.45
POWER_OVERMATCHED_CHANCE = 0.01


class AttemptRole(str, Enum):
    NORMAL = "NORMAL"
    UNDERDOG = "UNDERDOG"
    OVERMATCHED = "OVERMATCHED"


@dataclass(frozen=True)
class Attempt:
    correct: bool
    chance: float


def mood_modifiers(mood: str | None) -> dict[str, float]:
    return MOOD_MODIFIERS.get(str(mood or "NEUTRAL").upper(), MOOD_MODIFIERS["NEUTRAL"])


def effective_skill(profile: AgentProfile) -> SkillProfile:
    """Base skill scaled by the agent's current mood."""
    mods = mood_modifiers(profile.mood)
    base = profile.skill
    return SkillProfile(
        speed=base.speed * mods["speed"],
        accuracy=min(1.0, base.accuracy * mods["accuracy"]),
        dodge=min(1.0, base.dodge * mods["dodge"]),
        collect=base.collect * mods["collect"],
    )


def solve_chance(accuracy: float, difficulty: int, role: AttemptRole = AttemptRole.NORMAL) -> float:
    base = max(MIN_SOLVE_CHANCE, min(1.0, float(accuracy) - int(difficulty) * 0.08))
    if role == AttemptRole.UNDERDOG:
        return min(UNDERDOG_CHANCE_CAP, base + UNDERDOG_CHANCE_BOOST)
    if role == AttemptRole.OVERMATCHED:
        return max(MIN_SOLVE_CHANCE, base - OVERMATCHED_CHANCE_PENALTY)
    return base


def think_time_ms(
    difficulty: int,
    role: AttemptRole,
    rng: random.Random,
    speed_multiplier: float = 1.0,
) -> float:
    d = int(difficulty)
    if role == AttemptRole.UNDERDOG:
        return 400 + d * 150 + rng.uniform(0, 300)
    if role == AttemptRole.OVERMATCHED:
        return 1500 + d * 600 + rng.uniform(0, 1200)
    return (800 + d * 400 + rng.uniform(0, 600)) / max(0.1, float(speed_multiplier))


def power_solve_chance(accuracy: float, role: AttemptRole = AttemptRole.NORMAL) -> float:
    if role == AttemptRole.UNDERDOG:
        return POWER_UNDERDOG_CHANCE
    if role == AttemptRole.OVERMATCHED:
        return POWER_OVERMATCHED_CHANCE
    return POWER_BASE_CHANCE + float(accuracy) * POWER_ACCURACY_WEIGHT


def roll_attempt(
    rng: random.Random,
    *,
    accuracy: float,
    difficulty: int,
    role: AttemptRole = AttemptRole.NORMAL,
) -> Attempt:
    """One simulated solve of the current puzzle; draws a single value from ``rng``."""
    chance = solve_chance(accuracy, difficulty, role)
    return Attempt(correct=rng.random() < chance, chance=chance)


def _is_first_timer(profile: AgentProfile) -> bool:
    return profile.role == ROLE_PLAYER and profile.wins == 0 and profile.losses == 0


def onboarding_underdog(creator: AgentProfile, opponent: AgentProfile) -> Optional[str]:
    """Agent id that gets the one-time first-match boost, or None.

    Only a player-role profile with no completed matches qualifies, and only
    when exactly one of the two parties does.
    """
    flagged = [p.agent_id for p in (creator, opponent) if _is_first_timer(p)]
    if len(flagged) != 1:
        return None
    return flagged[0]


def attempt_role(agent_id: str, underdog: Optional[str]) -> AttemptRole:
    if underdog is None:
        return AttemptRole.NORMAL
    return AttemptRole.UNDERDOG if agent_id == underdog else AttemptRole.OVERMATCHED

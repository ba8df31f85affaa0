"""Agent profile contract consumed and mutated by the match engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Optional
import threading

from .errors import InsufficientFunds, UnknownAgent


RECENT_RESULTS_CAPACITY = 10
MOODS = ("DOMINANT", "CONFIDENT", "NEUTRAL", "FRUSTRATED", "DESPERATE")
ROLE_PLAYER = "player"
ROLE_NPC = "npc"


@dataclass(frozen=True)
class SkillProfile:
    speed: float = 6.5
    accuracy: float = 0.85
    dodge: float = 0.82
    collect: float = 0.82

    def as_dict(self) -> dict[str, float]:
        return {"speed": self.speed, "accuracy": self.accuracy, "dodge": self.dodge, "collect": self.collect}


@dataclass
class AgentProfile:
    agent_id: str
    display_name: str = ""
    role: str = ROLE_NPC
    coins: Decimal = Decimal("0")
    wins: int = 0
    losses: int = 0
    streak: int = 0
    recent_results: list[str] = field(default_factory=list)
    mood: str = "NEUTRAL"
    skill: SkillProfile = field(default_factory=SkillProfile)
    unlocked: set[str] = field(default_factory=set)

    @property
    def games_played(self) -> int:
        return self.wins + self.losses


@dataclass(frozen=True)
class UnlockTier:
    key: str
    name: str
    min_wins: int
    min_games: int


UNLOCK_TIERS: tuple[UnlockTier, ...] = (
    UnlockTier("PHOENIX_STRIKER", "Phoenix Striker", 3, 5),
    UnlockTier("VOID_PHANTOM", "Void Phantom", 5, 8),
    UnlockTier("CRYSTAL_SENTINEL", "Crystal Sentinel", 7, 12),
    UnlockTier("THUNDER_KING", "Thunder King", 10, 15),
)


DEFAULT_ROSTER: tuple[AgentProfile, ...] = (
    AgentProfile("BLAZE", "Blaze", ROLE_NPC, Decimal("0.05"), skill=SkillProfile(7.5, 0.82, 0.78, 0.85)),
    AgentProfile("FROST", "Frost", ROLE_NPC, Decimal("0.05"), skill=SkillProfile(5.5, 0.94, 0.90, 0.75)),
    AgentProfile("VOLT", "Volt", ROLE_NPC, Decimal("0.05"), skill=SkillProfile(8.2, 0.72, 0.70, 0.90)),
    AgentProfile("SHADE", "Shade", ROLE_NPC, Decimal("0.05"), skill=SkillProfile(6.0, 0.88, 0.85, 0.80)),
    AgentProfile("YOU", "You", ROLE_PLAYER, Decimal("0.01"), skill=SkillProfile(6.5, 0.85, 0.82, 0.82)),
)


def derive_mood(wins: int, losses: int, streak: int) -> str:
    total = wins + losses
    win_rate = wins / total if total > 0 else 0.5
    if streak >= 3 or (total >= 5 and win_rate >= 0.7):
        return "DOMINANT"
    if streak >= 1 or (total >= 3 and win_rate >= 0.55):
        return "CONFIDENT"
    if streak <= -4 or (total >= 5 and win_rate < 0.2):
        return "DESPERATE"
    if streak <= -2 or (total >= 3 and win_rate < 0.35):
        return "FRUSTRATED"
    return "NEUTRAL"


def next_streak(streak: int, won: bool) -> int:
    if won:
        return streak + 1 if streak > 0 else 1
    return streak - 1 if streak < 0 else -1


def apply_result(profile: AgentProfile, won: bool, capacity: int = RECENT_RESULTS_CAPACITY) -> AgentProfile:
    """Return a copy of ``profile`` with one more win or loss folded in."""
    wins = profile.wins + (1 if won else 0)
    losses = profile.losses + (0 if won else 1)
    streak = next_streak(profile.streak, won)
    recent = (list(profile.recent_results) + ["W" if won else "L"])[-max(1, capacity):]
    return replace(
        profile,
        wins=wins,
        losses=losses,
        streak=streak,
        recent_results=recent,
        mood=derive_mood(wins, losses, streak),
        unlocked=set(profile.unlocked),
    )


def eligible_unlocks(profile: AgentProfile) -> list[UnlockTier]:
    return [
        tier
        for tier in UNLOCK_TIERS
        if profile.wins >= tier.min_wins and profile.games_played >= tier.min_games
    ]


def profile_public(profile: AgentProfile) -> dict[str, Any]:
    return {
        "agent_id": profile.agent_id,
        "display_name": profile.display_name or profile.agent_id,
        "role": profile.role,
        "coins": str(profile.coins),
        "wins": profile.wins,
        "losses": profile.losses,
        "games_played": profile.games_played,
        "streak": profile.streak,
        "recent_results": list(profile.recent_results),
        "mood": profile.mood,
        "unlocked": sorted(profile.unlocked),
    }


class AgentProfileStore(ABC):
    @abstractmethod
    def get_profile(self, agent_id: str) -> Optional[AgentProfile]:
        raise NotImplementedError

    @abstractmethod
    def list_profiles(self) -> list[AgentProfile]:
        raise NotImplementedError

    @abstractmethod
    def upsert_profile(self, profile: AgentProfile) -> AgentProfile:
        raise NotImplementedError

    @abstractmethod
    def debit(self, agent_id: str, amount: Decimal) -> Decimal:
        """Atomically check and subtract ``amount``; raise InsufficientFunds without mutating."""
        raise NotImplementedError

    @abstractmethod
    def credit(self, agent_id: str, amount: Decimal) -> Decimal:
        raise NotImplementedError

    @abstractmethod
    def record_result(self, agent_id: str, won: bool, capacity: int = RECENT_RESULTS_CAPACITY) -> AgentProfile:
        raise NotImplementedError

    @abstractmethod
    def grant_unlock(self, agent_id: str, key: str) -> bool:
        """Add ``key`` to the agent's unlocks; True only for the call that added it."""
        raise NotImplementedError

    @abstractmethod
    def hold_stake(self, match_id: str, agent_id: str, amount: Decimal) -> None:
        raise NotImplementedError

    @abstractmethod
    def pay_out(self, match_id: str, agent_id: str, amount: Decimal) -> list[dict[str, Any]]:
        """Clear the match's escrow and credit ``amount`` to ``agent_id`` in one transaction.

        Returns the escrow rows that were cleared.
        """
        raise NotImplementedError

    @abstractmethod
    def refund_stakes(self, match_id: str) -> list[dict[str, Any]]:
        """Clear the match's escrow and credit each row back to its holder in one transaction."""
        raise NotImplementedError

    @abstractmethod
    def list_held_stakes(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    def require_profile(self, agent_id: str) -> AgentProfile:
        profile = self.get_profile(agent_id)
        if profile is None:
            raise UnknownAgent(f"Unknown agent: {agent_id}")
        return profile

    def seed(self, roster: tuple[AgentProfile, ...] = DEFAULT_ROSTER) -> int:
        created = 0
        for template in roster:
            if self.get_profile(template.agent_id) is None:
                self.upsert_profile(replace(template, recent_results=[], unlocked=set()))
                created += 1
        return created


class InMemoryProfileStore(AgentProfileStore):
    def __init__(self, profiles: list[AgentProfile] | None = None) -> None:
        self._profiles: dict[str, AgentProfile] = {}
        self._escrow: dict[str, dict[str, Decimal]] = {}
        self._lock = threading.RLock()
        for profile in profiles or []:
            self.upsert_profile(profile)

    def get_profile(self, agent_id: str) -> Optional[AgentProfile]:
        with self._lock:
            found = self._profiles.get(str(agent_id))
            if found is None:
                return None
            return replace(found, recent_results=list(found.recent_results), unlocked=set(found.unlocked))

    def list_profiles(self) -> list[AgentProfile]:
        with self._lock:
            return [self.get_profile(aid) for aid in sorted(self._profiles)]

    def upsert_profile(self, profile: AgentProfile) -> AgentProfile:
        with self._lock:
            self._profiles[profile.agent_id] = replace(
                profile,
                coins=Decimal(profile.coins),
                recent_results=list(profile.recent_results),
                unlocked=set(profile.unlocked),
            )
            return self.get_profile(profile.agent_id)

    def debit(self, agent_id: str, amount: Decimal) -> Decimal:
        with self._lock:
            profile = self._stored(agent_id)
            if profile.coins < amount:
                raise InsufficientFunds(agent_id, profile.coins, amount)
            profile.coins -= amount
            return profile.coins

    def credit(self, agent_id: str, amount: Decimal) -> Decimal:
        with self._lock:
            profile = self._stored(agent_id)
            profile.coins += amount
            return profile.coins

    def record_result(self, agent_id: str, won: bool, capacity: int = RECENT_RESULTS_CAPACITY) -> AgentProfile:
        with self._lock:
            updated = apply_result(self._stored(agent_id), won, capacity)
            self._profiles[agent_id] = updated
            return self.get_profile(agent_id)

    def grant_unlock(self, agent_id: str, key: str) -> bool:
        with self._lock:
            profile = self._stored(agent_id)
            if key in profile.unlocked:
                return False
            profile.unlocked.add(key)
            return True

    def hold_stake(self, match_id: str, agent_id: str, amount: Decimal) -> None:
        with self._lock:
            self._escrow.setdefault(str(match_id), {})[str(agent_id)] = Decimal(amount)

    def pay_out(self, match_id: str, agent_id: str, amount: Decimal) -> list[dict[str, Any]]:
        with self._lock:
            profile = self._stored(agent_id)
            released = self._pop_escrow(match_id)
            profile.coins += amount
            return released

    def refund_stakes(self, match_id: str) -> list[dict[str, Any]]:
        with self._lock:
            held = self._escrow.get(str(match_id), {})
            holders = [self._stored(aid) for aid in held]
            released = self._pop_escrow(match_id)
            for profile, item in zip(holders, released):
                profile.coins += item["amount"]
            return released

    def _pop_escrow(self, match_id: str) -> list[dict[str, Any]]:
        held = self._escrow.pop(str(match_id), {})
        return [{"match_id": str(match_id), "agent_id": aid, "amount": amt} for aid, amt in held.items()]

    def list_held_stakes(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"match_id": mid, "agent_id": aid, "amount": amt}
                for mid, held in self._escrow.items()
                for aid, amt in held.items()
            ]

    def _stored(self, agent_id: str) -> AgentProfile:
        profile = self._profiles.get(str(agent_id))
        if profile is None:
            raise UnknownAgent(f"Unknown agent: {agent_id}")
        return profile

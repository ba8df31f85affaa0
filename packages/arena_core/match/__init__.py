"""Match engine for head-to-head puzzle duels."""

from .config import MATCH_TYPES, EngineConfig
from .engine import MatchEngine, count_active
from .errors import (
    ArenaError,
    InsufficientFunds,
    InvalidMatchType,
    MatchNotActive,
    MatchNotFound,
    MatchNotOpen,
    NotAParticipant,
    OracleUnavailable,
    SelfChallenge,
    UnknownAgent,
)
from .models import MAX_HP, CombatantState, Finisher, Match, MatchRound, MatchStatus, PowerPuzzlePhase
from .profiles import (
    DEFAULT_ROSTER,
    UNLOCK_TIERS,
    AgentProfile,
    AgentProfileStore,
    InMemoryProfileStore,
    SkillProfile,
    derive_mood,
    next_streak,
    profile_public,
)
from .registry import MatchRegistry
from .settlement import SettlementResult, refund_orphaned_stakes, settle, void_open_match
from .views import project_match

__all__ = [
    "MATCH_TYPES",
    "EngineConfig",
    "MatchEngine",
    "count_active",
    "ArenaError",
    "InsufficientFunds",
    "InvalidMatchType",
    "MatchNotActive",
    "MatchNotFound",
    "MatchNotOpen",
    "NotAParticipant",
    "OracleUnavailable",
    "SelfChallenge",
    "UnknownAgent",
    "MAX_HP",
    "CombatantState",
    "Finisher",
    "Match",
    "MatchRound",
    "MatchStatus",
    "PowerPuzzlePhase",
    "DEFAULT_ROSTER",
    "UNLOCK_TIERS",
    "AgentProfile",
    "AgentProfileStore",
    "InMemoryProfileStore",
    "SkillProfile",
    "derive_mood",
    "next_streak",
    "profile_public",
    "MatchRegistry",
    "SettlementResult",
    "refund_orphaned_stakes",
    "settle",
    "void_open_match",
    "project_match",
]

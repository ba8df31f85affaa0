"""Create, accept, and expire matches."""

from __future__ import annotations

from collections import deque
from decimal import Decimal, InvalidOperation
import logging
from typing import Any, Optional
import uuid

from .config import MATCH_TYPES
from .errors import InvalidMatchType, MatchNotOpen, SelfChallenge
from .models import CombatantState, Match, MatchRound, MatchStatus
from .resolution import next_puzzle, tick_match
from .settlement import SettlementResult, void_open_match
from .skill import onboarding_underdog


logger = logging.getLogger("arena_core.match.lifecycle")


def _normalize_type(match_type: Any) -> str:
    value = str(match_type or "").strip().upper()
    if value not in MATCH_TYPES:
        raise InvalidMatchType(f"Unsupported challenge type: {match_type}")
    return value


def _normalize_stake(stake: Any, minimum: Decimal) -> Decimal:
    try:
        amount = Decimal(str(stake))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid stake: {stake}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid stake: {stake}")
    return max(minimum, amount)


def create_match(registry, creator: str, stake: Any, match_type: str = "BEAM_BATTLE") -> Match:
    with registry.lock:
        kind = _normalize_type(match_type)
        amount = _normalize_stake(stake, registry.config.min_stake)
        registry.profiles.require_profile(creator)
        registry.profiles.debit(creator, amount)

        match = Match(
            id=f"ch_{uuid.uuid4().hex[:12]}",
            type=kind,
            creator=creator,
            stake=amount,
            created_at=registry.now(),
        )
        registry.profiles.hold_stake(match.id, creator, amount)
        registry.add_match(match)
        registry.scheduler.call_later(
            match.id,
            registry.config.open_expiry_seconds,
            lambda: expire_match(registry, match.id),
            kind="expiry",
        )
        logger.info("[MATCH] %s opened %s %s for %s", creator, kind, match.id, amount)
        return match


def accept_match(registry, match_id: str, opponent: str) -> Match:
    with registry.lock:
        match = registry.get(match_id)
        if match.status != MatchStatus.OPEN:
            raise MatchNotOpen(f"Challenge is not open: {match_id}")
        if opponent == match.creator:
            raise SelfChallenge("Cannot accept your own challenge")
        creator_profile = registry.profiles.require_profile(match.creator)
        opponent_profile = registry.profiles.require_profile(opponent)
        registry.profiles.debit(opponent, match.stake)
        registry.profiles.hold_stake(match.id, opponent, match.stake)

        now = registry.now()
        config = registry.config
        match.transition(MatchStatus.ACTIVE)
        match.opponent = opponent
        match.started_at = now
        match.round = MatchRound(
            players={
                match.creator: CombatantState(agent_id=match.creator),
                opponent: CombatantState(agent_id=opponent),
            },
            current_puzzle=next_puzzle(registry, 1),
            warmup_ends_at=now + config.warmup_seconds,
            puzzle_threshold=config.puzzle_threshold,
            onboarding_underdog=onboarding_underdog(creator_profile, opponent_profile),
            log=deque(maxlen=max(1, config.log_capacity)),
            anim_events=deque(maxlen=max(1, config.anim_capacity)),
        )
        match.round.narrate("SYSTEM", f"{match.creator} vs {opponent}! Fight starts soon.", now)

        registry.scheduler.cancel(match.id, "expiry")
        registry.scheduler.schedule_repeating(
            match.id,
            config.tick_interval_seconds,
            lambda: tick_match(registry, match),
            kind="tick",
        )
        logger.info(
            "[MATCH] %s accepted %s from %s (underdog=%s)",
            opponent,
            match.id,
            match.creator,
            match.round.onboarding_underdog,
        )
        return match


def expire_match(registry, match_id: str) -> Optional[SettlementResult]:
    match = registry.find(match_id)
    if match is None:
        return None
    return void_open_match(registry, match, "expired")

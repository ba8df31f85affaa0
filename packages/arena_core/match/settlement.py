"""Exactly-once settlement and void handling for matches."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import logging
from typing import Any, Optional

from .models import Match, MatchStatus
from .profiles import AgentProfileStore, eligible_unlocks
from .views import project_round


logger = logging.getLogger("arena_core.match.settlement")


@dataclass(frozen=True)
class SettlementResult:
    match_id: str
    match_type: str
    creator: str
    opponent: Optional[str]
    winner: Optional[str]
    loser: Optional[str]
    stake: Decimal
    payout: Decimal
    reason: str
    voided: bool
    finished_at: float
    unlocks: tuple[str, ...] = field(default_factory=tuple)

    def as_dict(self) -> dict[str, Any]:
        return {
            "match_id": self.match_id,
            "match_type": self.match_type,
            "creator": self.creator,
            "opponent": self.opponent,
            "winner": self.winner,
            "loser": self.loser,
            "stake": str(self.stake),
            "payout": str(self.payout),
            "reason": self.reason,
            "voided": self.voided,
            "finished_at": self.finished_at,
            "unlocks": list(self.unlocks),
        }


def settle(registry, match: Match, winner: str, reason: str) -> Optional[SettlementResult]:
    """Close an ACTIVE match for ``winner``. Any call after the first is a no-op returning None."""
    with registry.lock:
        if match.status != MatchStatus.ACTIVE or winner not in match.parties:
            return None
        if not match.transition(MatchStatus.FINISHED):
            return None
        now = registry.now()
        loser = match.opponent if winner == match.creator else match.creator
        match.winner = winner
        match.finished_at = now
        match.finish_reason = reason
        registry.scheduler.cancel(match.id)

        store: AgentProfileStore = registry.profiles
        payout = match.pot
        # Clears escrow and credits the pot in one store transaction.
        store.pay_out(match.id, winner, payout)
        capacity = registry.config.recent_results_capacity
        winner_profile = store.record_result(winner, True, capacity)
        if loser:
            store.record_result(loser, False, capacity)

        granted: list[str] = []
        for tier in eligible_unlocks(winner_profile):
            if store.grant_unlock(winner, tier.key):
                granted.append(tier.key)
                logger.info("[MATCH] %s unlocked %s", winner, tier.key)

        if match.round is not None:
            match.round.narrate("SYSTEM", f"{winner} wins by {reason}", now)
            match.summary = project_round(match.round)
        match.round = None

        result = SettlementResult(
            match_id=match.id,
            match_type=match.type,
            creator=match.creator,
            opponent=match.opponent,
            winner=winner,
            loser=loser,
            stake=match.stake,
            payout=payout,
            reason=reason,
            voided=False,
            finished_at=now,
            unlocks=tuple(granted),
        )
        logger.info("[MATCH] Settled %s: winner=%s reason=%s payout=%s", match.id, winner, reason, payout)
        registry.notify(result)
        registry.prune_finished()
        return result


def void_open_match(registry, match: Match, reason: str = "expired") -> Optional[SettlementResult]:
    """Refund the creator of an OPEN match and close it with no winner. Streaks are untouched."""
    with registry.lock:
        if match.status != MatchStatus.OPEN:
            return None
        if not match.transition(MatchStatus.FINISHED):
            return None
        now = registry.now()
        match.voided = True
        match.finished_at = now
        match.finish_reason = reason
        registry.scheduler.cancel(match.id)
        registry.profiles.refund_stakes(match.id)
        result = SettlementResult(
            match_id=match.id,
            match_type=match.type,
            creator=match.creator,
            opponent=match.opponent,
            winner=None,
            loser=None,
            stake=match.stake,
            payout=match.stake,
            reason=reason,
            voided=True,
            finished_at=now,
        )
        logger.info("[MATCH] Voided %s (%s); refunded %s to %s", match.id, reason, match.stake, match.creator)
        registry.notify(result)
        registry.prune_finished()
        return result


def refund_orphaned_stakes(store: AgentProfileStore) -> list[dict[str, Any]]:
    """Return every escrowed stake to its holder.

    Matches live only in memory, so anything still in escrow at process start
    belongs to a match that died with the previous process.
    """
    refunds: list[dict[str, Any]] = []
    match_ids = sorted({str(item["match_id"]) for item in store.list_held_stakes()})
    for match_id in match_ids:
        for item in store.refund_stakes(match_id):
            amount = Decimal(item["amount"])
            refunds.append({"match_id": match_id, "agent_id": str(item["agent_id"]), "amount": amount})
            logger.warning("[MATCH] Refunded orphaned stake %s to %s (match %s)", amount, item["agent_id"], match_id)
    return refunds

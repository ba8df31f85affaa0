"""Presentation-safe projections of match state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from .models import Match, MatchRound


RECENT_ANIM_EVENTS = 10
RECENT_LOG_ENTRIES = 20


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")


def project_round(round_: MatchRound) -> dict[str, Any]:
    players: dict[str, Any] = {}
    for agent_id, state in round_.players.items():
        players[agent_id] = {
            "hp": state.hp,
            "puzzles_solved": state.puzzles_solved,
            "difficulty": state.difficulty,
            "solving": state.solving,
            "current_anim": state.current_anim,
            "power_puzzle_available": state.power_puzzle_available,
            "power_puzzle_solving": state.power_puzzle_solving,
        }
    power = None
    if round_.power_puzzle is not None:
        power = {"question": round_.power_puzzle.question, "type": round_.power_puzzle.type}
    finisher = None
    if round_.finisher is not None:
        finisher = {
            "agent_id": round_.finisher.agent_id,
            "anim": round_.finisher.anim,
            "at": _iso(round_.finisher.at),
        }
    return {
        "players": players,
        "current_puzzle": round_.current_puzzle.public(),
        "power_puzzle": power,
        "power_phase": round_.power_phase.value,
        "tick_count": round_.tick_count,
        "puzzle_threshold": round_.puzzle_threshold,
        "warmup_ends_at": _iso(round_.warmup_ends_at),
        "finisher": finisher,
        "anim_events": [
            {**event, "t": _iso(event.get("t"))} for event in list(round_.anim_events)[-RECENT_ANIM_EVENTS:]
        ],
        "log": [{**entry, "t": _iso(entry.get("t"))} for entry in list(round_.log)[-RECENT_LOG_ENTRIES:]],
    }


def project_match(match: Match) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": match.id,
        "type": match.type,
        "status": match.status.value,
        "creator": match.creator,
        "opponent": match.opponent,
        "stake": str(match.stake),
        "winner": match.winner,
        "voided": match.voided,
        "finish_reason": match.finish_reason,
        "created_at": _iso(match.created_at),
        "started_at": _iso(match.started_at),
        "finished_at": _iso(match.finished_at),
        "game": None,
    }
    if match.round is not None:
        out["game"] = project_round(match.round)
    elif match.summary is not None:
        out["game"] = match.summary
    return out

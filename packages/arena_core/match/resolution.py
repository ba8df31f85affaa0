"""Per-tick resolution of an ACTIVE match.

Both combatants race the same ``current_puzzle``. Each tick walks the
combatants in creator/opponent order and for each one runs the power track,
the main track, re-arming, and power-puzzle enrollment. The first terminal
event (knockout, finisher, timeout) ends the tick.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from packages.arena_core.puzzles.generators import Puzzle, generate_local
from packages.arena_core.puzzles.oracle import OracleUnavailable

from .errors import MatchNotActive, NotAParticipant
from .models import CombatantState, Finisher, Match, MatchStatus, PowerPuzzlePhase
from .profiles import AgentProfile
from .settlement import settle
from .skill import (
    AttemptRole,
    attempt_role,
    effective_skill,
    mood_modifiers,
    power_solve_chance,
    roll_attempt,
    think_time_ms,
)


logger = logging.getLogger("arena_core.match.resolution")

FIGHT_ANIMS: dict[str, tuple[str, ...]] = {
    "BEAM_BATTLE": (
        "BEAM_SHOT",
        "BEAM_CHARGE",
        "DODGE_LEFT",
        "DODGE_RIGHT",
        "SHIELD_UP",
        "COUNTER_BEAM",
        "RAPID_FIRE",
        "POWER_CHARGE",
    ),
}
EVASIVE_MARKERS = ("DODGE", "SHIELD", "BLOCK")
FINISHER_ANIM = "KAMEHAMEHA"
HIT_REACT_ANIM = "HIT_REACT"
COUNTER_ANIM = "PUNCH_JAB"
COSMETIC_EVERY_TICKS = 3
HIT_DAMAGE = (8, 15)
COUNTER_DAMAGE = (3, 7)
POWER_RETRY_SECONDS = (3.0, 7.0)
POWER_ENROLL_SECONDS = (5.0, 10.0)


def _anim_sets(match_type: str) -> tuple[tuple[str, ...], tuple[str, ...]]:
    anims = FIGHT_ANIMS.get(match_type) or FIGHT_ANIMS["BEAM_BATTLE"]
    attack = tuple(a for a in anims if not any(marker in a for marker in EVASIVE_MARKERS))
    evasive = tuple(a for a in anims if any(marker in a for marker in EVASIVE_MARKERS))
    return attack or (COUNTER_ANIM,), evasive or anims


def _combat_stats(profile: Optional[AgentProfile], role: AttemptRole) -> tuple[float, float, float]:
    """(accuracy, dodge, speed multiplier) for this tick; mood only applies outside onboarding."""
    if profile is None:
        return 0.85, 0.82, 1.0
    if role != AttemptRole.NORMAL:
        return profile.skill.accuracy, profile.skill.dodge, 1.0
    skill = effective_skill(profile)
    return skill.accuracy, skill.dodge, mood_modifiers(profile.mood)["speed"]


def _wrong_answer(puzzle: Puzzle) -> str:
    return f"{puzzle.answer}?"


def next_puzzle(registry, difficulty: int) -> Puzzle:
    try:
        return registry.oracle.generate(difficulty)
    except OracleUnavailable as exc:
        logger.warning("[MATCH] Oracle unavailable, using local puzzle: %s", exc)
    except Exception as exc:
        logger.exception("[MATCH] Oracle generate failed, using local puzzle: %s", exc)
    return generate_local(difficulty, registry.rng)


def _request_power_puzzle(registry, match: Match, now: float) -> None:
    rnd = match.round
    if not rnd.advance_power_phase(PowerPuzzlePhase.GENERATING):
        return
    rnd.power_requested_at = now
    try:
        rnd.power_request = registry.oracle.request_power_puzzle(scope_id=match.id)
    except Exception as exc:
        logger.warning("[MATCH] Power puzzle request failed for %s: %s", match.id, exc)
        rnd.power_request = None
    rnd.narrate("SYSTEM", "POWER PUZZLE unlocking...", now)
    _poll_power_request(registry, match, now)


def _poll_power_request(registry, match: Match, now: float) -> None:
    rnd = match.round
    if rnd.power_phase != PowerPuzzlePhase.GENERATING:
        return
    future = rnd.power_request
    puzzle: Optional[Puzzle] = None
    if future is None:
        puzzle = registry.oracle.fallback_power_puzzle()
    elif future.done():
        try:
            puzzle = future.result()
        except Exception as exc:
            logger.warning("[MATCH] Power puzzle generation failed for %s: %s", match.id, exc)
            puzzle = registry.oracle.fallback_power_puzzle()
    elif rnd.power_requested_at is not None and now - rnd.power_requested_at >= registry.config.power_request_timeout_seconds:
        logger.warning("[MATCH] Power puzzle request timed out for %s, using local fallback", match.id)
        future.cancel()
        puzzle = registry.oracle.fallback_power_puzzle()
    if puzzle is None:
        return
    rnd.power_puzzle = puzzle
    rnd.power_request = None
    rnd.advance_power_phase(PowerPuzzlePhase.READY)
    rnd.narrate("SYSTEM", "POWER PUZZLE ready! First to solve it wins instantly.", now)


def _cosmetic_animations(registry, match: Match, stats: dict[str, tuple[float, float, float]], now: float) -> None:
    rnd = match.round
    attack, evasive = _anim_sets(match.type)
    for agent_id in rnd.order:
        dodge = stats[agent_id][1]
        pool = evasive if registry.rng.random() < dodge * 0.5 else attack
        anim = registry.rng.choice(pool)
        rnd.players[agent_id].current_anim = anim
        rnd.animate(agent_id, anim, now)


def _arm_attempt(registry, match: Match, state: CombatantState, role: AttemptRole, speed: float, now: float) -> None:
    think_ms = think_time_ms(match.round.current_puzzle.difficulty, role, registry.rng, speed)
    state.solving = True
    state.solve_at = now + think_ms / 1000.0


def _power_track(registry, match: Match, agent_id: str, role: AttemptRole, accuracy: float, now: float) -> bool:
    rnd = match.round
    state = rnd.players[agent_id]
    if rnd.power_puzzle is None or not state.power_puzzle_solving or now < state.power_solve_at:
        return False
    state.power_puzzle_solving = False
    chance = power_solve_chance(accuracy, role)
    answer = rnd.power_puzzle.answer if registry.rng.random() < chance else _wrong_answer(rnd.power_puzzle)
    if registry.oracle.verify(rnd.power_puzzle, answer) and rnd.advance_power_phase(PowerPuzzlePhase.CLAIMED):
        opponent = rnd.opponent_of(agent_id)
        rnd.finisher = Finisher(agent_id=agent_id, anim=FINISHER_ANIM, at=now)
        state.current_anim = FINISHER_ANIM
        rnd.animate(agent_id, FINISHER_ANIM, now, hit=True, finisher=True)
        rnd.narrate(agent_id, f"SOLVED POWER PUZZLE! FINISHING MOVE: {FINISHER_ANIM}!!!", now)
        rnd.narrate("SYSTEM", f"{agent_id} unleashes {FINISHER_ANIM} on {opponent}!", now)
        registry.scheduler.call_later(
            match.id,
            registry.config.finisher_grace_seconds,
            lambda: settle(registry, match, agent_id, "finisher"),
            kind="finisher",
        )
        logger.info("[MATCH] Finisher claimed in %s by %s", match.id, agent_id)
        return True
    rnd.narrate(agent_id, "Power puzzle attempt failed! Retrying...", now)
    state.power_puzzle_solving = True
    state.power_solve_at = now + registry.rng.uniform(*POWER_RETRY_SECONDS)
    return False


def _main_track(registry, match: Match, agent_id: str, role: AttemptRole, accuracy: float, now: float) -> bool:
    rnd = match.round
    state = rnd.players[agent_id]
    if not state.solving or now < state.solve_at:
        return False
    state.solving = False
    puzzle = rnd.current_puzzle
    if state.pending_answer is not None:
        answer, state.pending_answer = state.pending_answer, None
    else:
        attempt = roll_attempt(registry.rng, accuracy=accuracy, difficulty=puzzle.difficulty, role=role)
        answer = puzzle.answer if attempt.correct else _wrong_answer(puzzle)

    opponent = rnd.opponent_of(agent_id)
    opp_state = rnd.players[opponent]
    if registry.oracle.verify(puzzle, answer):
        state.puzzles_solved += 1
        dealt = opp_state.take_damage(registry.rng.randint(*HIT_DAMAGE))
        attack, _ = _anim_sets(match.type)
        anim = registry.rng.choice(attack)
        state.current_anim = anim
        opp_state.current_anim = HIT_REACT_ANIM
        rnd.animate(agent_id, anim, now, hit=True, dmg=dealt)
        rnd.animate(opponent, HIT_REACT_ANIM, now)
        rnd.narrate(agent_id, f"Solved puzzle! {anim} deals {dealt} dmg to {opponent} ({opp_state.hp} HP)", now)

        state.bump_difficulty()
        rnd.current_puzzle = next_puzzle(registry, max(state.difficulty, opp_state.difficulty))
        if state.puzzles_solved >= rnd.puzzle_threshold and rnd.power_phase == PowerPuzzlePhase.LOCKED:
            _request_power_puzzle(registry, match, now)
        if opp_state.knocked_out:
            settle(registry, match, agent_id, "knockout")
            return True
        return False

    dealt = state.take_damage(registry.rng.randint(*COUNTER_DAMAGE))
    rnd.animate(opponent, COUNTER_ANIM, now, hit=True, dmg=dealt)
    rnd.animate(agent_id, HIT_REACT_ANIM, now)
    rnd.narrate(agent_id, f"Wrong answer! {opponent} counters for {dealt} dmg", now)
    if state.knocked_out:
        settle(registry, match, opponent, "knockout")
        return True
    return False


def _enroll_power(registry, match: Match, agent_id: str, now: float) -> None:
    rnd = match.round
    state = rnd.players[agent_id]
    if rnd.power_puzzle is None or state.power_puzzle_available:
        return
    state.power_puzzle_available = True
    state.power_puzzle_solving = True
    state.power_solve_at = now + registry.rng.uniform(*POWER_ENROLL_SECONDS)
    rnd.narrate(agent_id, "Attempting POWER PUZZLE...", now)


def _timeout_winner(registry, match: Match) -> tuple[str, str]:
    first, second = match.round.order
    a, b = match.round.players[first], match.round.players[second]
    if a.hp != b.hp:
        return (first if a.hp > b.hp else second), "more HP"
    if a.puzzles_solved != b.puzzles_solved:
        return (first if a.puzzles_solved > b.puzzles_solved else second), "more puzzles solved"
    return registry.rng.choice([first, second]), "coin flip"


def tick_match(registry, match: Match) -> bool:
    """Advance one match by one firing. Returns False once the timer should retire."""
    with registry.lock:
        if match.status != MatchStatus.ACTIVE or match.round is None:
            return False
        rnd = match.round
        if rnd.finisher is not None:
            return True
        now = registry.now()
        if now < rnd.warmup_ends_at:
            return True

        rnd.tick_count += 1
        _poll_power_request(registry, match, now)

        roles: dict[str, AttemptRole] = {}
        stats: dict[str, tuple[float, float, float]] = {}
        for agent_id in rnd.order:
            roles[agent_id] = attempt_role(agent_id, rnd.onboarding_underdog)
            stats[agent_id] = _combat_stats(registry.profiles.get_profile(agent_id), roles[agent_id])

        if rnd.tick_count % COSMETIC_EVERY_TICKS == 0:
            _cosmetic_animations(registry, match, stats, now)

        for agent_id in rnd.order:
            role = roles[agent_id]
            accuracy, _, speed = stats[agent_id]
            if _power_track(registry, match, agent_id, role, accuracy, now):
                return True
            if _main_track(registry, match, agent_id, role, accuracy, now):
                return False
            state = rnd.players[agent_id]
            if not state.solving:
                _arm_attempt(registry, match, state, role, speed, now)
            _enroll_power(registry, match, agent_id, now)

        if rnd.tick_count >= registry.config.max_ticks:
            winner, rule = _timeout_winner(registry, match)
            rnd.narrate("SYSTEM", f"Time's up! {winner} wins on {rule}.", now)
            settle(registry, match, winner, "timeout")
            return False
        return True


def submit_answer(registry, match_id: str, agent_id: str, answer: Any) -> Match:
    """Queue an externally supplied answer; it replaces the next simulated attempt of that combatant."""
    with registry.lock:
        match = registry.get(match_id)
        if match.status != MatchStatus.ACTIVE or match.round is None:
            raise MatchNotActive(f"Challenge is not active: {match_id}")
        if agent_id not in match.round.players:
            raise NotAParticipant(f"{agent_id} is not fighting in {match_id}")
        match.round.players[agent_id].pending_answer = str(answer)
        match.round.narrate(agent_id, "Locked in an answer", registry.now())
        return match

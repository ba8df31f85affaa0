#!/usr/bin/env python3

from __future__ import annotations

from concurrent.futures import Future
from decimal import Decimal
import random
import unittest

from packages.arena_core.match import (
    MAX_HP,
    AgentProfile,
    EngineConfig,
    InMemoryProfileStore,
    MatchEngine,
    MatchNotActive,
    MatchStatus,
    NotAParticipant,
    PowerPuzzlePhase,
    SkillProfile,
)
from packages.arena_core.match.resolution import tick_match
from packages.arena_core.puzzles.generators import Puzzle
from packages.arena_core.puzzles.oracle import LocalPuzzleOracle


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class AlwaysLowRandom(random.Random):
    """Every probability roll succeeds; uniform() returns its lower bound."""

    def random(self) -> float:
        return 0.0


class PendingPowerOracle(LocalPuzzleOracle):
    def __init__(self, rng: random.Random) -> None:
        super().__init__(rng)
        self.power_requests: list[str | None] = []
        self.futures: list[Future] = []

    def request_power_puzzle(self, *, scope_id: str | None = None) -> Future:
        self.power_requests.append(scope_id)
        future: Future = Future()
        self.futures.append(future)
        return future


def _npc(agent_id: str, accuracy: float = 0.85) -> AgentProfile:
    return AgentProfile(agent_id, role="npc", coins=Decimal("1"), skill=SkillProfile(6.5, accuracy, 0.8, 0.8))


class ResolutionTests(unittest.TestCase):
    def _engine(self, *, oracle=None, rng=None, profiles=None, **config) -> tuple[MatchEngine, FakeClock]:
        clock = FakeClock()
        store = InMemoryProfileStore(profiles or [_npc("BLAZE"), _npc("FROST")])
        engine = MatchEngine(
            profiles=store,
            oracle=oracle or LocalPuzzleOracle(random.Random(21)),
            config=EngineConfig(**config),
            clock=clock,
            rng=rng or random.Random(21),
        )
        return engine, clock

    def _start(self, engine: MatchEngine, creator: str = "BLAZE", opponent: str = "FROST") -> str:
        match_id = engine.create_match(creator, "0.001")["id"]
        engine.accept_match(match_id, opponent)
        return match_id

    def _step(self, engine: MatchEngine, clock: FakeClock, seconds: float | None = None) -> None:
        clock.advance(seconds if seconds is not None else engine.config.tick_interval_seconds)
        engine.run_due()

    def test_warmup_ticks_do_nothing(self) -> None:
        engine, clock = self._engine()
        match_id = self._start(engine)
        for _ in range(10):
            self._step(engine, clock)
        record = engine.match_record(match_id)
        self.assertEqual(record.round.tick_count, 0)
        for state in record.round.players.values():
            self.assertEqual(state.hp, MAX_HP)
            self.assertFalse(state.solving)

        self._step(engine, clock, 1.5)
        self.assertEqual(record.round.tick_count, 1)
        self.assertTrue(all(state.solving for state in record.round.players.values()))

    def test_full_match_keeps_hp_bounded_and_difficulty_monotonic(self) -> None:
        for seed in (1, 2, 3):
            engine, clock = self._engine(rng=random.Random(seed))
            match_id = self._start(engine)
            record = engine.match_record(match_id)
            last_difficulty = {aid: 1 for aid in record.round.players}
            for _ in range(400):
                self._step(engine, clock)
                if record.status != MatchStatus.ACTIVE:
                    break
                for aid, state in record.round.players.items():
                    self.assertGreaterEqual(state.hp, 0)
                    self.assertLessEqual(state.hp, MAX_HP)
                    self.assertGreaterEqual(state.difficulty, last_difficulty[aid])
                    self.assertLessEqual(state.difficulty, 10)
                    last_difficulty[aid] = state.difficulty
            self.assertEqual(record.status, MatchStatus.FINISHED)
            self.assertIn(record.winner, ("BLAZE", "FROST"))
            self.assertIsNone(record.round)
            self.assertIn(record.finish_reason, ("knockout", "finisher", "timeout"))
            self.assertEqual(engine.registry.scheduler.pending_count(), 0)

    def test_power_puzzle_requested_once_while_generation_is_pending(self) -> None:
        oracle = PendingPowerOracle(random.Random(8))
        engine, clock = self._engine(
            oracle=oracle,
            profiles=[_npc("BLAZE", 1.0), _npc("FROST", 1.0)],
            puzzle_threshold=1,
            power_request_timeout_seconds=1000.0,
        )
        match_id = self._start(engine)
        record = engine.match_record(match_id)
        self._step(engine, clock, engine.config.warmup_seconds)

        for _ in range(60):
            self._step(engine, clock)
            if record.status != MatchStatus.ACTIVE:
                break
            solved = max(s.puzzles_solved for s in record.round.players.values())
            if solved >= 3:
                break
        self.assertEqual(record.status, MatchStatus.ACTIVE)
        self.assertGreaterEqual(max(s.puzzles_solved for s in record.round.players.values()), 3)
        self.assertEqual(oracle.power_requests, [match_id])
        self.assertEqual(record.round.power_phase, PowerPuzzlePhase.GENERATING)
        self.assertIsNone(record.round.power_puzzle)

        oracle.futures[0].set_result(Puzzle("What is 6 * 7?", "42", "POWER", 10))
        self._step(engine, clock)
        if record.status == MatchStatus.ACTIVE:
            self.assertEqual(record.round.power_phase, PowerPuzzlePhase.READY)
            self.assertEqual(record.round.power_puzzle.answer, "42")
            self.assertTrue(all(s.power_puzzle_available for s in record.round.players.values()))
        self.assertEqual(len(oracle.power_requests), 1)

    def test_stalled_power_request_falls_back_to_local_puzzle(self) -> None:
        oracle = PendingPowerOracle(random.Random(8))
        engine, clock = self._engine(oracle=oracle, power_request_timeout_seconds=2.0)
        match_id = self._start(engine)
        record = engine.match_record(match_id)
        self._step(engine, clock, engine.config.warmup_seconds)

        rnd = record.round
        rnd.power_phase = PowerPuzzlePhase.GENERATING
        rnd.power_request = Future()
        rnd.power_requested_at = clock.now
        for player in rnd.players.values():
            player.solve_at = clock.now + 1000
        self._step(engine, clock, 1.0)
        self.assertEqual(rnd.power_phase, PowerPuzzlePhase.GENERATING)
        self._step(engine, clock, 1.5)
        self.assertEqual(rnd.power_phase, PowerPuzzlePhase.READY)
        self.assertEqual(rnd.power_puzzle.type, "POWER")

    def test_finisher_holds_match_active_until_grace_delay(self) -> None:
        engine, clock = self._engine(rng=AlwaysLowRandom())
        match_id = self._start(engine)
        record = engine.match_record(match_id)
        self._step(engine, clock, engine.config.warmup_seconds)

        rnd = record.round
        rnd.advance_power_phase(PowerPuzzlePhase.GENERATING)
        rnd.power_puzzle = Puzzle("What is 2 + 2?", "4", "POWER", 10)
        rnd.advance_power_phase(PowerPuzzlePhase.READY)
        creator = rnd.players["BLAZE"]
        creator.hp = 5
        creator.power_puzzle_available = True
        creator.power_puzzle_solving = True
        creator.power_solve_at = clock.now

        self.assertTrue(tick_match(engine.registry, record))
        self.assertIsNotNone(rnd.finisher)
        self.assertEqual(rnd.finisher.agent_id, "BLAZE")
        self.assertEqual(rnd.power_phase, PowerPuzzlePhase.CLAIMED)
        self.assertFalse(rnd.advance_power_phase(PowerPuzzlePhase.CLAIMED))
        snapshot = {aid: (s.hp, s.puzzles_solved) for aid, s in rnd.players.items()}
        ticks_before = rnd.tick_count

        for _ in range(6):
            self._step(engine, clock, 0.6)
        self.assertEqual(record.status, MatchStatus.ACTIVE)
        self.assertEqual({aid: (s.hp, s.puzzles_solved) for aid, s in rnd.players.items()}, snapshot)
        self.assertEqual(rnd.tick_count, ticks_before)

        self._step(engine, clock, 2.0)
        self.assertEqual(record.status, MatchStatus.FINISHED)
        self.assertEqual(record.winner, "BLAZE")
        self.assertEqual(record.finish_reason, "finisher")

    def _timeout_engine(self) -> tuple[MatchEngine, FakeClock, object]:
        engine, clock = self._engine(max_ticks=2)
        match_id = self._start(engine)
        record = engine.match_record(match_id)
        self._step(engine, clock, engine.config.warmup_seconds)
        self.assertEqual(record.round.tick_count, 1)
        return engine, clock, record

    def test_timeout_awards_strictly_higher_hp(self) -> None:
        engine, clock, record = self._timeout_engine()
        record.round.players["BLAZE"].hp = 40
        record.round.players["FROST"].hp = 60
        self._step(engine, clock)
        self.assertEqual(record.status, MatchStatus.FINISHED)
        self.assertEqual(record.winner, "FROST")
        self.assertEqual(record.finish_reason, "timeout")

    def test_timeout_tie_breaks_on_puzzles_solved(self) -> None:
        engine, clock, record = self._timeout_engine()
        for state in record.round.players.values():
            state.hp = 50
        record.round.players["FROST"].puzzles_solved = 2
        self._step(engine, clock)
        self.assertEqual(record.winner, "FROST")
        self.assertTrue(any("more puzzles solved" in entry["msg"] for entry in record.summary["log"]))

    def test_full_tie_uses_documented_coin_flip(self) -> None:
        engine, clock, record = self._timeout_engine()
        self._step(engine, clock)
        self.assertEqual(record.status, MatchStatus.FINISHED)
        self.assertIn(record.winner, ("BLAZE", "FROST"))
        self.assertTrue(any("coin flip" in entry["msg"] for entry in record.summary["log"]))

    def test_simulated_solves_roll_through_skill_model(self) -> None:
        from unittest.mock import patch

        from packages.arena_core.match import resolution
        from packages.arena_core.match.skill import roll_attempt

        engine, clock = self._engine(rng=random.Random(4))
        match_id = self._start(engine)
        record = engine.match_record(match_id)
        with patch.object(resolution, "roll_attempt", wraps=roll_attempt) as rolled:
            for _ in range(400):
                self._step(engine, clock)
                if record.status != MatchStatus.ACTIVE:
                    break

        self.assertEqual(record.status, MatchStatus.FINISHED)
        self.assertGreater(rolled.call_count, 0)
        for call in rolled.call_args_list:
            self.assertIs(call.args[0], engine.registry.rng)
            self.assertTrue(1 <= call.kwargs["difficulty"] <= 10)


class SubmitAnswerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.store = InMemoryProfileStore([_npc("BLAZE"), _npc("FROST"), _npc("VOLT")])
        self.engine = MatchEngine(
            profiles=self.store,
            oracle=LocalPuzzleOracle(random.Random(4)),
            clock=self.clock,
            rng=random.Random(4),
        )
        self.match_id = self.engine.create_match("BLAZE", "0.001")["id"]
        self.engine.accept_match(self.match_id, "FROST")
        self.record = self.engine.match_record(self.match_id)
        self.clock.advance(self.engine.config.warmup_seconds)
        self.engine.run_due()

    def _resolve_creator_attempt(self) -> None:
        rnd = self.record.round
        rnd.players["FROST"].solve_at = self.clock.now + 1000
        self.clock.now = rnd.players["BLAZE"].solve_at
        tick_match(self.engine.registry, self.record)

    def test_correct_submitted_answer_scores_a_hit(self) -> None:
        answer = self.record.round.current_puzzle.answer
        self.engine.submit_answer(self.match_id, "BLAZE", f"  {answer.upper()} ")
        self._resolve_creator_attempt()
        rnd = self.record.round
        self.assertEqual(rnd.players["BLAZE"].puzzles_solved, 1)
        self.assertIsNone(rnd.players["BLAZE"].pending_answer)
        self.assertLessEqual(rnd.players["FROST"].hp, MAX_HP - 8)
        self.assertGreaterEqual(rnd.players["FROST"].hp, MAX_HP - 15)
        self.assertEqual(rnd.players["BLAZE"].difficulty, 2)

    def test_wrong_submitted_answer_takes_counter_hit(self) -> None:
        self.engine.submit_answer(self.match_id, "BLAZE", "definitely not it")
        self._resolve_creator_attempt()
        rnd = self.record.round
        self.assertEqual(rnd.players["BLAZE"].puzzles_solved, 0)
        self.assertLessEqual(rnd.players["BLAZE"].hp, MAX_HP - 3)
        self.assertGreaterEqual(rnd.players["BLAZE"].hp, MAX_HP - 7)
        self.assertEqual(rnd.players["FROST"].hp, MAX_HP)

    def test_submit_rejects_outsiders_and_inactive_matches(self) -> None:
        with self.assertRaises(NotAParticipant):
            self.engine.submit_answer(self.match_id, "VOLT", "1")
        open_id = self.engine.create_match("VOLT", "0.001")["id"]
        with self.assertRaises(MatchNotActive):
            self.engine.submit_answer(open_id, "VOLT", "1")


if __name__ == "__main__":
    unittest.main()

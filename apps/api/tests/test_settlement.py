#!/usr/bin/env python3

from __future__ import annotations

from decimal import Decimal
import random
import unittest

from packages.arena_core.match import (
    AgentProfile,
    EngineConfig,
    InMemoryProfileStore,
    MatchEngine,
    MatchStatus,
    refund_orphaned_stakes,
    settle,
    void_open_match,
)
from packages.arena_core.puzzles.oracle import LocalPuzzleOracle


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now


class SettlementTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.store = InMemoryProfileStore(
            [
                AgentProfile("BLAZE", coins=Decimal("0.05"), wins=2, losses=2, streak=-1),
                AgentProfile("FROST", coins=Decimal("0.05")),
            ]
        )
        self.engine = MatchEngine(
            profiles=self.store,
            oracle=LocalPuzzleOracle(random.Random(2)),
            clock=self.clock,
            rng=random.Random(2),
        )
        self.results: list = []
        self.engine.add_result_listener(self.results.append)

    def _active(self, stake: str = "0.002"):
        match_id = self.engine.create_match("BLAZE", stake)["id"]
        self.engine.accept_match(match_id, "FROST")
        return self.engine.match_record(match_id)

    def test_settle_pays_pot_once_and_updates_records(self) -> None:
        record = self._active()
        self.assertEqual(self.store.get_profile("BLAZE").coins, Decimal("0.048"))
        self.assertEqual(self.store.get_profile("FROST").coins, Decimal("0.048"))

        result = settle(self.engine.registry, record, "BLAZE", "knockout")
        self.assertIsNotNone(result)
        self.assertEqual(result.payout, Decimal("0.004"))
        self.assertEqual(result.loser, "FROST")
        self.assertIsNone(settle(self.engine.registry, record, "FROST", "knockout"))
        self.assertIsNone(settle(self.engine.registry, record, "BLAZE", "timeout"))

        blaze = self.store.get_profile("BLAZE")
        frost = self.store.get_profile("FROST")
        self.assertEqual(blaze.coins + frost.coins, Decimal("0.1"))
        self.assertEqual(blaze.coins, Decimal("0.052"))
        self.assertEqual((blaze.wins, blaze.losses, blaze.streak), (3, 2, 1))
        self.assertEqual(blaze.recent_results, ["W"])
        self.assertEqual(blaze.mood, "CONFIDENT")
        self.assertEqual((frost.wins, frost.losses, frost.streak), (0, 1, -1))
        self.assertEqual(frost.recent_results, ["L"])
        self.assertEqual(self.store.list_held_stakes(), [])

        self.assertEqual(record.status, MatchStatus.FINISHED)
        self.assertEqual(record.winner, "BLAZE")
        self.assertEqual(record.finish_reason, "knockout")
        self.assertIsNone(record.round)
        self.assertIsNotNone(record.summary)
        self.assertFalse(self.engine.registry.scheduler.has_timer(record.id, "tick"))
        self.assertEqual(self.engine.get_match(record.id)["game"], record.summary)
        self.assertEqual(len(self.results), 1)

    def test_unlock_granted_once_when_thresholds_are_crossed(self) -> None:
        record = self._active()
        result = settle(self.engine.registry, record, "BLAZE", "knockout")
        self.assertEqual(result.unlocks, ("PHOENIX_STRIKER",))
        self.assertIn("PHOENIX_STRIKER", self.store.get_profile("BLAZE").unlocked)

        second = self._active()
        again = settle(self.engine.registry, second, "BLAZE", "timeout")
        self.assertEqual(again.unlocks, ())
        self.assertEqual(self.store.get_profile("BLAZE").unlocked, {"PHOENIX_STRIKER"})

    def test_settle_ignores_outsiders_and_open_matches(self) -> None:
        record = self._active()
        self.assertIsNone(settle(self.engine.registry, record, "VOLT", "knockout"))
        self.assertEqual(record.status, MatchStatus.ACTIVE)

        open_id = self.engine.create_match("FROST", "0.001")["id"]
        self.assertIsNone(settle(self.engine.registry, self.engine.match_record(open_id), "FROST", "knockout"))

    def test_failing_listener_does_not_block_settlement(self) -> None:
        def broken(_result) -> None:
            raise RuntimeError("listener down")

        self.engine.add_result_listener(broken)
        record = self._active()
        with self.assertLogs("arena_core.match.registry", level="ERROR"):
            result = settle(self.engine.registry, record, "FROST", "finisher")
        self.assertIsNotNone(result)
        self.assertEqual(record.status, MatchStatus.FINISHED)
        self.assertEqual(len(self.results), 1)

    def test_void_refunds_creator_without_touching_streaks(self) -> None:
        match_id = self.engine.create_match("BLAZE", "0.003")["id"]
        record = self.engine.match_record(match_id)
        result = void_open_match(self.engine.registry, record, "expired")
        self.assertTrue(result.voided)
        self.assertIsNone(result.winner)
        self.assertEqual(result.payout, Decimal("0.003"))
        blaze = self.store.get_profile("BLAZE")
        self.assertEqual(blaze.coins, Decimal("0.05"))
        self.assertEqual((blaze.wins, blaze.losses, blaze.streak), (2, 2, -1))
        self.assertTrue(record.voided)
        self.assertIsNone(void_open_match(self.engine.registry, record, "expired"))
        self.assertEqual(self.store.get_profile("BLAZE").coins, Decimal("0.05"))

    def test_recent_results_follow_configured_capacity(self) -> None:
        import os
        from unittest.mock import patch

        with patch.dict(os.environ, {"ARENA_RECENT_RESULTS_CAPACITY": "2"}):
            config = EngineConfig.from_env()
        self.assertEqual(config.recent_results_capacity, 2)

        engine = MatchEngine(
            profiles=self.store,
            oracle=LocalPuzzleOracle(random.Random(2)),
            config=config,
            clock=self.clock,
            rng=random.Random(2),
        )
        for winner in ("FROST", "BLAZE", "FROST"):
            match_id = engine.create_match("BLAZE", "0.001")["id"]
            engine.accept_match(match_id, "FROST")
            settle(engine.registry, engine.match_record(match_id), winner, "knockout")

        self.assertEqual(self.store.get_profile("FROST").recent_results, ["L", "W"])
        self.assertEqual(self.store.get_profile("BLAZE").recent_results, ["W", "L"])


class OrphanedStakeTests(unittest.TestCase):
    def test_held_stakes_are_returned_to_their_holders(self) -> None:
        store = InMemoryProfileStore(
            [AgentProfile("BLAZE", coins=Decimal("0.01")), AgentProfile("FROST", coins=Decimal("0.01"))]
        )
        store.debit("BLAZE", Decimal("0.002"))
        store.hold_stake("ch_a", "BLAZE", Decimal("0.002"))
        store.debit("FROST", Decimal("0.002"))
        store.hold_stake("ch_a", "FROST", Decimal("0.002"))
        store.debit("FROST", Decimal("0.001"))
        store.hold_stake("ch_b", "FROST", Decimal("0.001"))

        refunds = refund_orphaned_stakes(store)
        self.assertEqual(len(refunds), 3)
        self.assertEqual(store.get_profile("BLAZE").coins, Decimal("0.01"))
        self.assertEqual(store.get_profile("FROST").coins, Decimal("0.01"))
        self.assertEqual(store.list_held_stakes(), [])
        self.assertEqual(refund_orphaned_stakes(store), [])


if __name__ == "__main__":
    unittest.main()

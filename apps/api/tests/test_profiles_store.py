#!/usr/bin/env python3

from __future__ import annotations

from decimal import Decimal
import random
import tempfile
import unittest
from pathlib import Path

from apps.api.arena_api.storage.match_history import SQLiteMatchHistoryStore
from apps.api.arena_api.storage.profiles import SQLiteProfileStore
from packages.arena_core.match import (
    DEFAULT_ROSTER,
    InsufficientFunds,
    MatchEngine,
    UnknownAgent,
    settle,
)
from packages.arena_core.puzzles.oracle import LocalPuzzleOracle

ROOT = Path(__file__).resolve().parents[3]


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now


class SQLiteProfileStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory(dir=ROOT)
        self.addCleanup(self._tmp.cleanup)
        self.db_path = Path(self._tmp.name) / "arena_profiles.db"
        self.store = SQLiteProfileStore(self.db_path)
        self.store.init_db()

    def test_seed_is_idempotent_and_keeps_roster_values(self) -> None:
        self.assertEqual(self.store.seed(), len(DEFAULT_ROSTER))
        self.assertEqual(self.store.seed(), 0)
        profiles = {p.agent_id: p for p in self.store.list_profiles()}
        self.assertEqual(set(profiles), {p.agent_id for p in DEFAULT_ROSTER})
        self.assertEqual(profiles["BLAZE"].coins, Decimal("0.05"))
        self.assertEqual(profiles["YOU"].role, "player")
        self.assertAlmostEqual(profiles["FROST"].skill.accuracy, 0.94)

    def test_debit_is_checked_and_credit_adds(self) -> None:
        self.store.seed()
        self.assertEqual(self.store.debit("YOU", Decimal("0.004")), Decimal("0.006"))
        with self.assertRaises(InsufficientFunds):
            self.store.debit("YOU", Decimal("0.01"))
        self.assertEqual(self.store.get_profile("YOU").coins, Decimal("0.006"))
        self.assertEqual(self.store.credit("YOU", Decimal("0.0005")), Decimal("0.0065"))
        with self.assertRaises(UnknownAgent):
            self.store.credit("NOBODY", Decimal("1"))

    def test_record_result_and_unlock_round_trip_through_disk(self) -> None:
        self.store.seed()
        self.store.record_result("VOLT", True)
        self.store.record_result("VOLT", True)
        updated = self.store.record_result("VOLT", False)
        self.assertEqual((updated.wins, updated.losses, updated.streak), (2, 1, -1))
        self.assertTrue(self.store.grant_unlock("VOLT", "PHOENIX_STRIKER"))
        self.assertFalse(self.store.grant_unlock("VOLT", "PHOENIX_STRIKER"))

        reopened = SQLiteProfileStore(self.db_path)
        volt = reopened.get_profile("VOLT")
        self.assertEqual(volt.recent_results, ["W", "W", "L"])
        self.assertEqual(volt.mood, "CONFIDENT")
        self.assertEqual(volt.unlocked, {"PHOENIX_STRIKER"})

    def test_escrow_survives_restart_and_is_refunded_on_recover(self) -> None:
        self.store.seed()
        engine = MatchEngine(profiles=self.store, oracle=LocalPuzzleOracle(random.Random(1)), clock=FakeClock())
        match_id = engine.create_match("BLAZE", "0.002")["id"]
        engine.accept_match(match_id, "SHADE")
        self.assertEqual(len(self.store.list_held_stakes()), 2)

        # Simulate a crash: the in-memory match is gone, escrow rows are not.
        restarted = MatchEngine(
            profiles=SQLiteProfileStore(self.db_path),
            oracle=LocalPuzzleOracle(random.Random(1)),
            clock=FakeClock(),
        )
        refunds = restarted.recover()
        self.assertEqual({r["agent_id"] for r in refunds}, {"BLAZE", "SHADE"})
        self.assertEqual(restarted.profiles.get_profile("BLAZE").coins, Decimal("0.05"))
        self.assertEqual(restarted.profiles.get_profile("SHADE").coins, Decimal("0.05"))
        self.assertEqual(restarted.profiles.list_held_stakes(), [])
        self.assertEqual(restarted.recover(), [])

    def test_settlement_against_sqlite_conserves_coins(self) -> None:
        self.store.seed()
        engine = MatchEngine(profiles=self.store, oracle=LocalPuzzleOracle(random.Random(1)), clock=FakeClock())
        match_id = engine.create_match("FROST", "0.003")["id"]
        engine.accept_match(match_id, "VOLT")
        result = settle(engine.registry, engine.match_record(match_id), "VOLT", "timeout")
        self.assertEqual(result.payout, Decimal("0.006"))
        frost = self.store.get_profile("FROST")
        volt = self.store.get_profile("VOLT")
        self.assertEqual(frost.coins + volt.coins, Decimal("0.1"))
        self.assertEqual(volt.coins, Decimal("0.053"))
        self.assertEqual(self.store.list_held_stakes(), [])

    def test_crash_after_payout_does_not_refund_stakes_again(self) -> None:
        from unittest.mock import patch

        self.store.seed()
        engine = MatchEngine(profiles=self.store, oracle=LocalPuzzleOracle(random.Random(1)), clock=FakeClock())
        match_id = engine.create_match("BLAZE", "0.002")["id"]
        engine.accept_match(match_id, "SHADE")

        with patch.object(self.store, "record_result", side_effect=RuntimeError("database is locked")):
            with self.assertRaises(RuntimeError):
                settle(engine.registry, engine.match_record(match_id), "BLAZE", "knockout")

        restarted = MatchEngine(
            profiles=SQLiteProfileStore(self.db_path),
            oracle=LocalPuzzleOracle(random.Random(1)),
            clock=FakeClock(),
        )
        self.assertEqual(restarted.recover(), [])
        blaze = restarted.profiles.get_profile("BLAZE")
        shade = restarted.profiles.get_profile("SHADE")
        self.assertEqual(blaze.coins, Decimal("0.052"))
        self.assertEqual(blaze.coins + shade.coins, Decimal("0.1"))

    def test_refund_rolls_back_when_a_holder_is_missing(self) -> None:
        self.store.seed()
        self.store.debit("BLAZE", Decimal("0.001"))
        self.store.hold_stake("ch_x", "BLAZE", Decimal("0.001"))
        self.store.hold_stake("ch_x", "GHOST", Decimal("0.001"))

        with self.assertRaises(UnknownAgent):
            self.store.refund_stakes("ch_x")
        self.assertEqual(self.store.get_profile("BLAZE").coins, Decimal("0.049"))
        self.assertEqual(len(self.store.list_held_stakes()), 2)

        released = self.store.pay_out("ch_x", "BLAZE", Decimal("0.001"))
        self.assertEqual({item["agent_id"] for item in released}, {"BLAZE", "GHOST"})
        self.assertEqual(self.store.get_profile("BLAZE").coins, Decimal("0.05"))
        self.assertEqual(self.store.list_held_stakes(), [])


class BackendSelectionTests(unittest.TestCase):
    def test_sqlite_urls_are_resolved(self) -> None:
        from apps.api.arena_api.storage import profiles as profiles_storage

        self.assertEqual(
            profiles_storage._resolve_sqlite_path("sqlite:///data/custom.db"),
            (ROOT / "data" / "custom.db").resolve(),
        )
        self.assertEqual(profiles_storage._resolve_sqlite_path("sqlite:////tmp/abs.db"), Path("/tmp/abs.db"))


class SQLiteMatchHistoryStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory(dir=ROOT)
        self.addCleanup(self._tmp.cleanup)
        self.store = SQLiteMatchHistoryStore(Path(self._tmp.name) / "arena_history.db")

    def _result(self, match_id: str, *, winner: str | None, opponent: str | None, finished_at: float, voided: bool = False) -> dict:
        return {
            "match_id": match_id,
            "match_type": "BEAM_BATTLE",
            "creator": "BLAZE",
            "opponent": opponent,
            "winner": winner,
            "loser": None if winner is None else ("FROST" if winner == "BLAZE" else "BLAZE"),
            "stake": "0.001",
            "payout": "0.001" if voided else "0.002",
            "reason": "expired" if voided else "knockout",
            "voided": voided,
            "finished_at": finished_at,
            "unlocks": [] if voided else ["PHOENIX_STRIKER"],
        }

    def test_results_are_recorded_once_and_filtered_by_agent(self) -> None:
        self.store.record_result(result=self._result("ch_1", winner="BLAZE", opponent="FROST", finished_at=1_700_000_000))
        self.store.record_result(result=self._result("ch_1", winner="FROST", opponent="FROST", finished_at=1_700_000_500))
        self.store.record_result(
            result=self._result("ch_2", winner=None, opponent=None, finished_at=1_700_000_100, voided=True)
        )

        everything = self.store.list_results()
        self.assertEqual([r["match_id"] for r in everything], ["ch_2", "ch_1"])
        self.assertEqual(everything[1]["winner"], "BLAZE")
        self.assertEqual(everything[1]["unlocks"], ["PHOENIX_STRIKER"])
        self.assertTrue(everything[0]["voided"])
        self.assertEqual(everything[1]["finished_at"], "2023-11-14T22:13:20Z")

        self.assertEqual(len(self.store.list_results(agent_id="BLAZE")), 2)
        self.assertEqual([r["match_id"] for r in self.store.list_results(agent_id="FROST")], ["ch_1"])
        self.assertEqual(self.store.list_results(agent_id="VOLT"), [])
        self.assertEqual(len(self.store.list_results(limit=1)), 1)


if __name__ == "__main__":
    unittest.main()

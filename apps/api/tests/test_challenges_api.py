#!/usr/bin/env python3

from __future__ import annotations

import os
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[3]
TEST_DB_DIR = tempfile.TemporaryDirectory(dir=ROOT)
TEST_DB_PATH = Path(TEST_DB_DIR.name) / "test_challenges_arena.db"
os.environ["ARENA_DB_PATH"] = str(TEST_DB_PATH)
os.environ.pop("DATABASE_URL", None)
os.environ["ARENA_AUTOSTART_SCHEDULER"] = "0"
os.environ["ARENA_AUTOSTART_AUTOPILOT"] = "0"

from apps.api.arena_api.main import app
from apps.api.arena_api.services.arena_engine import get_engine, reset_engine_for_tests
from apps.api.arena_api.services.auto_challenger import run_autopilot_pass
from apps.api.arena_api.storage.match_history import reset_backend_cache_for_tests as reset_history_backend
from apps.api.arena_api.storage.profiles import reset_backend_cache_for_tests as reset_profiles_backend
from packages.arena_core.match import settle


class ChallengesApiTests(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["ARENA_DB_PATH"] = str(TEST_DB_PATH)
        for suffix in ("", "-wal", "-shm"):
            candidate = Path(f"{TEST_DB_PATH}{suffix}")
            if candidate.exists():
                candidate.unlink()
        reset_profiles_backend()
        reset_history_backend()
        reset_engine_for_tests()
        self.addCleanup(reset_engine_for_tests)
        self.client = TestClient(app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def _create(self, creator: str = "BLAZE", stake: str = "0.002") -> dict:
        res = self.client.post("/api/v1/challenges/create", json={"creator": creator, "stake": stake})
        self.assertEqual(res.status_code, 200, res.text)
        return res.json()["challenge"]

    def test_healthz_and_roster_seeded(self) -> None:
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        agents = self.client.get("/api/v1/agents").json()
        self.assertEqual(agents["count"], 5)
        you = self.client.get("/api/v1/agents/YOU").json()["agent"]
        self.assertEqual(you["role"], "player")
        self.assertEqual(Decimal(you["coins"]), Decimal("0.01"))
        self.assertEqual(self.client.get("/api/v1/agents/NOBODY").status_code, 404)

    def test_create_accept_and_fetch(self) -> None:
        challenge = self._create()
        self.assertEqual(challenge["status"], "OPEN")
        self.assertEqual(Decimal(self.client.get("/api/v1/agents/BLAZE").json()["agent"]["coins"]), Decimal("0.048"))

        listed = self.client.get("/api/v1/challenges", params={"status": "open"}).json()
        self.assertEqual([c["id"] for c in listed["challenges"]], [challenge["id"]])

        accepted = self.client.post(
            "/api/v1/challenges/accept",
            json={"challenge_id": challenge["id"], "opponent": "YOU"},
        )
        self.assertEqual(accepted.status_code, 200, accepted.text)
        body = accepted.json()["challenge"]
        self.assertEqual(body["status"], "ACTIVE")
        self.assertEqual(set(body["game"]["players"]), {"BLAZE", "YOU"})
        self.assertNotIn("answer", body["game"]["current_puzzle"])

        fetched = self.client.get(f"/api/v1/challenges/{challenge['id']}")
        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(fetched.json()["challenge"]["status"], "ACTIVE")

        status = self.client.get("/api/v1/status").json()
        self.assertEqual(status["matches"]["ACTIVE"], 1)
        self.assertFalse(status["scheduler"]["running"])
        self.assertFalse(status["autopilot"]["running"])
        self.assertIn("interval_seconds", status["autopilot"])

    def test_error_mapping(self) -> None:
        poor = self.client.post("/api/v1/challenges/create", json={"creator": "YOU", "stake": "5"})
        self.assertEqual(poor.status_code, 400)
        self.assertIn("Insufficient", poor.json()["detail"])

        bad_type = self.client.post(
            "/api/v1/challenges/create",
            json={"creator": "BLAZE", "stake": "0.001", "type": "KART_RACE"},
        )
        self.assertEqual(bad_type.status_code, 400)

        unknown = self.client.post("/api/v1/challenges/create", json={"creator": "NOBODY", "stake": "0.001"})
        self.assertEqual(unknown.status_code, 404)

        negative = self.client.post("/api/v1/challenges/create", json={"creator": "BLAZE", "stake": "-1"})
        self.assertEqual(negative.status_code, 422)

        challenge = self._create()
        own = self.client.post(
            "/api/v1/challenges/accept",
            json={"challenge_id": challenge["id"], "opponent": "BLAZE"},
        )
        self.assertEqual(own.status_code, 400)

        missing = self.client.post("/api/v1/challenges/accept", json={"challenge_id": "ch_nope", "opponent": "FROST"})
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(self.client.get("/api/v1/challenges/ch_nope").status_code, 404)

        not_active = self.client.post(
            f"/api/v1/challenges/{challenge['id']}/answer",
            json={"agent_id": "BLAZE", "answer": "4"},
        )
        self.assertEqual(not_active.status_code, 409)

        self.client.post("/api/v1/challenges/accept", json={"challenge_id": challenge["id"], "opponent": "FROST"})
        again = self.client.post(
            "/api/v1/challenges/accept",
            json={"challenge_id": challenge["id"], "opponent": "VOLT"},
        )
        self.assertEqual(again.status_code, 409)

        outsider = self.client.post(
            f"/api/v1/challenges/{challenge['id']}/answer",
            json={"agent_id": "VOLT", "answer": "4"},
        )
        self.assertEqual(outsider.status_code, 403)

        bad_status = self.client.get("/api/v1/challenges", params={"status": "PAUSED"})
        self.assertEqual(bad_status.status_code, 400)

    def test_submit_answer_is_accepted_for_participants(self) -> None:
        challenge = self._create()
        self.client.post("/api/v1/challenges/accept", json={"challenge_id": challenge["id"], "opponent": "YOU"})
        res = self.client.post(
            f"/api/v1/challenges/{challenge['id']}/answer",
            json={"agent_id": "YOU", "answer": "42"},
        )
        self.assertEqual(res.status_code, 200, res.text)
        self.assertTrue(any(entry["msg"] == "Locked in an answer" for entry in res.json()["challenge"]["game"]["log"]))

    def test_settled_match_lands_in_history(self) -> None:
        challenge = self._create(stake="0.001")
        self.client.post("/api/v1/challenges/accept", json={"challenge_id": challenge["id"], "opponent": "FROST"})
        engine = get_engine()
        settle(engine.registry, engine.match_record(challenge["id"]), "FROST", "knockout")

        history = self.client.get("/api/v1/challenges/history", params={"agent_id": "FROST"}).json()
        self.assertEqual(history["count"], 1)
        row = history["results"][0]
        self.assertEqual(row["match_id"], challenge["id"])
        self.assertEqual(row["winner"], "FROST")
        self.assertEqual(row["payout"], "0.002")

        finished = self.client.get(f"/api/v1/challenges/{challenge['id']}").json()["challenge"]
        self.assertEqual(finished["status"], "FINISHED")
        self.assertEqual(finished["winner"], "FROST")
        self.assertIsNotNone(finished["game"])
        frost = self.client.get("/api/v1/agents/FROST").json()["agent"]
        self.assertEqual((frost["wins"], frost["streak"], frost["recent_results"]), (1, 1, ["W"]))

    def test_autopilot_opens_then_accepts(self) -> None:
        import random

        engine = get_engine()
        rng = random.Random(12)
        first = run_autopilot_pass(engine, rng)
        self.assertEqual(len(first["created"]), 1)
        self.assertEqual(first["accepted"], [])

        second = run_autopilot_pass(engine, rng)
        self.assertEqual(second["created"], [])
        self.assertEqual(second["accepted"], first["created"])
        match = engine.get_match(first["created"][0])
        self.assertEqual(match["status"], "ACTIVE")
        self.assertNotEqual(match["creator"], match["opponent"])
        self.assertNotIn("YOU", (match["creator"], match["opponent"]))
        self.assertGreaterEqual(Decimal(match["stake"]), Decimal("0.0001"))
        self.assertLessEqual(Decimal(match["stake"]), Decimal("0.001"))


if __name__ == "__main__":
    unittest.main()

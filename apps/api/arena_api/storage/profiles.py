"""Storage for agent profiles, coin balances, unlocks, and escrowed stakes."""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional
import json
import os
import sqlite3
import threading

from packages.arena_core.match.errors import InsufficientFunds, UnknownAgent
from packages.arena_core.match.profiles import (
    RECENT_RESULTS_CAPACITY,
    AgentProfile,
    AgentProfileStore,
    SkillProfile,
    apply_result,
)


WORKSPACE_ROOT = Path(__file__).resolve().parents[4]


def _now_utc_sqlite() -> str:
    return "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"


def _json_dumps(value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=True)
    except Exception:
        return "{}"


def _json_loads(raw: Any, default: Any) -> Any:
    if isinstance(raw, (dict, list)):
        return raw
    text = str(raw or "").strip()
    if not text:
        return default
    try:
        return json.loads(text)
    except Exception:
        return default


def _escrow_row(row: dict[str, Any]) -> dict[str, Any]:
    return {"match_id": str(row["match_id"]), "agent_id": str(row["agent_id"]), "amount": Decimal(str(row["amount"]))}


class SQLiteProfileStore(AgentProfileStore):
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._initialized = False
        self._local = threading.local()
        self._write_lock = threading.RLock()

    def _connect(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA busy_timeout = 5000")
        self._local.conn = conn
        return conn

    @staticmethod
    def _profile_row(row: dict[str, Any]) -> AgentProfile:
        skill = _json_loads(row.get("skill_json"), {})
        return AgentProfile(
            agent_id=str(row["agent_id"]),
            display_name=str(row.get("display_name") or ""),
            role=str(row.get("role") or "npc"),
            coins=Decimal(str(row.get("coins") or "0")),
            wins=int(row.get("wins") or 0),
            losses=int(row.get("losses") or 0),
            streak=int(row.get("streak") or 0),
            recent_results=[str(r) for r in _json_loads(row.get("recent_results_json"), [])],
            mood=str(row.get("mood") or "NEUTRAL"),
            skill=SkillProfile(
                speed=float(skill.get("speed", 6.5)),
                accuracy=float(skill.get("accuracy", 0.85)),
                dodge=float(skill.get("dodge", 0.82)),
                collect=float(skill.get("collect", 0.82)),
            ),
            unlocked=set(str(k) for k in _json_loads(row.get("unlocked_json"), [])),
        )

    def init_db(self) -> None:
        if self._initialized:
            return
        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS agent_profiles (
                  agent_id TEXT PRIMARY KEY,
                  display_name TEXT NOT NULL DEFAULT '',
                  role TEXT NOT NULL DEFAULT 'npc',
                  coins TEXT NOT NULL DEFAULT '0',
                  wins INTEGER NOT NULL DEFAULT 0,
                  losses INTEGER NOT NULL DEFAULT 0,
                  streak INTEGER NOT NULL DEFAULT 0,
                  recent_results_json TEXT NOT NULL DEFAULT '[]',
                  mood TEXT NOT NULL DEFAULT 'NEUTRAL',
                  skill_json TEXT NOT NULL DEFAULT '{{}}',
                  unlocked_json TEXT NOT NULL DEFAULT '[]',
                  updated_at TEXT NOT NULL DEFAULT ({_now_utc_sqlite()})
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS stake_escrow (
                  match_id TEXT NOT NULL,
                  agent_id TEXT NOT NULL,
                  amount TEXT NOT NULL,
                  held_at TEXT NOT NULL DEFAULT ({_now_utc_sqlite()}),
                  PRIMARY KEY (match_id, agent_id)
                )
                """
            )
        self._initialized = True

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _fetch(self, conn: sqlite3.Connection, agent_id: str) -> Optional[AgentProfile]:
        row = conn.execute("SELECT * FROM agent_profiles WHERE agent_id = ?", (str(agent_id),)).fetchone()
        if row is None:
            return None
        return self._profile_row(dict(row))

    def _write(self, conn: sqlite3.Connection, profile: AgentProfile) -> None:
        conn.execute(
            f"""
            INSERT INTO agent_profiles (
              agent_id, display_name, role, coins, wins, losses, streak,
              recent_results_json, mood, skill_json, unlocked_json, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ({_now_utc_sqlite()}))
            ON CONFLICT(agent_id) DO UPDATE SET
              display_name = excluded.display_name,
              role = excluded.role,
              coins = excluded.coins,
              wins = excluded.wins,
              losses = excluded.losses,
              streak = excluded.streak,
              recent_results_json = excluded.recent_results_json,
              mood = excluded.mood,
              skill_json = excluded.skill_json,
              unlocked_json = excluded.unlocked_json,
              updated_at = excluded.updated_at
            """,
            (
                profile.agent_id,
                profile.display_name,
                profile.role,
                str(profile.coins),
                int(profile.wins),
                int(profile.losses),
                int(profile.streak),
                _json_dumps(list(profile.recent_results)),
                profile.mood,
                _json_dumps(profile.skill.as_dict()),
                _json_dumps(sorted(profile.unlocked)),
            ),
        )

    def _require(self, conn: sqlite3.Connection, agent_id: str) -> AgentProfile:
        profile = self._fetch(conn, agent_id)
        if profile is None:
            raise UnknownAgent(f"Unknown agent: {agent_id}")
        return profile

    def get_profile(self, agent_id: str) -> Optional[AgentProfile]:
        self.init_db()
        with self._connect() as conn:
            return self._fetch(conn, agent_id)

    def list_profiles(self) -> list[AgentProfile]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM agent_profiles ORDER BY agent_id ASC").fetchall()
        return [self._profile_row(dict(row)) for row in rows]

    def upsert_profile(self, profile: AgentProfile) -> AgentProfile:
        self.init_db()
        with self._write_lock, self._connect() as conn:
            self._write(conn, profile)
            return self._require(conn, profile.agent_id)

    def debit(self, agent_id: str, amount: Decimal) -> Decimal:
        self.init_db()
        with self._write_lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            profile = self._require(conn, agent_id)
            if profile.coins < amount:
                raise InsufficientFunds(agent_id, profile.coins, amount)
            profile.coins -= amount
            self._write(conn, profile)
            return profile.coins

    def credit(self, agent_id: str, amount: Decimal) -> Decimal:
        self.init_db()
        with self._write_lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            profile = self._require(conn, agent_id)
            profile.coins += amount
            self._write(conn, profile)
            return profile.coins

    def record_result(self, agent_id: str, won: bool, capacity: int = RECENT_RESULTS_CAPACITY) -> AgentProfile:
        self.init_db()
        with self._write_lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            updated = apply_result(self._require(conn, agent_id), won, capacity)
            self._write(conn, updated)
            return updated

    def grant_unlock(self, agent_id: str, key: str) -> bool:
        self.init_db()
        with self._write_lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            profile = self._require(conn, agent_id)
            if key in profile.unlocked:
                return False
            profile.unlocked.add(key)
            self._write(conn, profile)
            return True

    def hold_stake(self, match_id: str, agent_id: str, amount: Decimal) -> None:
        self.init_db()
        with self._write_lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO stake_escrow (match_id, agent_id, amount)
                VALUES (?, ?, ?)
                ON CONFLICT(match_id, agent_id) DO UPDATE SET amount = excluded.amount
                """,
                (str(match_id), str(agent_id), str(amount)),
            )

    @staticmethod
    def _take_escrow(conn: sqlite3.Connection, match_id: str) -> list[dict[str, Any]]:
        rows = conn.execute(
            "SELECT match_id, agent_id, amount FROM stake_escrow WHERE match_id = ? ORDER BY held_at ASC",
            (str(match_id),),
        ).fetchall()
        conn.execute("DELETE FROM stake_escrow WHERE match_id = ?", (str(match_id),))
        return [_escrow_row(dict(row)) for row in rows]

    def pay_out(self, match_id: str, agent_id: str, amount: Decimal) -> list[dict[str, Any]]:
        self.init_db()
        with self._write_lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            profile = self._require(conn, agent_id)
            released = self._take_escrow(conn, match_id)
            profile.coins += amount
            self._write(conn, profile)
            return released

    def refund_stakes(self, match_id: str) -> list[dict[str, Any]]:
        self.init_db()
        with self._write_lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            released = self._take_escrow(conn, match_id)
            for item in released:
                profile = self._require(conn, item["agent_id"])
                profile.coins += item["amount"]
                self._write(conn, profile)
            return released

    def list_held_stakes(self) -> list[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT match_id, agent_id, amount FROM stake_escrow ORDER BY held_at ASC"
            ).fetchall()
        return [_escrow_row(dict(row)) for row in rows]


class PostgresProfileStore(AgentProfileStore):
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._initialized = False
        self._ensure_driver()

    @staticmethod
    def _ensure_driver() -> None:
        try:
            import psycopg  # noqa: F401
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RuntimeError(
                "Postgres backend requires `psycopg`. Install it with: pip install psycopg[binary]"
            ) from exc

    def _connect(self):
        import psycopg
        from psycopg.rows import dict_row

        return psycopg.connect(self.database_url, row_factory=dict_row)

    def init_db(self) -> None:
        if self._initialized:
            return
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS agent_profiles (
                      agent_id TEXT PRIMARY KEY,
                      display_name TEXT NOT NULL DEFAULT '',
                      role TEXT NOT NULL DEFAULT 'npc',
                      coins NUMERIC(20, 8) NOT NULL DEFAULT 0,
                      wins INTEGER NOT NULL DEFAULT 0,
                      losses INTEGER NOT NULL DEFAULT 0,
                      streak INTEGER NOT NULL DEFAULT 0,
                      recent_results_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                      mood TEXT NOT NULL DEFAULT 'NEUTRAL',
                      skill_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                      unlocked_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                      updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS stake_escrow (
                      match_id TEXT NOT NULL,
                      agent_id TEXT NOT NULL,
                      amount NUMERIC(20, 8) NOT NULL,
                      held_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                      PRIMARY KEY (match_id, agent_id)
                    )
                    """
                )
        self._initialized = True

    def ping(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()

    @staticmethod
    def _fetch(cur, agent_id: str, *, for_update: bool = False) -> Optional[AgentProfile]:
        suffix = " FOR UPDATE" if for_update else ""
        cur.execute(f"SELECT * FROM agent_profiles WHERE agent_id = %s{suffix}", (str(agent_id),))
        row = cur.fetchone()
        return SQLiteProfileStore._profile_row(dict(row)) if row else None

    @staticmethod
    def _write(cur, profile: AgentProfile) -> None:
        cur.execute(
            """
            INSERT INTO agent_profiles (
              agent_id, display_name, role, coins, wins, losses, streak,
              recent_results_json, mood, skill_json, unlocked_json, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s::jsonb, %s::jsonb, NOW())
            ON CONFLICT (agent_id) DO UPDATE SET
              display_name = EXCLUDED.display_name,
              role = EXCLUDED.role,
              coins = EXCLUDED.coins,
              wins = EXCLUDED.wins,
              losses = EXCLUDED.losses,
              streak = EXCLUDED.streak,
              recent_results_json = EXCLUDED.recent_results_json,
              mood = EXCLUDED.mood,
              skill_json = EXCLUDED.skill_json,
              unlocked_json = EXCLUDED.unlocked_json,
              updated_at = NOW()
            """,
            (
                profile.agent_id,
                profile.display_name,
                profile.role,
                profile.coins,
                int(profile.wins),
                int(profile.losses),
                int(profile.streak),
                _json_dumps(list(profile.recent_results)),
                profile.mood,
                _json_dumps(profile.skill.as_dict()),
                _json_dumps(sorted(profile.unlocked)),
            ),
        )

    def _require(self, cur, agent_id: str) -> AgentProfile:
        profile = self._fetch(cur, agent_id, for_update=True)
        if profile is None:
            raise UnknownAgent(f"Unknown agent: {agent_id}")
        return profile

    def get_profile(self, agent_id: str) -> Optional[AgentProfile]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                return self._fetch(cur, agent_id)

    def list_profiles(self) -> list[AgentProfile]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM agent_profiles ORDER BY agent_id ASC")
                rows = cur.fetchall()
        return [SQLiteProfileStore._profile_row(dict(row)) for row in rows]

    def upsert_profile(self, profile: AgentProfile) -> AgentProfile:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                self._write(cur, profile)
                return self._require(cur, profile.agent_id)

    def debit(self, agent_id: str, amount: Decimal) -> Decimal:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                profile = self._require(cur, agent_id)
                if profile.coins < amount:
                    raise InsufficientFunds(agent_id, profile.coins, amount)
                profile.coins -= amount
                self._write(cur, profile)
                return profile.coins

    def credit(self, agent_id: str, amount: Decimal) -> Decimal:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                profile = self._require(cur, agent_id)
                profile.coins += amount
                self._write(cur, profile)
                return profile.coins

    def record_result(self, agent_id: str, won: bool, capacity: int = RECENT_RESULTS_CAPACITY) -> AgentProfile:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                updated = apply_result(self._require(cur, agent_id), won, capacity)
                self._write(cur, updated)
                return updated

    def grant_unlock(self, agent_id: str, key: str) -> bool:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                profile = self._require(cur, agent_id)
                if key in profile.unlocked:
                    return False
                profile.unlocked.add(key)
                self._write(cur, profile)
                return True

    def hold_stake(self, match_id: str, agent_id: str, amount: Decimal) -> None:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO stake_escrow (match_id, agent_id, amount)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (match_id, agent_id) DO UPDATE SET amount = EXCLUDED.amount
                    """,
                    (str(match_id), str(agent_id), amount),
                )

    @staticmethod
    def _take_escrow(cur, match_id: str) -> list[dict[str, Any]]:
        cur.execute(
            "DELETE FROM stake_escrow WHERE match_id = %s RETURNING match_id, agent_id, amount, held_at",
            (str(match_id),),
        )
        rows = sorted(cur.fetchall(), key=lambda row: row["held_at"])
        return [_escrow_row(dict(row)) for row in rows]

    def pay_out(self, match_id: str, agent_id: str, amount: Decimal) -> list[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                profile = self._require(cur, agent_id)
                released = self._take_escrow(cur, match_id)
                profile.coins += amount
                self._write(cur, profile)
                return released

    def refund_stakes(self, match_id: str) -> list[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                released = self._take_escrow(cur, match_id)
                for item in released:
                    profile = self._require(cur, item["agent_id"])
                    profile.coins += item["amount"]
                    self._write(cur, profile)
                return released

    def list_held_stakes(self) -> list[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT match_id, agent_id, amount FROM stake_escrow ORDER BY held_at ASC")
                rows = cur.fetchall()
        return [_escrow_row(dict(row)) for row in rows]


def _resolve_sqlite_path(database_url: Optional[str]) -> Path:
    if database_url and database_url.startswith("sqlite:///"):
        raw = database_url[len("sqlite:///") :]
    else:
        raw = str(os.environ.get("ARENA_DB_PATH") or "").strip() or str(WORKSPACE_ROOT / "data" / "arena.db")
    p = Path(raw)
    if not p.is_absolute():
        p = (WORKSPACE_ROOT / p).resolve()
    return p


def _database_url() -> Optional[str]:
    return os.environ.get("DATABASE_URL")


@lru_cache(maxsize=1)
def _backend() -> AgentProfileStore:
    database_url = _database_url()
    if database_url and database_url.startswith(("postgres://", "postgresql://")):
        return PostgresProfileStore(database_url)
    return SQLiteProfileStore(_resolve_sqlite_path(database_url))


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def init_db() -> None:
    _backend().init_db()


def profile_store() -> AgentProfileStore:
    return _backend()


def get_profile(agent_id: str) -> Optional[AgentProfile]:
    return _backend().get_profile(agent_id)


def list_profiles() -> list[AgentProfile]:
    return _backend().list_profiles()


def seed_default_roster() -> int:
    return _backend().seed()

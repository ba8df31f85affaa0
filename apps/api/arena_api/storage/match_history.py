"""Storage for settled and voided challenge results."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional
import json
import os
import sqlite3
import threading


WORKSPACE_ROOT = Path(__file__).resolve().parents[4]


def _json_loads(raw: Any, default: Any) -> Any:
    text = str(raw or "").strip()
    if not text:
        return default
    try:
        return json.loads(text)
    except Exception:
        return default


def _iso(ts: Any) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")


class MatchHistoryStore(ABC):
    @abstractmethod
    def init_db(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def record_result(self, *, result: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_results(self, *, agent_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        raise NotImplementedError


class SQLiteMatchHistoryStore(MatchHistoryStore):
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._initialized = False
        self._local = threading.local()

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
    def _result_row(row: dict[str, Any]) -> dict[str, Any]:
        out = dict(row)
        out["voided"] = bool(out.get("voided", 0))
        out["unlocks"] = _json_loads(out.pop("unlocks_json", None), [])
        return out

    def init_db(self) -> None:
        if self._initialized:
            return
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS match_results (
                  match_id TEXT PRIMARY KEY,
                  match_type TEXT NOT NULL,
                  creator TEXT NOT NULL,
                  opponent TEXT,
                  winner TEXT,
                  loser TEXT,
                  stake TEXT NOT NULL,
                  payout TEXT NOT NULL,
                  reason TEXT NOT NULL,
                  voided INTEGER NOT NULL DEFAULT 0,
                  unlocks_json TEXT NOT NULL DEFAULT '[]',
                  finished_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_match_results_creator ON match_results(creator)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_match_results_opponent ON match_results(opponent)")
        self._initialized = True

    def record_result(self, *, result: dict[str, Any]) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO match_results (
                  match_id, match_type, creator, opponent, winner, loser, stake, payout, reason, voided, unlocks_json, finished_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(result["match_id"]),
                    str(result["match_type"]),
                    str(result["creator"]),
                    result.get("opponent"),
                    result.get("winner"),
                    result.get("loser"),
                    str(result["stake"]),
                    str(result["payout"]),
                    str(result["reason"]),
                    1 if result.get("voided") else 0,
                    json.dumps(list(result.get("unlocks") or [])),
                    _iso(result.get("finished_at")) or "",
                ),
            )

    def list_results(self, *, agent_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        self.init_db()
        bounded = max(1, min(500, int(limit)))
        with self._connect() as conn:
            if agent_id:
                rows = conn.execute(
                    """
                    SELECT * FROM match_results
                    WHERE creator = ? OR opponent = ?
                    ORDER BY finished_at DESC
                    LIMIT ?
                    """,
                    (str(agent_id), str(agent_id), bounded),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM match_results ORDER BY finished_at DESC LIMIT ?",
                    (bounded,),
                ).fetchall()
        return [self._result_row(dict(row)) for row in rows]


class PostgresMatchHistoryStore(MatchHistoryStore):
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

    @staticmethod
    def _result_row(row: dict[str, Any]) -> dict[str, Any]:
        out = dict(row)
        out["voided"] = bool(out.get("voided"))
        raw = out.pop("unlocks_json", None)
        out["unlocks"] = list(raw) if isinstance(raw, list) else _json_loads(raw, [])
        finished = out.get("finished_at")
        if isinstance(finished, datetime):
            out["finished_at"] = finished.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        return out

    def init_db(self) -> None:
        if self._initialized:
            return
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS match_results (
                      match_id TEXT PRIMARY KEY,
                      match_type TEXT NOT NULL,
                      creator TEXT NOT NULL,
                      opponent TEXT,
                      winner TEXT,
                      loser TEXT,
                      stake TEXT NOT NULL,
                      payout TEXT NOT NULL,
                      reason TEXT NOT NULL,
                      voided BOOLEAN NOT NULL DEFAULT FALSE,
                      unlocks_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                      finished_at TIMESTAMPTZ NOT NULL
                    )
                    """
                )
                cur.execute("CREATE INDEX IF NOT EXISTS idx_match_results_creator ON match_results(creator)")
                cur.execute("CREATE INDEX IF NOT EXISTS idx_match_results_opponent ON match_results(opponent)")
        self._initialized = True

    def record_result(self, *, result: dict[str, Any]) -> None:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO match_results (
                      match_id, match_type, creator, opponent, winner, loser, stake, payout, reason, voided, unlocks_json, finished_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::timestamptz)
                    ON CONFLICT (match_id) DO NOTHING
                    """,
                    (
                        str(result["match_id"]),
                        str(result["match_type"]),
                        str(result["creator"]),
                        result.get("opponent"),
                        result.get("winner"),
                        result.get("loser"),
                        str(result["stake"]),
                        str(result["payout"]),
                        str(result["reason"]),
                        bool(result.get("voided")),
                        json.dumps(list(result.get("unlocks") or [])),
                        _iso(result.get("finished_at")),
                    ),
                )

    def list_results(self, *, agent_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        self.init_db()
        bounded = max(1, min(500, int(limit)))
        with self._connect() as conn:
            with conn.cursor() as cur:
                if agent_id:
                    cur.execute(
                        """
                        SELECT * FROM match_results
                        WHERE creator = %s OR opponent = %s
                        ORDER BY finished_at DESC
                        LIMIT %s
                        """,
                        (str(agent_id), str(agent_id), bounded),
                    )
                else:
                    cur.execute("SELECT * FROM match_results ORDER BY finished_at DESC LIMIT %s", (bounded,))
                rows = cur.fetchall()
        return [self._result_row(dict(row)) for row in rows]


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
def _backend() -> MatchHistoryStore:
    database_url = _database_url()
    if database_url and database_url.startswith(("postgres://", "postgresql://")):
        return PostgresMatchHistoryStore(database_url)
    return SQLiteMatchHistoryStore(_resolve_sqlite_path(database_url))


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def init_db() -> None:
    _backend().init_db()


def record_result(result: dict[str, Any]) -> None:
    _backend().record_result(result=result)


def list_results(*, agent_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
    return _backend().list_results(agent_id=agent_id, limit=limit)
